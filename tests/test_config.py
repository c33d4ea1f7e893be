from pathlib import Path

from serverforge.config import load_settings


def test_environment_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("SERVERFORGE_DB_PATH", str(tmp_path / "x.db"))
    monkeypatch.setenv("SERVERFORGE_REQUIRED_COMPONENTS", "CPU, motherboard,ram,chassis")
    monkeypatch.setenv("SERVERFORGE_TEXT_INFERENCE", "off")
    monkeypatch.setenv("SERVERFORGE_SQLITE_TIMEOUT_SECONDS", "2.5")
    monkeypatch.setenv("SERVERFORGE_LOG_LEVEL", "debug")
    monkeypatch.setenv("SERVERFORGE_LOCK_IDLE_SECONDS", "60")

    settings = load_settings(tmp_path / "missing.env")
    assert settings.db_path == tmp_path / "x.db"
    assert settings.required_components == ["cpu", "motherboard", "ram", "chassis"]
    assert settings.text_inference is False
    assert settings.sqlite_timeout_seconds == 2.5
    assert settings.log_level == "DEBUG"
    assert settings.lock_idle_seconds == 60


def test_bad_values_fall_back_to_defaults(monkeypatch, tmp_path):
    monkeypatch.setenv("SERVERFORGE_TEXT_INFERENCE", "maybe")
    monkeypatch.setenv("SERVERFORGE_SQLITE_TIMEOUT_SECONDS", "soon")
    monkeypatch.setenv("SERVERFORGE_REQUIRED_COMPONENTS", " , ")
    monkeypatch.delenv("SERVERFORGE_CATALOG_PATH", raising=False)

    settings = load_settings(tmp_path / "missing.env")
    assert settings.text_inference is True
    assert settings.sqlite_timeout_seconds == 10.0
    assert settings.required_components == ["cpu", "motherboard", "ram"]
    assert settings.catalog_path.name == "catalog.json"
    assert isinstance(settings.catalog_path, Path)
