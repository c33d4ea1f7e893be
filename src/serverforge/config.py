from __future__ import annotations

import os
from pathlib import Path
from typing import List

from dotenv import load_dotenv
from pydantic import BaseModel, Field

ROOT = Path(__file__).resolve().parents[2]
DATA_DIR = ROOT / "data"

DEFAULT_REQUIRED_COMPONENTS = ["cpu", "motherboard", "ram"]


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    return default


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if raw is None:
        return list(default)
    items = [part.strip().lower() for part in raw.split(",") if part.strip()]
    return items or list(default)


class Settings(BaseModel):
    db_path: Path = DATA_DIR / "serverforge.db"
    catalog_path: Path = DATA_DIR / "catalog.json"
    inventory_path: Path = DATA_DIR / "inventory.csv"
    required_components: List[str] = Field(default_factory=lambda: list(DEFAULT_REQUIRED_COMPONENTS))
    text_inference: bool = True
    sqlite_timeout_seconds: float = 10.0
    log_level: str = "INFO"
    lock_idle_seconds: int = 3600


def load_settings(env_file: Path | None = None) -> Settings:
    load_dotenv(env_file or ROOT / ".env")
    return Settings(
        db_path=Path(os.getenv("SERVERFORGE_DB_PATH") or DATA_DIR / "serverforge.db"),
        catalog_path=Path(os.getenv("SERVERFORGE_CATALOG_PATH") or DATA_DIR / "catalog.json"),
        inventory_path=Path(os.getenv("SERVERFORGE_INVENTORY_PATH") or DATA_DIR / "inventory.csv"),
        required_components=_env_list("SERVERFORGE_REQUIRED_COMPONENTS", DEFAULT_REQUIRED_COMPONENTS),
        text_inference=_env_bool("SERVERFORGE_TEXT_INFERENCE", True),
        sqlite_timeout_seconds=_env_float("SERVERFORGE_SQLITE_TIMEOUT_SECONDS", 10.0),
        log_level=(os.getenv("SERVERFORGE_LOG_LEVEL") or "INFO").strip().upper(),
        lock_idle_seconds=_env_int("SERVERFORGE_LOCK_IDLE_SECONDS", 3600),
    )
