import os
import tempfile

# main.py 在导入时创建应用，先把数据库指到临时目录
_TMP_DIR = tempfile.mkdtemp(prefix="serverforge-tests-")
os.environ.setdefault("SERVERFORGE_DB_PATH", os.path.join(_TMP_DIR, "serverforge.db"))
os.environ.setdefault("SERVERFORGE_LOG_LEVEL", "WARNING")

from typing import List

import pytest

from serverforge.data import StaticSpecificationRepository
from serverforge.db import Database
from serverforge.schemas import Component, ComponentSpec
from serverforge.service import ConfigurationAssembler


def spec(component_type: str, component_id: str, **fields) -> ComponentSpec:
    return ComponentSpec(component_type=component_type, component_id=component_id, **fields)


def ddr5_module(component_id: str, **overrides) -> ComponentSpec:
    fields = dict(memory_type="DDR5", memory_form_factor="RDIMM", capacity_gb=32, frequency_mhz=4800, ecc=True)
    fields.update(overrides)
    return spec("ram", component_id, **fields)


def xeon(component_id: str, **overrides) -> ComponentSpec:
    fields = dict(
        socket="LGA4189",
        pcie_lanes=64,
        pcie_generation=4,
        tdp_w=205,
        memory_types=["DDR5"],
        max_memory_frequency_mhz=4800,
        max_memory_gb=4096,
        ecc=True,
    )
    fields.update(overrides)
    return spec("cpu", component_id, **fields)


BOARD = spec(
    "motherboard",
    "MB-X12-4189",
    socket="LGA4189",
    socket_count=2,
    memory_types=["DDR5"],
    memory_slots=4,
    memory_form_factor="RDIMM",
    max_memory_frequency_mhz=4800,
    max_memory_gb=2048,
    max_module_gb=128,
    ecc=True,
    pcie_slots={"x16": 2},
    pcie_generation=4,
    m2_slots=2,
    sata_ports=4,
    form_factor="E-ATX",
)

CATALOG: List[ComponentSpec] = [
    BOARD,
    xeon("CPU-XEON-6338-A"),
    xeon("CPU-XEON-6338-B", socket="LGA 4189"),
    spec(
        "cpu",
        "CPU-RYZEN-7950X",
        socket="AM5",
        pcie_lanes=28,
        pcie_generation=5,
        tdp_w=170,
        memory_types=["DDR5"],
        max_memory_frequency_mhz=5200,
        max_memory_gb=192,
        ecc=False,
    ),
    *(ddr5_module(f"RAM-DDR5-32G-{i}") for i in range(1, 6)),
    spec("ram", "RAM-DDR4-32G-1", memory_type="DDR4", memory_form_factor="RDIMM", capacity_gb=32, frequency_mhz=3200, ecc=True),
    spec("pciecard", "ACCEL-X16-1", pcie_width="x16", pcie_generation=4, tdp_w=250),
    spec("pciecard", "RISER-2X8-1", subtype="riser", pcie_width="x16", riser_slots={"x8": 2}),
    spec("nic", "NIC-25G-X8-1", pcie_width="x8", pcie_generation=4, tdp_w=20),
    spec("nic", "NIC-25G-X8-2", pcie_width="x8", pcie_generation=4, tdp_w=20),
    spec("storage", "NVME-1T-1", storage_interface="NVMe", storage_form_factor="M.2", tdp_w=8),
    spec("storage", "SSD-SATA-960-1", storage_interface="SATA", storage_form_factor='2.5"', tdp_w=5),
    spec("chassis", "CHASSIS-2U-1", supported_form_factors=["E-ATX", "ATX"], drive_bay_sizes=['2.5"']),
]


@pytest.fixture
def oracle():
    return StaticSpecificationRepository(CATALOG)


@pytest.fixture
def db(tmp_path):
    return Database(tmp_path / "serverforge.db", timeout_seconds=10)


@pytest.fixture
def assembler(db, oracle):
    engine = ConfigurationAssembler(db, oracle)
    for item in CATALOG:
        engine.provision_component(Component(component_type=item.component_type, component_id=item.component_id))
    return engine


@pytest.fixture
def board_config(assembler):
    """带主板的 real 模式配置"""
    config = assembler.create_configuration("rack-a")
    assembler.add_component(config.config_id, "motherboard", "MB-X12-4189")
    return config.config_id
