from __future__ import annotations

import csv
import logging
from pathlib import Path
from typing import Dict, Iterable, Optional

from pydantic import ValidationError

from .db import Database
from .ledger import InventoryLedger
from .schemas import COMPONENT_TYPES, Component, ComponentStatus

logger = logging.getLogger(__name__)

STATUS_ALIASES: Dict[str, ComponentStatus] = {
    "0": ComponentStatus.FAILED,
    "failed": ComponentStatus.FAILED,
    "defective": ComponentStatus.FAILED,
    "1": ComponentStatus.AVAILABLE,
    "available": ComponentStatus.AVAILABLE,
    "": ComponentStatus.AVAILABLE,
    "2": ComponentStatus.IN_USE,
    "in use": ComponentStatus.IN_USE,
    "in_use": ComponentStatus.IN_USE,
    "inuse": ComponentStatus.IN_USE,
}

# 兼容常见的列名写法
TYPE_ALIASES: Dict[str, str] = {
    "memory": "ram",
    "pcie": "pciecard",
    "pcie_card": "pciecard",
    "hba": "hbacard",
    "hba_card": "hbacard",
    "case": "chassis",
}


def _parse_status(raw: str) -> Optional[ComponentStatus]:
    return STATUS_ALIASES.get(raw.strip().lower())


def _iter_csv_rows(path: Path) -> Iterable[Component]:
    with path.open("r", encoding="utf-8", newline="") as f:
        reader = csv.DictReader(f)
        for line, row in enumerate(reader, start=2):
            component_type = (row.get("type") or row.get("component_type") or "").strip().lower()
            component_type = TYPE_ALIASES.get(component_type, component_type)
            component_id = (row.get("id") or row.get("component_id") or "").strip()
            if component_type not in COMPONENT_TYPES or not component_id:
                logger.warning("%s:%d skipped: unknown type %r or empty id", path.name, line, component_type)
                continue

            status = _parse_status(row.get("status") or "")
            if status is None:
                logger.warning("%s:%d skipped: unknown status %r", path.name, line, row.get("status"))
                continue
            owner = (row.get("owner_config_id") or "").strip() or None
            if status == ComponentStatus.IN_USE and owner is None:
                # 没有归属者的 "In Use" 行无法被正常释放
                logger.warning("%s:%d skipped: in-use row without owner_config_id", path.name, line)
                continue

            try:
                yield Component(
                    component_type=component_type,
                    component_id=component_id,
                    status=status,
                    owner_config_id=owner if status == ComponentStatus.IN_USE else None,
                    notes=(row.get("notes") or "").strip(),
                    location=(row.get("location") or "").strip(),
                )
            except ValidationError as err:
                logger.warning("%s:%d skipped: %s", path.name, line, err)


def import_inventory_csv(db: Database, path: Path) -> dict:
    """从 CSV 导入库存组件行（同一组件后出现的行覆盖前面的行）

    列 Columns: type, id, status, notes, location, owner_config_id (optional)

    Returns:
        {"rows_total": 导入行数, "inserted": 写入的组件数, "skipped": 跳过行数}
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(path)

    with path.open("r", encoding="utf-8", newline="") as f:
        rows_total = sum(1 for _ in csv.DictReader(f))

    accepted_rows = list(_iter_csv_rows(path))
    latest: Dict[tuple, Component] = {}
    for component in accepted_rows:
        latest[(component.component_type, component.component_id)] = component

    ledger = InventoryLedger()
    with db.transaction() as conn:
        for component in latest.values():
            ledger.provision(conn, component)

    accepted = len(latest)
    logger.info("imported %d components from %s (%d rows)", accepted, path, rows_total)
    return {
        "rows_total": rows_total,
        "inserted": accepted,
        "skipped": rows_total - len(accepted_rows),
    }
