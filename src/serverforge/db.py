from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .schemas import (
    Component,
    ComponentAssociation,
    ComponentStatus,
    Configuration,
    ConfigurationStatus,
)

logger = logging.getLogger(__name__)


SCHEMA_SQL = [
    """
    CREATE TABLE IF NOT EXISTS components (
      component_type TEXT NOT NULL,
      component_id TEXT NOT NULL,
      status INTEGER NOT NULL DEFAULT 1,
      owner_config_id TEXT,
      notes TEXT NOT NULL DEFAULT '',
      location TEXT NOT NULL DEFAULT '',
      updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
      PRIMARY KEY (component_type, component_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS configurations (
      config_id TEXT PRIMARY KEY,
      name TEXT NOT NULL,
      status INTEGER NOT NULL DEFAULT 0,
      mode TEXT NOT NULL DEFAULT 'real',
      created_by TEXT NOT NULL DEFAULT '',
      description TEXT NOT NULL DEFAULT '',
      compatibility_score REAL,
      created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
      updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
      finalized_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS configuration_components (
      config_id TEXT NOT NULL REFERENCES configurations(config_id) ON DELETE CASCADE,
      component_type TEXT NOT NULL,
      component_id TEXT NOT NULL,
      quantity INTEGER NOT NULL DEFAULT 1,
      slot_id TEXT,
      added_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
      PRIMARY KEY (config_id, component_type, component_id),
      UNIQUE (config_id, slot_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS configuration_history (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      config_id TEXT NOT NULL,
      action TEXT NOT NULL,
      component_type TEXT,
      component_id TEXT,
      metadata_json TEXT NOT NULL DEFAULT '{}',
      created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
]


class Database:
    """
    SQLite 持久化 - SQLite persistence collaborator

    每个工作单元使用独立连接，并以 ``BEGIN IMMEDIATE`` 开启事务，
    保证组件行的检查与写入在同一个原子步骤中完成。
    Each unit of work opens its own connection and starts with ``BEGIN IMMEDIATE``
    so the status check and the status write on a component row happen atomically.
    """

    def __init__(self, db_path: Path, timeout_seconds: float = 10.0):
        self.db_path = Path(db_path)
        self.timeout_seconds = timeout_seconds
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _init_schema(self) -> None:
        with self.transaction() as conn:
            for statement in SCHEMA_SQL:
                conn.execute(statement)
        logger.debug("schema ready at %s", self.db_path)

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path,
            timeout=self.timeout_seconds,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        原子工作单元 - All-or-nothing unit of work

        任何异常都会回滚整个事务后再向上抛出。
        Any exception rolls the whole transaction back before propagating.
        """
        conn = self.connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()


def _component_from_row(row: sqlite3.Row) -> Component:
    return Component(
        component_type=row["component_type"],
        component_id=row["component_id"],
        status=ComponentStatus(int(row["status"])),
        owner_config_id=row["owner_config_id"],
        notes=row["notes"] or "",
        location=row["location"] or "",
    )


def _association_from_row(row: sqlite3.Row) -> ComponentAssociation:
    return ComponentAssociation(
        config_id=row["config_id"],
        component_type=row["component_type"],
        component_id=row["component_id"],
        quantity=int(row["quantity"]),
        slot_id=row["slot_id"],
        added_at=row["added_at"],
    )


class ComponentStore:
    """库存组件行 - inventory component rows (status writes belong to the ledger)"""

    def get(self, conn: sqlite3.Connection, component_type: str, component_id: str) -> Component | None:
        row = conn.execute(
            """
            SELECT component_type, component_id, status, owner_config_id, notes, location
            FROM components
            WHERE component_type = ? AND component_id = ?
            """,
            (component_type, component_id),
        ).fetchone()
        return _component_from_row(row) if row else None

    def list(
        self,
        conn: sqlite3.Connection,
        component_type: str | None = None,
        status: ComponentStatus | None = None,
    ) -> List[Component]:
        clauses: List[str] = []
        params: List[Any] = []
        if component_type:
            clauses.append("component_type = ?")
            params.append(component_type)
        if status is not None:
            clauses.append("status = ?")
            params.append(int(status))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = conn.execute(
            f"""
            SELECT component_type, component_id, status, owner_config_id, notes, location
            FROM components
            {where}
            ORDER BY component_type, component_id
            """,
            tuple(params),
        ).fetchall()
        return [_component_from_row(r) for r in rows]

    def upsert(self, conn: sqlite3.Connection, component: Component) -> None:
        conn.execute(
            """
            INSERT INTO components (component_type, component_id, status, owner_config_id, notes, location)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (component_type, component_id) DO UPDATE SET
              status = excluded.status,
              owner_config_id = excluded.owner_config_id,
              notes = excluded.notes,
              location = excluded.location,
              updated_at = CURRENT_TIMESTAMP
            """,
            (
                component.component_type,
                component.component_id,
                int(component.status),
                component.owner_config_id,
                component.notes,
                component.location,
            ),
        )


class ConfigurationStore:
    """配置、关联与审计记录 - configurations, associations and the audit trail"""

    def insert(self, conn: sqlite3.Connection, config: Configuration) -> None:
        conn.execute(
            """
            INSERT INTO configurations (config_id, name, status, mode, created_by, description)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                config.config_id,
                config.name,
                int(config.status),
                config.mode,
                config.created_by,
                config.description,
            ),
        )

    def get(self, conn: sqlite3.Connection, config_id: str) -> Configuration | None:
        row = conn.execute(
            """
            SELECT config_id, name, status, mode, created_by, description, compatibility_score,
                   created_at, updated_at, finalized_at
            FROM configurations
            WHERE config_id = ?
            """,
            (config_id,),
        ).fetchone()
        if row is None:
            return None
        config = Configuration(
            config_id=row["config_id"],
            name=row["name"],
            status=ConfigurationStatus(int(row["status"])),
            mode=row["mode"],
            created_by=row["created_by"] or "",
            description=row["description"] or "",
            compatibility_score=row["compatibility_score"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            finalized_at=row["finalized_at"],
        )
        config.components = self.associations(conn, config_id)
        return config

    def list(self, conn: sqlite3.Connection) -> List[Configuration]:
        ids = [r["config_id"] for r in conn.execute("SELECT config_id FROM configurations ORDER BY created_at, config_id")]
        configs = [self.get(conn, config_id) for config_id in ids]
        return [c for c in configs if c is not None]

    def set_status(
        self,
        conn: sqlite3.Connection,
        config_id: str,
        status: ConfigurationStatus,
        finalized_at: str | None = None,
    ) -> None:
        conn.execute(
            """
            UPDATE configurations
            SET status = ?, finalized_at = COALESCE(?, finalized_at), updated_at = CURRENT_TIMESTAMP
            WHERE config_id = ?
            """,
            (int(status), finalized_at, config_id),
        )
        if status < ConfigurationStatus.FINALIZED:
            conn.execute("UPDATE configurations SET finalized_at = NULL WHERE config_id = ?", (config_id,))

    def set_score(self, conn: sqlite3.Connection, config_id: str, score: float) -> None:
        conn.execute(
            """
            UPDATE configurations
            SET compatibility_score = ?, updated_at = CURRENT_TIMESTAMP
            WHERE config_id = ?
            """,
            (score, config_id),
        )

    def delete(self, conn: sqlite3.Connection, config_id: str) -> None:
        conn.execute("DELETE FROM configuration_components WHERE config_id = ?", (config_id,))
        conn.execute("DELETE FROM configurations WHERE config_id = ?", (config_id,))

    def associations(self, conn: sqlite3.Connection, config_id: str) -> List[ComponentAssociation]:
        rows = conn.execute(
            """
            SELECT config_id, component_type, component_id, quantity, slot_id, added_at
            FROM configuration_components
            WHERE config_id = ?
            ORDER BY added_at, rowid
            """,
            (config_id,),
        ).fetchall()
        return [_association_from_row(r) for r in rows]

    def insert_association(self, conn: sqlite3.Connection, assoc: ComponentAssociation) -> None:
        conn.execute(
            """
            INSERT INTO configuration_components (config_id, component_type, component_id, quantity, slot_id)
            VALUES (?, ?, ?, ?, ?)
            """,
            (assoc.config_id, assoc.component_type, assoc.component_id, assoc.quantity, assoc.slot_id),
        )

    def delete_association(
        self, conn: sqlite3.Connection, config_id: str, component_type: str, component_id: str
    ) -> bool:
        cur = conn.execute(
            """
            DELETE FROM configuration_components
            WHERE config_id = ? AND component_type = ? AND component_id = ?
            """,
            (config_id, component_type, component_id),
        )
        return cur.rowcount > 0

    def set_slot(
        self,
        conn: sqlite3.Connection,
        config_id: str,
        component_type: str,
        component_id: str,
        slot_id: str | None,
    ) -> None:
        conn.execute(
            """
            UPDATE configuration_components
            SET slot_id = ?
            WHERE config_id = ? AND component_type = ? AND component_id = ?
            """,
            (slot_id, config_id, component_type, component_id),
        )

    def log_action(
        self,
        conn: sqlite3.Connection,
        config_id: str,
        action: str,
        component_type: str | None = None,
        component_id: str | None = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        conn.execute(
            """
            INSERT INTO configuration_history (config_id, action, component_type, component_id, metadata_json)
            VALUES (?, ?, ?, ?, ?)
            """,
            (config_id, action, component_type, component_id, json.dumps(metadata or {}, ensure_ascii=False)),
        )

    def history(self, conn: sqlite3.Connection, config_id: str) -> List[Dict[str, Any]]:
        rows = conn.execute(
            """
            SELECT action, component_type, component_id, metadata_json, created_at
            FROM configuration_history
            WHERE config_id = ?
            ORDER BY id
            """,
            (config_id,),
        ).fetchall()
        return [
            {
                "action": r["action"],
                "component_type": r["component_type"],
                "component_id": r["component_id"],
                "metadata": json.loads(r["metadata_json"] or "{}"),
                "created_at": r["created_at"],
            }
            for r in rows
        ]
