"""
库存台账 - Inventory Ledger

组件状态与归属只在这里修改。所有状态迁移都是单条件 UPDATE（compare-and-set），
检查当前状态与写入新状态在同一个原子语句内完成。
Component status and owner are only mutated here. Every transition is a single
conditional UPDATE (compare-and-set): checking the current status and writing the new
one happen in one atomic statement.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .db import ComponentStore
from .schemas import Component, ComponentStatus, ConfigurationMode

logger = logging.getLogger(__name__)


class ClaimStatus(str, Enum):
    CLAIMED = "claimed"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    FAILED = "failed"


@dataclass(frozen=True)
class ClaimOutcome:
    status: ClaimStatus
    component_type: str
    component_id: str
    current_owner: Optional[str] = None
    previous_owner: Optional[str] = None
    override_used: bool = False
    virtual: bool = False

    @property
    def claimed(self) -> bool:
        return self.status == ClaimStatus.CLAIMED


class InventoryLedger:
    """库存台账 - exclusive ownership of physical components"""

    def __init__(self, components: ComponentStore | None = None):
        self.components = components or ComponentStore()

    def provision(self, conn: sqlite3.Connection, component: Component) -> None:
        """库存入库（新增或覆盖组件行）- onboard or overwrite an inventory row"""
        self.components.upsert(conn, component)
        logger.info("provisioned %s status=%s", component.ref, component.status.name)

    def get(self, conn: sqlite3.Connection, component_type: str, component_id: str) -> Component | None:
        return self.components.get(conn, component_type, component_id)

    def try_claim(
        self,
        conn: sqlite3.Connection,
        component_type: str,
        component_id: str,
        config_id: str,
        mode: ConfigurationMode = "real",
        override: bool = False,
    ) -> ClaimOutcome:
        """
        申领组件 - Claim a component for a configuration

        成功条件：状态为 Available；或已被本配置占用（幂等）；或被其他配置占用且 override=True。
        Test 模式只做可用性判断，不写库存行。
        Succeeds when the component is Available, already owned by this configuration
        (idempotent), or owned by another configuration with ``override=True``.
        Test mode only checks availability and never writes the component row.
        """
        current = self.components.get(conn, component_type, component_id)
        if current is None:
            return ClaimOutcome(ClaimStatus.NOT_FOUND, component_type, component_id)
        if current.status == ComponentStatus.FAILED:
            return ClaimOutcome(ClaimStatus.FAILED, component_type, component_id)

        owner = current.owner_config_id
        if current.status == ComponentStatus.IN_USE and owner == config_id:
            return ClaimOutcome(ClaimStatus.CLAIMED, component_type, component_id, current_owner=owner)

        preempting = current.status == ComponentStatus.IN_USE
        if preempting and not override:
            logger.warning("%s:%s requested by %s is held by %s", component_type, component_id, config_id, owner)
            return ClaimOutcome(ClaimStatus.CONFLICT, component_type, component_id, current_owner=owner)

        if mode == "test":
            return ClaimOutcome(
                ClaimStatus.CLAIMED,
                component_type,
                component_id,
                current_owner=owner,
                previous_owner=owner if preempting else None,
                override_used=preempting,
                virtual=True,
            )

        cur = conn.execute(
            """
            UPDATE components
            SET status = ?, owner_config_id = ?, updated_at = CURRENT_TIMESTAMP
            WHERE component_type = ? AND component_id = ?
              AND status = ? AND owner_config_id IS ?
            """,
            (
                int(ComponentStatus.IN_USE),
                config_id,
                component_type,
                component_id,
                int(current.status),
                owner,
            ),
        )
        if cur.rowcount != 1:
            # 行在读取后被其他事务改写
            latest = self.components.get(conn, component_type, component_id)
            latest_owner = latest.owner_config_id if latest else None
            logger.warning("claim of %s:%s lost a race to %s", component_type, component_id, latest_owner)
            return ClaimOutcome(ClaimStatus.CONFLICT, component_type, component_id, current_owner=latest_owner)

        if preempting:
            logger.warning(
                "%s:%s pre-empted from configuration %s by %s (override)",
                component_type,
                component_id,
                owner,
                config_id,
            )
        else:
            logger.info("claimed %s:%s for %s", component_type, component_id, config_id)
        return ClaimOutcome(
            ClaimStatus.CLAIMED,
            component_type,
            component_id,
            current_owner=config_id,
            previous_owner=owner if preempting else None,
            override_used=preempting,
        )

    def release(
        self,
        conn: sqlite3.Connection,
        component_type: str,
        component_id: str,
        config_id: str,
        mode: ConfigurationMode = "real",
    ) -> bool:
        """
        释放组件 - Release a component held by ``config_id``

        Test 模式的申领是虚拟的，释放时不修改库存状态。只有当前归属者才能释放组件，
        被抢占后原配置的释放不会影响新归属者。
        Test-mode claims are virtual, so release leaves the row untouched. Only the
        current owner frees the component; a pre-empted configuration's release is a no-op.
        """
        if mode == "test":
            return False
        cur = conn.execute(
            """
            UPDATE components
            SET status = ?, owner_config_id = NULL, updated_at = CURRENT_TIMESTAMP
            WHERE component_type = ? AND component_id = ?
              AND status = ? AND owner_config_id = ?
            """,
            (
                int(ComponentStatus.AVAILABLE),
                component_type,
                component_id,
                int(ComponentStatus.IN_USE),
                config_id,
            ),
        )
        released = cur.rowcount == 1
        if released:
            logger.info("released %s:%s from %s", component_type, component_id, config_id)
        else:
            logger.debug("release of %s:%s by %s changed nothing", component_type, component_id, config_id)
        return released

    def mark_failed(self, conn: sqlite3.Connection, component_type: str, component_id: str) -> bool:
        """标记故障（仅限空闲组件）- mark an Available component as Failed"""
        cur = conn.execute(
            """
            UPDATE components
            SET status = ?, updated_at = CURRENT_TIMESTAMP
            WHERE component_type = ? AND component_id = ? AND status = ?
            """,
            (int(ComponentStatus.FAILED), component_type, component_id, int(ComponentStatus.AVAILABLE)),
        )
        return cur.rowcount == 1
