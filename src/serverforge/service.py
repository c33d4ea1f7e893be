from __future__ import annotations

import logging
import sqlite3
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .builder import CompatibilityEvaluator, SlotAllocator, estimate_system_power, slot_requirement
from .builder.slots import SlotPool
from .config import DEFAULT_REQUIRED_COMPONENTS, Settings
from .data import AttributeResolver, JsonSpecificationRepository, SpecificationOracle
from .db import ComponentStore, ConfigurationStore, Database
from .errors import (
    CapacityExhaustedError,
    CompatibilityBlockedError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationFailedError,
)
from .ledger import ClaimOutcome, ClaimStatus, InventoryLedger
from .schemas import (
    COMPONENT_TYPES,
    AddComponentResult,
    AttributeSource,
    CandidateComponent,
    CompatibilityResult,
    Component,
    ComponentAssociation,
    ComponentSpec,
    ComponentStatus,
    Configuration,
    ConfigurationMode,
    ConfigurationStatus,
    FinalizeResult,
    Issue,
    RemoveComponentResult,
    RuleInfo,
    SlotPoolState,
    ValidationReport,
    component_ref,
)

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _capacity_class(issue: Issue) -> Optional[str]:
    if issue.kind == "memory_slots_exhausted":
        return "dimm"
    if issue.kind == "slot_width_unavailable":
        return f"pcie_{issue.details.get('required_width')}"
    if issue.kind == "storage_port_unavailable":
        return str(issue.details.get("interface"))
    return None


class ConfigurationAssembler:
    """
    配置装配器 - Configuration Assembler

    每次 add/remove 都是一个原子工作单元：台账申领/释放、兼容性评估、槽位分配与持久化
    在同一个 SQLite 事务内完成，任何异常都会整体回滚。同一配置的操作通过配置级锁串行化，
    不同配置之间只通过组件行的 compare-and-set 竞争。
    Every add/remove is one unit of work: ledger claim/release, evaluation, slot
    assignment and persistence share one SQLite transaction and any exception rolls
    all of it back. Operations on one configuration serialize on a per-configuration
    lock; different configurations only contend on component rows (compare-and-set).
    """

    def __init__(
        self,
        db: Database,
        oracle: SpecificationOracle,
        required_components: Optional[List[str]] = None,
        text_inference: bool = True,
        evaluator: CompatibilityEvaluator | None = None,
        allocator: SlotAllocator | None = None,
        lock_idle_seconds: int = 3600,
    ):
        self.db = db
        self.resolver = AttributeResolver(oracle, text_inference=text_inference)
        self.evaluator = evaluator or CompatibilityEvaluator()
        self.allocator = allocator or SlotAllocator()
        self.components = ComponentStore()
        self.configs = ConfigurationStore()
        self.ledger = InventoryLedger(self.components)
        self.required_components = list(required_components or DEFAULT_REQUIRED_COMPONENTS)
        self._configs_lock = threading.Lock()
        self._config_locks: Dict[str, threading.Lock] = {}
        self._lock_last_seen: Dict[str, float] = {}
        self._cleanup_lock = threading.Lock()
        self._last_lock_cleanup_monotonic = 0.0
        self.lock_idle_seconds = max(1, int(lock_idle_seconds))

    @classmethod
    def from_settings(cls, settings: Settings) -> "ConfigurationAssembler":
        return cls(
            Database(settings.db_path, settings.sqlite_timeout_seconds),
            JsonSpecificationRepository(settings.catalog_path),
            required_components=settings.required_components,
            text_inference=settings.text_inference,
            lock_idle_seconds=settings.lock_idle_seconds,
        )

    def _get_config_lock(self, config_id: str) -> threading.Lock:
        self._cleanup_config_locks()
        with self._configs_lock:
            lock = self._config_locks.get(config_id)
            if lock is None:
                lock = threading.Lock()
                self._config_locks[config_id] = lock
            self._lock_last_seen[config_id] = time.monotonic()
            return lock

    def _drop_config_lock(self, config_id: str) -> None:
        with self._configs_lock:
            lock = self._config_locks.get(config_id)
            if lock is not None and not lock.locked():
                self._config_locks.pop(config_id, None)
                self._lock_last_seen.pop(config_id, None)

    def _cleanup_config_locks(self, force: bool = False) -> None:
        """清理长时间未使用的配置锁（含不存在的配置 id）- sweep idle per-configuration locks"""
        now = time.monotonic()
        if not force and (now - self._last_lock_cleanup_monotonic) < self.lock_idle_seconds:
            return
        with self._cleanup_lock:
            now = time.monotonic()
            if not force and (now - self._last_lock_cleanup_monotonic) < self.lock_idle_seconds:
                return
            expire_before = now - float(self.lock_idle_seconds)
            with self._configs_lock:
                stale = [cid for cid, seen in self._lock_last_seen.items() if seen < expire_before]
                for cid in stale:
                    lock = self._config_locks.get(cid)
                    if lock is not None and not lock.locked():
                        self._config_locks.pop(cid, None)
                        self._lock_last_seen.pop(cid, None)
            self._last_lock_cleanup_monotonic = now

    # === 库存 ===

    def provision_component(self, component: Component) -> Component:
        with self.db.transaction() as conn:
            self.ledger.provision(conn, component)
        return component

    def get_component(self, component_type: str, component_id: str) -> Component:
        with self.db.read() as conn:
            component = self.components.get(conn, component_type, component_id)
        if component is None:
            raise NotFoundError(f"component {component_ref(component_type, component_id)} not found")
        return component

    def list_components(
        self, component_type: str | None = None, status: ComponentStatus | None = None
    ) -> List[Component]:
        with self.db.read() as conn:
            return self.components.list(conn, component_type, status)

    # === 配置 CRUD ===

    def create_configuration(
        self,
        name: str,
        mode: ConfigurationMode = "real",
        created_by: str = "",
        description: str = "",
        config_id: str | None = None,
    ) -> Configuration:
        config = Configuration(
            config_id=config_id or uuid.uuid4().hex,
            name=name,
            mode=mode,
            created_by=created_by,
            description=description,
        )
        with self.db.transaction() as conn:
            if self.configs.get(conn, config.config_id) is not None:
                raise ValidationFailedError(f"configuration {config.config_id} already exists")
            self.configs.insert(conn, config)
            self.configs.log_action(conn, config.config_id, "create", metadata={"mode": mode, "name": name})
            created = self._load(conn, config.config_id)
        logger.info("configuration %s created (%s mode)", config.config_id, mode)
        return created

    def get_configuration(self, config_id: str) -> Configuration:
        with self.db.read() as conn:
            return self._load(conn, config_id)

    def list_configurations(self) -> List[Configuration]:
        with self.db.read() as conn:
            return self.configs.list(conn)

    def delete_configuration(self, config_id: str, privileged: bool = False) -> None:
        """删除配置并释放其全部组件 - delete a configuration, releasing every claim"""
        with self._get_config_lock(config_id):
            with self.db.transaction() as conn:
                config = self._load(conn, config_id)
                if config.status == ConfigurationStatus.FINALIZED and not privileged:
                    raise PermissionDeniedError(f"configuration {config_id} is finalized")
                for assoc in config.components:
                    self.ledger.release(conn, assoc.component_type, assoc.component_id, config_id, config.mode)
                self.configs.delete(conn, config_id)
                self.configs.log_action(
                    conn,
                    config_id,
                    "delete",
                    metadata={"released": [a.ref for a in config.components], "privileged": privileged},
                )
        self._drop_config_lock(config_id)
        logger.info("configuration %s deleted", config_id)

    def clone_configuration(
        self,
        config_id: str,
        name: str | None = None,
        mode: ConfigurationMode = "test",
        created_by: str = "",
    ) -> Configuration:
        """
        复制配置 - Clone a configuration through the normal add path

        默认生成 Test 模式副本，因为源配置仍占有这些组件。任何组件添加失败都会删除副本。
        Defaults to Test mode since the source still holds the components (test-mode
        claims on them are virtual); if any add fails the clone is deleted and the error
        propagates.
        """
        source = self.get_configuration(config_id)
        clone = self.create_configuration(
            name or f"{source.name} (copy)",
            mode=mode,
            created_by=created_by,
            description=source.description,
        )
        try:
            for assoc in source.components:
                self.add_component(
                    clone.config_id,
                    assoc.component_type,
                    assoc.component_id,
                    override=clone.is_test,
                )
        except Exception:
            self.delete_configuration(clone.config_id, privileged=True)
            raise
        with self.db.transaction() as conn:
            self.configs.log_action(conn, clone.config_id, "clone", metadata={"source": config_id})
        return self.get_configuration(clone.config_id)

    def history(self, config_id: str) -> List[Dict[str, Any]]:
        with self.db.read() as conn:
            self._load(conn, config_id)
            return self.configs.history(conn, config_id)

    # === 组件添加与移除 ===

    def add_component(
        self,
        config_id: str,
        component_type: str,
        component_id: str,
        quantity: int = 1,
        slot_hint: str | None = None,
        override: bool = False,
        privileged: bool = False,
    ) -> AddComponentResult:
        """
        向配置添加组件 - Add a component to a configuration

        流程 Flow: 申领 claim → 评估 evaluate → 关联 associate → 分配槽位 assign → 审计 audit。
        阻断性兼容失败抛出 ``CompatibilityBlockedError``；仅有容量失败时抛出
        ``CapacityExhaustedError``。警告不会中断操作，随结果返回。
        A blocking compatibility failure raises ``CompatibilityBlockedError``; when only
        capacity failures block, ``CapacityExhaustedError`` is raised. Warnings never
        abort and are returned with the result.
        """
        if component_type not in COMPONENT_TYPES:
            raise NotFoundError(f"unknown component type {component_type}")
        if quantity != 1:
            raise ValidationFailedError(
                f"{component_ref(component_type, component_id)}: a physical component is claimed one unit at a time"
            )
        ref = component_ref(component_type, component_id)

        with self._get_config_lock(config_id):
            with self.db.transaction() as conn:
                config = self._load(conn, config_id)
                self._check_mutable(config, privileged)

                outcome = self.ledger.try_claim(conn, component_type, component_id, config_id, config.mode, override)
                self._raise_for_claim(outcome)

                existing_assoc = next((a for a in config.components if a.ref == ref), None)
                specs = self._specs(conn, config.components)
                candidate = self._spec(conn, component_type, component_id)
                existing = [s for r, s in specs.items() if r != ref]
                result = self.evaluator.evaluate(candidate, existing)

                if existing_assoc is not None:
                    # 重复添加：已由本配置持有，直接返回当前状态
                    return AddComponentResult(
                        config_id=config_id,
                        component_type=component_type,
                        component_id=component_id,
                        assigned_slot=existing_assoc.slot_id,
                        compatibility=result,
                    )

                self._raise_for_verdict(ref, result)

                assoc = ComponentAssociation(
                    config_id=config_id,
                    component_type=component_type,
                    component_id=component_id,
                    quantity=quantity,
                )
                self.configs.insert_association(conn, assoc)
                associations = [*config.components, assoc]
                specs[ref] = candidate

                extra: List[Issue] = []
                assigned_slot, placed = self._place(conn, config_id, associations, specs, candidate, slot_hint, extra)
                if outcome.override_used and outcome.virtual:
                    extra.append(
                        Issue(
                            kind="component_in_use",
                            message=f"{ref} is held by configuration {outcome.previous_owner}; this test-mode claim is virtual",
                            severity="warning",
                            category="policy",
                            components=[ref],
                            details={"current_owner": outcome.previous_owner},
                        )
                    )
                elif outcome.override_used:
                    extra.append(
                        Issue(
                            kind="component_preempted",
                            message=f"{ref} was taken over from configuration {outcome.previous_owner}",
                            severity="warning",
                            category="policy",
                            components=[ref],
                            details={"previous_owner": outcome.previous_owner},
                        )
                    )
                if extra:
                    result = result.model_copy(update={"warnings": [*result.warnings, *extra]})

                self._store_score(conn, config_id, list(specs.values()))
                self.configs.log_action(
                    conn,
                    config_id,
                    "add_component",
                    component_type,
                    component_id,
                    {
                        "quantity": quantity,
                        "slot_id": assigned_slot,
                        "placed": placed,
                        "override_used": outcome.override_used,
                        "previous_owner": outcome.previous_owner,
                        "virtual": outcome.virtual,
                        "score": result.score,
                    },
                )

        logger.info("added %s to %s (slot=%s, score=%.0f)", ref, config_id, assigned_slot, result.score)
        return AddComponentResult(
            config_id=config_id,
            component_type=component_type,
            component_id=component_id,
            assigned_slot=assigned_slot,
            placed=placed,
            override_used=outcome.override_used,
            compatibility=result,
        )

    def remove_component(
        self,
        config_id: str,
        component_type: str,
        component_id: str,
        privileged: bool = False,
    ) -> RemoveComponentResult:
        """
        从配置移除组件 - Remove a component, releasing its claim and slot

        移除主板会让所有占槽组件回到待定状态；移除 Riser 时其子槽位上的组件按最优适配重新放置，
        放不下的保持待定。
        Removing the motherboard unplaces every slot-bound component; removing a riser
        re-places its children best-fit and leaves those that do not fit pending.
        """
        ref = component_ref(component_type, component_id)
        with self._get_config_lock(config_id):
            with self.db.transaction() as conn:
                config = self._load(conn, config_id)
                self._check_mutable(config, privileged)
                assoc = next((a for a in config.components if a.ref == ref), None)
                if assoc is None:
                    raise NotFoundError(f"{ref} is not part of configuration {config_id}")

                specs = self._specs(conn, config.components)
                pool = self.allocator.load_pool(config_id, config.components, specs)
                self.configs.delete_association(conn, config_id, component_type, component_id)
                specs.pop(ref, None)

                replaced: Dict[str, Optional[str]] = {}
                if component_type == "motherboard":
                    for other in config.components:
                        if other.ref != ref and other.slot_id is not None:
                            self.configs.set_slot(conn, config_id, other.component_type, other.component_id, None)
                            replaced[other.ref] = None
                elif assoc.slot_id is not None:
                    evicted = self.allocator.release(pool, assoc.slot_id)
                    replaced = self._replace_evicted(conn, config_id, pool, specs, evicted)

                released = self.ledger.release(conn, component_type, component_id, config_id, config.mode)
                self._store_score(conn, config_id, list(specs.values()))
                self.configs.log_action(
                    conn,
                    config_id,
                    "remove_component",
                    component_type,
                    component_id,
                    {"slot_id": assoc.slot_id, "replaced": replaced, "released": released},
                )

        logger.info("removed %s from %s", ref, config_id)
        return RemoveComponentResult(
            config_id=config_id,
            component_type=component_type,
            component_id=component_id,
            released_slot=assoc.slot_id,
            replaced=replaced,
        )

    # === 校验与生命周期 ===

    def validate(self, config_id: str) -> ValidationReport:
        """
        校验配置 - Validate a configuration

        校验通过的草稿配置会进入 Validated 状态，并记录最新兼容性分数。
        A passing Draft configuration moves to Validated; the latest score is stored.
        """
        with self._get_config_lock(config_id):
            with self.db.transaction() as conn:
                config = self._load(conn, config_id)
                report = self._validate(conn, config)
                self.configs.set_score(conn, config_id, report.score)
                if report.valid and config.status == ConfigurationStatus.DRAFT:
                    self.configs.set_status(conn, config_id, ConfigurationStatus.VALIDATED)
                    report.status = ConfigurationStatus.VALIDATED
                self.configs.log_action(
                    conn,
                    config_id,
                    "validate",
                    metadata={
                        "valid": report.valid,
                        "score": report.score,
                        "critical_errors": [i.kind for i in report.critical_errors],
                    },
                )
        return report

    def finalize(self, config_id: str) -> FinalizeResult:
        """
        定稿 - Finalize a configuration

        Test 模式配置一律不能定稿；其余配置必须通过完整校验。
        Test-mode configurations never finalize; others must pass full validation.
        """
        with self._get_config_lock(config_id):
            with self.db.transaction() as conn:
                config = self._load(conn, config_id)
                if config.is_test:
                    raise ValidationFailedError(
                        f"configuration {config_id} is in test mode; test configurations cannot be finalized"
                    )
                if config.status == ConfigurationStatus.FINALIZED:
                    raise ValidationFailedError(f"configuration {config_id} is already finalized")
                report = self._validate(conn, config)
                if not report.valid:
                    raise ValidationFailedError(
                        f"configuration {config_id} has {len(report.critical_errors)} critical error(s)",
                        report.critical_errors,
                    )
                timestamp = _now()
                self.configs.set_score(conn, config_id, report.score)
                self.configs.set_status(conn, config_id, ConfigurationStatus.FINALIZED, finalized_at=timestamp)
                self.configs.log_action(conn, config_id, "finalize", metadata={"score": report.score})
        logger.info("configuration %s finalized (score=%.0f)", config_id, report.score)
        return FinalizeResult(config_id=config_id, timestamp=timestamp, score=report.score)

    def mark_built(self, config_id: str) -> Configuration:
        """
        标记为已装机 - Mark a Validated configuration as Built

        重新执行完整校验，存在严重错误时抛出 ValidationFailedError。
        Full validation runs again; critical errors raise ValidationFailedError.
        """
        with self._get_config_lock(config_id):
            with self.db.transaction() as conn:
                config = self._load(conn, config_id)
                if config.status != ConfigurationStatus.VALIDATED:
                    raise ValidationFailedError(
                        f"configuration {config_id} must be validated before it is built "
                        f"(status {config.status.name})"
                    )
                report = self._validate(conn, config)
                if not report.valid:
                    raise ValidationFailedError(
                        f"configuration {config_id} has {len(report.critical_errors)} critical error(s)",
                        report.critical_errors,
                    )
                self.configs.set_score(conn, config_id, report.score)
                self.configs.set_status(conn, config_id, ConfigurationStatus.BUILT)
                self.configs.log_action(conn, config_id, "mark_built", metadata={"score": report.score})
                return self._load(conn, config_id)

    def set_status(
        self,
        config_id: str,
        status: ConfigurationStatus,
        privileged: bool = False,
        reason: str = "",
    ) -> Configuration:
        """特权状态覆盖（唯一允许回退状态的入口）- privileged status override"""
        if not privileged:
            raise PermissionDeniedError("changing configuration status directly requires privilege")
        status = ConfigurationStatus(status)
        with self._get_config_lock(config_id):
            with self.db.transaction() as conn:
                config = self._load(conn, config_id)
                if status == ConfigurationStatus.FINALIZED and config.is_test:
                    raise ValidationFailedError(
                        f"configuration {config_id} is in test mode; test configurations cannot be finalized"
                    )
                finalized_at = _now() if status == ConfigurationStatus.FINALIZED else None
                self.configs.set_status(conn, config_id, status, finalized_at=finalized_at)
                self.configs.log_action(
                    conn,
                    config_id,
                    "set_status",
                    metadata={"from": config.status.name, "to": status.name, "reason": reason},
                )
                updated = self._load(conn, config_id)
        logger.warning("configuration %s status overridden %s -> %s", config_id, config.status.name, status.name)
        return updated

    # === 只读查询 ===

    def slot_state(self, config_id: str) -> SlotPoolState:
        with self.db.read() as conn:
            config = self._load(conn, config_id)
            specs = self._specs(conn, config.components)
            return self.allocator.load_pool(config_id, config.components, specs).state()

    def check_pair(
        self, type_a: str, id_a: str, type_b: str, id_b: str
    ) -> CompatibilityResult:
        with self.db.read() as conn:
            a = self._spec(conn, type_a, id_a)
            b = self._spec(conn, type_b, id_b)
        return self.evaluator.check_pair(a, b)

    def compatible_components(
        self,
        config_id: str,
        component_type: str,
        available_only: bool = True,
    ) -> List[CandidateComponent]:
        """
        候选组件列表（建议性结果，可能在真正添加前过期）
        Advisory candidate list; may be stale by the time an add is attempted.

        没有任何规格属性的组件不会出现在列表中。
        Components whose specification resolves to nothing are left out.
        """
        with self.db.read() as conn:
            config = self._load(conn, config_id)
            specs = self._specs(conn, config.components)
            present = {a.ref for a in config.components}
            inventory = self.components.list(
                conn, component_type, ComponentStatus.AVAILABLE if available_only else None
            )
            candidates: List[CandidateComponent] = []
            for component in inventory:
                if component.ref in present or component.status == ComponentStatus.FAILED:
                    continue
                spec = self.resolver.resolve(component.component_type, component.component_id, component.notes)
                if spec.source == AttributeSource.UNKNOWN:
                    continue
                result = self.evaluator.evaluate(spec, list(specs.values()))
                if result.compatible:
                    candidates.append(CandidateComponent(component=component, source=spec.source, compatibility=result))
        candidates.sort(key=lambda c: (-c.compatibility.score, c.component.component_id))
        return candidates

    def list_rules(self) -> List[RuleInfo]:
        return self.evaluator.rules()

    # === 内部实现 ===

    def _load(self, conn: sqlite3.Connection, config_id: str) -> Configuration:
        config = self.configs.get(conn, config_id)
        if config is None:
            raise NotFoundError(f"configuration {config_id} not found")
        return config

    @staticmethod
    def _check_mutable(config: Configuration, privileged: bool) -> None:
        if config.status == ConfigurationStatus.FINALIZED:
            raise PermissionDeniedError(
                f"configuration {config.config_id} is finalized; reopen it with a privileged status change first"
            )
        if config.status >= ConfigurationStatus.BUILT and not privileged:
            raise PermissionDeniedError(
                f"configuration {config.config_id} is {config.status.name}; changing it requires privilege"
            )

    @staticmethod
    def _raise_for_claim(outcome: ClaimOutcome) -> None:
        ref = component_ref(outcome.component_type, outcome.component_id)
        if outcome.status == ClaimStatus.NOT_FOUND:
            raise NotFoundError(f"component {ref} not found in inventory")
        if outcome.status == ClaimStatus.FAILED:
            raise PermissionDeniedError(f"component {ref} is marked failed and needs the repair workflow")
        if outcome.status == ClaimStatus.CONFLICT:
            raise ConflictError(outcome.component_type, outcome.component_id, outcome.current_owner)

    @staticmethod
    def _raise_for_verdict(ref: str, result: CompatibilityResult) -> None:
        if result.compatible:
            return
        blocking = [f for f in result.failures if f.category != "capacity"]
        if blocking:
            raise CompatibilityBlockedError(
                f"{ref} is incompatible: " + "; ".join(f.message for f in blocking),
                result,
            )
        first = result.failures[0]
        raise CapacityExhaustedError(
            f"{ref} does not fit: " + "; ".join(f.message for f in result.failures),
            _capacity_class(first),
        )

    def _spec(self, conn: sqlite3.Connection, component_type: str, component_id: str) -> ComponentSpec:
        row = self.components.get(conn, component_type, component_id)
        return self.resolver.resolve(component_type, component_id, row.notes if row else "")

    def _specs(self, conn: sqlite3.Connection, associations: List[ComponentAssociation]) -> Dict[str, ComponentSpec]:
        return {a.ref: self._spec(conn, a.component_type, a.component_id) for a in associations}

    def _place(
        self,
        conn: sqlite3.Connection,
        config_id: str,
        associations: List[ComponentAssociation],
        specs: Dict[str, ComponentSpec],
        candidate: ComponentSpec,
        slot_hint: str | None,
        warnings: List[Issue],
    ) -> tuple[Optional[str], Dict[str, str]]:
        has_board = any(a.component_type == "motherboard" for a in associations)
        needs_slot = slot_requirement(candidate) is not None

        if candidate.component_type == "motherboard":
            pool = self.allocator.load_pool(config_id, associations, specs)
            placed = self.allocator.place_pending(pool, specs, list(pool.pending))
            for placed_ref, slot_id in placed.items():
                placed_type, placed_id = placed_ref.split(":", 1)
                self.configs.set_slot(conn, config_id, placed_type, placed_id, slot_id)
            for ref in pool.pending:
                warnings.append(self._unplaced_warning(specs[ref], candidate))
            return None, placed

        if not needs_slot:
            return None, {}

        if not has_board:
            if slot_hint:
                raise NotFoundError(f"slot {slot_hint} does not exist: configuration {config_id} has no motherboard")
            warnings.append(
                Issue(
                    kind="slot_pending",
                    message=f"{candidate.ref} will be placed in a slot once a motherboard is added",
                    severity="warning",
                    category="capacity",
                    components=[candidate.ref],
                )
            )
            return None, {}

        pool = self.allocator.load_pool(config_id, associations, specs)
        slot_id = self.allocator.assign(pool, candidate, slot_hint)
        if slot_id is None:
            board = next(s for s in specs.values() if s.component_type == "motherboard")
            warnings.append(self._unplaced_warning(candidate, board))
        self.configs.set_slot(conn, config_id, candidate.component_type, candidate.component_id, slot_id)
        return slot_id, {}

    @staticmethod
    def _unplaced_warning(spec: ComponentSpec, board: ComponentSpec) -> Issue:
        requirement = slot_requirement(spec)
        slot_class = requirement.describe() if requirement else ""
        return Issue(
            kind="slot_pending",
            message=f"{board.ref} does not declare its {slot_class} capacity, {spec.ref} is recorded without a slot",
            severity="warning",
            category="data",
            components=[spec.ref, board.ref],
            details={"slot_class": slot_class},
        )

    def _replace_evicted(
        self,
        conn: sqlite3.Connection,
        config_id: str,
        pool: SlotPool,
        specs: Dict[str, ComponentSpec],
        evicted: List[tuple[str, str]],
    ) -> Dict[str, Optional[str]]:
        replaced: Dict[str, Optional[str]] = {}
        for _, ref in evicted:
            component_type, component_id = ref.split(":", 1)
            self.configs.set_slot(conn, config_id, component_type, component_id, None)
        for _, ref in evicted:
            component_type, component_id = ref.split(":", 1)
            try:
                slot_id: Optional[str] = self.allocator.assign(pool, specs[ref])
            except CapacityExhaustedError:
                slot_id = None
                pool.pending.append(ref)
                logger.warning("configuration %s: %s left pending after its riser was removed", config_id, ref)
            self.configs.set_slot(conn, config_id, component_type, component_id, slot_id)
            replaced[ref] = slot_id
        return replaced

    def _store_score(self, conn: sqlite3.Connection, config_id: str, specs: List[ComponentSpec]) -> None:
        self.configs.set_score(conn, config_id, self.evaluator.evaluate_configuration(specs).score)

    def _validate(self, conn: sqlite3.Connection, config: Configuration) -> ValidationReport:
        specs = self._specs(conn, config.components)
        result = self.evaluator.evaluate_configuration(list(specs.values()))
        critical = list(result.failures)

        counts = {t: len(config.by_type(t)) for t in self.required_components}
        for component_type, count in counts.items():
            if count == 0:
                critical.append(
                    Issue(
                        kind="missing_required_component",
                        message=f"configuration needs at least one {component_type}",
                        category="policy",
                        details={"component_type": component_type},
                    )
                )

        pool = self.allocator.load_pool(config.config_id, config.components, specs)
        for ref in pool.pending:
            requirement = slot_requirement(specs[ref])
            if requirement is not None and pool.is_undetermined(requirement) and not pool.candidates(requirement):
                # 容量未知：评估器已给出 slot_capacity_undetermined 警告
                continue
            critical.append(
                Issue(
                    kind="slot_pending",
                    message=f"{ref} has no slot assigned",
                    category="capacity",
                    components=[ref],
                )
            )

        if not config.is_test:
            for assoc in config.components:
                row = self.components.get(conn, assoc.component_type, assoc.component_id)
                if row is None or row.status != ComponentStatus.IN_USE or row.owner_config_id != config.config_id:
                    owner = row.owner_config_id if row else None
                    critical.append(
                        Issue(
                            kind="claim_lost",
                            message=f"{assoc.ref} is no longer held by this configuration (owner: {owner})",
                            category="policy",
                            components=[assoc.ref],
                            details={"current_owner": owner},
                        )
                    )

        return ValidationReport(
            config_id=config.config_id,
            valid=not critical,
            score=result.score,
            status=config.status,
            critical_errors=critical,
            warnings=result.warnings,
            required_components=counts,
            estimated_power_w=estimate_system_power(specs.values()),
        )
