"""
槽位分配模块 - Slot Allocation Module

每个配置拥有一个按类型划分的物理槽位池：主板声明的原生槽位（各宽度 PCIe、DIMM、M.2、
SATA/SAS），以及 Riser 卡提供的子槽位。Riser 占用一个上游原生槽位，同时产生 N 个新槽位，
构成两级扩展树。
Each configuration owns a typed pool of physical slots: motherboard-declared native
classes (PCIe widths, DIMM, M.2, SATA/SAS) plus riser-provided sub-slots. A riser
consumes one upstream native slot and produces N new ones: a two-level expansion tree.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Literal, Optional, Set, Tuple

from ..errors import CapacityExhaustedError, NotFoundError
from ..schemas import ComponentAssociation, ComponentSpec, SlotClassState, SlotPoolState

logger = logging.getLogger(__name__)

SlotKind = Literal["pcie", "dimm", "storage"]

PCIE_WIDTHS: Tuple[str, ...] = ("x1", "x4", "x8", "x16")
WIDTH_RANK: Dict[str, int] = {w: i for i, w in enumerate(PCIE_WIDTHS)}

# 存储接口 → 可用槽位类（按优先顺序）
STORAGE_SLOT_CLASSES: Dict[str, Tuple[str, ...]] = {
    "nvme": ("m2",),
    "m2": ("m2",),
    "sata": ("sata", "sas"),
    "sas": ("sas",),
}

PCIE_DEVICE_TYPES = {"nic", "pciecard", "hbacard"}


def normalize_width(value: object) -> Optional[str]:
    """把 "PCIe 4.0 x16" / "x8" / 8 统一为 "x16" / "x8" 形式"""
    if value is None:
        return None
    if isinstance(value, int):
        text = f"x{value}"
    else:
        text = str(value)
    match = re.search(r"x\s*(\d+)", text, re.IGNORECASE) or re.fullmatch(r"\s*(\d+)\s*", text)
    if not match:
        return None
    width = f"x{match.group(1)}"
    return width if width in WIDTH_RANK else None


def width_lanes(width: Optional[str]) -> int:
    return int(width[1:]) if width else 0


def normalize_storage_interface(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    text = value.strip().lower()
    if "nvme" in text or "m.2" in text or text == "m2":
        return "nvme"
    if "sas" in text:
        return "sas"
    if "sata" in text:
        return "sata"
    return None


@dataclass
class Slot:
    slot_id: str
    slot_class: str
    kind: SlotKind
    width: Optional[str] = None
    native: bool = True
    parent_slot: Optional[str] = None
    provided_by: Optional[str] = None
    order: int = 0


@dataclass
class SlotRequirement:
    kind: SlotKind
    width: Optional[str] = None
    classes: Tuple[str, ...] = ()
    riser: bool = False
    width_assumed: bool = False

    def describe(self) -> str:
        if self.kind == "pcie":
            return f"pcie_{self.width}"
        if self.kind == "dimm":
            return "dimm"
        return "/".join(self.classes)


def slot_requirement(spec: ComponentSpec) -> Optional[SlotRequirement]:
    """
    计算组件的槽位需求 - Slot requirement of a component

    宽度未知的 PCIe 设备按 x16 处理，绝不把卡降级到更窄的槽位。
    PCIe devices of unknown width are treated as x16 so a card is never placed too narrow.
    """
    if spec.component_type == "ram":
        return SlotRequirement(kind="dimm", classes=("dimm",))
    if spec.component_type == "storage":
        interface = normalize_storage_interface(spec.storage_interface)
        if interface is None:
            return None
        return SlotRequirement(kind="storage", classes=STORAGE_SLOT_CLASSES[interface])
    if spec.component_type in PCIE_DEVICE_TYPES:
        width = normalize_width(spec.pcie_width)
        return SlotRequirement(
            kind="pcie",
            width=width or "x16",
            riser=spec.is_riser,
            width_assumed=width is None,
        )
    return None


@dataclass
class SlotPool:
    """单个配置的槽位池 - slot pool of one configuration"""

    config_id: str
    slots: Dict[str, Slot] = field(default_factory=dict)
    assigned: Dict[str, str] = field(default_factory=dict)
    children: Dict[str, List[str]] = field(default_factory=dict)
    pending: List[str] = field(default_factory=list)
    # 主板规格缺失的槽位类（容量未知，不等于 0）
    undetermined: Set[str] = field(default_factory=set)

    def _add_slot(self, slot: Slot) -> None:
        slot.order = len(self.slots)
        self.slots[slot.slot_id] = slot

    def add_native(self, motherboard: ComponentSpec) -> None:
        if motherboard.pcie_slots is None:
            self.undetermined.add("pcie")
        pcie_slots = motherboard.pcie_slots or {}
        for width, count in sorted(pcie_slots.items(), key=lambda kv: -WIDTH_RANK.get(normalize_width(kv[0]) or "x1", 0)):
            norm = normalize_width(width)
            if norm is None:
                logger.warning("motherboard %s declares unknown PCIe width %r", motherboard.component_id, width)
                continue
            existing = sum(1 for s in self.slots.values() if s.slot_class == f"pcie_{norm}")
            for i in range(int(count)):
                self._add_slot(Slot(f"pcie_{norm}_slot_{existing + i + 1}", f"pcie_{norm}", "pcie", width=norm))

        counted: List[Tuple[str, Optional[int], str, SlotKind]] = [
            ("dimm", motherboard.memory_slots, "dimm_slot", "dimm"),
            ("m2", motherboard.m2_slots, "m2_slot", "storage"),
            ("sata", motherboard.sata_ports, "sata_bay", "storage"),
            ("sas", motherboard.sas_ports, "sas_bay", "storage"),
        ]
        for slot_class, count, prefix, kind in counted:
            if count is None:
                self.undetermined.add(slot_class)
                continue
            for i in range(int(count)):
                self._add_slot(Slot(f"{prefix}_{i + 1}", slot_class, kind))
        if self.undetermined:
            logger.debug(
                "motherboard %s does not declare capacity for %s",
                motherboard.component_id,
                ", ".join(sorted(self.undetermined)),
            )

    def is_undetermined(self, requirement: SlotRequirement) -> bool:
        """需求涉及的槽位类中是否有容量未知者 - does the requirement touch a class of unknown capacity"""
        if requirement.kind == "pcie":
            return "pcie" in self.undetermined
        return any(c in self.undetermined for c in requirement.classes)

    def add_riser_children(self, parent_slot: str, riser: ComponentSpec) -> List[str]:
        """Riser 在 parent_slot 上展开子槽位，子槽位类名带上父槽位以区分每个 Riser 实例"""
        created: List[str] = []
        for width, count in riser.riser_slots.items():
            norm = normalize_width(width)
            if norm is None:
                logger.warning("riser %s declares unknown width %r", riser.component_id, width)
                continue
            slot_class = f"riser_{norm}@{parent_slot}"
            for i in range(int(count)):
                slot_id = f"{parent_slot}/riser_{norm}_slot_{i + 1}"
                self._add_slot(
                    Slot(
                        slot_id,
                        slot_class,
                        "pcie",
                        width=norm,
                        native=False,
                        parent_slot=parent_slot,
                        provided_by=riser.ref,
                    )
                )
                created.append(slot_id)
        self.children[parent_slot] = created
        return created

    def remove_riser_children(self, parent_slot: str) -> List[Tuple[str, str]]:
        """移除 Riser 子槽位，返回被挤出的 (slot_id, component_ref)"""
        evicted: List[Tuple[str, str]] = []
        for slot_id in self.children.pop(parent_slot, []):
            occupant = self.assigned.pop(slot_id, None)
            if occupant is not None:
                evicted.append((slot_id, occupant))
            self.slots.pop(slot_id, None)
        return evicted

    def free_slots(self) -> List[Slot]:
        return [s for s in self.slots.values() if s.slot_id not in self.assigned]

    def fits(self, slot: Slot, requirement: SlotRequirement) -> bool:
        if requirement.kind != slot.kind:
            return False
        if requirement.kind == "pcie":
            if requirement.riser and not slot.native:
                return False
            return WIDTH_RANK[slot.width or "x1"] >= WIDTH_RANK[requirement.width or "x16"]
        return slot.slot_class in requirement.classes

    def candidates(self, requirement: SlotRequirement) -> List[Slot]:
        """最优适配：宽度最小者优先，同宽度时原生槽位优先，再按槽位顺序"""

        def rank(slot: Slot) -> Tuple[int, int, int]:
            if requirement.kind == "pcie":
                primary = WIDTH_RANK[slot.width or "x1"]
            else:
                primary = requirement.classes.index(slot.slot_class)
            return (primary, 0 if slot.native else 1, slot.order)

        return sorted((s for s in self.free_slots() if self.fits(s, requirement)), key=rank)

    def assign(self, component_ref: str, requirement: SlotRequirement, hint: str | None = None) -> Slot:
        if hint:
            slot = self.slots.get(hint)
            if slot is None:
                raise NotFoundError(f"slot {hint} does not exist in configuration {self.config_id}")
            if hint in self.assigned:
                raise CapacityExhaustedError(
                    f"slot {hint} is already occupied by {self.assigned[hint]}", slot.slot_class
                )
            if not self.fits(slot, requirement):
                raise CapacityExhaustedError(
                    f"slot {hint} ({slot.slot_class}) cannot host a {requirement.describe()} component",
                    slot.slot_class,
                )
        else:
            options = self.candidates(requirement)
            if not options:
                raise CapacityExhaustedError(
                    f"no free slot for {requirement.describe()} in configuration {self.config_id}",
                    requirement.describe(),
                )
            slot = options[0]
        self.assigned[slot.slot_id] = component_ref
        if component_ref in self.pending:
            self.pending.remove(component_ref)
        return slot

    def release(self, slot_id: str) -> Optional[str]:
        return self.assigned.pop(slot_id, None)

    def slot_of(self, component_ref: str) -> Optional[str]:
        for slot_id, occupant in self.assigned.items():
            if occupant == component_ref:
                return slot_id
        return None

    def state(self) -> SlotPoolState:
        classes: Dict[str, SlotClassState] = {}
        for slot in self.slots.values():
            entry = classes.get(slot.slot_class)
            if entry is None:
                entry = SlotClassState(
                    slot_class=slot.slot_class,
                    native=slot.native,
                    provided_by=slot.provided_by,
                    parent_slot=slot.parent_slot,
                )
                classes[slot.slot_class] = entry
            entry.total += 1
            occupant = self.assigned.get(slot.slot_id)
            if occupant is None:
                entry.free.append(slot.slot_id)
            else:
                entry.assigned[slot.slot_id] = occupant
        for entry in classes.values():
            entry.used = len(entry.assigned)
            entry.available = entry.total - entry.used
        return SlotPoolState(config_id=self.config_id, classes=classes, pending=list(self.pending))


class SlotAllocator:
    """
    槽位分配器 - Slot Allocator

    槽位占用按需从配置关联记录（slot_id）重建，再由分配器在同一事务内修改并写回。
    Slot usage is rebuilt on demand from the associations' slot ids, then mutated and
    written back by the caller inside the same transaction.
    """

    def load_pool(
        self,
        config_id: str,
        associations: List[ComponentAssociation],
        specs: Dict[str, ComponentSpec],
    ) -> SlotPool:
        pool = SlotPool(config_id=config_id)
        motherboard = next((a for a in associations if a.component_type == "motherboard"), None)
        if motherboard is not None:
            pool.add_native(specs[motherboard.ref])

        # Riser 先于普通卡展开，子槽位才存在
        ordered = sorted(
            associations,
            key=lambda a: 0 if specs.get(a.ref) is not None and specs[a.ref].is_riser else 1,
        )
        for assoc in ordered:
            spec = specs.get(assoc.ref)
            if spec is None or slot_requirement(spec) is None:
                continue
            if assoc.slot_id is None:
                pool.pending.append(assoc.ref)
                continue
            if assoc.slot_id not in pool.slots:
                logger.warning(
                    "configuration %s: %s recorded in unknown slot %s, treating as pending",
                    config_id,
                    assoc.ref,
                    assoc.slot_id,
                )
                pool.pending.append(assoc.ref)
                continue
            pool.assigned[assoc.slot_id] = assoc.ref
            if spec.is_riser:
                pool.add_riser_children(assoc.slot_id, spec)
        return pool

    def assign(
        self,
        pool: SlotPool,
        spec: ComponentSpec,
        hint: str | None = None,
    ) -> Optional[str]:
        """
        分配槽位 - Assign a slot

        组件不需要槽位时返回 None。主板未声明对应槽位类的容量且没有现成空位时，组件进入待定列表并返回 None；
        容量已知但已用尽时抛出 CapacityExhaustedError。
        Returns None when the component needs no slot, or when no free slot exists and
        the motherboard does not declare the capacity of that class (the component is
        left pending). Raises CapacityExhaustedError when known capacity is used up.
        """
        requirement = slot_requirement(spec)
        if requirement is None:
            return None
        if not hint and not pool.candidates(requirement) and pool.is_undetermined(requirement):
            if spec.ref not in pool.pending:
                pool.pending.append(spec.ref)
            logger.warning(
                "configuration %s: slot capacity for %s is unknown, %s left unplaced",
                pool.config_id,
                requirement.describe(),
                spec.ref,
            )
            return None
        slot = pool.assign(spec.ref, requirement, hint)
        if spec.is_riser:
            pool.add_riser_children(slot.slot_id, spec)
        logger.debug("configuration %s: %s -> %s", pool.config_id, spec.ref, slot.slot_id)
        return slot.slot_id

    def release(self, pool: SlotPool, slot_id: str) -> List[Tuple[str, str]]:
        """释放槽位；若释放的是 Riser，返回其子槽位上被挤出的组件"""
        pool.release(slot_id)
        return pool.remove_riser_children(slot_id) if slot_id in pool.children else []

    def place_pending(
        self,
        pool: SlotPool,
        specs: Dict[str, ComponentSpec],
        refs: List[str],
    ) -> Dict[str, str]:
        """
        为待定组件分配槽位：Riser 优先，然后按宽度从大到小。
        Place pending components: risers first, then widest requirement first.
        """

        def order(ref: str) -> Tuple[int, int]:
            spec = specs[ref]
            requirement = slot_requirement(spec)
            assert requirement is not None
            return (0 if spec.is_riser else 1, -WIDTH_RANK.get(requirement.width or "", -1))

        placed: Dict[str, str] = {}
        for ref in sorted(refs, key=order):
            slot_id = self.assign(pool, specs[ref])
            if slot_id is not None:
                placed[ref] = slot_id
        return placed
