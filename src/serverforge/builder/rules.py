"""
兼容性规则 - Compatibility rules

规则是离散谓词，分为两类：
- 成对规则：候选组件与配置中每个已有组件按类型对检查，检查内容对两侧对称
- 聚合规则：在整个组件集合上检查数量与容量上限
Rules are discrete predicates of two kinds:
- pair rules, checked between the candidate and every present component whose type
  pair has a rule (what they inspect is symmetric in both sides)
- aggregate rules, checked over the whole component set (counts and capacity limits)
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ..schemas import CompatibilityResult, ComponentSpec, Issue, IssueCategory, RuleInfo
from .slots import (
    PCIE_DEVICE_TYPES,
    STORAGE_SLOT_CLASSES,
    WIDTH_RANK,
    normalize_storage_interface,
    normalize_width,
    slot_requirement,
    width_lanes,
)

# 分数约定
SCORE_EXACT_MATCH = 95.0
SCORE_UNDETERMINED = 75.0
SCORE_INFERRED = 70.0
SCORE_MINOR_WARNING = 90.0
SCORE_WARNING = 80.0

SINGLE_INSTANCE_TYPES = ("motherboard", "chassis", "hbacard")


def normalize_socket(value: Optional[str]) -> Optional[str]:
    """Socket 名称规范化（忽略大小写、空格、连字符）"""
    if not value:
        return None
    text = re.sub(r"[\s\-_]", "", value).upper()
    if text.startswith("SOCKET"):
        text = text[len("SOCKET"):]
    return text or None


def normalize_memory_type(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    return re.sub(r"[\s\-_]", "", value).upper() or None


def _norm(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    return re.sub(r"[\s\"]|inch(es)?", "", value.lower()) or None


# === 判定累积器 ===


@dataclass
class Verdict:
    """
    规则判定累积器 - accumulates issues and score caps

    每个扣分都记录涉及的组件，便于按候选组件筛选。
    Every score cap records the components it concerns so results can be narrowed to
    the ones that involve a given candidate.
    """

    failures: List[Issue] = field(default_factory=list)
    warnings: List[Issue] = field(default_factory=list)
    caps: List[Tuple[float, Tuple[str, ...]]] = field(default_factory=list)

    def cap(self, value: float, components: Sequence[str]) -> None:
        self.caps.append((value, tuple(components)))

    def fail(
        self,
        kind: str,
        message: str,
        components: Sequence[str],
        category: IssueCategory = "compatibility",
        **details: object,
    ) -> None:
        self.failures.append(
            Issue(
                kind=kind,
                message=message,
                severity="error",
                category=category,
                components=list(components),
                details=dict(details),
            )
        )
        self.cap(0.0, components)

    def warn(
        self,
        kind: str,
        message: str,
        components: Sequence[str],
        cap: float = SCORE_WARNING,
        category: IssueCategory = "compatibility",
        **details: object,
    ) -> None:
        self.warnings.append(
            Issue(
                kind=kind,
                message=message,
                severity="warning",
                category=category,
                components=list(components),
                details=dict(details),
            )
        )
        self.cap(cap, components)

    def has_warning(self, kind: str, components: Sequence[str]) -> bool:
        return any(w.kind == kind and w.components == list(components) for w in self.warnings)

    def involving(self, ref: str) -> "Verdict":
        return Verdict(
            failures=[i for i in self.failures if ref in i.components],
            warnings=[i for i in self.warnings if ref in i.components],
            caps=[c for c in self.caps if ref in c[1]],
        )

    def merge(self, other: "Verdict") -> None:
        self.failures.extend(other.failures)
        self.warnings.extend(other.warnings)
        self.caps.extend(other.caps)

    @property
    def score(self) -> float:
        return min((value for value, _ in self.caps), default=100.0)

    def result(self) -> CompatibilityResult:
        return CompatibilityResult(
            compatible=not self.failures,
            score=self.score,
            failures=list(self.failures),
            warnings=list(self.warnings),
        )


PairCheck = Callable[[ComponentSpec, ComponentSpec, Verdict], None]
AggregateCheck = Callable[[List[ComponentSpec], Verdict], None]


@dataclass(frozen=True)
class PairRule:
    name: str
    left: str
    right: str
    check: PairCheck
    fields: Tuple[str, ...] = ()
    description: str = ""

    def orient(self, a: ComponentSpec, b: ComponentSpec) -> Optional[Tuple[ComponentSpec, ComponentSpec]]:
        if a.component_type == self.left and b.component_type == self.right:
            return a, b
        if b.component_type == self.left and a.component_type == self.right:
            return b, a
        return None

    def info(self) -> RuleInfo:
        return RuleInfo(name=self.name, subject_types=[self.left, self.right], scope="pair", description=self.description)


@dataclass(frozen=True)
class AggregateRule:
    name: str
    subject_types: Tuple[str, ...]
    check: AggregateCheck
    description: str = ""

    def info(self) -> RuleInfo:
        return RuleInfo(
            name=self.name,
            subject_types=list(self.subject_types),
            scope="aggregate",
            description=self.description,
        )


# === 成对规则 ===


def check_socket(a: ComponentSpec, b: ComponentSpec, v: Verdict) -> None:
    refs = [a.ref, b.ref]
    left, right = normalize_socket(a.socket), normalize_socket(b.socket)
    if not left or not right:
        missing = ", ".join(s.ref for s, n in ((a, left), (b, right)) if not n)
        v.warn(
            "socket_unknown",
            f"socket of {missing} could not be determined, assuming compatible",
            refs,
            cap=SCORE_UNDETERMINED,
        )
        return
    if left != right:
        v.fail(
            "socket_mismatch",
            f"{a.ref} socket {a.socket} does not match {b.ref} socket {b.socket}",
            refs,
            left=left,
            right=right,
        )
        return
    v.cap(SCORE_EXACT_MATCH, refs)


def check_platform_memory_types(cpu: ComponentSpec, board: ComponentSpec, v: Verdict) -> None:
    cpu_types = {normalize_memory_type(t) for t in cpu.memory_types} - {None}
    board_types = {normalize_memory_type(t) for t in board.memory_types} - {None}
    if cpu_types and board_types and not cpu_types & board_types:
        v.fail(
            "memory_type_mismatch",
            f"{cpu.ref} supports {sorted(cpu_types)} but {board.ref} supports {sorted(board_types)}",
            [cpu.ref, board.ref],
        )


def check_pcie_generation(device: ComponentSpec, board: ComponentSpec, v: Verdict) -> None:
    if device.pcie_generation is None or board.pcie_generation is None:
        return
    if device.component_type == "cpu":
        if device.pcie_generation != board.pcie_generation:
            effective = min(device.pcie_generation, board.pcie_generation)
            v.warn(
                "pcie_generation_mismatch",
                f"{device.ref} is PCIe Gen{device.pcie_generation:g}, {board.ref} is Gen{board.pcie_generation:g}; "
                f"links run at Gen{effective:g}",
                [device.ref, board.ref],
                cap=SCORE_MINOR_WARNING,
                effective_generation=effective,
            )
        return
    if device.pcie_generation > board.pcie_generation:
        v.warn(
            "pcie_generation_mismatch",
            f"{device.ref} (Gen{device.pcie_generation:g}) will run at Gen{board.pcie_generation:g} on {board.ref}",
            [device.ref, board.ref],
            cap=SCORE_MINOR_WARNING,
            effective_generation=board.pcie_generation,
        )


def check_memory_type(ram: ComponentSpec, platform: ComponentSpec, v: Verdict) -> None:
    module_type = normalize_memory_type(ram.memory_type)
    supported = {normalize_memory_type(t) for t in platform.memory_types} - {None}
    if not module_type or not supported:
        return
    if module_type not in supported:
        v.fail(
            "memory_type_mismatch",
            f"{ram.ref} is {ram.memory_type} but {platform.ref} supports {', '.join(sorted(supported))}",
            [ram.ref, platform.ref],
            memory_type=module_type,
            supported=sorted(supported),
        )


def check_memory_form_factor(ram: ComponentSpec, board: ComponentSpec, v: Verdict) -> None:
    module, slot = _norm(ram.memory_form_factor), _norm(board.memory_form_factor)
    if module and slot and module != slot:
        v.fail(
            "memory_form_factor_mismatch",
            f"{ram.ref} is {ram.memory_form_factor} but {board.ref} takes {board.memory_form_factor}",
            [ram.ref, board.ref],
        )


def check_ecc(ram: ComponentSpec, platform: ComponentSpec, v: Verdict) -> None:
    refs = [ram.ref, platform.ref]
    if platform.ecc_required and ram.ecc is False:
        v.fail("ecc_required", f"{platform.ref} requires ECC memory, {ram.ref} is non-ECC", refs)
    elif ram.ecc and platform.ecc is False:
        v.warn(
            "ecc_unsupported",
            f"{ram.ref} is ECC memory but {platform.ref} does not support ECC; error correction is disabled",
            refs,
            cap=SCORE_MINOR_WARNING,
        )


def check_module_capacity(ram: ComponentSpec, platform: ComponentSpec, v: Verdict) -> None:
    if ram.capacity_gb and platform.max_module_gb and ram.capacity_gb > platform.max_module_gb:
        v.fail(
            "module_capacity_exceeded",
            f"{ram.ref} is {ram.capacity_gb} GB, {platform.ref} accepts modules up to {platform.max_module_gb} GB",
            [ram.ref, platform.ref],
        )


def check_memory_mixing(a: ComponentSpec, b: ComponentSpec, v: Verdict) -> None:
    refs = [a.ref, b.ref]
    type_a, type_b = normalize_memory_type(a.memory_type), normalize_memory_type(b.memory_type)
    if type_a and type_b and type_a != type_b:
        v.fail("memory_mixing", f"cannot mix {a.memory_type} ({a.ref}) with {b.memory_type} ({b.ref})", refs)
    if a.ecc is not None and b.ecc is not None and a.ecc != b.ecc:
        v.fail("memory_mixing", f"cannot mix ECC and non-ECC modules ({a.ref}, {b.ref})", refs)
    ff_a, ff_b = _norm(a.memory_form_factor), _norm(b.memory_form_factor)
    if ff_a and ff_b and ff_a != ff_b:
        v.fail(
            "memory_mixing",
            f"cannot mix {a.memory_form_factor} ({a.ref}) with {b.memory_form_factor} ({b.ref})",
            refs,
        )
    if a.frequency_mhz and b.frequency_mhz and a.frequency_mhz != b.frequency_mhz:
        effective = min(a.frequency_mhz, b.frequency_mhz)
        v.warn(
            "memory_speed_mixed",
            f"modules of different speeds ({a.frequency_mhz}/{b.frequency_mhz} MHz) run at {effective} MHz",
            refs,
            cap=SCORE_MINOR_WARNING,
            effective_mhz=effective,
        )


def check_board_form_factor(board: ComponentSpec, chassis: ComponentSpec, v: Verdict) -> None:
    form_factor = _norm(board.form_factor)
    supported = {_norm(f) for f in chassis.supported_form_factors} - {None}
    if form_factor and supported and form_factor not in supported:
        v.warn(
            "form_factor_mismatch",
            f"{board.ref} ({board.form_factor}) is not listed as supported by {chassis.ref}",
            [board.ref, chassis.ref],
            supported=sorted(chassis.supported_form_factors),
        )


def check_drive_bay(storage: ComponentSpec, chassis: ComponentSpec, v: Verdict) -> None:
    size = _norm(storage.storage_form_factor)
    bays = {_norm(b) for b in chassis.drive_bay_sizes} - {None}
    if not size or not bays or size.startswith(("m.2", "m2")):
        return
    if size not in bays:
        v.fail(
            "drive_bay_mismatch",
            f"{storage.ref} ({storage.storage_form_factor}) has no matching drive bay in {chassis.ref}",
            [storage.ref, chassis.ref],
            bays=sorted(chassis.drive_bay_sizes),
        )


PAIR_RULES: List[PairRule] = [
    PairRule("cpu_motherboard_socket", "cpu", "motherboard", check_socket, ("socket",), "CPU socket matches the motherboard"),
    PairRule("cpu_cpu_socket", "cpu", "cpu", check_socket, ("socket",), "all CPUs share one socket"),
    PairRule(
        "cpu_motherboard_memory",
        "cpu",
        "motherboard",
        check_platform_memory_types,
        ("memory_types",),
        "CPU and motherboard share a memory generation",
    ),
    PairRule(
        "cpu_motherboard_pcie_generation",
        "cpu",
        "motherboard",
        check_pcie_generation,
        ("pcie_generation",),
        "PCIe generation agreement (warning)",
    ),
    PairRule("ram_motherboard_type", "ram", "motherboard", check_memory_type, ("memory_type", "memory_types"), "DDR type supported by the motherboard"),
    PairRule("ram_cpu_type", "ram", "cpu", check_memory_type, ("memory_type", "memory_types"), "DDR type supported by the CPU"),
    PairRule(
        "ram_motherboard_form_factor",
        "ram",
        "motherboard",
        check_memory_form_factor,
        ("memory_form_factor",),
        "module form factor (RDIMM/LRDIMM/UDIMM) accepted by the motherboard",
    ),
    PairRule("ram_motherboard_ecc", "ram", "motherboard", check_ecc, ("ecc", "ecc_required"), "ECC support and requirement"),
    PairRule("ram_cpu_ecc", "ram", "cpu", check_ecc, ("ecc", "ecc_required"), "ECC support and requirement"),
    PairRule(
        "ram_motherboard_module_capacity",
        "ram",
        "motherboard",
        check_module_capacity,
        ("capacity_gb",),
        "per-module capacity limit",
    ),
    PairRule("ram_cpu_module_capacity", "ram", "cpu", check_module_capacity, ("capacity_gb",), "per-module capacity limit"),
    PairRule(
        "ram_ram_mixing",
        "ram",
        "ram",
        check_memory_mixing,
        ("memory_type", "ecc", "frequency_mhz"),
        "modules share type, ECC and form factor; mixed speeds warn",
    ),
    PairRule(
        "motherboard_chassis_form_factor",
        "motherboard",
        "chassis",
        check_board_form_factor,
        ("form_factor",),
        "motherboard form factor listed by the chassis (warning)",
    ),
    PairRule(
        "storage_chassis_bay",
        "storage",
        "chassis",
        check_drive_bay,
        ("storage_form_factor",),
        "drive form factor has a matching chassis bay",
    ),
] + [
    PairRule(
        f"{device}_motherboard_pcie_generation",
        device,
        "motherboard",
        check_pcie_generation,
        ("pcie_generation",),
        "PCIe generation supported by the motherboard (warning)",
    )
    for device in sorted(PCIE_DEVICE_TYPES)
]


# === 聚合规则 ===


def _of_type(specs: List[ComponentSpec], *types: str) -> List[ComponentSpec]:
    return [s for s in specs if s.component_type in types]


def check_single_instance(specs: List[ComponentSpec], v: Verdict) -> None:
    for component_type in SINGLE_INSTANCE_TYPES:
        found = _of_type(specs, component_type)
        if len(found) > 1:
            v.fail(
                "single_instance_exceeded",
                f"a configuration holds at most one {component_type}, found {len(found)}",
                [s.ref for s in found],
                category="policy",
                component_type=component_type,
            )


def check_cpu_count(specs: List[ComponentSpec], v: Verdict) -> None:
    cpus = _of_type(specs, "cpu")
    for board in _of_type(specs, "motherboard"):
        if board.socket_count and len(cpus) > board.socket_count:
            v.fail(
                "cpu_count_exceeded",
                f"{board.ref} has {board.socket_count} CPU socket(s), configuration holds {len(cpus)} CPUs",
                [board.ref, *(c.ref for c in cpus)],
                category="capacity",
                limit=board.socket_count,
            )


def _capacity_undetermined(v: Verdict, component: ComponentSpec, board: ComponentSpec, slot_class: str) -> None:
    v.warn(
        "slot_capacity_undetermined",
        f"{board.ref} does not declare its {slot_class} capacity, {component.ref} cannot be placed yet",
        [component.ref, board.ref],
        cap=SCORE_UNDETERMINED,
        category="data",
        slot_class=slot_class,
    )


def check_dimm_count(specs: List[ComponentSpec], v: Verdict) -> None:
    modules = _of_type(specs, "ram")
    for board in _of_type(specs, "motherboard"):
        if board.memory_slots is None:
            for module in modules:
                _capacity_undetermined(v, module, board, "dimm")
        elif len(modules) > board.memory_slots:
            v.fail(
                "memory_slots_exhausted",
                f"{board.ref} has {board.memory_slots} DIMM slots, configuration holds {len(modules)} modules",
                [board.ref, *(m.ref for m in modules)],
                category="capacity",
                limit=board.memory_slots,
            )


def check_total_memory(specs: List[ComponentSpec], v: Verdict) -> None:
    modules = [m for m in _of_type(specs, "ram") if m.capacity_gb]
    if not modules:
        return
    total = sum(m.capacity_gb or 0 for m in modules)
    limits: List[Tuple[int, List[str]]] = []
    for board in _of_type(specs, "motherboard"):
        if board.max_memory_gb:
            limits.append((board.max_memory_gb, [board.ref]))
    cpus = _of_type(specs, "cpu")
    if cpus and all(c.max_memory_gb for c in cpus):
        limits.append((sum(c.max_memory_gb or 0 for c in cpus), [c.ref for c in cpus]))
    for limit, refs in limits:
        if total > limit:
            v.fail(
                "memory_capacity_exceeded",
                f"{total} GB of memory exceeds the {limit} GB supported by {', '.join(refs)}",
                [*refs, *(m.ref for m in modules)],
                category="capacity",
                total_gb=total,
                limit_gb=limit,
            )


def check_memory_frequency(specs: List[ComponentSpec], v: Verdict) -> None:
    platform = [s for s in _of_type(specs, "cpu", "motherboard") if s.max_memory_frequency_mhz]
    if not platform:
        return
    limit = min(s.max_memory_frequency_mhz or 0 for s in platform)
    for module in _of_type(specs, "ram"):
        if module.frequency_mhz and module.frequency_mhz > limit:
            v.warn(
                "memory_frequency_clamped",
                f"{module.ref} rated {module.frequency_mhz} MHz runs at {limit} MHz on this platform",
                [module.ref, *(s.ref for s in platform)],
                cap=SCORE_MINOR_WARNING,
                rated_mhz=module.frequency_mhz,
                effective_mhz=limit,
            )


def check_pcie_slot_width(specs: List[ComponentSpec], v: Verdict) -> None:
    devices = _of_type(specs, *PCIE_DEVICE_TYPES)
    for device in devices:
        requirement = slot_requirement(device)
        if requirement is not None and requirement.width_assumed:
            v.warn(
                "pcie_width_assumed",
                f"PCIe width of {device.ref} is unknown, reserving an x16 slot",
                [device.ref],
                cap=SCORE_MINOR_WARNING,
                category="data",
            )
    boards = _of_type(specs, "motherboard")
    if not boards or not devices:
        return
    board = boards[0]
    if board.pcie_slots is None:
        for device in devices:
            _capacity_undetermined(v, device, board, "pcie")
        return
    native = [WIDTH_RANK[w] for w in (normalize_width(k) for k, n in board.pcie_slots.items() if n > 0) if w]
    riser = [
        WIDTH_RANK[w]
        for r in devices
        if r.is_riser
        for w in (normalize_width(k) for k, n in r.riser_slots.items() if n > 0)
        if w
    ]
    for device in devices:
        requirement = slot_requirement(device)
        assert requirement is not None and requirement.width is not None
        usable = native if device.is_riser else native + riser
        if not usable or max(usable) < WIDTH_RANK[requirement.width]:
            v.fail(
                "slot_width_unavailable",
                f"no {requirement.width} or wider slot exists for {device.ref} on {board.ref}",
                [device.ref, board.ref],
                category="capacity",
                required_width=requirement.width,
            )


def check_storage_ports(specs: List[ComponentSpec], v: Verdict) -> None:
    drives = _of_type(specs, "storage")
    for drive in drives:
        if normalize_storage_interface(drive.storage_interface) is None:
            v.warn(
                "storage_interface_unknown",
                f"interface of {drive.ref} is unknown, no port is reserved for it",
                [drive.ref],
                cap=SCORE_UNDETERMINED,
                category="data",
            )
    for board in _of_type(specs, "motherboard"):
        ports: Dict[str, Optional[int]] = {"m2": board.m2_slots, "sata": board.sata_ports, "sas": board.sas_ports}
        for drive in drives:
            interface = normalize_storage_interface(drive.storage_interface)
            if interface is None:
                continue
            classes = STORAGE_SLOT_CLASSES[interface]
            if any(ports[c] is None for c in classes) and not sum(ports[c] or 0 for c in classes):
                _capacity_undetermined(v, drive, board, "/".join(classes))
                continue
            if not sum(ports[c] or 0 for c in classes):
                v.fail(
                    "storage_port_unavailable",
                    f"{board.ref} has no port for {interface} drive {drive.ref}",
                    [drive.ref, board.ref],
                    category="capacity",
                    interface=interface,
                )


def check_lane_budget(specs: List[ComponentSpec], v: Verdict) -> None:
    cpus = _of_type(specs, "cpu")
    if not cpus or not all(c.pcie_lanes for c in cpus):
        return
    budget = sum(c.pcie_lanes or 0 for c in cpus)
    devices = [d for d in _of_type(specs, *PCIE_DEVICE_TYPES) if not d.is_riser]
    demand = 0
    for device in devices:
        requirement = slot_requirement(device)
        demand += width_lanes(requirement.width if requirement else None)
    if demand > budget:
        v.fail(
            "pcie_lane_budget_exceeded",
            f"expansion cards need {demand} PCIe lanes, CPUs provide {budget}",
            [*(c.ref for c in cpus), *(d.ref for d in devices)],
            category="capacity",
            demand=demand,
            budget=budget,
        )


AGGREGATE_RULES: List[AggregateRule] = [
    AggregateRule("single_instance", SINGLE_INSTANCE_TYPES, check_single_instance, "at most one motherboard, chassis and HBA"),
    AggregateRule("cpu_count", ("cpu", "motherboard"), check_cpu_count, "CPU count within the motherboard socket count"),
    AggregateRule("dimm_count", ("ram", "motherboard"), check_dimm_count, "module count within the motherboard DIMM slots"),
    AggregateRule(
        "total_memory",
        ("ram", "motherboard", "cpu"),
        check_total_memory,
        "total memory within motherboard and CPU limits",
    ),
    AggregateRule(
        "memory_frequency",
        ("ram", "motherboard", "cpu"),
        check_memory_frequency,
        "module speed above the platform maximum is clamped (warning)",
    ),
    AggregateRule(
        "pcie_slot_width",
        ("nic", "pciecard", "hbacard", "motherboard"),
        check_pcie_slot_width,
        "a wide enough native or riser-provided slot exists",
    ),
    AggregateRule("storage_ports", ("storage", "motherboard"), check_storage_ports, "motherboard offers a port for each drive interface"),
    AggregateRule(
        "pcie_lane_budget",
        ("cpu", "nic", "pciecard", "hbacard"),
        check_lane_budget,
        "expansion card lanes within the CPU lane budget",
    ),
]
