from __future__ import annotations

from enum import Enum, IntEnum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


ComponentType = Literal[
    "cpu",
    "motherboard",
    "ram",
    "storage",
    "nic",
    "pciecard",
    "hbacard",
    "chassis",
]

COMPONENT_TYPES: tuple[str, ...] = (
    "cpu",
    "motherboard",
    "ram",
    "storage",
    "nic",
    "pciecard",
    "hbacard",
    "chassis",
)

ConfigurationMode = Literal["real", "test"]
Severity = Literal["error", "warning"]
IssueCategory = Literal["compatibility", "capacity", "policy", "data"]


def component_ref(component_type: str, component_id: str) -> str:
    return f"{component_type}:{component_id}"


class ComponentStatus(IntEnum):
    FAILED = 0
    AVAILABLE = 1
    IN_USE = 2


class ConfigurationStatus(IntEnum):
    DRAFT = 0
    VALIDATED = 1
    BUILT = 2
    FINALIZED = 3


class AttributeSource(str, Enum):
    STRUCTURED = "structured"
    INFERRED_FROM_TEXT = "inferred_from_text"
    UNKNOWN = "unknown"


# === 库存与配置 ===


class Component(BaseModel):
    component_type: ComponentType
    component_id: str
    status: ComponentStatus = ComponentStatus.AVAILABLE
    owner_config_id: Optional[str] = None
    notes: str = ""
    location: str = ""

    @property
    def ref(self) -> str:
        return component_ref(self.component_type, self.component_id)


class ComponentAssociation(BaseModel):
    config_id: str
    component_type: ComponentType
    component_id: str
    quantity: int = Field(default=1, ge=1)
    slot_id: Optional[str] = None
    added_at: Optional[str] = None

    @property
    def ref(self) -> str:
        return component_ref(self.component_type, self.component_id)


class Configuration(BaseModel):
    config_id: str
    name: str
    status: ConfigurationStatus = ConfigurationStatus.DRAFT
    mode: ConfigurationMode = "real"
    created_by: str = ""
    description: str = ""
    compatibility_score: Optional[float] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    finalized_at: Optional[str] = None
    components: List[ComponentAssociation] = Field(default_factory=list)

    @property
    def is_test(self) -> bool:
        return self.mode == "test"

    def by_type(self, component_type: str) -> List[ComponentAssociation]:
        return [a for a in self.components if a.component_type == component_type]


# === 规格数据 ===


class ComponentSpec(BaseModel):
    component_type: ComponentType
    component_id: str
    source: AttributeSource = AttributeSource.STRUCTURED
    name: str = ""
    subtype: str = ""

    # CPU / 主板
    socket: Optional[str] = None
    socket_count: Optional[int] = None
    pcie_lanes: Optional[int] = None
    pcie_generation: Optional[float] = None
    tdp_w: Optional[int] = None
    form_factor: Optional[str] = None

    # 内存
    memory_types: List[str] = Field(default_factory=list)
    memory_type: Optional[str] = None
    memory_form_factor: Optional[str] = None
    frequency_mhz: Optional[int] = None
    max_memory_frequency_mhz: Optional[int] = None
    ecc: Optional[bool] = None
    ecc_required: Optional[bool] = None
    capacity_gb: Optional[int] = None
    max_memory_gb: Optional[int] = None
    max_module_gb: Optional[int] = None
    memory_slots: Optional[int] = None

    # 扩展槽位
    pcie_slots: Optional[Dict[str, int]] = None
    riser_slots: Dict[str, int] = Field(default_factory=dict)
    pcie_width: Optional[str] = None
    m2_slots: Optional[int] = None
    sata_ports: Optional[int] = None
    sas_ports: Optional[int] = None

    # 存储 / 机箱
    storage_interface: Optional[str] = None
    storage_form_factor: Optional[str] = None
    supported_form_factors: List[str] = Field(default_factory=list)
    drive_bay_sizes: List[str] = Field(default_factory=list)

    inferred_fields: List[str] = Field(default_factory=list)
    lookup_error: Optional[str] = None

    @property
    def ref(self) -> str:
        return component_ref(self.component_type, self.component_id)

    @property
    def is_riser(self) -> bool:
        return self.subtype.strip().lower() in {"riser", "riser card", "riser_card"}

    def is_inferred(self, *fields: str) -> bool:
        return any(f in self.inferred_fields for f in fields)

    def has_attributes(self) -> bool:
        identity = {"component_type", "component_id", "source", "name", "inferred_fields", "lookup_error"}
        for key, value in self.model_dump().items():
            if key in identity:
                continue
            if value not in (None, "", [], {}):
                return True
        return False


# === 兼容性结果 ===


class Issue(BaseModel):
    kind: str
    message: str
    severity: Severity = "error"
    category: IssueCategory = "compatibility"
    components: List[str] = Field(default_factory=list)
    details: Dict[str, Any] = Field(default_factory=dict)

    @property
    def blocking(self) -> bool:
        return self.severity == "error"


class CompatibilityResult(BaseModel):
    compatible: bool = True
    score: float = Field(default=100.0, ge=0, le=100)
    failures: List[Issue] = Field(default_factory=list)
    warnings: List[Issue] = Field(default_factory=list)

    @property
    def failure_kinds(self) -> List[str]:
        return [f.kind for f in self.failures]

    @property
    def warning_kinds(self) -> List[str]:
        return [w.kind for w in self.warnings]


class RuleInfo(BaseModel):
    name: str
    subject_types: List[str]
    scope: Literal["pair", "aggregate"] = "pair"
    description: str = ""


# === 槽位 ===


class SlotClassState(BaseModel):
    slot_class: str
    total: int = 0
    used: int = 0
    available: int = 0
    native: bool = True
    provided_by: Optional[str] = None
    parent_slot: Optional[str] = None
    assigned: Dict[str, str] = Field(default_factory=dict)
    free: List[str] = Field(default_factory=list)


class SlotPoolState(BaseModel):
    config_id: str
    classes: Dict[str, SlotClassState] = Field(default_factory=dict)
    pending: List[str] = Field(default_factory=list)

    def total(self, prefix: str = "") -> int:
        return sum(c.total for k, c in self.classes.items() if k.startswith(prefix))

    def used(self, prefix: str = "") -> int:
        return sum(c.used for k, c in self.classes.items() if k.startswith(prefix))

    def available(self, prefix: str = "") -> int:
        return sum(c.available for k, c in self.classes.items() if k.startswith(prefix))


# === 操作结果 ===


class AddComponentResult(BaseModel):
    success: bool = True
    config_id: str
    component_type: ComponentType
    component_id: str
    assigned_slot: Optional[str] = None
    placed: Dict[str, str] = Field(default_factory=dict)
    override_used: bool = False
    compatibility: CompatibilityResult = Field(default_factory=CompatibilityResult)


class RemoveComponentResult(BaseModel):
    success: bool = True
    config_id: str
    component_type: ComponentType
    component_id: str
    released_slot: Optional[str] = None
    replaced: Dict[str, Optional[str]] = Field(default_factory=dict)


class ValidationReport(BaseModel):
    config_id: str
    valid: bool
    score: float
    status: ConfigurationStatus
    critical_errors: List[Issue] = Field(default_factory=list)
    warnings: List[Issue] = Field(default_factory=list)
    required_components: Dict[str, int] = Field(default_factory=dict)
    estimated_power_w: int = 0


class CandidateComponent(BaseModel):
    component: Component
    source: AttributeSource
    compatibility: CompatibilityResult


class FinalizeResult(BaseModel):
    success: bool = True
    config_id: str
    timestamp: str
    score: float


# === API 请求 ===


class CreateConfigurationRequest(BaseModel):
    name: str = Field(min_length=1)
    mode: ConfigurationMode = "real"
    created_by: str = ""
    description: str = ""


class AddComponentRequest(BaseModel):
    component_type: ComponentType
    component_id: str = Field(min_length=1)
    quantity: int = Field(default=1, ge=1)
    slot_hint: Optional[str] = None
    override: bool = False


class StatusChangeRequest(BaseModel):
    status: ConfigurationStatus
    reason: str = ""


class CloneConfigurationRequest(BaseModel):
    name: Optional[str] = None
    mode: ConfigurationMode = "test"
    created_by: str = ""
