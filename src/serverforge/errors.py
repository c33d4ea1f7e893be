"""ServerForge 异常定义 - ServerForge error taxonomy

每个异常都带有机器可判断的 ``kind`` 与可读的 ``reason``。
Every error carries a machine-checkable ``kind`` plus a human-readable ``reason``.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .schemas import CompatibilityResult, Issue


class ServerForgeError(Exception):
    """ServerForge 基础异常 - base error"""

    kind = "error"

    def __init__(self, reason: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.details: Dict[str, Any] = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.kind, "reason": self.reason, "details": self.details}


class NotFoundError(ServerForgeError):
    kind = "not_found"


class ConflictError(ServerForgeError):
    kind = "conflict"

    def __init__(self, component_type: str, component_id: str, current_owner: str | None) -> None:
        super().__init__(
            f"{component_type} {component_id} is already claimed by configuration {current_owner}",
            {"component_type": component_type, "component_id": component_id, "current_owner": current_owner},
        )
        self.current_owner = current_owner


class CompatibilityBlockedError(ServerForgeError):
    kind = "compatibility_blocked"

    def __init__(self, reason: str, result: "CompatibilityResult") -> None:
        super().__init__(reason, {"compatibility": result.model_dump()})
        self.result = result

    @property
    def failure_kinds(self) -> List[str]:
        return [f.kind for f in self.result.failures]


class CapacityExhaustedError(ServerForgeError):
    kind = "capacity_exhausted"

    def __init__(self, reason: str, slot_class: str | None = None) -> None:
        super().__init__(reason, {"slot_class": slot_class})
        self.slot_class = slot_class


class ValidationFailedError(ServerForgeError):
    kind = "validation_failed"

    def __init__(self, reason: str, errors: Optional[List["Issue"]] = None) -> None:
        issues = list(errors or [])
        super().__init__(reason, {"errors": [i.model_dump() for i in issues]})
        self.errors = issues


class PermissionDeniedError(ServerForgeError):
    kind = "permission_denied"


class OracleUnavailableError(ServerForgeError):
    kind = "oracle_unavailable"
