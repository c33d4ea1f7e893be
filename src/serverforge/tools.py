from __future__ import annotations

from typing import TYPE_CHECKING, List

from langchain_core.tools import tool
from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from .service import ConfigurationAssembler


class PairInput(BaseModel):
    type_a: str = Field(description="Component type of the first part, e.g. cpu, motherboard, ram")
    id_a: str = Field(description="Inventory identifier of the first part")
    type_b: str = Field(description="Component type of the second part")
    id_b: str = Field(description="Inventory identifier of the second part")


class SlotAvailabilityInput(BaseModel):
    config_id: str = Field(description="Configuration identifier")


class CompatibleComponentsInput(BaseModel):
    config_id: str = Field(description="Configuration identifier")
    component_type: str = Field(description="Component type to search, e.g. ram, nic, pciecard")
    limit: int = Field(default=5, ge=1, le=50)


class Toolset:
    """只读的引擎查询工具 - read-only engine queries exposed as agent tools"""

    def __init__(self, assembler: "ConfigurationAssembler"):
        self.assembler = assembler

    def register(self):
        assembler = self.assembler

        @tool("check_compatibility", args_schema=PairInput)
        def check_compatibility(type_a: str, id_a: str, type_b: str, id_b: str) -> dict:
            """Check whether two inventory components are compatible with each other."""
            result = assembler.check_pair(type_a, id_a, type_b, id_b)
            return {
                "compatible": result.compatible,
                "score": result.score,
                "failures": [f.message for f in result.failures],
                "warnings": [w.message for w in result.warnings],
            }

        @tool("slot_availability", args_schema=SlotAvailabilityInput)
        def slot_availability(config_id: str) -> dict:
            """Report total, used and free slots per slot class of a configuration."""
            state = assembler.slot_state(config_id)
            return {
                "classes": {
                    name: {
                        "total": c.total,
                        "used": c.used,
                        "available": c.available,
                        "native": c.native,
                        "provided_by": c.provided_by,
                    }
                    for name, c in state.classes.items()
                },
                "pending": state.pending,
            }

        @tool("find_compatible_components", args_schema=CompatibleComponentsInput)
        def find_compatible_components(config_id: str, component_type: str, limit: int = 5) -> List[dict]:
            """List available components of a type that fit a configuration, best score first."""
            candidates = assembler.compatible_components(config_id, component_type)
            return [
                {
                    "component_id": c.component.component_id,
                    "score": c.compatibility.score,
                    "source": c.source.value,
                    "warnings": c.compatibility.warning_kinds,
                }
                for c in candidates[:limit]
            ]

        return {
            "check_compatibility": check_compatibility,
            "slot_availability": slot_availability,
            "find_compatible_components": find_compatible_components,
        }
