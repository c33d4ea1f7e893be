"""Builder 模块：兼容性评估与槽位分配"""

from .compatibility import CompatibilityEvaluator, estimate_system_power
from .rules import AGGREGATE_RULES, PAIR_RULES, normalize_socket
from .slots import SlotAllocator, SlotPool, slot_requirement

__all__ = [
    "AGGREGATE_RULES",
    "PAIR_RULES",
    "CompatibilityEvaluator",
    "SlotAllocator",
    "SlotPool",
    "estimate_system_power",
    "normalize_socket",
    "slot_requirement",
]
