"""Data 模块：规格仓库与文本推断"""

from .inference import infer_spec
from .repository import (
    AttributeResolver,
    JsonSpecificationRepository,
    SpecificationOracle,
    StaticSpecificationRepository,
)

__all__ = [
    "AttributeResolver",
    "JsonSpecificationRepository",
    "SpecificationOracle",
    "StaticSpecificationRepository",
    "infer_spec",
]
