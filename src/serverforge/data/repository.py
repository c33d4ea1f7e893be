"""规格仓库 - specification repository (read-only oracle)"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol, Tuple

from pydantic import ValidationError

from ..errors import OracleUnavailableError
from ..schemas import AttributeSource, ComponentSpec
from .inference import infer_spec

logger = logging.getLogger(__name__)

SpecKey = Tuple[str, str]


class SpecificationOracle(Protocol):
    def lookup(self, component_type: str, component_id: str) -> ComponentSpec | None: ...


class StaticSpecificationRepository:
    """内存规格仓库 - in-memory repository, mainly for tests and fixtures"""

    def __init__(self, specs: Iterable[ComponentSpec] = ()):
        self._specs: Dict[SpecKey, ComponentSpec] = {}
        for spec in specs:
            self.add(spec)

    def add(self, spec: ComponentSpec) -> None:
        self._specs[(spec.component_type, spec.component_id)] = spec

    def lookup(self, component_type: str, component_id: str) -> ComponentSpec | None:
        return self._specs.get((component_type, component_id))

    def all_specs(self) -> List[ComponentSpec]:
        return list(self._specs.values())


class JsonSpecificationRepository:
    """
    JSON 规格仓库 - JSON file backed repository

    文件格式 File layout::

        {"cpu": [{"component_id": "CPU-1", "socket": "LGA4189", ...}], "motherboard": [...]}

    文件不存在时视为空仓库；文件损坏时抛出 ``OracleUnavailableError``。
    A missing file is an empty repository; an unreadable one raises ``OracleUnavailableError``.
    """

    def __init__(self, catalog_path: Path):
        self.catalog_path = Path(catalog_path)
        self._specs: Dict[SpecKey, ComponentSpec] | None = None
        self._lock = threading.Lock()

    def reload(self) -> None:
        if not self.catalog_path.exists():
            specs: Dict[SpecKey, ComponentSpec] = {}
        else:
            try:
                with self.catalog_path.open("r", encoding="utf-8") as f:
                    raw = json.load(f)
                specs = self._parse(raw)
            except (OSError, ValueError, ValidationError) as err:
                raise OracleUnavailableError(
                    f"specification catalog {self.catalog_path} could not be loaded: {err}"
                ) from err
        with self._lock:
            self._specs = specs
        logger.info("specification catalog loaded: %d entries", len(specs))

    @staticmethod
    def _parse(raw: object) -> Dict[SpecKey, ComponentSpec]:
        if not isinstance(raw, dict):
            raise ValueError("catalog root must be an object keyed by component type")
        specs: Dict[SpecKey, ComponentSpec] = {}
        for component_type, entries in raw.items():
            for item in entries or []:
                spec = ComponentSpec.model_validate({**item, "component_type": component_type})
                specs[(spec.component_type, spec.component_id)] = spec
        return specs

    def lookup(self, component_type: str, component_id: str) -> ComponentSpec | None:
        if self._specs is None:
            self.reload()
        assert self._specs is not None
        return self._specs.get((component_type, component_id))


class AttributeResolver:
    """
    属性解析 - Resolve component attributes with an explicit source tag

    优先使用结构化规格；没有结构化条目时才退回到备注文本推断；两者都没有则为 Unknown。
    Structured specs win; text inference is only a fallback; otherwise the spec is Unknown.
    """

    def __init__(self, oracle: SpecificationOracle, text_inference: bool = True):
        self.oracle = oracle
        self.text_inference = text_inference

    def resolve(self, component_type: str, component_id: str, notes: str = "") -> ComponentSpec:
        lookup_error: Optional[str] = None
        try:
            spec = self.oracle.lookup(component_type, component_id)
        except OracleUnavailableError as err:
            logger.warning("specification lookup failed for %s:%s: %s", component_type, component_id, err.reason)
            spec = None
            lookup_error = err.reason

        if spec is not None and spec.has_attributes():
            return spec.model_copy(update={"source": AttributeSource.STRUCTURED})

        if self.text_inference:
            inferred = infer_spec(component_type, component_id, notes)
            if inferred is not None:
                logger.debug("attributes for %s:%s inferred from notes", component_type, component_id)
                return inferred.model_copy(update={"lookup_error": lookup_error})

        return ComponentSpec(
            component_type=component_type,
            component_id=component_id,
            source=AttributeSource.UNKNOWN,
            name=spec.name if spec is not None else "",
            lookup_error=lookup_error,
        )
