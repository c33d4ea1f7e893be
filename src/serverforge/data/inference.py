"""
文本推断 - Free-text attribute inference

当规格库中没有结构化条目时，从库存备注中推断 socket、内存类型、槽位数量等属性。
结果总是标记为 ``AttributeSource.INFERRED_FROM_TEXT``，不会与结构化数据合并。
When the specification repository has no structured entry, socket, memory type and
slot counts are inferred from the inventory notes. Results are always tagged
``AttributeSource.INFERRED_FROM_TEXT`` and never merged with structured data.
"""

from __future__ import annotations

import re
from typing import Dict, List, Optional

from ..schemas import AttributeSource, ComponentSpec

# 常见服务器型号 → socket
MODEL_SOCKET_MAP: Dict[str, str] = {
    "platinum 8480+": "LGA4677",
    "platinum 8480": "LGA4677",
    "platinum 8470": "LGA4677",
    "platinum 8460": "LGA4677",
    "platinum 8450": "LGA4677",
    "gold 6430": "LGA4677",
    "gold 6420": "LGA4677",
    "gold 6410": "LGA4677",
    "silver 4410": "LGA4677",
    "bronze 3408": "LGA4677",
    "gold 6338": "LGA4189",
    "gold 5318": "LGA4189",
    "silver 4314": "LGA4189",
    "epyc 9534": "SP5",
    "epyc 9554": "SP5",
    "epyc 9634": "SP5",
    "epyc 9654": "SP5",
    "epyc 7763": "SP3",
    "epyc 7543": "SP3",
    "x13dri-n": "LGA4677",
    "x13dpi-n": "LGA4677",
    "x12dpi-nt6": "LGA4189",
    "x12dpi-n6": "LGA4189",
    "h12dsi-n6": "SP3",
    "h12ssl-i": "SP3",
    "mz93-fs0": "SP5",
    "z790": "LGA1700",
    "b650": "AM5",
}

SOCKET_PATTERN = re.compile(
    r"\b(?:socket\s*)?(lga\s*-?\s*\d{4}|sp[3-6]|am[45]|tr4|strx4|swrx8)\b",
    re.IGNORECASE,
)
MEMORY_TYPE_PATTERN = re.compile(r"\bddr\s*([3-5])\b", re.IGNORECASE)
DIMM_SLOTS_PATTERN = re.compile(r"(\d+)\s*(?:x\s*)?(?:dimm|memory)\s*slots?", re.IGNORECASE)
PCIE_WIDTH_PATTERN = re.compile(r"\bx(1|4|8|16)\b", re.IGNORECASE)
CAPACITY_PATTERN = re.compile(r"(\d+)\s*gb\b", re.IGNORECASE)
FREQUENCY_PATTERN = re.compile(r"(\d{4})\s*(?:mhz|mt/s)", re.IGNORECASE)


def extract_socket(notes: str) -> Optional[str]:
    text = (notes or "").lower()
    for model, socket in MODEL_SOCKET_MAP.items():
        if model in text:
            return socket
    match = SOCKET_PATTERN.search(text)
    if match:
        return re.sub(r"[\s\-]", "", match.group(1)).upper()
    return None


def extract_memory_types(notes: str) -> List[str]:
    found: List[str] = []
    for match in MEMORY_TYPE_PATTERN.finditer(notes or ""):
        value = f"DDR{match.group(1)}"
        if value not in found:
            found.append(value)
    return found


def extract_memory_slots(notes: str) -> Optional[int]:
    match = DIMM_SLOTS_PATTERN.search(notes or "")
    return int(match.group(1)) if match else None


def extract_pcie_width(notes: str) -> Optional[str]:
    match = PCIE_WIDTH_PATTERN.search(notes or "")
    return f"x{match.group(1)}" if match else None


def extract_storage_interface(notes: str) -> Optional[str]:
    text = (notes or "").lower()
    if "nvme" in text or "m.2" in text:
        return "nvme"
    if "sas" in text:
        return "sas"
    if "sata" in text:
        return "sata"
    return None


def infer_spec(component_type: str, component_id: str, notes: str) -> Optional[ComponentSpec]:
    """
    从备注推断规格 - Infer a specification from notes

    返回 Returns:
        推断出的规格；没有任何可推断属性时返回 None
        The inferred spec, or None when nothing could be derived
    """
    if not notes or not notes.strip():
        return None

    fields: Dict[str, object] = {}
    if component_type in {"cpu", "motherboard"}:
        socket = extract_socket(notes)
        if socket:
            fields["socket"] = socket
        memory_types = extract_memory_types(notes)
        if memory_types:
            fields["memory_types"] = memory_types
    if component_type == "motherboard":
        slots = extract_memory_slots(notes)
        if slots:
            fields["memory_slots"] = slots
    if component_type == "ram":
        memory_types = extract_memory_types(notes)
        if memory_types:
            fields["memory_type"] = memory_types[0]
        capacity = CAPACITY_PATTERN.search(notes)
        if capacity:
            fields["capacity_gb"] = int(capacity.group(1))
        frequency = FREQUENCY_PATTERN.search(notes)
        if frequency:
            fields["frequency_mhz"] = int(frequency.group(1))
        if re.search(r"\b(ecc|rdimm|lrdimm|registered)\b", notes, re.IGNORECASE):
            fields["ecc"] = True
    if component_type in {"nic", "pciecard", "hbacard"}:
        width = extract_pcie_width(notes)
        if width:
            fields["pcie_width"] = width
        if component_type == "pciecard" and re.search(r"\briser\b", notes, re.IGNORECASE):
            fields["subtype"] = "riser"
    if component_type == "storage":
        interface = extract_storage_interface(notes)
        if interface:
            fields["storage_interface"] = interface

    if not fields:
        return None
    return ComponentSpec(
        component_type=component_type,
        component_id=component_id,
        source=AttributeSource.INFERRED_FROM_TEXT,
        inferred_fields=sorted(fields),
        **fields,
    )
