from __future__ import annotations

import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Any, Dict, Tuple

from defusedxml import DefusedXmlException
from defusedxml import ElementTree as DefusedET

from safeingest.core.errors import DecodeError, StructuralValidationError
from safeingest.core.tempfiles import TempScope

from .base import FileStrategy


def tree_shape(root: ET.Element) -> Tuple[int, int]:
    """Return (element_count, depth) without recursion."""

    count = 0
    deepest = 0
    stack = [(root, 1)]
    while stack:
        elem, depth = stack.pop()
        count += 1
        if depth > deepest:
            deepest = depth
        stack.extend((child, depth + 1) for child in elem)
    return count, deepest


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1] if tag.startswith("{") else tag


class XmlDocumentStrategy(FileStrategy):
    """XML document strategy backed by defusedxml.

    Canonical form: the parsed element tree serialized again as UTF-8 with an
    XML declaration. Comments and processing instructions are not kept.

    Security notes:
    - DTDs, entity declarations and external references are refused outright.
    - Element count and depth are bounded before serialization.

    """

    family = "xml"
    allowed_mimes = {"application/xml": "xml"}

    def __init__(self, *, max_bytes: int = 2_000_000, max_elements: int = 100_000, max_depth: int = 256) -> None:
        super().__init__(max_bytes=max_bytes)
        self.max_elements = int(max_elements)
        self.max_depth = int(max_depth)

    def _canonicalize(self, path: Path, mime: str, scope: TempScope) -> Tuple[Path, Dict[str, Any]]:
        data = path.read_bytes()
        try:
            root = DefusedET.fromstring(data, forbid_dtd=True, forbid_entities=True, forbid_external=True)
        except DefusedXmlException as e:
            raise StructuralValidationError(f"forbidden XML construct: {type(e).__name__}", rule="dtd") from e
        except ET.ParseError as e:
            raise DecodeError(f"malformed XML: {e}", rule="syntax") from e

        count, depth = tree_shape(root)
        if count > self.max_elements:
            raise StructuralValidationError(
                f"document has {count} elements, ceiling is {self.max_elements}", rule="max_elements"
            )
        if depth > self.max_depth:
            raise StructuralValidationError(f"nesting depth {depth} exceeds {self.max_depth}", rule="max_depth")

        out = scope.new_path(".xml")
        try:
            canonical = ET.tostring(root, encoding="utf-8", xml_declaration=True)
        except RecursionError as e:
            raise StructuralValidationError("document nests too deeply to serialize", rule="max_depth") from e
        out.write_bytes(canonical)
        return out, {
            "root_tag": _local_name(root.tag),
            "element_count": count,
        }
