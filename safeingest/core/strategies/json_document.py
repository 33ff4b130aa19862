from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Tuple

from safeingest.core.errors import DecodeError, StructuralValidationError
from safeingest.core.tempfiles import TempScope

from .base import FileStrategy


def max_nesting(text: str) -> int:
    """Bracket nesting depth of a JSON text, ignoring brackets inside strings.

    Runs before the parser so that hostile nesting never reaches recursion.

    Time:  O(n)
    Space: O(1)
    """

    depth = 0
    deepest = 0
    in_string = False
    escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "[{":
            depth += 1
            if depth > deepest:
                deepest = depth
        elif ch in "]}":
            depth -= 1
    return deepest


def _reject_duplicates(pairs: List[Tuple[str, Any]]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, value in pairs:
        if key in out:
            raise StructuralValidationError(f"duplicate object key {key!r}", rule="duplicate_key")
        out[key] = value
    return out


def _reject_constant(name: str) -> Any:
    raise StructuralValidationError(f"non-finite constant {name} is not allowed", rule="constant")


def count_nodes(value: Any) -> int:
    count = 0
    stack = [value]
    while stack:
        item = stack.pop()
        count += 1
        if isinstance(item, dict):
            stack.extend(item.values())
        elif isinstance(item, list):
            stack.extend(item)
    return count


class JsonDocumentStrategy(FileStrategy):
    """Strict JSON document strategy.

    Canonical form: sorted keys, compact separators, UTF-8 without BOM.

    Security notes:
    - Depth is measured before parsing; duplicate keys and NaN/Infinity are
      rejected so that two parsers cannot disagree about the content.
    - Only objects and arrays are accepted at the top level.

    """

    family = "json"
    allowed_mimes = {"application/json": "json"}

    def __init__(self, *, max_bytes: int = 2_000_000, max_depth: int = 64, max_nodes: int = 200_000) -> None:
        super().__init__(max_bytes=max_bytes)
        self.max_depth = int(max_depth)
        self.max_nodes = int(max_nodes)

    def _canonicalize(self, path: Path, mime: str, scope: TempScope) -> Tuple[Path, Dict[str, Any]]:
        raw = path.read_bytes()
        if raw.startswith(b"\xef\xbb\xbf"):
            raw = raw[3:]
        try:
            text = raw.decode("utf-8", errors="strict")
        except UnicodeDecodeError as e:
            raise DecodeError("document is not valid UTF-8", rule="encoding") from e

        depth = max_nesting(text)
        if depth > self.max_depth:
            raise StructuralValidationError(
                f"nesting depth {depth} exceeds {self.max_depth}", rule="max_depth"
            )

        try:
            value = json.loads(
                text,
                object_pairs_hook=_reject_duplicates,
                parse_constant=_reject_constant,
            )
        except json.JSONDecodeError as e:
            raise DecodeError(f"invalid JSON at line {e.lineno} column {e.colno}", rule="syntax") from e
        except ValueError as e:
            # int digit limits
            raise DecodeError("JSON value could not be decoded", rule="number") from e

        if not isinstance(value, (dict, list)):
            raise StructuralValidationError("top level must be an object or an array", rule="top_level")

        nodes = count_nodes(value)
        if nodes > self.max_nodes:
            raise StructuralValidationError(f"document has {nodes} nodes, ceiling is {self.max_nodes}", rule="max_nodes")

        canonical = json.dumps(
            value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False
        ).encode("utf-8")

        out = scope.new_path(".json")
        out.write_bytes(canonical)
        return out, {
            "top_level": "object" if isinstance(value, dict) else "array",
            "node_count": nodes,
            "depth": depth,
        }
