from __future__ import annotations

import copy
from typing import Any, Dict, Mapping

from safeingest.core.errors import PolicyConfigurationError

_MISSING = object()


def merge_options(defaults: Mapping[str, Any], overrides: Mapping[str, Any], *, _prefix: str = "") -> Dict[str, Any]:
    """Merge overrides into defaults, key by key, and return a new dict.

    Rules:
    - nested mappings are merged recursively
    - any other value (lists included) replaces the default wholesale
    - a key absent from defaults raises PolicyConfigurationError
    - a mapping default cannot be replaced by a non-mapping, and vice versa

    Neither input is modified.

    """

    merged = copy.deepcopy(dict(defaults))
    for key, value in (overrides or {}).items():
        dotted = f"{_prefix}{key}"
        if key not in merged:
            raise PolicyConfigurationError(f"unknown option {dotted!r}", rule="unknown_option")

        current = merged[key]
        if isinstance(current, Mapping):
            if not isinstance(value, Mapping):
                raise PolicyConfigurationError(f"option {dotted!r} must be a mapping", rule="option_type")
            merged[key] = merge_options(current, value, _prefix=dotted + ".")
        elif isinstance(value, Mapping):
            raise PolicyConfigurationError(f"option {dotted!r} is not a mapping", rule="option_type")
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def value_at(options: Mapping[str, Any], dotted: str, default: Any = _MISSING) -> Any:
    """Dotted lookup: value_at(opts, "limits.max_bytes").

    Without a default, a missing key raises PolicyConfigurationError.

    """

    node: Any = options
    for part in dotted.split("."):
        if not isinstance(node, Mapping) or part not in node:
            if default is _MISSING:
                raise PolicyConfigurationError(f"unknown option {dotted!r}", rule="unknown_option")
            return default
        node = node[part]
    return copy.deepcopy(node)
