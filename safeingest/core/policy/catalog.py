from __future__ import annotations

from threading import Lock
from typing import Any, Dict, List, Mapping, Optional

from safeingest.core.errors import PolicyConfigurationError

from .policy import DocumentPolicy, FilePolicy, ImagePolicy


class PolicyCatalog:
    """Named policies. resolve() applies caller overrides to a registered policy."""

    def __init__(self) -> None:
        self._policies: Dict[str, FilePolicy] = {}
        self._lock = Lock()

    def register(self, name: str, policy: FilePolicy) -> None:
        if not name or not isinstance(policy, FilePolicy):
            raise PolicyConfigurationError("register() needs a name and a FilePolicy", rule="catalog")
        with self._lock:
            self._policies[name] = policy

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._policies)

    def resolve(self, name: str, overrides: Optional[Mapping[str, Any]] = None) -> FilePolicy:
        with self._lock:
            policy = self._policies.get(name)
        if policy is None:
            raise PolicyConfigurationError(f"unknown policy {name!r}", rule="catalog")
        return policy.with_options(overrides)


def default_catalog() -> PolicyCatalog:
    catalog = PolicyCatalog()
    catalog.register("images", ImagePolicy())
    catalog.register("json", DocumentPolicy({"family": "json", "storage": {"namespace": "json"}}))
    catalog.register("xml", DocumentPolicy({"family": "xml", "storage": {"namespace": "xml"}}))
    return catalog
