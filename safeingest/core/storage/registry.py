from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from safeingest.core.errors import PolicyConfigurationError, StorageFailure

from .store import LocalStore, Store
from .uri import Uri


@dataclass(frozen=True)
class Mount:
    scheme: str
    root: Path
    store: Store


class StorageRegistry:
    """Maps URI schemes to (root directory, Store).

    The registry is the only place where a URI becomes an absolute path.

    """

    def __init__(self) -> None:
        self._mounts: Dict[str, Mount] = {}

    def mount(self, scheme: str, root: Path, store: Optional[Store] = None) -> Mount:
        # Validates the scheme.
        Uri(scheme=scheme)
        root = Path(root).resolve()
        m = Mount(scheme=scheme, root=root, store=store or LocalStore())
        self._mounts[scheme] = m
        return m

    def get(self, scheme: str) -> Mount:
        m = self._mounts.get(scheme)
        if m is None:
            raise PolicyConfigurationError(f"no storage mounted for scheme {scheme!r}", rule="scheme")
        return m

    def schemes(self) -> list:
        return sorted(self._mounts)

    def absolute_path(self, uri: Uri) -> Path:
        """Resolve a URI below its mount root.

        Security notes:
        - Uri paths are already normalized; the resolved path is re-checked to be
          inside the root so symlinked directories cannot escape it.

        """

        m = self.get(uri.scheme)
        target = (m.root / uri.relative).resolve()
        if target != m.root and m.root not in target.parents:
            raise StorageFailure(f"{uri} resolves outside its storage root", rule="containment")
        return target
