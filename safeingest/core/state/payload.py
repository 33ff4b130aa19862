from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO, Optional, Union

Source = Union[str, Path, bytes, BinaryIO]

DEFAULT_CLAIMED_MIME = "application/octet-stream"


@dataclass(frozen=True)
class Payload:
    """Immutable descriptor of a claimed, not yet trusted file.

    Security notes:
    - Every field is reported by the untrusted origin.
    - claimed_size is a hint for early rejection only, never authoritative.
    - source is an opaque locator; nothing here reads it.

    """

    claimed_name: str
    claimed_mime: str
    claimed_size: int
    source: Any
    upload_error: Optional[int] = None

    def __post_init__(self) -> None:
        if not isinstance(self.claimed_size, int) or isinstance(self.claimed_size, bool):
            raise TypeError("claimed_size must be an int")
        if self.claimed_size < 0:
            raise ValueError("claimed_size must be >= 0")
        if self.source is None:
            raise ValueError("payload source must not be None")

        object.__setattr__(self, "claimed_name", str(self.claimed_name or ""))
        object.__setattr__(self, "claimed_mime", str(self.claimed_mime or DEFAULT_CLAIMED_MIME))
