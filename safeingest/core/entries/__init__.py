"""Entry adapters: turn heterogeneous raw inputs into a single Payload shape.

Security notes:
- Entries only repackage claims. Content is never read here.
"""

from .http_entry import HttpEntry
from .local_entry import LocalEntry

__all__ = ["HttpEntry", "LocalEntry"]
