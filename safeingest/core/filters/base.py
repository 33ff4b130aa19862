from __future__ import annotations

from typing import Iterable, Optional

from safeingest.core.errors import PolicyViolationError
from safeingest.core.state.context import FileContext


class FileFilter:
    """Post-proof precondition.

    Subclasses implement check() and return a reason string to reject, or None
    to accept. Filters read trusted fields only and never change the context.

    """

    rule_id: str = "file-filter"

    def check(self, context: FileContext) -> Optional[str]:
        raise NotImplementedError

    def apply(self, context: FileContext) -> FileContext:
        context.assert_proved()
        reason = self.check(context)
        if reason is not None:
            raise PolicyViolationError(reason, rule=self.rule_id)
        return context


def apply_filters(context: FileContext, filters: Iterable[FileFilter]) -> FileContext:
    """Run filters in order; the first rejection wins."""

    for f in filters:
        context = f.apply(context)
    return context
