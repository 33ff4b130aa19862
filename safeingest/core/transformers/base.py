from __future__ import annotations

from safeingest.core.state.context import FileContext
from safeingest.core.tempfiles import TempScope


class FileTransformer:
    """Derives a new canonical file from a proved context.

    transform() never mutates its input; it returns a new proved context whose
    normalized_path, size and hash describe the freshly encoded output.

    """

    name: str = "transformer"

    def transform(self, context: FileContext, *, scope: TempScope) -> FileContext:
        raise NotImplementedError

    def describe(self) -> str:
        return self.name
