"""Scoped file overrides that always restore the original state."""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from contextlib import ExitStack, contextmanager
from pathlib import Path
from types import TracebackType

LOGGER = logging.getLogger(__name__)


class FileOverride:
    """Replace *path* with *content* for the duration of a ``with`` block.

    On exit the original bytes are written back, or the file is removed if it
    did not exist beforehand. This holds for normal exit, exceptions and
    cancellation alike.
    """

    def __init__(self, path: Path, content: str) -> None:
        """Prepare an override; nothing touches the disk until ``__enter__``."""
        self.path = path
        self.content = content
        self.existed = False
        self.original: bytes | None = None
        self.restore_error: OSError | None = None
        self._active = False

    def __enter__(self) -> FileOverride:
        try:
            self.original = self.path.read_bytes()
            self.existed = True
        except FileNotFoundError:
            self.original = None
            self.existed = False
        self._active = True
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(self.content, encoding="utf-8")
        except BaseException:
            self.restore()
            raise
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.restore()

    def restore(self) -> None:
        """Put the original file back (or delete it); idempotent."""
        if not self._active:
            return
        self._active = False
        try:
            if self.existed and self.original is not None:
                self.path.write_bytes(self.original)
            else:
                self.path.unlink(missing_ok=True)
        except OSError as exc:
            self.restore_error = exc
            LOGGER.error("Failed to restore %s: %s", self.path, exc)


@contextmanager
def override_files(contents: Mapping[Path, str]) -> Iterator[list[FileOverride]]:
    """Apply several :class:`FileOverride` scopes together, restoring in reverse order."""
    with ExitStack() as stack:
        yield [stack.enter_context(FileOverride(path, text)) for path, text in contents.items()]


__all__ = ["FileOverride", "override_files"]
