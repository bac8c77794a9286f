"""Enumerations for CLI exit codes."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes used by the CLI.

    ``doctor`` only ever exits with ``OK`` or ``FAILED``; ``USAGE`` is kept for
    invalid input caught before any check runs.
    """

    OK = 0
    FAILED = 1
    USAGE = 2

    @classmethod
    def from_ok(cls, ok: bool) -> ExitCode:
        """Map an aggregate pass/fail flag onto an exit code."""
        return cls.OK if ok else cls.FAILED
