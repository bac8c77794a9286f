"""Subprocess helpers shared by the self-test and auto-launch checks."""
from __future__ import annotations

import asyncio
import contextlib
import logging

LOGGER = logging.getLogger(__name__)

LOG_TAIL_CHARS = 4000


class TailBuffer:
    """Keep only the last *limit* characters written to it."""

    def __init__(self, limit: int = LOG_TAIL_CHARS) -> None:
        """Create an empty buffer."""
        self.limit = limit
        self._text = ""

    def write(self, chunk: str) -> None:
        """Append *chunk*, discarding the oldest characters beyond the limit."""
        self._text = (self._text + chunk)[-self.limit :]

    @property
    def text(self) -> str:
        """Return the retained tail."""
        return self._text


async def pump_stream(stream: asyncio.StreamReader | None, buffer: TailBuffer) -> None:
    """Read *stream* until EOF into *buffer* so the child never blocks on a full pipe."""
    if stream is None:
        return
    while True:
        chunk = await stream.read(4096)
        if not chunk:
            return
        buffer.write(chunk.decode("utf-8", errors="replace"))


async def terminate_process(process: asyncio.subprocess.Process, *, grace: float = 2.0) -> None:
    """Stop *process*: close stdin, SIGTERM, then SIGKILL after *grace* seconds."""
    if process.returncode is not None:
        return
    if process.stdin is not None and not process.stdin.is_closing():
        process.stdin.close()
    with contextlib.suppress(ProcessLookupError):
        process.terminate()
    try:
        await asyncio.wait_for(process.wait(), grace)
        return
    except TimeoutError:
        LOGGER.debug("Process %s ignored SIGTERM; killing.", process.pid)
    with contextlib.suppress(ProcessLookupError):
        process.kill()
    try:
        await asyncio.wait_for(process.wait(), grace)
    except TimeoutError:
        LOGGER.warning("Process %s did not exit after SIGKILL.", process.pid)


async def cancel_tasks(*tasks: asyncio.Task[object] | None) -> None:
    """Cancel background reader tasks and wait for them to finish."""
    pending = [task for task in tasks if task is not None and not task.done()]
    for task in pending:
        task.cancel()
    for task in pending:
        with contextlib.suppress(asyncio.CancelledError):
            await task


__all__ = ["LOG_TAIL_CHARS", "TailBuffer", "cancel_tasks", "pump_stream", "terminate_process"]
