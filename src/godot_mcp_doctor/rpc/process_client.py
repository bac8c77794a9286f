"""Line-delimited JSON-RPC client for a dispatcher running as a subprocess."""
from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..processes import TailBuffer, cancel_tasks, pump_stream

LOGGER = logging.getLogger(__name__)


class JsonRpcProcessError(RuntimeError):
    """Raised when the dispatcher cannot be reached or answers unexpectedly."""


@dataclass(slots=True, frozen=True)
class ToolResponse:
    """Parsed ``{ok, summary, details}`` payload returned by a dispatcher tool."""

    ok: bool
    summary: str
    details: Mapping[str, Any] = field(default_factory=dict)
    error: object | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        payload: dict[str, object] = {
            "ok": self.ok,
            "summary": self.summary,
            "details": dict(self.details),
        }
        if self.error is not None:
            payload["error"] = self.error
        return payload


def _snippet(value: object, limit: int = 500) -> str:
    try:
        text = json.dumps(value)
    except (TypeError, ValueError):
        text = str(value)
    return text if len(text) <= limit else f"{text[:limit]}…"


def _parse_tool_result(name: str, result: object) -> ToolResponse:
    content = result.get("content") if isinstance(result, Mapping) else None
    if not isinstance(content, list):
        raise JsonRpcProcessError(f"Bad MCP result for {name}: {_snippet(result)}")
    text = next(
        (
            entry["text"]
            for entry in content
            if isinstance(entry, Mapping)
            and entry.get("type") == "text"
            and isinstance(entry.get("text"), str)
        ),
        None,
    )
    if text is None:
        raise JsonRpcProcessError(f"Missing text content for {name}: {_snippet(result)}")
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as exc:
        raise JsonRpcProcessError(f"Tool {name} returned non-JSON text: {text[:500]}") from exc
    if (
        not isinstance(parsed, Mapping)
        or not isinstance(parsed.get("ok"), bool)
        or not isinstance(parsed.get("summary"), str)
    ):
        raise JsonRpcProcessError(f"Tool {name} returned unexpected JSON: {_snippet(parsed)}")
    details = parsed.get("details")
    return ToolResponse(
        ok=parsed["ok"],
        summary=parsed["summary"],
        details=dict(details) if isinstance(details, Mapping) else {},
        error=parsed.get("error"),
    )


STREAM_LIMIT = 16 * 1024 * 1024


async def spawn_dispatcher(
    command: Sequence[str],
    *,
    env: Mapping[str, str],
    cwd: Path | None = None,
) -> asyncio.subprocess.Process:
    """Start the dispatcher with all three stdio streams piped."""
    try:
        return await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=dict(env),
            cwd=str(cwd) if cwd is not None else None,
            limit=STREAM_LIMIT,
        )
    except OSError as exc:
        raise JsonRpcProcessError(f"Failed to start dispatcher {list(command)}: {exc}") from exc


class JsonRpcProcessClient:
    """Send JSON-RPC requests over a child's stdin and match replies from stdout."""

    def __init__(self, process: asyncio.subprocess.Process) -> None:
        """Start reading the child's output streams."""
        self._process = process
        self._next_id = 1
        self._pending: dict[int, asyncio.Future[dict[str, Any]]] = {}
        self._closed_reason: str | None = None
        self.stderr_tail = TailBuffer()
        self._reader = asyncio.create_task(self._read_stdout())
        self._stderr_reader = asyncio.create_task(pump_stream(process.stderr, self.stderr_tail))

    @property
    def returncode(self) -> int | None:
        """Exit code of the child, or ``None`` while it is running."""
        return self._process.returncode

    async def wait_stderr_closed(self, timeout: float = 1.0) -> None:
        """Give the stderr pump up to *timeout* seconds to reach end of stream."""
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(asyncio.shield(self._stderr_reader), timeout)

    async def _read_stdout(self) -> None:
        stream = self._process.stdout
        if stream is None:
            self._fail_all("Server stdout is not connected")
            return
        while True:
            try:
                line = await stream.readline()
            except ValueError as exc:
                self._fail_all(f"Dispatcher output line too long: {exc}")
                return
            if not line:
                break
            text = line.decode("utf-8", errors="replace").strip()
            if not text:
                continue
            try:
                message = json.loads(text)
            except json.JSONDecodeError:
                LOGGER.debug("Ignoring non-JSON dispatcher output: %s", text[:200])
                continue
            if not isinstance(message, dict) or not isinstance(message.get("id"), int):
                continue
            future = self._pending.pop(message["id"], None)
            if future is not None and not future.done():
                future.set_result(message)
        returncode = await self._process.wait()
        self._fail_all(f"Server exited (code={returncode})")

    def _fail_all(self, reason: str) -> None:
        if self._closed_reason is None:
            self._closed_reason = reason
        for future in self._pending.values():
            if not future.done():
                future.set_exception(JsonRpcProcessError(reason))
        self._pending.clear()

    async def send(
        self,
        method: str,
        params: Mapping[str, object] | None = None,
        timeout: float = 30.0,
    ) -> dict[str, Any]:
        """Send one request and wait up to *timeout* seconds for its response."""
        if self._closed_reason is not None:
            raise JsonRpcProcessError(f"JSON-RPC client is closed: {self._closed_reason}")
        stdin = self._process.stdin
        if stdin is None or stdin.is_closing():
            raise JsonRpcProcessError("Server stdin not writable")
        request_id = self._next_id
        self._next_id += 1
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        payload = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": dict(params or {})}
        try:
            stdin.write((json.dumps(payload) + "\n").encode("utf-8"))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            self._pending.pop(request_id, None)
            raise JsonRpcProcessError(f"Failed to write {method} request: {exc}") from exc
        try:
            return await asyncio.wait_for(future, timeout)
        except TimeoutError as exc:
            self._pending.pop(request_id, None)
            raise JsonRpcProcessError(
                f"Timeout waiting for {method} (id={request_id}) after {timeout:.1f}s"
            ) from exc

    async def list_tools(self, timeout: float = 10.0) -> list[dict[str, Any]]:
        """Return the dispatcher's ``tools/list`` entries."""
        response = await self.send("tools/list", {}, timeout)
        if "error" in response:
            raise JsonRpcProcessError(f"tools/list error: {_snippet(response['error'])}")
        result = response.get("result")
        tools = result.get("tools") if isinstance(result, Mapping) else None
        if not isinstance(tools, list):
            raise JsonRpcProcessError(f"tools/list returned no tool list: {_snippet(result)}")
        return [tool for tool in tools if isinstance(tool, dict)]

    async def call_tool(
        self,
        name: str,
        arguments: Mapping[str, object],
        timeout: float = 30.0,
    ) -> ToolResponse:
        """Invoke ``tools/call`` and parse the tool's JSON text payload."""
        response = await self.send("tools/call", {"name": name, "arguments": dict(arguments)}, timeout)
        if "error" in response:
            raise JsonRpcProcessError(f"tools/call error (tool={name}): {_snippet(response['error'])}")
        return _parse_tool_result(name, response.get("result"))

    async def dispose(self) -> None:
        """Fail outstanding requests and stop the reader tasks."""
        self._fail_all("JSON-RPC client disposed")
        await cancel_tasks(self._reader, self._stderr_reader)


__all__ = ["JsonRpcProcessClient", "JsonRpcProcessError", "ToolResponse", "spawn_dispatcher"]
