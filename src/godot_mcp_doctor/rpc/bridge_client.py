"""Authenticated TCP client for the editor bridge plugin.

Wire format: one JSON object per line. The client sends
``{"type": "hello", "token": ...}`` and expects ``hello_ok`` or
``hello_error``; afterwards requests are ``{"id", "method", "params"}`` and
responses ``{"id", "ok", "result" | "error"}``.
"""
from __future__ import annotations

import asyncio
import contextlib
import errno
import json
import logging
import socket
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Literal

LOGGER = logging.getLogger(__name__)

FailureKind = Literal["refused", "timeout", "auth", "protocol", "io"]


class BridgeClientError(RuntimeError):
    """Raised when the bridge cannot be reached or rejects the session."""

    def __init__(self, message: str, *, kind: FailureKind = "io") -> None:
        """Record the failure *kind* alongside the message."""
        super().__init__(message)
        self.kind = kind

    @property
    def looks_stale(self) -> bool:
        """Return ``True`` for failures consistent with nothing listening."""
        return self.kind in ("refused", "timeout")


# Errors meaning "no listener at this address" rather than a live but broken peer.
_UNREACHABLE_ERRNOS = frozenset(
    {errno.EADDRNOTAVAIL, errno.EAFNOSUPPORT, errno.ENETUNREACH, errno.EHOSTUNREACH}
)


def classify_connect_error(exc: OSError) -> FailureKind:
    """Map a single connect failure onto a :data:`FailureKind`."""
    if isinstance(exc, ConnectionRefusedError) or exc.errno == errno.ECONNREFUSED:
        return "refused"
    if isinstance(exc, TimeoutError) or exc.errno == errno.ETIMEDOUT:
        return "timeout"
    if exc.errno in _UNREACHABLE_ERRNOS:
        return "refused"
    return "io"


def combine_connect_errors(errors: Sequence[OSError]) -> FailureKind:
    """Classify the failure of every resolved address taken together.

    The result is stale-shaped only when each address failed that way.
    """
    kinds = {classify_connect_error(exc) for exc in errors}
    if not kinds or not kinds <= {"refused", "timeout"}:
        return "io"
    return "refused" if "refused" in kinds else "timeout"


async def _open_connection(
    host: str, port: int
) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """Connect to the first resolved address of *host* that accepts."""
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    except OSError as exc:
        raise BridgeClientError(f"Editor bridge host lookup failed ({host}): {exc}") from exc

    errors: list[OSError] = []
    for address in dict.fromkeys(str(info[4][0]) for info in infos):
        try:
            return await asyncio.open_connection(address, port)
        except OSError as exc:
            LOGGER.debug("Bridge connect to %s:%s failed: %s", address, port, exc)
            errors.append(exc)

    kind = combine_connect_errors(errors)
    reasons = "; ".join(str(exc) for exc in errors) or "no addresses resolved"
    if kind == "refused":
        message = f"Editor bridge connection refused ({host}:{port})"
    elif kind == "timeout":
        message = f"Editor bridge connect timeout ({host}:{port})"
    else:
        message = f"Editor bridge connect failed ({host}:{port}): {reasons}"
    raise BridgeClientError(message, kind=kind) from (errors[-1] if errors else None)


@dataclass(slots=True, frozen=True)
class BridgeResponse:
    """A response to a bridge request."""

    id: int
    ok: bool
    result: Any = None
    error: Any = None


class BridgeClient:
    """Single-connection client; use as an async context manager."""

    def __init__(self) -> None:
        """Create a disconnected client."""
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._next_id = 1
        self.capabilities: Mapping[str, Any] = {}

    @property
    def is_connected(self) -> bool:
        """Return ``True`` while the socket is open."""
        return self._writer is not None and not self._writer.is_closing()

    async def connect(self, host: str, port: int, token: str, timeout: float = 5.0) -> None:
        """Open the socket and complete the hello handshake."""
        if self.is_connected:
            raise BridgeClientError("Editor bridge already connected", kind="protocol")
        try:
            self._reader, self._writer = await asyncio.wait_for(
                _open_connection(host, port), timeout
            )
        except TimeoutError as exc:
            raise BridgeClientError(
                f"Editor bridge connect timeout after {timeout:.1f}s ({host}:{port})",
                kind="timeout",
            ) from exc

        await self._send({"type": "hello", "token": token})
        try:
            reply = await asyncio.wait_for(self._read_until_hello(), timeout)
        except TimeoutError as exc:
            await self.close()
            raise BridgeClientError(
                f"Editor bridge hello timeout after {timeout:.1f}s", kind="protocol"
            ) from exc
        if reply.get("type") == "hello_error":
            await self.close()
            raise BridgeClientError(str(reply.get("error") or "hello_error"), kind="auth")
        capabilities = reply.get("capabilities")
        self.capabilities = capabilities if isinstance(capabilities, dict) else {}

    async def request(
        self,
        method: str,
        params: Mapping[str, object] | None = None,
        timeout: float = 10.0,
    ) -> BridgeResponse:
        """Send *method* and wait for the response with the matching id."""
        if not self.is_connected:
            raise BridgeClientError("Editor bridge not connected", kind="protocol")
        request_id = self._next_id
        self._next_id += 1
        await self._send({"id": request_id, "method": method, "params": dict(params or {})})
        try:
            message = await asyncio.wait_for(self._read_response(request_id), timeout)
        except TimeoutError as exc:
            raise BridgeClientError(
                f"Editor bridge request timeout after {timeout:.1f}s (method={method})",
                kind="protocol",
            ) from exc
        return BridgeResponse(
            id=request_id,
            ok=bool(message.get("ok")),
            result=message.get("result"),
            error=message.get("error"),
        )

    async def close(self) -> None:
        """Close the socket; safe to call repeatedly."""
        writer, self._writer, self._reader = self._writer, None, None
        if writer is None:
            return
        writer.close()
        with contextlib.suppress(OSError):
            await writer.wait_closed()

    async def __aenter__(self) -> BridgeClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    async def _send(self, payload: Mapping[str, object]) -> None:
        if self._writer is None:
            raise BridgeClientError("Editor bridge socket not available", kind="protocol")
        try:
            self._writer.write((json.dumps(payload) + "\n").encode("utf-8"))
            await self._writer.drain()
        except OSError as exc:
            raise BridgeClientError(f"Editor bridge write failed: {exc}") from exc

    async def _read_message(self) -> dict[str, Any]:
        if self._reader is None:
            raise BridgeClientError("Editor bridge socket not available", kind="protocol")
        while True:
            try:
                line = await self._reader.readline()
            except OSError as exc:
                raise BridgeClientError(f"Editor bridge socket error: {exc}") from exc
            if not line:
                raise BridgeClientError("Editor bridge socket closed", kind="protocol")
            text = line.decode("utf-8", errors="replace").strip()
            if not text:
                continue
            try:
                message = json.loads(text)
            except json.JSONDecodeError:
                continue
            if isinstance(message, dict):
                return message

    async def _read_until_hello(self) -> dict[str, Any]:
        while True:
            message = await self._read_message()
            if message.get("type") in ("hello_ok", "hello_error"):
                return message

    async def _read_response(self, request_id: int) -> dict[str, Any]:
        while True:
            message = await self._read_message()
            if message.get("id") == request_id:
                return message


async def check_health(
    host: str,
    port: int,
    token: str,
    timeout: float,
) -> Mapping[str, Any]:
    """Connect, authenticate and call ``health``; return its result mapping."""
    async with BridgeClient() as client:
        await client.connect(host, port, token, timeout)
        response = await client.request("health", {}, timeout)
    if not response.ok:
        raise BridgeClientError(f"health failed: {response.error!r}", kind="protocol")
    return response.result if isinstance(response.result, Mapping) else {}


__all__ = [
    "BridgeClient",
    "BridgeClientError",
    "BridgeResponse",
    "FailureKind",
    "check_health",
    "classify_connect_error",
    "combine_connect_errors",
]
