"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import asyncio
import json
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import pytest

MINIMAL_PROJECT_GODOT = (
    "; Engine configuration file.\n"
    "config_version=5\n"
    "\n"
    "[application]\n"
    'config/name="Fixture"\n'
)


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


@pytest.fixture
def godot_project(tmp_path: Path) -> Path:
    """Return a fresh project directory holding only ``project.godot``."""
    root = tmp_path / "project"
    root.mkdir()
    (root / "project.godot").write_text(MINIMAL_PROJECT_GODOT, encoding="utf-8")
    return root


@pytest.fixture
def addon_source(tmp_path: Path) -> Path:
    """Return a bridge addon directory suitable for copying into projects."""
    source = tmp_path / "addon_src" / "godot_mcp_bridge"
    source.mkdir(parents=True)
    (source / "plugin.cfg").write_text(
        '[plugin]\nname="Godot MCP Bridge"\nscript="plugin.gd"\n', encoding="utf-8"
    )
    (source / "plugin.gd").write_text("@tool\nextends EditorPlugin\n", encoding="utf-8")
    return source


@asynccontextmanager
async def fake_bridge_server(
    *,
    token: str,
    project_root: str,
    reject_hello: bool = False,
) -> AsyncIterator[int]:
    """Serve the bridge line protocol on an ephemeral port and yield the port."""

    async def _handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                message = json.loads(line)
                if message.get("type") == "hello":
                    if reject_hello or message.get("token") != token:
                        reply: dict[str, Any] = {"type": "hello_error", "error": "bad token"}
                    else:
                        reply = {"type": "hello_ok", "capabilities": {"health": True}}
                elif message.get("method") == "health":
                    reply = {
                        "id": message["id"],
                        "ok": True,
                        "result": {"project_root": project_root},
                    }
                else:
                    reply = {"id": message.get("id"), "ok": False, "error": "unknown method"}
                writer.write((json.dumps(reply) + "\n").encode("utf-8"))
                await writer.drain()
        finally:
            writer.close()

    server = await asyncio.start_server(_handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    try:
        yield port
    finally:
        server.close()
        await server.wait_closed()
