"""Clients for the dispatcher subprocess and the editor bridge."""

from __future__ import annotations

from .bridge_client import BridgeClient, BridgeClientError, BridgeResponse, check_health
from .process_client import JsonRpcProcessClient, JsonRpcProcessError, ToolResponse, spawn_dispatcher

__all__ = [
    "BridgeClient",
    "BridgeClientError",
    "BridgeResponse",
    "JsonRpcProcessClient",
    "JsonRpcProcessError",
    "ToolResponse",
    "check_health",
    "spawn_dispatcher",
]
