"""Tool registration for rechnung."""
from __future__ import annotations

import logging

from mcp.server.fastmcp import FastMCP

from rechnung.backends import automations, cancellation, einvoice, generation

_LOGGER = logging.getLogger("rechnung.api.tools")

BACKENDS = (generation, cancellation, automations, einvoice)


def register_tools(server: FastMCP) -> list[str]:
    """Register built-in backends on the MCP server."""

    loaded: list[str] = []
    for module in BACKENDS:
        try:
            module.register(server)
        except Exception:  # pragma: no cover
            _LOGGER.exception("backend.import_error", extra={"module": module.__name__})
            continue
        loaded.append(module.__name__)
    return loaded


__all__ = ["BACKENDS", "register_tools"]
