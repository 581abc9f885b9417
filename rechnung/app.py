"""MCP server instance and HTTP application factory."""
from __future__ import annotations

from mcp.server.fastmcp import FastMCP
from starlette.applications import Starlette

from rechnung.api import make_routes, register_tools
from rechnung.backends.storage import ensure_structure

MCP_SERVER = FastMCP("rechnung")
LOADED_BACKENDS = register_tools(MCP_SERVER)


def build_api_app(*, debug: bool = False) -> Starlette:
    """Starlette app serving the HTTP routes."""

    ensure_structure()
    return Starlette(debug=debug, routes=make_routes())


__all__ = ["LOADED_BACKENDS", "MCP_SERVER", "build_api_app"]
