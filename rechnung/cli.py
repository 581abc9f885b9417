"""Command line entry: serve MCP/HTTP or run one automation batch."""
from __future__ import annotations

import argparse
import json
import logging
import socket
import threading
from typing import Any, Callable, Dict

import uvicorn
from starlette.applications import Starlette

from rechnung.backends.errors import BillingError
from rechnung.utils import config
from rechnung.utils.logging import configure_root

StartSSE = Callable[[str, int], None]
RunStdIO = Callable[[], None]
AppFactory = Callable[[], Starlette]
ServeHTTP = Callable[[Starlette, str, int], None]
RunAutomations = Callable[[str | None], Dict[str, Any]]


def build_parser() -> argparse.ArgumentParser:
    """Create an argument parser for the runtime."""

    parser = argparse.ArgumentParser(description="rechnung billing server")
    parser.add_argument(
        "--transport",
        type=str,
        default="sse",
        choices=["stdio", "sse", "http"],
        help="stdio: MCP over stdio; sse: MCP SSE plus HTTP API; http: HTTP API only (default: sse)",
    )
    parser.add_argument(
        "--host",
        type=str,
        default="127.0.0.1",
        help="Host for the HTTP API",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8081,
        help="Port for the HTTP API",
    )
    parser.add_argument(
        "--mcp-port",
        type=int,
        default=8099,
        help="Port for the MCP SSE server (sse transport only)",
    )
    parser.add_argument(
        "--run-automations",
        action="store_true",
        help="Run one batch of due invoice automations, print the summary and exit",
    )
    parser.add_argument(
        "--token",
        type=str,
        default=None,
        help="Runner token for --run-automations (default: INVOICE_AUTOMATION_SECRET)",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser


def serve_http(app: Starlette, host: str, port: int) -> None:
    uvicorn.run(app, host=host, port=int(port))


def run(
    args: argparse.Namespace,
    *,
    logger: logging.Logger,
    start_sse: StartSSE,
    run_stdio: RunStdIO,
    app_factory: AppFactory,
    serve: ServeHTTP = serve_http,
    run_automations: RunAutomations | None = None,
) -> int:
    """Execute the CLI behaviour; returns the process exit code."""

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.setLevel(logging.DEBUG)

    if args.run_automations:
        if run_automations is None:
            from rechnung.backends.automations import run_due_automations_impl

            run_automations = run_due_automations_impl
        token = args.token or config.automation_secret()
        try:
            summary = run_automations(token)
        except BillingError as exc:
            logger.error("Automation run failed: %s (%s)", exc.message, exc.reason)
            print(json.dumps(exc.to_payload()))
            return 1
        print(json.dumps(summary))
        return 0

    logger.info(
        "Starting rechnung (transport=%s, http=%s:%s, writes=%s)",
        args.transport,
        args.host,
        args.port,
        "enabled" if config.writes_enabled() else "disabled",
    )

    def _validate_port(value: int, *, flag: str) -> None:
        if value <= 0 or value > 65535:
            logger.error("Invalid %s: %s (must be between 1 and 65535)", flag, value)
            raise SystemExit(2)

    def _check_port_available(host: str, port: int, *, label: str, flag: str) -> None:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                sock.bind((host, port))
            except OSError as exc:  # pragma: no cover - depends on local env
                logger.error(
                    "%s port %s is unavailable on %s: %s. Use %s to pick a free port.",
                    label,
                    port,
                    host,
                    exc.strerror or exc,
                    flag,
                )
                raise SystemExit(1)

    if args.transport == "stdio":
        logger.debug("Transport: stdio")
        run_stdio()
        return 0

    _validate_port(args.port, flag="--port")
    if not config.writes_enabled():
        logger.warning("Write-capable tools disabled (set MCP_ENABLE_WRITES=1 to enable writes).")

    if args.transport == "sse":
        _validate_port(args.mcp_port, flag="--mcp-port")
        if args.mcp_port == args.port:
            logger.error(
                "HTTP port conflicts with MCP SSE port (%s). Use --mcp-port to separate them.",
                args.port,
            )
            raise SystemExit(2)
        _check_port_available(args.host, args.mcp_port, label="MCP SSE", flag="--mcp-port")
        _check_port_available(args.host, args.port, label="HTTP API", flag="--port")
        logger.debug("MCP SSE server listening on http://%s:%s", args.host, args.mcp_port)
        thread = threading.Thread(target=start_sse, args=(args.host, args.mcp_port), daemon=True)
        thread.start()
    else:
        _check_port_available(args.host, args.port, label="HTTP API", flag="--port")

    logger.debug("HTTP API on http://%s:%s", args.host, args.port)
    try:
        serve(app_factory(), args.host, args.port)
    except OSError as exc:  # pragma: no cover - depends on local env
        logger.error(
            "Failed to start HTTP API on %s:%s: %s", args.host, args.port, exc.strerror or exc
        )
        raise SystemExit(1)
    return 0


def main(argv: list[str] | None = None) -> int:
    configure_root()
    args = build_parser().parse_args(argv)
    logger = logging.getLogger("rechnung.cli")

    from rechnung.app import MCP_SERVER, build_api_app

    def _start_sse(host: str, port: int) -> None:
        MCP_SERVER.settings.host = host
        MCP_SERVER.settings.port = int(port)
        MCP_SERVER.run(transport="sse")

    def _run_stdio() -> None:
        MCP_SERVER.run()

    return run(
        args,
        logger=logger,
        start_sse=_start_sse,
        run_stdio=_run_stdio,
        app_factory=lambda: build_api_app(debug=args.debug),
    )


__all__ = ["build_parser", "main", "run", "serve_http"]
