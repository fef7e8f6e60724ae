"""
Toolhost · Entry Point.

Usage: toolhost
       toolhost --config /path/to/config.yaml
       toolhost --transport stdio
       toolhost --version
       python -m toolhost
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from pathlib import Path
from typing import Any

from toolhost import __version__


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Kommandozeilen-Argumente parsen."""
    parser = argparse.ArgumentParser(
        prog="toolhost",
        description="Toolhost · Tool server runtime with stdio and HTTP JSON-RPC transports",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"Toolhost v{__version__}",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Pfad zur config.yaml (Default: nur Defaults + TOOLHOST_* Umgebung)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Log-Level überschreiben",
    )
    parser.add_argument(
        "--transport",
        choices=["stdio", "http", "both"],
        default=None,
        help="Aktive Transports (Default: aus der Konfiguration)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="HTTP-Port überschreiben",
    )
    return parser.parse_args(argv)


# ── Demo-Handler ─────────────────────────────────────────────────

ECHO_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {"message": {"type": "string"}},
    "required": ["message"],
}


async def echo(params: dict[str, Any]) -> dict[str, Any]:
    return {"echo": params["message"]}


def apply_cli_overrides(config: Any, args: argparse.Namespace) -> Any:
    """Übernimmt --transport und --port in eine Kopie der Konfiguration."""
    update: dict[str, Any] = {}
    if args.port is not None:
        update["port"] = args.port
    if args.transport is not None:
        update["enable_stdio"] = args.transport in ("stdio", "both")
        update["http"] = config.http.model_copy(
            update={"enabled": args.transport in ("http", "both")},
        )
        update["primary_transport"] = "stdio" if args.transport == "stdio" else "http"
    return config.model_copy(update=update) if update else config


def main(argv: list[str] | None = None) -> None:
    """Haupteintrittspunkt für Toolhost."""
    args = parse_args(argv)

    # 1. Konfiguration laden
    from toolhost.config import load_config
    from toolhost.core.errors import ToolhostError

    try:
        config = apply_cli_overrides(load_config(args.config), args)
    except ToolhostError as exc:
        print(f"toolhost: {exc.message}", file=sys.stderr)
        sys.exit(2)

    # 2. Logging initialisieren (immer stderr)
    from toolhost.utils.logging import get_logger, setup_logging

    log_level = args.log_level or config.logging.level
    setup_logging(
        level=log_level,
        log_dir=config.logging.log_dir,
        json_logs=config.logging.json_logs,
        console=config.logging.console,
    )
    log = get_logger("toolhost")
    log.info("toolhost_starting", version=__version__, log_level=log_level)

    async def run() -> None:
        from toolhost.mcp.server import McpServer
        from toolhost.models import HandlerRegistration, ToolCategory

        server = McpServer(config)
        server.register_handler(HandlerRegistration(
            name="echo",
            handler=echo,
            description="Gibt die Nachricht unverändert zurück",
            input_schema=ECHO_SCHEMA,
        ))

        async def health(params: dict[str, Any]) -> dict[str, Any]:
            report = await server.core.get_health()
            return report.to_dict()

        server.register_handler(HandlerRegistration(
            name="health",
            handler=health,
            description="Aktueller Health-Report des Servers",
            category=ToolCategory.UTILITY,
        ))

        stop_requested = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_requested.set)
            except NotImplementedError:
                log.debug("signal_handler_unsupported", signal=sig.name)

        await server.start()
        if not config.enable_stdio:
            _print_banner(server)

        stop_waiter = asyncio.create_task(stop_requested.wait())
        closed_waiter = asyncio.create_task(server.wait_closed())
        try:
            await asyncio.wait(
                {stop_waiter, closed_waiter}, return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            stop_waiter.cancel()
            closed_waiter.cancel()
            log.info("toolhost_shutting_down")
            await server.stop()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        log.info("toolhost_shutdown_by_user")
    except ToolhostError as exc:
        log.error("toolhost_failed", error=exc.message, code=exc.error_code)
        sys.exit(1)


def _print_banner(server: Any) -> None:
    """Startup-Banner auf stderr (stdout gehört dem stdio-Transport)."""
    status = server.get_status()
    out = sys.stderr
    print(f"\n{'=' * 60}", file=out)
    print(f"  TOOLHOST v{__version__} · {status['name']} {status['version']}", file=out)
    for name, url in status["endpoints"].items():
        print(f"  {name:<8} {url}", file=out)
    print(f"{'=' * 60}\n", file=out)


if __name__ == "__main__":
    main()
