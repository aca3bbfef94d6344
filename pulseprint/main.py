import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional, Tuple

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from pulseprint import __version__
from pulseprint.core.config import settings
from pulseprint.core.exceptions import ReconnectLimitExceeded, RegistryError
from pulseprint.schemas.connection import DEFAULT_MQTT_PORT, ConnectionParams, EngineConfig
from pulseprint.services.display import StatusRenderer
from pulseprint.services.registry import AppConfig, PrinterConfig
from pulseprint.services.subscription_engine import SubscriptionEngine

logger = logging.getLogger("PulsePrint")

DIRECT_FLAGS = ("ip", "device_id", "access_code")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pulseprint",
        description="PulsePrint-CLI: A tool for monitoring Bambu Labs printers via MQTT",
    )
    parser.add_argument("--version", action="version", version=f"pulseprint-cli {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--config", type=Path, default=None, help="Printer registry file (default: per-user config dir)")
    sub = parser.add_subparsers(dest="cmd", required=True)

    # monitor
    pm = sub.add_parser("monitor", help="Monitor a Bambu Labs printer via MQTT",
                        description="Monitor a Bambu Labs printer via MQTT")
    pm.add_argument("-p", "--printer", help="Registered printer name (default printer if omitted)")
    pm.add_argument("--ip", help="Printer IP address or hostname")
    pm.add_argument("--device-id", help="Printer serial / device ID")
    pm.add_argument("--access-code", help="LAN access code")
    pm.add_argument("--port", type=int, default=None, help=f"MQTT port (default {DEFAULT_MQTT_PORT})")
    pm.add_argument("--no-tls", action="store_true", help="Connect without TLS")
    pm.add_argument("--max-reconnect-attempts", type=int, default=None,
                    help="Give up after this many reconnect attempts (default: retry forever)")

    # printer registry
    pp = sub.add_parser("printer", help="Manage registered printers")
    psub = pp.add_subparsers(dest="printer_cmd", required=True)

    padd = psub.add_parser("add", help="Register a printer")
    padd.add_argument("name")
    padd.add_argument("--ip", required=True)
    padd.add_argument("--device-id", required=True)
    padd.add_argument("--access-code", required=True)
    padd.add_argument("--port", type=int, default=DEFAULT_MQTT_PORT)
    padd.add_argument("--no-tls", action="store_true")
    padd.add_argument("--model", default=None)

    prm = psub.add_parser("remove", help="Remove a registered printer")
    prm.add_argument("name")

    psub.add_parser("list", help="List registered printers")

    pdef = psub.add_parser("default", help="Set the default printer")
    pdef.add_argument("name")

    return parser


def resolve_connection(
    args: argparse.Namespace, app_config: AppConfig, parser: argparse.ArgumentParser
) -> Tuple[ConnectionParams, EngineConfig]:
    """
    Connection parameters from, in order: --printer, the direct flags, the
    default registered printer. Errors out through argparse when none apply.
    """
    engine_config = app_config.engine
    if args.max_reconnect_attempts is not None:
        engine_config = engine_config.model_copy(update={"max_reconnect_attempts": args.max_reconnect_attempts})

    if args.printer:
        return app_config.get_printer(args.printer).connection_params(), engine_config

    given = [flag for flag in DIRECT_FLAGS if getattr(args, flag)]
    if given:
        missing = [f"--{flag.replace('_', '-')}" for flag in DIRECT_FLAGS if flag not in given]
        if missing:
            parser.error(f"the following required arguments were not provided: {', '.join(missing)}")
        params = ConnectionParams(
            host=args.ip,
            device_id=args.device_id,
            access_code=args.access_code,
            port=args.port or DEFAULT_MQTT_PORT,
            tls_required=not args.no_tls,
        )
        return params, engine_config

    if app_config.default_printer is None:
        parser.error(
            "the following required arguments were not provided: "
            "--printer or --ip, --device-id, --access-code (no default printer configured)"
        )
    return app_config.get_default_printer().connection_params(), engine_config


async def monitor(params: ConnectionParams, config: EngineConfig, console: Console) -> int:
    renderer = StatusRenderer(params.device_id, console)
    engine = SubscriptionEngine(params, config, on_session_change=renderer.render_session)
    # Staleness changes without new reports arriving
    refresher = asyncio.create_task(renderer.refresh(engine.snapshot, config.staleness_window / 2))
    try:
        await engine.run(on_state_change=renderer.render_state)
    except ReconnectLimitExceeded as e:
        console.print(f"[bold red]❌ Monitoring stopped: {escape(str(e))}[/bold red]")
        return 1
    finally:
        refresher.cancel()
        await asyncio.gather(refresher, return_exceptions=True)
    return 0


def cmd_monitor(args: argparse.Namespace, app_config: AppConfig, parser: argparse.ArgumentParser, console: Console) -> int:
    params, engine_config = resolve_connection(args, app_config, parser)
    console.print(f"Connecting to printer at {escape(params.host)}:{params.port} with device ID {escape(params.device_id)}")
    console.print("📡 Monitoring printer status - Press Ctrl+C to stop...")

    # aiomqtt needs add_reader/add_writer, which the Windows Proactor loop lacks.
    # Must happen BEFORE asyncio.run creates the loop.
    if sys.platform.startswith("win"):
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

    try:
        return asyncio.run(monitor(params, engine_config, console))
    except KeyboardInterrupt:
        console.print("👋 Stopped monitoring.")
        return 0


def cmd_printer(args: argparse.Namespace, app_config: AppConfig, config_path: Path, console: Console) -> int:
    if args.printer_cmd == "add":
        printer = PrinterConfig(
            name=args.name,
            ip=args.ip,
            device_id=args.device_id,
            access_code=args.access_code,
            port=args.port,
            use_tls=not args.no_tls,
            model=args.model,
        )
        app_config.add_printer(args.name, printer)
        app_config.save(config_path)
        console.print(f"[green]✓ Added printer '{escape(args.name)}' ({printer.mqtt_url()})[/green]")
        return 0

    if args.printer_cmd == "remove":
        app_config.remove_printer(args.name)
        app_config.save(config_path)
        console.print(f"[green]✓ Removed printer '{escape(args.name)}'[/green]")
        return 0

    if args.printer_cmd == "default":
        app_config.set_default_printer(args.name)
        app_config.save(config_path)
        console.print(f"[green]✓ Default printer is now '{escape(args.name)}'[/green]")
        return 0

    if args.printer_cmd == "list":
        printers = app_config.list_printers()
        if not printers:
            console.print("No printers configured. Add one with: pulseprint printer add NAME --ip ... --device-id ... --access-code ...")
            return 0
        table = Table(title="Registered printers")
        table.add_column("Default")
        table.add_column("Name", style="cyan")
        table.add_column("Address")
        table.add_column("Device ID")
        table.add_column("Model")
        for name, printer in printers:
            marker = "★" if name == app_config.default_printer else ""
            table.add_row(marker, escape(name), printer.mqtt_url(), escape(printer.device_id), escape(printer.model or "-"))
        console.print(table)
        return 0

    return 2


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else settings.LOG_LEVEL,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    console = Console()
    config_path = args.config or settings.REGISTRY_PATH
    try:
        app_config = AppConfig.load(config_path)
        if args.cmd == "monitor":
            return cmd_monitor(args, app_config, parser, console)
        if args.cmd == "printer":
            return cmd_printer(args, app_config, config_path, console)
    except RegistryError as e:
        console.print(f"[bold red]ERROR:[/bold red] {escape(str(e))}")
        return 1
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
