"""
Command-line interface for serialsession.

This module provides the `serialsession` CLI tool:

    serialsession ports                       # List serial ports
    serialsession monitor COM3 -b 115200      # Print data received on COM3
    serialsession serve --port 9877           # Run the gateway daemon
    serialsession force-close COM3            # Reclaim a port left open
    serialsession close-all                   # Close every open port
"""

import argparse
import asyncio
import sys
from dataclasses import dataclass
from typing import Optional

from rich.console import Console
from rich.table import Table

from serialsession.errors import SerialportError
from serialsession.gateway import LocalSerialGateway, TransportGateway, WebSocketGateway, get_default_gateway
from serialsession.gateway.server import GatewayServer
from serialsession.logging_setup import setup_logging
from serialsession.options import DEFAULT_ENCODING, DEFAULT_READ_SIZE, DEFAULT_TIMEOUT_MS, get_server_host, get_server_port
from serialsession.session import Serialport, available_ports, close_all, force_close


@dataclass
class MonitorArgs:
    """Arguments for the monitor command."""

    path: str
    baud: int = 115200
    timeout: int = DEFAULT_TIMEOUT_MS
    size: int = DEFAULT_READ_SIZE
    encoding: str = DEFAULT_ENCODING
    raw: bool = False
    duration: Optional[float] = None
    gateway_url: Optional[str] = None


@dataclass
class ServeArgs:
    """Arguments for the serve command."""

    host: str
    port: int


def _make_gateway(url: Optional[str]) -> TransportGateway:
    if url:
        return WebSocketGateway(url)
    return get_default_gateway()


async def _release_gateway(gateway: TransportGateway) -> None:
    if isinstance(gateway, WebSocketGateway):
        await gateway.disconnect()


async def ports_command(gateway_url: Optional[str] = None, console: Optional[Console] = None) -> int:
    """List available serial ports."""
    console = console or Console()
    gateway = _make_gateway(gateway_url)
    try:
        ports = await available_ports(gateway)
    finally:
        await _release_gateway(gateway)

    if not ports:
        console.print("No serial ports found")
        return 0

    table = Table(show_edge=False)
    table.add_column("Port", style="bold", no_wrap=True)
    table.add_column("Type", no_wrap=True)
    table.add_column("VID:PID", no_wrap=True)
    table.add_column("Manufacturer")
    table.add_column("Product")
    table.add_column("Serial")
    for port in ports:
        vid_pid = f"{port.vid}:{port.pid}" if port.vid else "-"
        table.add_row(port.port_name, port.port_type, vid_pid, port.manufacturer or "-", port.product or "-", port.serial_number or "-")
    console.print(table)
    return 0


async def monitor_command(args: MonitorArgs) -> int:
    """Print data received on a port until interrupted or duration elapses."""
    gateway = _make_gateway(args.gateway_url)
    port = Serialport(
        path=args.path,
        baud_rate=args.baud,
        encoding=args.encoding,
        timeout=args.timeout,
        size=args.size,
        gateway=gateway,
    )

    def show(value: str | bytes) -> None:
        if isinstance(value, bytes):
            print(value.hex(" "))
        else:
            sys.stdout.write(value)
            sys.stdout.flush()

    print(f"Opening serial port {args.path} at {args.baud} baud...")
    try:
        await port.open()
        print("--- Serial Monitor (Ctrl+C to exit) ---")
        await port.listen(show, decode=not args.raw)
        await port.read()
        if args.duration is not None:
            await asyncio.sleep(args.duration)
        else:
            await asyncio.Event().wait()
    finally:
        await port.close()
        await _release_gateway(gateway)
    return 0


async def force_close_command(path: str, gateway_url: Optional[str] = None) -> int:
    gateway = _make_gateway(gateway_url)
    try:
        await force_close(path, gateway)
    finally:
        await _release_gateway(gateway)
    print(f"Closed {path}")
    return 0


async def close_all_command(gateway_url: Optional[str] = None) -> int:
    gateway = _make_gateway(gateway_url)
    try:
        await close_all(gateway)
    finally:
        await _release_gateway(gateway)
    print("Closed all ports")
    return 0


async def serve_command(args: ServeArgs) -> int:
    """Run the gateway daemon around a local pyserial gateway."""
    server = GatewayServer(LocalSerialGateway(), host=args.host, port=args.port)
    await server.start()
    print(f"serialsession gateway listening on {server.url}")
    try:
        await server.serve_forever()
    finally:
        await server.stop()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="serialsession",
        description="Serial port sessions over a local or remote gateway",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    ports_parser = subparsers.add_parser("ports", help="List available serial ports")
    ports_parser.add_argument("--gateway", dest="gateway_url", help="Remote gateway URL (ws://host:port)")

    monitor_parser = subparsers.add_parser("monitor", help="Print data received on a serial port")
    monitor_parser.add_argument("path", help="Serial port path (e.g., COM3, /dev/ttyUSB0)")
    monitor_parser.add_argument("-b", "--baud", type=int, default=115200, help="Baud rate (default: 115200)")
    monitor_parser.add_argument("-t", "--timeout", type=int, default=DEFAULT_TIMEOUT_MS, help="Read timeout in milliseconds")
    monitor_parser.add_argument("-s", "--size", type=int, default=DEFAULT_READ_SIZE, help="Read size in bytes")
    monitor_parser.add_argument("-e", "--encoding", default=DEFAULT_ENCODING, help="Text encoding (default: utf-8)")
    monitor_parser.add_argument("--raw", action="store_true", help="Print bytes as hex instead of decoding")
    monitor_parser.add_argument("--duration", type=float, help="Stop after this many seconds")
    monitor_parser.add_argument("--gateway", dest="gateway_url", help="Remote gateway URL (ws://host:port)")

    serve_parser = subparsers.add_parser("serve", help="Run the gateway daemon")
    serve_parser.add_argument("--host", default=None, help="Listen host (default: $SERIALSESSION_HOST or 127.0.0.1)")
    serve_parser.add_argument("--port", type=int, default=None, help="Listen port (default: $SERIALSESSION_PORT or 9877)")

    force_parser = subparsers.add_parser("force-close", help="Close a port regardless of owner")
    force_parser.add_argument("path", help="Serial port path")
    force_parser.add_argument("--gateway", dest="gateway_url", help="Remote gateway URL (ws://host:port)")

    close_all_parser = subparsers.add_parser("close-all", help="Close every open port")
    close_all_parser.add_argument("--gateway", dest="gateway_url", help="Remote gateway URL (ws://host:port)")

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point for the serialsession CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(verbose=args.verbose)

    try:
        if args.command == "ports":
            return asyncio.run(ports_command(args.gateway_url))
        if args.command == "monitor":
            monitor_args = MonitorArgs(
                path=args.path,
                baud=args.baud,
                timeout=args.timeout,
                size=args.size,
                encoding=args.encoding,
                raw=args.raw,
                duration=args.duration,
                gateway_url=args.gateway_url,
            )
            return asyncio.run(monitor_command(monitor_args))
        if args.command == "serve":
            serve_args = ServeArgs(
                host=args.host or get_server_host(),
                port=args.port if args.port is not None else get_server_port(),
            )
            return asyncio.run(serve_command(serve_args))
        if args.command == "force-close":
            return asyncio.run(force_close_command(args.path, args.gateway_url))
        if args.command == "close-all":
            return asyncio.run(close_all_command(args.gateway_url))
    except KeyboardInterrupt:
        print()
        print("--- Interrupted ---")
        return 130
    except SerialportError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    parser.error(f"Unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    sys.exit(main())
