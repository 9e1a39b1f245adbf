"""
Command-line entry point for BluFi provisioning.

Usage:
    python -m blufi wifi-list
    python -m blufi provision --ssid MyNetwork [--password secret]
    python -m blufi status --address AA:BB:CC:DD:EE:FF
    python -m blufi custom 48656c6c6f --reply
    python -m blufi -v status  # verbose mode
"""

import argparse
import asyncio
import getpass
import logging
import sys
from typing import Optional

from .client import SCAN_TIMEOUT, BluFiClient, ClientConfig, Result
from .errors import BluFiError
from .events import CustomData, DeviceInfo, WifiList

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="blufi", description="BluFi Wi-Fi provisioning client")
    parser.add_argument("--name", type=str, help="Advertised device name to connect to")
    parser.add_argument("--address", type=str, help="Device address (skips scanning by service)")
    parser.add_argument(
        "--timeout",
        type=float,
        default=SCAN_TIMEOUT,
        help=f"Scan timeout in seconds (default: {SCAN_TIMEOUT})",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("wifi-list", help="List access points seen by the device")
    commands.add_parser("status", help="Show the device's Wi-Fi connection status")

    provision = commands.add_parser("provision", help="Send station credentials")
    provision.add_argument("--ssid", type=str, required=True, help="Access point name")
    provision.add_argument("--password", type=str, help="Passphrase (prompted if omitted)")

    custom = commands.add_parser("custom", help="Send custom data")
    custom.add_argument("data", type=str, help="Payload in hex")
    custom.add_argument("--reply", action="store_true", help="Wait for the device's reply")
    return parser


def format_result(result: Result) -> list[str]:
    """Render the interesting part of a result as output lines."""
    event = result.event
    if isinstance(event, WifiList):
        lines = [f"{entry.rssi:>4} dBm  {entry.ssid}" for entry in sorted(event.entries, key=lambda e: -e.rssi)]
        if event.truncated:
            lines.append("(list truncated by a malformed entry)")
        return lines
    if isinstance(event, DeviceInfo):
        info = event.info
        lines = [
            f"Op mode:      {info.opmode}",
            f"STA state:    {'connected' if info.sta_connected else f'not connected ({info.sta_state})'}",
            f"SoftAP conns: {info.softap_connections}",
        ]
        if info.ssid is not None:
            lines.append(f"SSID:         {info.ssid}")
        if info.bssid is not None:
            lines.append(f"BSSID:        {info.bssid}")
        return lines
    return []


async def run(args: argparse.Namespace, password: Optional[str] = None) -> int:
    """
    Connect, run one command and disconnect.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    config = ClientConfig(name=args.name, address=args.address, scan_timeout=args.timeout)

    try:
        async with BluFiClient(config) as client:
            if args.command == "wifi-list":
                result = await client.scan_wifi()
            elif args.command == "status":
                result = await client.device_info()
            elif args.command == "provision":
                result = await client.provision(args.ssid, password or "")
            else:
                result = await client.send_custom(bytes.fromhex(args.data), expect_reply=args.reply)
    except BluFiError as e:
        logger.error(str(e))
        print(f"✗ {e}")
        return 1

    print()
    for line in format_result(result):
        print(line)
    if isinstance(result.event, CustomData):
        print(result.event.data.hex())
    print(f"{'✓' if result.success else '✗'} {result.message}")
    return 0 if result.success else 1


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    # Configure logging
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    password = None
    if args.command == "provision":
        password = args.password if args.password is not None else getpass.getpass("Password: ")
    if args.command == "custom":
        try:
            bytes.fromhex(args.data)
        except ValueError:
            logger.error(f"Invalid hex payload: {args.data}")
            return 1

    return asyncio.run(run(args, password))


if __name__ == "__main__":
    sys.exit(main())
