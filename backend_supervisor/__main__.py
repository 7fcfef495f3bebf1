"""Command-line entry point.

    python -m backend_supervisor dev [PORT] [--server-only | --client-only]
    python -m backend_supervisor change-port PORT [--strict]
    python -m backend_supervisor current-port

Exit codes: 0 success, 1 startup failure, 2 invalid input,
3 port still occupied (``--strict`` only).
"""

import argparse
import asyncio
import logging
import sys

from .config import Config
from .dev import DevEnvironment
from .errors import PortConflictError, ValidationError
from .port_config import PortChanger
from .process_manager.ports import PortConflictResolver

log = logging.getLogger("backend_supervisor")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INVALID = 2
EXIT_PORT_CONFLICT = 3


def _port_changer(config: Config) -> PortChanger:
    resolver = PortConflictResolver(config.managed_patterns, settle_delay=config.settle_delay)
    return PortChanger(config.project_root, resolver)


async def _change_port(config: Config, port: str, strict: bool) -> int:
    changer = _port_changer(config)
    try:
        summary = await changer.change_port(port, strict=strict)
    except ValidationError as exc:
        log.error("%s", exc)
        return EXIT_INVALID
    except PortConflictError as exc:
        log.error("%s", exc)
        return EXIT_PORT_CONFLICT
    except OSError as exc:
        log.error("Port change failed, configuration left unchanged: %s", exc)
        return EXIT_FAILURE

    print(summary.message)
    if summary.backup_dir:
        print(f"Backup: {summary.backup_dir}")
    for warning in summary.warnings:
        print(f"warning: {warning}")
    if not summary.changed:
        return EXIT_OK
    for label, port_no, occupants in (
        ("old", summary.old_port, summary.old_port_occupants),
        ("new", summary.new_port, summary.new_port_occupants),
    ):
        state = f"{len(occupants)} process(es) still listening" if occupants else "free"
        print(f"{label} port {port_no}: {state}")
    return EXIT_OK


async def _dev(config: Config, args: argparse.Namespace) -> int:
    only: list[str] = list(args.only or [])
    if args.server_only:
        only.append("server")
    if args.client_only:
        only.append("client")

    env = DevEnvironment(config)
    return await env.run(only or None, port=args.port, interactive=not args.no_console)


def main() -> None:
    config = Config.from_env()

    parser = argparse.ArgumentParser(
        prog="backend-supervisor",
        description="Run and supervise the backend server during development",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    dev = sub.add_parser("dev", help="Start the development environment")
    dev.add_argument("port", nargs="?", help="Switch to this port before starting")
    group = dev.add_mutually_exclusive_group()
    group.add_argument("--server-only", action="store_true", help="Only start the server")
    group.add_argument("--client-only", action="store_true", help="Only start the client")
    dev.add_argument("--only", action="append", metavar="NAME",
                     help="Only start the named service (repeatable)")
    dev.add_argument("--no-console", action="store_true",
                     help="Do not read commands from stdin")

    change = sub.add_parser("change-port", help="Move the backend to another port")
    change.add_argument("port", help="New port (1024-65535)")
    change.add_argument("--strict", action="store_true",
                        help="Fail without changing anything if the new port stays occupied")

    sub.add_parser("current-port", help="Print the configured backend port")

    args = parser.parse_args()

    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )

    if args.command == "current-port":
        print(_port_changer(config).current_port())
        sys.exit(EXIT_OK)

    if args.command == "change-port":
        sys.exit(asyncio.run(_change_port(config, args.port, args.strict)))

    try:
        sys.exit(asyncio.run(_dev(config, args)))
    except KeyboardInterrupt:
        sys.exit(EXIT_OK)


if __name__ == "__main__":
    main()
