"""Run the supervisor as a persistent MCP daemon over HTTP.

It starts the MCP control server and bootstraps any services listed in
services.json (typically the backend server).

Usage:
    python -m backend_supervisor.process_manager [--port PORT] [--services FILE]

The GUI shell and CLI scripts talk to this daemon instead of spawning the
backend themselves, so one supervisor owns the backend's whole lifecycle.
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

import uvicorn

from backend_supervisor.config import Config
from backend_supervisor.port_config import PortChanger
from backend_supervisor.process_manager.ports import PortConflictResolver
from backend_supervisor.process_manager.server import create_server
from backend_supervisor.process_manager.supervisor import ProcessSupervisor

log = logging.getLogger(__name__)

DEFAULT_SERVICES = "services.json"


async def _run(config: Config, port: int, services_path: Path) -> None:
    supervisor = ProcessSupervisor(config)
    resolver = PortConflictResolver(
        config.managed_patterns,
        inspector=supervisor.inspector,
        settle_delay=config.settle_delay,
    )
    changer = PortChanger(config.project_root, resolver, supervisor=supervisor)
    server = create_server(supervisor=supervisor, port=port, port_changer=changer)

    # Bootstrap configured services
    await supervisor.bootstrap(services_path)

    # Run uvicorn in the same event loop so the supervisor's async
    # tasks (control loops, stream readers, exit waiters) stay alive.
    app = server.streamable_http_app()
    uvi_config = uvicorn.Config(
        app, host="127.0.0.1", port=port, log_level=config.log_level.lower(),
    )
    uvi = uvicorn.Server(uvi_config)

    # Use _serve() instead of serve() to bypass uvicorn's
    # capture_signals() context manager which overrides signal
    # handlers with signal.signal(), which would prevent our async
    # handlers from working.
    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    if sys.platform != "win32":
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, shutdown.set)

    serve_task = asyncio.create_task(uvi._serve())

    # Block until a signal arrives
    try:
        await shutdown.wait()
    finally:
        log.info("Shutting down")

        # Tell uvicorn to stop, then clean up child processes
        uvi.should_exit = True
        await serve_task
        log.info("Stopping all managed processes")
        await supervisor.close()


def main() -> None:
    config = Config.from_env()

    parser = argparse.ArgumentParser(description="Backend supervisor MCP daemon")
    parser.add_argument(
        "--port", type=int, default=config.control_port,
        help=f"Port to listen on (default: {config.control_port})",
    )
    parser.add_argument(
        "--services", type=Path,
        default=Path(config.resolve_path(config.services_file or DEFAULT_SERVICES)),
        help="Services config file (default: services.json in the project root)",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s [supervisor] %(levelname)s %(name)s: %(message)s",
    )

    log.info("Starting backend-supervisor on http://127.0.0.1:%d/mcp", args.port)
    try:
        asyncio.run(_run(config, args.port, args.services))
    except KeyboardInterrupt:
        # Windows has no loop signal handlers; Ctrl+C lands here after
        # _run's cleanup has run.
        log.info("Interrupted")


if __name__ == "__main__":
    main()
