"""Development environment: the backend server plus the desktop client.

Starts the server, waits for its health check, then starts the client.
While running it restarts the server when its sources change, accepts
console commands, and shuts everything down when the client exits normally
or on Ctrl+C.  On shutdown the server port is swept of leftover development
processes.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import signal
import sys
from collections.abc import Sequence
from pathlib import Path

from backend_supervisor.config import Config
from backend_supervisor.console import DevConsole
from backend_supervisor.errors import (
    MissingDependencyError,
    StartupTimeoutError,
    SupervisorError,
    ValidationError,
)
from backend_supervisor.models import LaunchSpec
from backend_supervisor.port_config import PortChanger, validate_port
from backend_supervisor.process_manager.ports import PortConflictResolver
from backend_supervisor.process_manager.supervisor import (
    ManagedProcess,
    ProcessSupervisor,
    load_services,
)
from backend_supervisor.watcher import FileWatcher

log = logging.getLogger(__name__)

DEV_ENV = {"NODE_ENV": "development", "APP_MODE": "development"}

DEV_CONFIG = "config/development.json"
SERVER_CONFIG = "server/config.json"
# server/config.json is overwritten from the development config on start
DEV_PORT_SOURCES = (DEV_CONFIG, SERVER_CONFIG)


def default_services(port: int) -> list[LaunchSpec]:
    """The Go backend and the Electron client of a standard checkout."""
    npm = "npm.cmd" if sys.platform == "win32" else "npm"
    return [
        LaunchSpec(
            name="server",
            command="go",
            args=["run", "main.go"],
            cwd="server",
            env={"APP_PORT": str(port)},
            port=port,
            health_path="/health",
            watch=["*.go"],
            requires=["go"],
        ),
        LaunchSpec(
            name="client",
            command=npm,
            args=["run", "electron-dev"],
            ready_pattern=r"\bready\b",
            restart_delay=2.0,
            shutdown_on_clean_exit=True,
            requires=["node"],
        ),
    ]


class DevEnvironment:
    def __init__(
        self,
        config: Config,
        *,
        supervisor: ProcessSupervisor | None = None,
        resolver: PortConflictResolver | None = None,
        services: list[LaunchSpec] | None = None,
    ) -> None:
        self.config = config
        self.supervisor = supervisor or ProcessSupervisor(config)
        self.supervisor.on_exit = self._on_exit
        self.resolver = resolver or PortConflictResolver(
            config.managed_patterns,
            inspector=self.supervisor.inspector,
            settle_delay=config.settle_delay,
        )
        self.port_changer = PortChanger(
            config.project_root, self.resolver, supervisor=self.supervisor,
        )
        self._services = services
        self._shutdown_requested = asyncio.Event()
        self._shutting_down = False
        self._watchers: list[FileWatcher] = []
        self._console: DevConsole | None = None

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def services(self) -> list[LaunchSpec]:
        """Services from the configured file, else the standard pair."""
        if self._services is None:
            path = Path(self.config.resolve_path(self.config.services_file or "services.json"))
            if path.exists():
                log.info("Loading services from %s", path)
                self._services = load_services(path)
            else:
                self._services = default_services(
                    self.port_changer.current_port(DEV_PORT_SOURCES)
                )
        return self._services

    def select(self, only: Sequence[str] | None = None) -> list[LaunchSpec]:
        specs = self.services()
        if not only:
            return list(specs)
        known = {spec.name for spec in specs}
        unknown = [name for name in only if name not in known]
        if unknown:
            raise ValidationError(
                f"Unknown service(s): {', '.join(unknown)} (known: {', '.join(sorted(known))})"
            )
        return [spec for spec in specs if spec.name in only]

    def check_dependencies(self, specs: Sequence[LaunchSpec]) -> None:
        log.info("Checking development dependencies")
        for spec in specs:
            for executable in spec.requires:
                if shutil.which(executable) is None:
                    raise MissingDependencyError(executable)
                log.info("Found %s", executable)

    def setup_environment(self) -> None:
        """Install the development config for the server, if one exists."""
        source = self.config.root / DEV_CONFIG
        if not source.exists():
            return
        dest = self.config.root / SERVER_CONFIG
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, dest)
        log.info("Installed %s as %s", DEV_CONFIG, SERVER_CONFIG)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(
        self, only: Sequence[str] | None = None, *, port: int | str | None = None
    ) -> None:
        """Start the selected services, moving the backend to ``port`` first."""
        if port is not None:
            port = validate_port(port)
        specs = self.select(only)
        self.check_dependencies(specs)
        self.setup_environment()

        for spec in specs:
            spec.env = {**DEV_ENV, **spec.env}
            self.supervisor.register(spec)
        if port is not None:
            await self._switch_port(port)

        for spec in specs:
            try:
                await self.supervisor.start(spec.name)
            except StartupTimeoutError as exc:
                # The process is up, just unverified; carry on like the
                # client would.
                log.warning("%s; continuing", exc)

        for spec in specs:
            if spec.port is not None:
                log.info("%s: http://localhost:%d", spec.name, spec.port)
        self._start_watchers(specs)

    async def run(
        self,
        only: Sequence[str] | None = None,
        *,
        port: int | str | None = None,
        interactive: bool = True,
    ) -> int:
        """Start, then block until shutdown is requested.  Returns an exit code."""
        loop = asyncio.get_running_loop()
        if sys.platform != "win32":
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, self.request_shutdown)

        try:
            await self.start(only, port=port)
        except ValidationError as exc:
            log.error("%s", exc)
            await self.shutdown()
            return 2
        except SupervisorError as exc:
            log.error("Startup failed: %s", exc)
            await self.shutdown()
            return 1

        log.info("Development environment is up; press Ctrl+C to stop")
        if interactive and sys.stdin.isatty():
            self._console = DevConsole(self.restart, self.describe, self.request_shutdown)
            self._console.start()

        try:
            await self._shutdown_requested.wait()
        finally:
            await self.shutdown()
        return 0

    def request_shutdown(self) -> None:
        self._shutdown_requested.set()

    async def restart(self, name: str) -> None:
        log.info("Restarting '%s'", name)
        try:
            await self.supervisor.restart(name)
        except StartupTimeoutError as exc:
            log.warning("%s", exc)
        except SupervisorError as exc:
            log.error("Restart of '%s' failed: %s", name, exc)

    def describe(self) -> str:
        lines = []
        for info in self.supervisor.list_all():
            pid = info["pid"] if info["pid"] is not None else "-"
            line = (f"{info['name']:<10} {info['state']:<10} pid={pid} "
                    f"restarts={info['restart_count']}")
            if info["fault"]:
                line += f"  ! {info['fault']}"
            lines.append(line)
        return "\n".join(lines) or "No processes"

    async def shutdown(self) -> None:
        if self._shutting_down:
            return
        self._shutting_down = True
        log.info("Shutting down the development environment")

        if self._console is not None:
            self._console.stop()
        for watcher in self._watchers:
            watcher.stop()
        self._watchers = []

        await self.supervisor.stop_all()

        ports = sorted({
            spec.port for spec in (self._services or []) if spec.port is not None
        })
        for port in ports:
            report = await self.resolver.resolve(port)
            if not report.free:
                log.warning("Port %d is still occupied after shutdown", port)

        await self.supervisor.close()
        log.info("Development environment stopped")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _on_exit(self, managed: ManagedProcess, code: int | None) -> None:
        if code == 0 and managed.spec.shutdown_on_clean_exit:
            log.info("'%s' exited normally; closing the development environment",
                     managed.name)
            self.request_shutdown()

    def _start_watchers(self, specs: Sequence[LaunchSpec]) -> None:
        for spec in specs:
            if not spec.watch:
                continue
            directory = Path(self.config.resolve_path(spec.cwd))
            if not directory.is_dir():
                log.warning("Cannot watch %s for '%s': not a directory", directory, spec.name)
                continue
            watcher = FileWatcher(
                spec.name, directory, spec.watch,
                lambda name=spec.name: self.restart(name),
            )
            watcher.start()
            self._watchers.append(watcher)

    async def _switch_port(self, port: int) -> None:
        # Registered specs are retargeted by the changer along with the files;
        # a failed rewrite leaves everything on the current port.
        try:
            summary = await self.port_changer.change_port(port)
        except OSError as exc:
            log.warning("Port change failed; starting with the current configuration: %s",
                        exc)
            return
        for warning in summary.warnings:
            log.warning("%s", warning)
