"""Process supervisor: spawns, health-checks, restarts and stops named processes.

Every managed process has exactly one record and one control loop.  Operator
commands (start/stop) and monitor notifications (exit, health result, restart
timer) are all events on the record's queue, handled one at a time by that
loop, so an explicit stop can never interleave with a crash that is being
processed.  Each spawn attempt bumps the record's generation; events from an
older generation are dropped, which is how timers and health polls are
invalidated.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from backend_supervisor.config import Config
from backend_supervisor.errors import (
    CrashError,
    EarlyExitError,
    ShutdownTimeoutError,
    SpawnError,
    StartupError,
    StartupTimeoutError,
    UnknownProcessError,
)
from backend_supervisor.models import (
    EventType,
    LaunchSpec,
    ProcessState,
    SupervisorEvent,
)
from backend_supervisor.process_manager.health import HealthChecker
from backend_supervisor.process_manager.inspector import ProcessInspector, select_inspector

log = logging.getLogger(__name__)

ExitListener = Callable[["ManagedProcess", int | None], Awaitable[None]]


@dataclass
class RingBuffer:
    """Fixed-size ring buffer for process output, tracked by sequence number."""

    max_size: int = 100_000  # characters
    _buf: deque[str] = field(default_factory=deque)
    _total_chars: int = 0
    _seq: int = 0  # monotonic sequence counter (one per append)

    def append(self, data: str) -> None:
        self._buf.append(data)
        self._total_chars += len(data)
        self._seq += 1
        # Evict oldest chunks until we're within budget
        while self._total_chars > self.max_size and self._buf:
            evicted = self._buf.popleft()
            self._total_chars -= len(evicted)

    @property
    def seq(self) -> int:
        return self._seq

    def tail(self, num_chars: int = 2000) -> str:
        """Return the last `num_chars` characters of buffered output."""
        parts: list[str] = []
        remaining = num_chars
        for chunk in reversed(self._buf):
            if remaining <= 0:
                break
            if len(chunk) <= remaining:
                parts.append(chunk)
                remaining -= len(chunk)
            else:
                parts.append(chunk[-remaining:])
                remaining = 0
        parts.reverse()
        return "".join(parts)


@dataclass
class ManagedProcess:
    """State for a single managed process.  Only its control loop writes it."""

    spec: LaunchSpec
    state: ProcessState = ProcessState.STOPPED
    pid: int | None = None
    exit_code: int | None = None
    restart_count: int = 0
    healthy: bool = False
    fault: str | None = None
    generation: int = 0
    start_time: float | None = None
    stop_time: float | None = None
    stdout_buf: RingBuffer = field(default_factory=RingBuffer)
    stderr_buf: RingBuffer = field(default_factory=RingBuffer)
    _process: asyncio.subprocess.Process | None = field(default=None, repr=False)
    _auto_restart: bool = field(default=False, repr=False)
    _waiters: list[asyncio.Future[ManagedProcess]] = field(default_factory=list, repr=False)
    _reader_tasks: list[asyncio.Task[None]] = field(default_factory=list, repr=False)
    _health_task: asyncio.Task[None] | None = field(default=None, repr=False)
    _restart_task: asyncio.Task[None] | None = field(default=None, repr=False)
    _queue: asyncio.Queue[SupervisorEvent] | None = field(default=None, repr=False)
    _loop_task: asyncio.Task[None] | None = field(default=None, repr=False)

    @property
    def name(self) -> str:
        return self.spec.name

    def snapshot(self) -> dict[str, Any]:
        uptime = None
        if self.start_time is not None:
            if self.state in (ProcessState.RUNNING, ProcessState.STARTING):
                uptime = round(time.time() - self.start_time, 1)
            elif self.stop_time:
                uptime = round(self.stop_time - self.start_time, 1)
        return {
            "name": self.name,
            "command": self.spec.display_command,
            "cwd": self.spec.cwd,
            "port": self.spec.port,
            "pid": self.pid,
            "state": self.state.value,
            "healthy": self.healthy,
            "restart_count": self.restart_count,
            "fault": self.fault,
            "exit_code": self.exit_code,
            "uptime_seconds": uptime,
        }


class ProcessSupervisor:
    """Manages a registry of named, supervised processes."""

    def __init__(
        self,
        config: Config | None = None,
        *,
        inspector: ProcessInspector | None = None,
        health: HealthChecker | None = None,
        on_exit: ExitListener | None = None,
    ) -> None:
        self.config = config or Config()
        self.inspector = inspector or select_inspector()
        self.health = health or HealthChecker(request_timeout=self.config.health_interval)
        self.on_exit = on_exit
        self._processes: dict[str, ManagedProcess] = {}

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register(self, spec: LaunchSpec) -> ManagedProcess:
        """Declare (or redeclare) how a named process is launched."""
        if spec.strict and spec.port is None:
            raise ValueError(f"Service '{spec.name}' has a health path but no port")
        spec.ready_regex()
        existing = self._processes.get(spec.name)
        if existing is not None:
            if existing.state is not ProcessState.STOPPED:
                raise RuntimeError(
                    f"Cannot redefine '{spec.name}' while it is {existing.state.value}"
                )
            existing.spec = spec
            return existing
        managed = ManagedProcess(spec=spec)
        self._processes[spec.name] = managed
        return managed

    def get(self, name: str) -> ManagedProcess:
        try:
            return self._processes[name]
        except KeyError:
            raise UnknownProcessError(name) from None

    def names(self) -> list[str]:
        return list(self._processes)

    def remove(self, name: str) -> None:
        """Remove a stopped process from the registry."""
        managed = self.get(name)
        if managed.state is not ProcessState.STOPPED:
            raise RuntimeError(
                f"Cannot remove running process '{name}'. Stop it first."
            )
        if managed._loop_task is not None:
            managed._loop_task.cancel()
        del self._processes[name]

    def retarget_port(self, old_port: int, new_port: int) -> list[str]:
        """Point every spec bound to ``old_port`` at ``new_port``.

        Environment values that carry the old port (``APP_PORT``) move too.
        """
        moved = []
        for managed in self._processes.values():
            spec = managed.spec
            if spec.port != old_port:
                continue
            spec.port = new_port
            spec.env = {
                key: str(new_port) if value == str(old_port) else value
                for key, value in spec.env.items()
            }
            moved.append(managed.name)
        return moved

    async def bootstrap(self, config_path: str | Path, *, autostart: bool = True) -> None:
        """Register (and optionally start) all services in a JSON file.

        Config format:
            {
                "server": {
                    "command": "go",
                    "args": ["run", "main.go"],
                    "cwd": "server",
                    "port": 10300,
                    "health_path": "/health"
                }
            }
        """
        path = Path(config_path)
        if not path.exists():
            log.warning("No services config at %s; skipping bootstrap", path)
            return

        for spec in load_services(path):
            self.register(spec)
            if not autostart:
                continue
            try:
                managed = await self.start(spec.name)
                log.info("Bootstrapped service '%s' (pid=%s)", spec.name, managed.pid)
            except StartupTimeoutError as exc:
                log.warning("%s", exc)
            except Exception:
                log.exception("Failed to bootstrap service '%s'", spec.name)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def start(self, name: str) -> ManagedProcess:
        """Start a named process and wait until it is running.

        Idempotent: if the process is already starting, running or waiting
        for an automatic restart, no second copy is spawned; a caller that
        arrives during startup waits on the same attempt.  A manual start
        clears the crash counter and any persistent fault.
        """
        return await self._submit(self.get(name), EventType.START_REQUESTED)

    async def stop(self, name: str) -> ManagedProcess:
        """Stop a managed process. Stopping a stopped process is a no-op."""
        return await self._submit(self.get(name), EventType.STOP_REQUESTED)

    async def restart(self, name: str) -> ManagedProcess:
        """Operator restart: stop, then start.  Leaves the crash counter alone."""
        managed = self.get(name)
        await self._submit(managed, EventType.STOP_REQUESTED)
        return await self._submit(managed, EventType.START_REQUESTED, reset_restarts=False)

    async def stop_all(self) -> None:
        """Stop all processes that are not already stopped."""
        for name, managed in list(self._processes.items()):
            if managed.state is ProcessState.STOPPED and managed.pid is None:
                continue
            try:
                await self.stop(name)
            except Exception:
                log.exception("Failed to stop '%s'", name)

    async def close(self) -> None:
        """Stop everything and tear down control loops and the HTTP client."""
        await self.stop_all()
        for managed in self._processes.values():
            if managed._loop_task is not None:
                managed._loop_task.cancel()
                managed._loop_task = None
                managed._queue = None
        await self.health.close()

    def status(self, name: str) -> dict[str, Any]:
        return self.get(name).snapshot()

    def list_all(self) -> list[dict[str, Any]]:
        """Return summary info for all managed processes."""
        return [managed.snapshot() for managed in self._processes.values()]

    def get_output(
        self,
        name: str,
        stream: str = "all",
        tail: int = 2000,
    ) -> dict[str, Any]:
        """Retrieve buffered output from a process."""
        managed = self.get(name)
        result: dict[str, Any] = {
            "name": name,
            "state": managed.state.value,
            "pid": managed.pid,
        }

        if stream in ("stdout", "all"):
            result["stdout"] = managed.stdout_buf.tail(tail)
            result["stdout_seq"] = managed.stdout_buf.seq
        if stream in ("stderr", "all"):
            result["stderr"] = managed.stderr_buf.tail(tail)
            result["stderr_seq"] = managed.stderr_buf.seq

        return result

    async def check_health(self, name: str) -> dict[str, Any] | None:
        """One-shot probe of a process's health endpoint."""
        spec = self.get(name).spec
        if not spec.strict or spec.port is None:
            return None
        return await self.health.probe(spec.port, spec.health_path or "/health")

    # ------------------------------------------------------------------
    # Control loop
    # ------------------------------------------------------------------

    def _ensure_loop(self, managed: ManagedProcess) -> asyncio.Queue[SupervisorEvent]:
        if managed._queue is None or managed._loop_task is None or managed._loop_task.done():
            managed._queue = asyncio.Queue()
            managed._loop_task = asyncio.create_task(
                self._run_loop(managed, managed._queue),
                name=f"{managed.name}-control",
            )
        return managed._queue

    def _post(self, managed: ManagedProcess, event: SupervisorEvent) -> None:
        if managed._queue is not None:
            managed._queue.put_nowait(event)

    async def _submit(
        self,
        managed: ManagedProcess,
        event_type: EventType,
        *,
        reset_restarts: bool = True,
    ) -> ManagedProcess:
        queue = self._ensure_loop(managed)
        reply: asyncio.Future[ManagedProcess] = asyncio.get_running_loop().create_future()
        queue.put_nowait(SupervisorEvent(
            type=event_type,
            generation=managed.generation,
            reply=reply,
            reset_restarts=reset_restarts,
        ))
        return await reply

    async def _run_loop(
        self, managed: ManagedProcess, queue: asyncio.Queue[SupervisorEvent]
    ) -> None:
        while True:
            event = await queue.get()
            try:
                await self._dispatch(managed, event)
            except Exception as exc:
                log.exception("Error handling %s for '%s'", event.type.value, managed.name)
                if event.reply is not None and not event.reply.done():
                    event.reply.set_exception(exc)

    async def _dispatch(self, managed: ManagedProcess, event: SupervisorEvent) -> None:
        if event.type in (EventType.START_REQUESTED, EventType.STOP_REQUESTED):
            # Commands posted without a reply still get one nobody awaits.
            reply = event.reply or asyncio.get_running_loop().create_future()
            if event.type is EventType.START_REQUESTED:
                await self._handle_start(managed, reply, reset_restarts=event.reset_restarts)
            else:
                await self._handle_stop(managed, reply)
            return

        if event.generation != managed.generation:
            log.debug("Dropping stale %s for '%s' (generation %d, current %d)",
                      event.type.value, managed.name, event.generation, managed.generation)
            return

        if event.type is EventType.EXITED:
            await self._handle_exit(managed, event.exit_code)
        elif event.type is EventType.HEALTH_OK:
            self._handle_ready(managed)
        elif event.type is EventType.HEALTH_FAIL:
            self._handle_not_ready(managed)
        elif event.type is EventType.RESTART_DUE:
            if managed.state is ProcessState.RESTARTING:
                managed._auto_restart = True
                await self._launch(managed)

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    async def _handle_start(
        self,
        managed: ManagedProcess,
        reply: asyncio.Future[ManagedProcess],
        *,
        reset_restarts: bool = True,
    ) -> None:
        if managed.state is ProcessState.STARTING:
            managed._waiters.append(reply)
            return
        if managed.state in (ProcessState.RUNNING, ProcessState.RESTARTING):
            _resolve(reply, managed)
            return
        if managed.state is ProcessState.STOPPING:
            # Only reachable after a failed forced kill; the old pid is not
            # confirmed gone, so a second copy must not be spawned.
            reply.set_exception(StartupError(
                managed.name, f"'{managed.name}' is still stopping (PID {managed.pid})"
            ))
            return

        if reset_restarts:
            managed.restart_count = 0
            managed.fault = None
        managed._auto_restart = False
        managed._waiters.append(reply)
        await self._launch(managed)

    async def _handle_stop(
        self, managed: ManagedProcess, reply: asyncio.Future[ManagedProcess]
    ) -> None:
        # Invalidate health polls, restart timers and exit notifications of
        # the current attempt.
        managed.generation += 1
        self._cancel_monitors(managed)

        proc = managed._process
        if proc is None:
            if managed.state is not ProcessState.STOPPED:
                log.info("'%s' stopped (no live process)", managed.name)
            managed.state = ProcessState.STOPPED
            managed.pid = None
            self._fail_waiters(managed, StartupError(
                managed.name, f"'{managed.name}' was stopped before it became ready"
            ))
            _resolve(reply, managed)
            return

        log.info("Stopping '%s' (PID %s)", managed.name, proc.pid)
        managed.state = ProcessState.STOPPING
        try:
            await self._stop_sequence(managed, proc)
        except ShutdownTimeoutError as exc:
            managed.fault = str(exc)
            log.error("%s; forced kill failed", exc)
            reply.set_exception(exc)
            return

        self._retire(managed, proc.returncode)
        managed.state = ProcessState.STOPPED
        log.info("'%s' stopped (exit code %s)", managed.name, managed.exit_code)
        self._fail_waiters(managed, StartupError(
            managed.name, f"'{managed.name}' was stopped before it became ready"
        ))
        _resolve(reply, managed)

    async def _handle_exit(self, managed: ManagedProcess, code: int | None) -> None:
        state = managed.state
        proc = managed._process
        self._cancel_monitors(managed)
        if proc is not None:
            self._retire(managed, code)
            await self._sweep_group(managed, proc.pid)

        if state is ProcessState.STARTING:
            if managed._auto_restart:
                await self._handle_crash(managed, code)
            else:
                managed.state = ProcessState.STOPPED
                err = EarlyExitError(managed.name, code)
                log.error("%s", err)
                self._fail_waiters(managed, err)
            return

        if state is not ProcessState.RUNNING:
            return

        if code == 0:
            managed.state = ProcessState.STOPPED
            log.info("'%s' exited cleanly", managed.name)
        else:
            await self._handle_crash(managed, code)

        if self.on_exit is not None:
            asyncio.create_task(self.on_exit(managed, code), name=f"{managed.name}-on-exit")

    async def _handle_crash(self, managed: ManagedProcess, code: int | None) -> None:
        managed.state = ProcessState.CRASHED
        managed.healthy = False
        cap = self.config.restart_cap

        if managed.restart_count >= cap:
            managed.state = ProcessState.STOPPED
            managed.fault = (
                f"'{managed.name}' crashed {managed.restart_count + 1} times in a row; "
                "automatic restarts stopped, start it manually"
            )
            log.error("%s", managed.fault)
            self._fail_waiters(managed, CrashError(managed.name, code, managed.restart_count, cap))
            return

        managed.restart_count += 1
        delay = self._restart_delay(managed.spec)
        err = CrashError(managed.name, code, managed.restart_count, cap)
        log.warning("%s; restarting in %gs", err, delay)
        managed.state = ProcessState.RESTARTING
        managed._restart_task = asyncio.create_task(
            self._restart_after(managed, managed.generation, delay),
            name=f"{managed.name}-restart",
        )

    def _handle_ready(self, managed: ManagedProcess) -> None:
        if managed.state is not ProcessState.STARTING:
            return
        self._cancel_monitors(managed)
        managed.state = ProcessState.RUNNING
        managed.healthy = True
        managed.restart_count = 0
        managed._auto_restart = False
        log.info("'%s' is running (PID %s)", managed.name, managed.pid)
        self._resolve_waiters(managed)

    def _handle_not_ready(self, managed: ManagedProcess) -> None:
        if managed.state is not ProcessState.STARTING:
            return
        # The process is alive; a missing readiness signal alone is not proof
        # that it is broken, so it stays up (unverified).
        managed.state = ProcessState.RUNNING
        managed.healthy = False
        managed._auto_restart = False
        timeout = self._startup_timeout(managed.spec)
        if managed.spec.strict:
            err = StartupTimeoutError(managed.name, timeout)
            log.warning("%s; leaving it running unverified", err)
            self._fail_waiters(managed, err)
        else:
            # Assumed up counts as up: a crash after this starts a new series.
            managed.restart_count = 0
            log.info("'%s' gave no readiness signal within %gs; assuming it is up",
                     managed.name, timeout)
            self._resolve_waiters(managed)

    # ------------------------------------------------------------------
    # Spawning and stopping
    # ------------------------------------------------------------------

    async def _launch(self, managed: ManagedProcess) -> None:
        spec = managed.spec
        managed.generation += 1
        generation = managed.generation
        managed.state = ProcessState.STARTING
        managed.healthy = False
        managed.exit_code = None

        cwd = self.config.resolve_path(spec.cwd)
        spawn_env = os.environ.copy()
        spawn_env.update(spec.env)

        try:
            if not os.path.isdir(cwd):
                raise NotADirectoryError(f"Working directory does not exist: {cwd}")
            ready = spec.ready_regex()
            process = await asyncio.create_subprocess_exec(
                spec.command,
                *spec.args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=spawn_env,
                **self.inspector.spawn_options(),
            )
        except (OSError, ValueError) as exc:
            err = SpawnError(spec.name, exc)
            log.error("%s", err)
            managed.stderr_buf.append(f"Failed to start: {exc}\n")
            if managed._auto_restart:
                await self._handle_crash(managed, None)
            else:
                managed.state = ProcessState.STOPPED
                self._fail_waiters(managed, err)
            return

        managed._process = process
        managed.pid = process.pid
        managed.start_time = time.time()
        managed.stop_time = None
        log.info("Started '%s': %s (PID %d)", spec.name, spec.display_command, process.pid)

        proc_log = logging.getLogger(f"proc.{spec.name}")
        managed._reader_tasks = [
            asyncio.create_task(
                self._read_stream(process.stdout, managed.stdout_buf,  # type: ignore[arg-type]
                                  proc_log, logging.INFO,
                                  self._ready_hook(managed, generation, ready)),
                name=f"{spec.name}-stdout",
            ),
            asyncio.create_task(
                self._read_stream(process.stderr, managed.stderr_buf,  # type: ignore[arg-type]
                                  proc_log, logging.WARNING,
                                  self._ready_hook(managed, generation, ready)),
                name=f"{spec.name}-stderr",
            ),
        ]
        asyncio.create_task(
            self._wait_for_exit(managed, process, generation),
            name=f"{spec.name}-waiter",
        )
        managed._health_task = asyncio.create_task(
            self._await_ready(managed, generation),
            name=f"{spec.name}-health",
        )

    async def _stop_sequence(
        self, managed: ManagedProcess, proc: asyncio.subprocess.Process
    ) -> None:
        """Graceful signal, bounded wait, forced tree kill, confirmed exit.

        The leader exiting is not the end of it: whatever it left behind in
        its process group is killed before the record counts as stopped.
        """
        if proc.returncode is None:
            await self._signal_and_wait(managed, proc)
        await self._sweep_group(managed, proc.pid)

    async def _signal_and_wait(
        self, managed: ManagedProcess, proc: asyncio.subprocess.Process
    ) -> None:
        grace = self.config.grace_period
        await asyncio.to_thread(self.inspector.terminate, proc.pid, forced=False, tree=True)
        try:
            await asyncio.wait_for(proc.wait(), timeout=grace)
            return
        except asyncio.TimeoutError:
            log.warning("%s; escalating to forced kill",
                        ShutdownTimeoutError(managed.name, proc.pid, grace))

        await asyncio.to_thread(self.inspector.terminate, proc.pid, forced=True, tree=True)
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.config.kill_timeout)
        except asyncio.TimeoutError:
            raise ShutdownTimeoutError(
                managed.name, proc.pid, grace + self.config.kill_timeout
            ) from None

    async def _sweep_group(self, managed: ManagedProcess, pgid: int) -> None:
        if await asyncio.to_thread(self.inspector.kill_group, pgid):
            log.info("Killed processes left behind by '%s' (group %d)", managed.name, pgid)

    # ------------------------------------------------------------------
    # Monitor tasks (they only post events, never mutate the record)
    # ------------------------------------------------------------------

    async def _wait_for_exit(
        self, managed: ManagedProcess, proc: asyncio.subprocess.Process, generation: int
    ) -> None:
        code = await proc.wait()
        self._post(managed, SupervisorEvent(EventType.EXITED, generation, exit_code=code))

    async def _await_ready(self, managed: ManagedProcess, generation: int) -> None:
        spec = managed.spec
        timeout = self._startup_timeout(spec)
        if spec.strict:
            ok = await self.health.wait_until_healthy(
                spec.port,  # type: ignore[arg-type]
                spec.health_path or "/health",
                timeout=timeout,
                interval=self.config.health_interval,
            )
        else:
            await asyncio.sleep(timeout)
            ok = False
        event_type = EventType.HEALTH_OK if ok else EventType.HEALTH_FAIL
        self._post(managed, SupervisorEvent(event_type, generation))

    async def _restart_after(self, managed: ManagedProcess, generation: int, delay: float) -> None:
        await asyncio.sleep(delay)
        self._post(managed, SupervisorEvent(EventType.RESTART_DUE, generation))

    def _ready_hook(
        self, managed: ManagedProcess, generation: int, pattern: re.Pattern[str] | None
    ) -> Callable[[str], None] | None:
        if pattern is None:
            return None
        fired = False

        def _on_line(line: str) -> None:
            nonlocal fired
            if not fired and pattern.search(line):
                fired = True
                self._post(managed, SupervisorEvent(EventType.HEALTH_OK, generation))

        return _on_line

    @staticmethod
    async def _read_stream(
        stream: asyncio.StreamReader,
        buf: RingBuffer,
        proc_log: logging.Logger,
        level: int,
        on_line: Callable[[str], None] | None = None,
    ) -> None:
        """Read from an async stream into a ring buffer, logging whole lines."""
        pending = ""
        try:
            while True:
                chunk = await stream.read(4096)
                if not chunk:
                    break
                text = chunk.decode("utf-8", errors="replace")
                buf.append(text)
                pending += text
                *lines, pending = pending.split("\n")
                for line in lines:
                    _emit_line(line, proc_log, level, on_line)
            if pending:
                _emit_line(pending, proc_log, level, on_line)
        except asyncio.CancelledError:
            pass

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _startup_timeout(self, spec: LaunchSpec) -> float:
        if spec.startup_timeout is not None:
            return spec.startup_timeout
        return self.config.startup_timeout if spec.strict else self.config.soft_timeout

    def _restart_delay(self, spec: LaunchSpec) -> float:
        if spec.restart_delay is not None:
            return spec.restart_delay
        return self.config.restart_delay

    def _cancel_monitors(self, managed: ManagedProcess) -> None:
        for task in (managed._health_task, managed._restart_task):
            if task is not None and not task.done():
                task.cancel()
        managed._health_task = None
        managed._restart_task = None

    def _retire(self, managed: ManagedProcess, code: int | None) -> None:
        """Forget a process whose exit has been confirmed."""
        for task in managed._reader_tasks:
            if not task.done():
                # Give readers a moment to drain the final output
                asyncio.get_running_loop().call_later(1.0, task.cancel)
        managed._reader_tasks = []
        managed._process = None
        managed.pid = None
        managed.exit_code = code
        managed.healthy = False
        managed.stop_time = time.time()

    def _resolve_waiters(self, managed: ManagedProcess) -> None:
        waiters, managed._waiters = managed._waiters, []
        for fut in waiters:
            _resolve(fut, managed)

    def _fail_waiters(self, managed: ManagedProcess, exc: BaseException) -> None:
        waiters, managed._waiters = managed._waiters, []
        for fut in waiters:
            if not fut.done():
                fut.set_exception(exc)


def _resolve(fut: asyncio.Future[ManagedProcess], managed: ManagedProcess) -> None:
    if not fut.done():
        fut.set_result(managed)


def _emit_line(
    line: str,
    proc_log: logging.Logger,
    level: int,
    on_line: Callable[[str], None] | None,
) -> None:
    line = line.rstrip("\r")
    if not line.strip():
        return
    proc_log.log(level, line)
    if on_line is not None:
        on_line(line)


def load_services(path: str | Path) -> list[LaunchSpec]:
    """Parse a services file into launch specs, in file order."""
    with open(path) as f:
        services: dict[str, dict[str, Any]] = json.load(f)
    if not isinstance(services, dict):
        raise ValueError(f"{path}: expected an object of services")
    return [LaunchSpec.from_dict(name, svc) for name, svc in services.items()]

