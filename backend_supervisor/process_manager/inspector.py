"""Platform process inspector.

One small contract, two implementations:

  - list which processes hold a TCP port in LISTEN state
  - terminate a pid, gracefully or by force, optionally with its children

psutil is the primary source on every platform.  When it is denied access
(macOS without root, hardened Linux) each variant falls back to its native
listing tool: ``lsof`` on POSIX, ``netstat -ano`` on Windows.  A listing that
fails or finds nothing means the port is free.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import signal
import subprocess
import sys
from abc import ABC, abstractmethod
from typing import Any

import psutil

from backend_supervisor.models import UNKNOWN_PROCESS_NAME, PortOccupant

log = logging.getLogger(__name__)

_NETSTAT_PID = re.compile(r"\s(\d+)\s*$")


class ProcessInspector(ABC):
    async def list_port_occupants(self, port: int) -> list[PortOccupant]:
        """Return every process listening on ``port``, one entry per pid."""
        pids = await asyncio.to_thread(self._listening_pids, port)
        return [
            PortOccupant(
                pid=pid,
                process_name=UNKNOWN_PROCESS_NAME if pid is None else self.process_name(pid),
                port=port,
            )
            for pid in pids
        ]

    def process_name(self, pid: int) -> str:
        try:
            return psutil.Process(pid).name() or UNKNOWN_PROCESS_NAME
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            return UNKNOWN_PROCESS_NAME
        except psutil.Error:
            log.debug("Could not resolve name of PID %d", pid, exc_info=True)
            return UNKNOWN_PROCESS_NAME

    def _listening_pids(self, port: int) -> list[int | None]:
        """Pids listening on ``port``; ``None`` stands for a listener whose
        owner is hidden from us (another user's process without root)."""
        try:
            conns = psutil.net_connections(kind="tcp")
        except psutil.AccessDenied:
            log.debug("psutil denied connection listing; using %s fallback",
                      type(self).__name__)
            return self._fallback_listening_pids(port)
        except (psutil.Error, OSError) as exc:
            log.debug("Port listing for %d failed: %s", port, exc)
            return []

        pids: list[int | None] = []
        hidden = False
        for conn in conns:
            if not (conn.status == psutil.CONN_LISTEN
                    and conn.laddr and conn.laddr.port == port):
                continue
            if not conn.pid:
                hidden = True
            elif conn.pid not in pids:
                pids.append(conn.pid)
        if not hidden:
            return pids

        log.debug("Owner of a listener on port %d is hidden; using %s fallback",
                  port, type(self).__name__)
        found = [pid for pid in self._fallback_listening_pids(port) if pid not in pids]
        if not found:
            # Still occupied, just not by anyone we can name or signal
            return [*pids, None]
        return [*pids, *found]

    @staticmethod
    def _run_listing(cmd: list[str]) -> str:
        try:
            result = subprocess.run(
                cmd, capture_output=True, text=True, timeout=10, check=False,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            log.debug("%s failed: %s", cmd[0], exc)
            return ""
        return result.stdout

    @abstractmethod
    def _fallback_listening_pids(self, port: int) -> list[int]:
        ...

    @abstractmethod
    def terminate(self, pid: int, *, forced: bool = False, tree: bool = False) -> bool:
        """Signal ``pid`` (and its descendants when ``tree``).

        Returns False when the process was already gone or could not be
        signalled.
        """

    @abstractmethod
    def kill_group(self, pgid: int) -> bool:
        """Force-kill whatever is left of a supervised child's process group
        after its leader has exited.  Returns True if anything was signalled."""

    @abstractmethod
    def spawn_options(self) -> dict[str, Any]:
        """Extra keyword arguments for ``create_subprocess_exec``."""


class PosixInspector(ProcessInspector):
    def _fallback_listening_pids(self, port: int) -> list[int]:
        out = self._run_listing(["lsof", "-nP", f"-iTCP:{port}", "-sTCP:LISTEN", "-t"])
        pids: list[int] = []
        for line in out.split():
            if line.isdigit() and int(line) not in pids:
                pids.append(int(line))
        return pids

    def terminate(self, pid: int, *, forced: bool = False, tree: bool = False) -> bool:
        sig = signal.SIGKILL if forced else signal.SIGTERM
        if tree:
            # Supervised children lead their own session, so the group id is
            # their pid and it outlives the leader while any member is alive.
            if self._signal_group(pid, sig):
                return True
            for child in _children(pid):
                try:
                    child.send_signal(sig)
                except psutil.Error as exc:
                    log.debug("Could not signal child %d of %d: %s", child.pid, pid, exc)
        try:
            os.kill(pid, sig)
        except ProcessLookupError:
            return False
        except PermissionError as exc:
            log.warning("Not allowed to signal PID %d: %s", pid, exc)
            return False
        return True

    def kill_group(self, pgid: int) -> bool:
        return self._signal_group(pgid, signal.SIGKILL)

    @staticmethod
    def _signal_group(pgid: int, sig: int) -> bool:
        try:
            os.killpg(pgid, sig)
        except ProcessLookupError:
            # ESRCH: no member of the group is left
            return False
        except PermissionError as exc:
            log.warning("Not allowed to signal process group %d: %s", pgid, exc)
            return False
        return True

    def spawn_options(self) -> dict[str, Any]:
        return {"start_new_session": True}


class WindowsInspector(ProcessInspector):
    def _fallback_listening_pids(self, port: int) -> list[int]:
        out = self._run_listing(["netstat", "-ano", "-p", "TCP"])
        pids: list[int] = []
        for line in out.splitlines():
            parts = line.split()
            # Proto  Local-Address  Foreign-Address  State  PID
            if len(parts) < 5 or parts[3].upper() != "LISTENING":
                continue
            if not parts[1].endswith(f":{port}"):
                continue
            match = _NETSTAT_PID.search(line)
            if match:
                pid = int(match.group(1))
                if pid and pid not in pids:
                    pids.append(pid)
        return pids

    def terminate(self, pid: int, *, forced: bool = False, tree: bool = False) -> bool:
        if forced:
            cmd = ["taskkill", "/F", "/PID", str(pid)]
            if tree:
                cmd.insert(2, "/T")
            try:
                result = subprocess.run(cmd, capture_output=True, text=True, timeout=15)
            except (OSError, subprocess.SubprocessError) as exc:
                log.warning("taskkill for PID %d failed: %s", pid, exc)
                return False
            if result.returncode != 0:
                log.debug("taskkill for PID %d: %s", pid, result.stderr.strip())
                return False
            return True

        if tree:
            # Children are started in their own process group, which is
            # what CTRL_BREAK_EVENT addresses.
            try:
                os.kill(pid, signal.CTRL_BREAK_EVENT)  # type: ignore[attr-defined]
                return True
            except OSError:
                log.debug("CTRL_BREAK to PID %d failed; terminating directly", pid)
        try:
            psutil.Process(pid).terminate()
        except psutil.NoSuchProcess:
            return False
        except psutil.Error as exc:
            log.warning("Could not terminate PID %d: %s", pid, exc)
            return False
        return True

    def kill_group(self, pgid: int) -> bool:
        # Process groups die with their leader here; orphans are unreachable.
        log.debug("No group sweep for PID %d on Windows", pgid)
        return False

    def spawn_options(self) -> dict[str, Any]:
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}  # type: ignore[attr-defined]


def _children(pid: int) -> list[psutil.Process]:
    try:
        return psutil.Process(pid).children(recursive=True)
    except psutil.Error:
        return []


def select_inspector() -> ProcessInspector:
    """Pick the inspector for the running platform."""
    if sys.platform == "win32":
        return WindowsInspector()
    return PosixInspector()
