"""Port-conflict resolution.

Frees a TCP port by terminating the processes on it that look like ours
(development runtimes, the server binary) or that cannot be resolved at all
(stale entries).  Anything else is reported and left alone.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from backend_supervisor.errors import PortConflictError
from backend_supervisor.models import OccupantKind, PortOccupant
from backend_supervisor.process_manager.inspector import ProcessInspector, select_inspector

log = logging.getLogger(__name__)

DEFAULT_SETTLE_DELAY = 3.0


@dataclass
class OccupantOutcome:
    occupant: PortOccupant
    kind: OccupantKind
    killed: bool = False
    occupied: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "pid": self.occupant.pid,
            "process_name": self.occupant.process_name,
            "kind": self.kind.value,
            "killed": self.killed,
            "occupied": self.occupied,
        }


@dataclass
class PortConflictReport:
    port: int
    outcomes: list[OccupantOutcome] = field(default_factory=list)
    final_occupants: list[PortOccupant] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def free(self) -> bool:
        return not self.final_occupants

    @property
    def conflict(self) -> PortConflictError | None:
        if self.free:
            return None
        return PortConflictError(self.port, [o.pid for o in self.final_occupants])

    def to_dict(self) -> dict[str, Any]:
        return {
            "port": self.port,
            "free": self.free,
            "occupants": [o.to_dict() for o in self.outcomes],
            "still_occupied_by": [
                {"pid": o.pid, "process_name": o.process_name}
                for o in self.final_occupants
            ],
            "warnings": list(self.warnings),
        }


class PortConflictResolver:
    def __init__(
        self,
        managed_patterns: Iterable[str],
        *,
        inspector: ProcessInspector | None = None,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
    ) -> None:
        self.managed_patterns = tuple(p for p in managed_patterns if p)
        self.inspector = inspector or select_inspector()
        self.settle_delay = settle_delay
        self._locks: dict[int, asyncio.Lock] = {}

    def _lock_for(self, port: int) -> asyncio.Lock:
        lock = self._locks.get(port)
        if lock is None:
            lock = self._locks[port] = asyncio.Lock()
        return lock

    async def occupants(self, port: int) -> list[PortOccupant]:
        """Point-in-time listing; never cached."""
        return await self.inspector.list_port_occupants(port)

    async def resolve(self, port: int) -> PortConflictReport:
        """Terminate managed-looking and zombie occupants of ``port``.

        Foreign processes are never signalled.  After any termination attempt
        the port is re-checked exactly once after the settle delay; a port
        that is still busy becomes a warning on the report, not an exception.
        """
        async with self._lock_for(port):
            report = PortConflictReport(port=port)
            occupants = await self.occupants(port)
            if not occupants:
                log.info("Port %d is free", port)
                return report

            log.info("Found %d process(es) on port %d", len(occupants), port)
            attempted = False
            for occupant in occupants:
                kind = occupant.classify(self.managed_patterns)
                outcome = OccupantOutcome(occupant=occupant, kind=kind)
                report.outcomes.append(outcome)
                log.info("  PID %s (%s): %s", occupant.pid, occupant.process_name, kind.value)

                if kind is OccupantKind.FOREIGN:
                    log.info("Leaving PID %s (%s) alone; not a development process",
                             occupant.pid, occupant.process_name)
                    continue

                attempted = True
                outcome.killed = await asyncio.to_thread(
                    self.inspector.terminate, occupant.pid, forced=True,
                )
                if outcome.killed:
                    log.info("Terminated PID %d (%s)", occupant.pid, occupant.process_name)
                else:
                    log.info("Could not terminate PID %d; it may already be gone",
                             occupant.pid)

            if attempted:
                log.info("Waiting %.1fs for port %d to be released", self.settle_delay, port)
                await asyncio.sleep(self.settle_delay)
                report.final_occupants = await self.occupants(port)
            else:
                report.final_occupants = list(occupants)

            still_there = {o.pid for o in report.final_occupants}
            for outcome in report.outcomes:
                outcome.occupied = outcome.occupant.pid in still_there

            if report.free:
                log.info("Port %d released", port)
            else:
                conflict = report.conflict
                report.warnings.append(str(conflict))
                log.warning("%s", conflict)
            return report

    async def ensure_free(self, port: int) -> PortConflictReport:
        """Like :meth:`resolve` but raise if the port is still occupied."""
        report = await self.resolve(port)
        if not report.free:
            raise report.conflict  # type: ignore[misc]
        return report
