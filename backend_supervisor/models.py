from __future__ import annotations

import asyncio
import enum
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

UNKNOWN_PROCESS_NAME = "Unknown"


# ---------------------------------------------------------------------------
# Process lifecycle
# ---------------------------------------------------------------------------

class ProcessState(str, enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    RESTARTING = "restarting"
    STOPPING = "stopping"
    CRASHED = "crashed"

    @property
    def is_active(self) -> bool:
        return self in (ProcessState.STARTING, ProcessState.RUNNING, ProcessState.RESTARTING)


@dataclass
class LaunchSpec:
    """How to launch one named process and how to tell that it is ready."""

    name: str
    command: str
    args: list[str] = field(default_factory=list)
    cwd: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    port: int | None = None
    # HTTP readiness probe; None means no strict readiness signal (soft timeout)
    health_path: str | None = None
    # Regex matched against output lines; a match counts as ready
    ready_pattern: str | None = None
    startup_timeout: float | None = None
    restart_delay: float | None = None
    shutdown_on_clean_exit: bool = False
    watch: list[str] = field(default_factory=list)
    requires: list[str] = field(default_factory=list)

    @property
    def strict(self) -> bool:
        return self.health_path is not None

    @property
    def display_command(self) -> str:
        return f"{self.command} {' '.join(self.args)}".strip()

    def ready_regex(self) -> re.Pattern[str] | None:
        """Compiled ``ready_pattern``; only soft-readiness specs watch output."""
        if not self.ready_pattern:
            return None
        try:
            pattern = re.compile(self.ready_pattern)
        except re.error as exc:
            raise ValueError(
                f"Invalid ready_pattern for service '{self.name}': {exc}"
            ) from None
        return None if self.strict else pattern

    @classmethod
    def from_dict(cls, name: str, data: dict[str, Any]) -> LaunchSpec:
        """Build a spec from one entry of a services file.

        Unknown keys are rejected so typos don't silently disable a feature.
        """
        known = set(cls.__dataclass_fields__) - {"name"}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown keys for service '{name}': {sorted(unknown)}")
        if "command" not in data:
            raise ValueError(f"Service '{name}' has no command")
        values = dict(data)
        values["args"] = [str(a) for a in values.get("args") or []]
        values["env"] = {str(k): str(v) for k, v in (values.get("env") or {}).items()}
        if values.get("port") is not None:
            values["port"] = int(values["port"])
        spec = cls(name=name, **values)
        spec.ready_regex()
        return spec


# ---------------------------------------------------------------------------
# Control-loop events
# ---------------------------------------------------------------------------

class EventType(enum.Enum):
    # Operator commands
    START_REQUESTED = "start_requested"
    STOP_REQUESTED = "stop_requested"
    # Monitor notifications, bound to one spawn generation
    EXITED = "exited"
    HEALTH_OK = "health_ok"
    HEALTH_FAIL = "health_fail"
    RESTART_DUE = "restart_due"


@dataclass
class SupervisorEvent:
    type: EventType
    generation: int
    # Only set on EXITED
    exit_code: int | None = None
    # Only set on operator commands:
    reply: asyncio.Future[Any] | None = None
    reset_restarts: bool = True


# ---------------------------------------------------------------------------
# Port occupancy
# ---------------------------------------------------------------------------

class OccupantKind(enum.Enum):
    MANAGED = "managed"   # name matches the managed-process allow-list
    ZOMBIE = "zombie"     # name could not be resolved; likely a stale entry
    FOREIGN = "foreign"   # anything else; never terminated


@dataclass(frozen=True)
class PortOccupant:
    # None: something listens on the port but its owner is hidden from us
    pid: int | None
    process_name: str
    port: int

    def classify(self, patterns: Iterable[str]) -> OccupantKind:
        if self.pid is None:
            # Nothing to signal, and no name to vouch for it
            return OccupantKind.FOREIGN
        if self.process_name == UNKNOWN_PROCESS_NAME:
            return OccupantKind.ZOMBIE
        lowered = self.process_name.lower()
        if any(p.lower() in lowered for p in patterns if p):
            return OccupantKind.MANAGED
        return OccupantKind.FOREIGN
