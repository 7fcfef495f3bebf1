from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

# Substrings (case-insensitive) of process names that are safe to terminate
# when they hold one of our ports.
DEFAULT_MANAGED_PATTERNS = ("go", "node", "electron", "main.exe", "dev.js")

DEFAULT_CONTROL_PORT = 8901
DEFAULT_SERVER_PORT = 10300


def _float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


@dataclass(frozen=True)
class Config:
    project_root: str = field(default_factory=os.getcwd)
    services_file: str | None = None
    control_port: int = DEFAULT_CONTROL_PORT
    managed_patterns: tuple[str, ...] = DEFAULT_MANAGED_PATTERNS
    grace_period: float = 2.0
    kill_timeout: float = 5.0
    restart_delay: float = 5.0
    restart_cap: int = 3
    health_interval: float = 1.0
    startup_timeout: float = 10.0
    soft_timeout: float = 15.0
    settle_delay: float = 3.0
    log_level: str = "INFO"

    @property
    def root(self) -> Path:
        return Path(self.project_root)

    def resolve_path(self, relative: str | None) -> str:
        """Resolve a services-file path relative to the project root.

        ``None`` or ``""`` -> project root; absolute paths are used as-is.
        """
        if not relative:
            return str(self.root.resolve())
        rel = Path(relative)
        return str(rel if rel.is_absolute() else (self.root / rel).resolve())

    @classmethod
    def from_env(cls, env_path: str | Path | None = None) -> Config:
        load_dotenv(env_path)

        raw_patterns = os.getenv("SUPERVISOR_MANAGED_PATTERNS")
        if raw_patterns is None:
            patterns = DEFAULT_MANAGED_PATTERNS
        else:
            patterns = tuple(p.strip() for p in raw_patterns.split(",") if p.strip())

        return cls(
            project_root=os.getenv("SUPERVISOR_PROJECT_ROOT", os.getcwd()),
            services_file=os.getenv("SUPERVISOR_SERVICES") or None,
            control_port=_int("SUPERVISOR_CONTROL_PORT", DEFAULT_CONTROL_PORT),
            managed_patterns=patterns,
            grace_period=_float("SUPERVISOR_GRACE_PERIOD", 2.0),
            kill_timeout=_float("SUPERVISOR_KILL_TIMEOUT", 5.0),
            restart_delay=_float("SUPERVISOR_RESTART_DELAY", 5.0),
            restart_cap=_int("SUPERVISOR_RESTART_CAP", 3),
            health_interval=_float("SUPERVISOR_HEALTH_INTERVAL", 1.0),
            startup_timeout=_float("SUPERVISOR_STARTUP_TIMEOUT", 10.0),
            soft_timeout=_float("SUPERVISOR_SOFT_TIMEOUT", 15.0),
            settle_delay=_float("SUPERVISOR_SETTLE_DELAY", 3.0),
            log_level=os.getenv("SUPERVISOR_LOG_LEVEL", "INFO").upper(),
        )
