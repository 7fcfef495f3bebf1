"""Move the backend to a different TCP port.

Frees the old and the new port, backs up every file that mentions the port,
then rewrites all of them.  The rewrite is all-or-nothing: new contents are
staged in temp files first and any file already replaced is restored if a
later one fails.
"""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from backend_supervisor.config import DEFAULT_SERVER_PORT
from backend_supervisor.errors import ValidationError
from backend_supervisor.models import ProcessState
from backend_supervisor.process_manager.ports import PortConflictResolver

if TYPE_CHECKING:
    from backend_supervisor.process_manager.supervisor import ProcessSupervisor

log = logging.getLogger(__name__)

MIN_PORT = 1024
MAX_PORT = 65535

BACKUP_DIR = ".backups"
# Copied into the packaged client at build time; stale after a port change
DIST_CONFIG = "client/dist/config.json"


@dataclass(frozen=True)
class PortTarget:
    """A file that hard-codes the port.  Group 1 of ``pattern`` is the port."""

    file: str
    pattern: str

    def rewrite(self, text: str, port: int) -> str:
        def _swap(match: re.Match[str]) -> str:
            start, end = match.span(1)
            base = match.start(0)
            whole = match.group(0)
            return whole[: start - base] + str(port) + whole[end - base:]

        return re.sub(self.pattern, _swap, text)


DEFAULT_PORT_TARGETS: tuple[PortTarget, ...] = (
    PortTarget("server/config.json", r'"port":\s*(\d+)'),
    PortTarget("server/config/config.go", r"Port:\s*(\d+),"),
    PortTarget("config/production.json", r'"port":\s*(\d+)'),
    PortTarget("config/development.json", r'"port":\s*(\d+)'),
    PortTarget("client/src/renderer/js/settings.js", r"port:\s*(\d+),"),
    PortTarget("client/src/preload.js", r"localhost:(\d+)"),
    PortTarget("client/src/main.js", r"serverPort:\s*(\d+),"),
)

# Where the currently configured port is read from, first hit wins
PORT_SOURCES = ("server/config.json", "config/development.json")


def validate_port(value: Any) -> int:
    """Return ``value`` as a port in [1024, 65535] or raise ValidationError."""
    if isinstance(value, bool):
        raise ValidationError("Port must be a number")
    if isinstance(value, str):
        value = value.strip()
        if not value.isdigit():
            raise ValidationError(f"Port must be a number, got {value!r}")
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Port must be a number, got {value!r}") from None
    if isinstance(value, float) and value != port:
        raise ValidationError(f"Port must be a whole number, got {value!r}")
    if not MIN_PORT <= port <= MAX_PORT:
        raise ValidationError(f"Port must be between {MIN_PORT} and {MAX_PORT}, got {port}")
    return port


@dataclass
class PortChangeSummary:
    old_port: int
    new_port: int
    changed: bool = False
    updated_files: list[str] = field(default_factory=list)
    unchanged_files: list[str] = field(default_factory=list)
    missing_files: list[str] = field(default_factory=list)
    stopped_processes: list[str] = field(default_factory=list)
    backup_dir: str | None = None
    old_port_occupants: list[dict[str, Any]] = field(default_factory=list)
    new_port_occupants: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        if not self.changed:
            return f"Port is already {self.new_port}; nothing to change"
        return (
            f"Port changed from {self.old_port} to {self.new_port}; "
            f"updated {len(self.updated_files)} file(s)"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "old_port": self.old_port,
            "new_port": self.new_port,
            "changed": self.changed,
            "message": self.message,
            "updated_files": self.updated_files,
            "unchanged_files": self.unchanged_files,
            "missing_files": self.missing_files,
            "stopped_processes": self.stopped_processes,
            "backup_dir": self.backup_dir,
            "old_port_occupants": self.old_port_occupants,
            "new_port_occupants": self.new_port_occupants,
            "warnings": self.warnings,
        }


class PortChanger:
    def __init__(
        self,
        project_root: str | Path,
        resolver: PortConflictResolver,
        *,
        supervisor: ProcessSupervisor | None = None,
        targets: tuple[PortTarget, ...] = DEFAULT_PORT_TARGETS,
        default_port: int = DEFAULT_SERVER_PORT,
    ) -> None:
        self.root = Path(project_root)
        self.resolver = resolver
        self.supervisor = supervisor
        self.targets = targets
        self.default_port = default_port

    def current_port(self, sources: tuple[str, ...] = PORT_SOURCES) -> int:
        for rel in sources:
            path = self.root / rel
            if not path.exists():
                continue
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                port = data.get("server", {}).get("port")
            except (OSError, ValueError, AttributeError) as exc:
                log.warning("Could not read port from %s: %s", rel, exc)
                continue
            if port:
                return int(port)
        return self.default_port

    async def change_port(self, new_port: Any, *, strict: bool = False) -> PortChangeSummary:
        """Move every configured reference from the current port to ``new_port``.

        With ``strict`` a new port that is still held by a foreign process
        aborts the change before any file is touched.
        """
        port = validate_port(new_port)
        old = self.current_port()
        summary = PortChangeSummary(old_port=old, new_port=port)
        log.info("Changing port %d -> %d", old, port)

        if old == port:
            log.info("Port is already %d; nothing to change", port)
            return summary

        if self.supervisor is not None:
            for name in self.supervisor.names():
                managed = self.supervisor.get(name)
                if managed.spec.port == old and managed.state is not ProcessState.STOPPED:
                    await self.supervisor.stop(name)
                    summary.stopped_processes.append(name)

        old_report = await self.resolver.resolve(old)
        summary.warnings.extend(old_report.warnings)

        new_report = await self.resolver.resolve(port)
        if not new_report.free:
            if strict:
                raise new_report.conflict  # type: ignore[misc]
            summary.warnings.extend(new_report.warnings)
            summary.warnings.append(
                f"Port {port} may still be in use; check it before starting the server"
            )

        plan = self._plan(port, summary)
        summary.backup_dir = str(self._backup())
        self._apply(plan)
        summary.changed = True
        summary.updated_files = [str(path.relative_to(self.root)) for path, _, _ in plan]
        for rel in summary.updated_files:
            log.info("Updated %s", rel)

        self._remove_dist_config()
        if self.supervisor is not None:
            self.supervisor.retarget_port(old, port)

        summary.old_port_occupants = [
            {"pid": o.pid, "process_name": o.process_name}
            for o in await self.resolver.occupants(old)
        ]
        summary.new_port_occupants = [
            {"pid": o.pid, "process_name": o.process_name}
            for o in await self.resolver.occupants(port)
        ]
        log.info("%s", summary.message)
        return summary

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _plan(self, port: int, summary: PortChangeSummary) -> list[tuple[Path, str, str]]:
        """Compute every rewrite in memory; nothing is written here."""
        plan: list[tuple[Path, str, str]] = []
        for target in self.targets:
            path = self.root / target.file
            if not path.exists():
                log.warning("File not found, skipping: %s", target.file)
                summary.missing_files.append(target.file)
                continue
            original = path.read_text(encoding="utf-8")
            rewritten = target.rewrite(original, port)
            if rewritten == original:
                summary.unchanged_files.append(target.file)
                continue
            plan.append((path, original, rewritten))
        return plan

    def _backup(self) -> Path:
        stamp = datetime.now().strftime("%Y-%m-%dT%H-%M-%S-%f")
        backup_dir = self.root / BACKUP_DIR / stamp
        backup_dir.mkdir(parents=True, exist_ok=True)
        count = 0
        for target in self.targets:
            source = self.root / target.file
            if source.exists():
                dest = backup_dir / target.file
                dest.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source, dest)
                count += 1
        log.info("Backed up %d file(s) to %s", count, backup_dir)
        return backup_dir

    def _apply(self, plan: list[tuple[Path, str, str]]) -> None:
        staged: list[tuple[Path, Path]] = []
        replaced: list[tuple[Path, str]] = []
        try:
            for path, _, rewritten in plan:
                tmp = path.with_name(f".{path.name}.{os.getpid()}.tmp")
                tmp.write_text(rewritten, encoding="utf-8")
                shutil.copymode(path, tmp)
                staged.append((path, tmp))
            for (path, tmp), (_, original, _) in zip(staged, plan):
                os.replace(tmp, path)
                replaced.append((path, original))
        except OSError:
            log.error("Port rewrite failed; restoring %d file(s)", len(replaced))
            for path, original in reversed(replaced):
                path.write_text(original, encoding="utf-8")
            raise
        finally:
            for _, tmp in staged:
                if tmp.exists():
                    tmp.unlink()

    def _remove_dist_config(self) -> None:
        dist = self.root / DIST_CONFIG
        if not dist.exists():
            return
        try:
            dist.unlink()
            log.info("Removed stale %s", DIST_CONFIG)
        except OSError as exc:
            log.warning("Could not remove %s: %s", DIST_CONFIG, exc)
