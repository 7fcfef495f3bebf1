from __future__ import annotations

import asyncio
import fnmatch
import logging
from collections.abc import Awaitable, Callable, Iterable
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

log = logging.getLogger(__name__)

IGNORED_PARTS = frozenset({"node_modules", ".git", ".backups", "dist"})


class SourceChangeHandler(FileSystemEventHandler):
    """Forwards source-file changes from the observer thread to the event loop.

    Only content changes count; open/close events (which ``go run`` itself
    causes when it reads the sources) are ignored.
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        patterns: Iterable[str],
        callback: Callable[[str], None],
    ) -> None:
        super().__init__()
        self._loop = loop
        self._patterns = tuple(patterns)
        self._callback = callback

    def matches(self, path: str) -> bool:
        p = Path(path)
        if IGNORED_PARTS.intersection(p.parts):
            return False
        return any(fnmatch.fnmatch(p.name, pattern) for pattern in self._patterns)

    def _forward(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        for path in (event.src_path, getattr(event, "dest_path", "")):
            if path and self.matches(str(path)):
                self._loop.call_soon_threadsafe(self._callback, str(path))
                return

    def on_modified(self, event: FileSystemEvent) -> None:
        self._forward(event)

    def on_created(self, event: FileSystemEvent) -> None:
        self._forward(event)

    def on_deleted(self, event: FileSystemEvent) -> None:
        self._forward(event)

    def on_moved(self, event: FileSystemEvent) -> None:
        self._forward(event)


class FileWatcher:
    """Runs ``on_change`` once a burst of matching file changes has settled."""

    def __init__(
        self,
        name: str,
        directory: str | Path,
        patterns: Iterable[str],
        on_change: Callable[[], Awaitable[None]],
        *,
        debounce: float = 1.0,
    ) -> None:
        self.name = name
        self.directory = Path(directory)
        self.patterns = tuple(patterns)
        self.on_change = on_change
        self.debounce = debounce
        self._observer: Observer | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._task: asyncio.Task[None] | None = None

    def start(self) -> None:
        handler = SourceChangeHandler(asyncio.get_running_loop(), self.patterns, self._changed)
        self._observer = Observer()
        self._observer.schedule(handler, str(self.directory), recursive=True)
        self._observer.daemon = True
        self._observer.start()
        log.info("Watching %s for %s changes (%s)",
                 self.directory, ", ".join(self.patterns), self.name)

    def stop(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=2)
            self._observer = None

    def _changed(self, path: str) -> None:
        log.info("Detected change in %s", path)
        if self._timer is not None:
            self._timer.cancel()
        # Always runs on the event loop thread
        self._timer = asyncio.get_running_loop().call_later(self.debounce, self._fire)

    def _fire(self) -> None:
        self._timer = None
        if self._task is not None and not self._task.done():
            log.debug("Restart of '%s' already in progress", self.name)
            return
        self._task = asyncio.get_running_loop().create_task(
            self.on_change(), name=f"{self.name}-reload",
        )
