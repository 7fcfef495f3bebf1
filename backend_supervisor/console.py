from __future__ import annotations

import asyncio
import logging
import sys
import threading
from collections.abc import Awaitable, Callable
from typing import TextIO

log = logging.getLogger(__name__)

HELP = """Available commands:
  rs, restart-server   restart the server
  rc, restart-client   restart the client
  st, status           show process status
  q, quit, exit        stop everything and exit"""


class DevConsole:
    """Reads operator commands from stdin without blocking the event loop.

    stdin is read on a daemon thread so that interpreter shutdown never waits
    for a pending ``readline()``.
    """

    def __init__(
        self,
        restart: Callable[[str], Awaitable[None]],
        status: Callable[[], str],
        quit: Callable[[], None],
        *,
        stream: TextIO | None = None,
        server: str = "server",
        client: str = "client",
    ) -> None:
        self._restart = restart
        self._status = status
        self._quit = quit
        self._stream = stream or sys.stdin
        self._aliases: dict[str, Callable[[], Awaitable[None] | None]] = {
            "rs": lambda: self._restart(server),
            "restart-server": lambda: self._restart(server),
            "rc": lambda: self._restart(client),
            "restart-client": lambda: self._restart(client),
            "st": self._print_status,
            "status": self._print_status,
            "q": self._quit,
            "quit": self._quit,
            "exit": self._quit,
            "help": self._print_help,
        }
        self._lines: asyncio.Queue[str | None] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None

    def start(self) -> None:
        loop = asyncio.get_running_loop()

        def _reader() -> None:
            try:
                for line in self._stream:
                    loop.call_soon_threadsafe(self._lines.put_nowait, line)
                loop.call_soon_threadsafe(self._lines.put_nowait, None)
            except RuntimeError:
                # Event loop closed while we were blocked on stdin
                return

        threading.Thread(target=_reader, name="dev-console", daemon=True).start()
        self._task = asyncio.create_task(self._run(), name="dev-console")
        print(HELP, flush=True)

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()

    async def handle(self, line: str) -> None:
        command = line.strip().lower()
        if not command:
            return
        action = self._aliases.get(command)
        if action is None:
            print(f"Unknown command: {command} (type 'help')", flush=True)
            return
        result = action()
        if result is not None:
            await result

    async def _run(self) -> None:
        while True:
            line = await self._lines.get()
            if line is None:
                log.debug("stdin closed; console stopped")
                return
            try:
                await self.handle(line)
            except Exception:
                log.exception("Command %r failed", line.strip())

    def _print_status(self) -> None:
        print(self._status(), flush=True)

    def _print_help(self) -> None:
        print(HELP, flush=True)
