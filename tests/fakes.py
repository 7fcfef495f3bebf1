"""Test doubles shared across the test modules."""

from __future__ import annotations

import asyncio
import sys
import time
from typing import Any

from backend_supervisor.models import PortOccupant
from backend_supervisor.process_manager.inspector import ProcessInspector, select_inspector


class FakeHealthChecker:
    """Stands in for HealthChecker; answers from a script of results.

    Each ``wait_until_healthy`` call pops the next result (the last one
    repeats).  A False result is only returned once ``timeout`` has elapsed,
    like the real poller.
    """

    def __init__(self, *results: bool) -> None:
        self.results = list(results) or [True]
        self.calls = 0
        self.closed = False

    async def wait_until_healthy(self, port, path="/health", *, timeout=10.0, interval=1.0):
        self.calls += 1
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if not result:
            await asyncio.sleep(timeout)
        return result

    async def probe(self, port, path="/health"):
        return {"status": "ok"} if self.results[0] else None

    async def close(self):
        self.closed = True


class FakeInspector(ProcessInspector):
    """Port listings from a script; terminations are recorded, not sent.

    ``listings[port]`` is a list of successive answers; the last repeats.
    """

    def __init__(self, listings: dict[int, list[list[tuple[int | None, str]]]] | None = None) -> None:
        self.listings = listings or {}
        self.terminated: list[tuple[int, bool]] = []
        self.swept: list[int] = []
        self.list_calls: dict[int, int] = {}

    async def list_port_occupants(self, port: int) -> list[PortOccupant]:
        answers = self.listings.get(port) or [[]]
        index = self.list_calls.get(port, 0)
        self.list_calls[port] = index + 1
        entries = answers[min(index, len(answers) - 1)]
        return [PortOccupant(pid=pid, process_name=name, port=port) for pid, name in entries]

    def _fallback_listening_pids(self, port: int) -> list[int]:
        return []

    def terminate(self, pid: int, *, forced: bool = False, tree: bool = False) -> bool:
        self.terminated.append((pid, forced))
        return True

    def kill_group(self, pgid: int) -> bool:
        self.swept.append(pgid)
        return False

    def spawn_options(self) -> dict[str, Any]:
        return select_inspector().spawn_options()


def python_cmd(code: str) -> tuple[str, list[str]]:
    """Command and args that run ``code`` in a fresh interpreter."""
    return sys.executable, ["-u", "-c", code]


async def wait_until(predicate, timeout: float = 10.0, interval: float = 0.02) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)
