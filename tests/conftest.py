from __future__ import annotations

import pytest

from backend_supervisor.config import Config
from backend_supervisor.process_manager.supervisor import ProcessSupervisor
from fakes import FakeHealthChecker


@pytest.fixture
def fast_config(tmp_path) -> Config:
    return Config(
        project_root=str(tmp_path),
        grace_period=0.5,
        kill_timeout=3.0,
        restart_delay=0.05,
        restart_cap=3,
        health_interval=0.05,
        startup_timeout=1.0,
        soft_timeout=0.3,
        settle_delay=0.0,
    )


@pytest.fixture
def health() -> FakeHealthChecker:
    return FakeHealthChecker(True)


@pytest.fixture
async def supervisor(fast_config, health):
    sv = ProcessSupervisor(fast_config, health=health)
    yield sv
    await sv.close()
