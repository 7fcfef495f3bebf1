import json
import sys

import pytest

from backend_supervisor.dev import DEV_CONFIG, SERVER_CONFIG, DevEnvironment, default_services
from backend_supervisor.errors import MissingDependencyError, ValidationError
from backend_supervisor.models import LaunchSpec
from backend_supervisor.process_manager.ports import PortConflictResolver
from backend_supervisor.process_manager.supervisor import ProcessSupervisor
from fakes import FakeHealthChecker, FakeInspector, python_cmd


@pytest.fixture
def env(fast_config):
    supervisor = ProcessSupervisor(fast_config, inspector=FakeInspector(),
                                   health=FakeHealthChecker(True))
    return DevEnvironment(fast_config, supervisor=supervisor)


def test_default_services_bind_the_server_port():
    server, client = default_services(10400)
    assert server.port == 10400
    assert server.env["APP_PORT"] == "10400"
    assert server.strict
    assert server.watch == ["*.go"]
    assert not client.strict
    assert client.shutdown_on_clean_exit


async def test_services_default_to_configured_port(env, tmp_path):
    (tmp_path / "server").mkdir()
    (tmp_path / SERVER_CONFIG).write_text('{"server": {"port": 10555}}')
    names = [(s.name, s.port) for s in env.services()]
    assert names == [("server", 10555), ("client", None)]


async def test_services_file_overrides_defaults(env, tmp_path):
    (tmp_path / "services.json").write_text(json.dumps({"api": {"command": "go"}}))
    assert [s.name for s in env.services()] == ["api"]


async def test_select_rejects_unknown_names(env):
    assert [s.name for s in env.select(["client"])] == ["client"]
    with pytest.raises(ValidationError, match="desktop"):
        env.select(["desktop"])


async def test_missing_executable_is_reported(env):
    spec = LaunchSpec(name="server", command="go", requires=["definitely-missing-xyz"])
    with pytest.raises(MissingDependencyError):
        env.check_dependencies([spec])


async def test_setup_installs_development_config(env, tmp_path):
    (tmp_path / "config").mkdir()
    (tmp_path / DEV_CONFIG).write_text('{"server": {"port": 10300}}')
    env.setup_environment()
    assert (tmp_path / SERVER_CONFIG).read_text() == '{"server": {"port": 10300}}'


async def test_clean_client_exit_shuts_everything_down(fast_config):
    command, args = python_cmd("import time; print('ready'); time.sleep(0.3)")
    specs = [LaunchSpec(name="client", command=command, args=args,
                        ready_pattern="ready", startup_timeout=5,
                        shutdown_on_clean_exit=True, requires=[sys.executable])]
    supervisor = ProcessSupervisor(fast_config, inspector=FakeInspector(),
                                   health=FakeHealthChecker(True))
    env = DevEnvironment(fast_config, supervisor=supervisor, services=specs)

    code = await env.run(interactive=False)

    assert code == 0
    assert supervisor.get("client").state.value == "stopped"
    assert supervisor.get("client").spec.env["NODE_ENV"] == "development"


async def test_startup_failure_exits_with_error(fast_config):
    specs = [LaunchSpec(name="server", command="definitely-not-a-command-xyz")]
    supervisor = ProcessSupervisor(fast_config, inspector=FakeInspector(),
                                   health=FakeHealthChecker(True))
    env = DevEnvironment(fast_config, supervisor=supervisor, services=specs)
    assert await env.run(interactive=False) == 1


async def test_unknown_service_exits_with_validation_code(env):
    assert await env.run(["nope"], interactive=False) == 2


async def test_services_read_the_development_port_first(env, tmp_path):
    (tmp_path / "config").mkdir()
    (tmp_path / "server").mkdir()
    (tmp_path / DEV_CONFIG).write_text('{"server": {"port": 10400}}')
    (tmp_path / SERVER_CONFIG).write_text('{"server": {"port": 10300}}')
    server = env.services()[0]
    assert server.port == 10400
    assert server.env["APP_PORT"] == "10400"


async def test_start_on_a_new_port_moves_loaded_services(fast_config, tmp_path):
    command, args = python_cmd("import time; time.sleep(30)")
    (tmp_path / "services.json").write_text(json.dumps({
        "server": {"command": command, "args": args, "port": 10300,
                   "env": {"APP_PORT": "10300"}},
    }))
    (tmp_path / "config").mkdir()
    (tmp_path / DEV_CONFIG).write_text('{"server": {"port": 10300}}')

    # Real signals for the supervised child, scripted listings for the ports
    inspector = FakeInspector()
    resolver = PortConflictResolver(fast_config.managed_patterns, inspector=inspector,
                                    settle_delay=0)
    env = DevEnvironment(fast_config, resolver=resolver,
                         supervisor=ProcessSupervisor(fast_config,
                                                      health=FakeHealthChecker(True)))
    try:
        await env.start(port="10400")
        spec = env.supervisor.get("server").spec
        assert spec.port == 10400
        assert spec.env["APP_PORT"] == "10400"
        assert '"port": 10400' in (tmp_path / DEV_CONFIG).read_text()
        assert '"port": 10400' in (tmp_path / SERVER_CONFIG).read_text()
        before = inspector.list_calls[10400]
    finally:
        await env.shutdown()

    # shutdown sweeps the new port
    assert inspector.list_calls[10400] > before


async def test_invalid_dev_port_exits_with_validation_code(env, tmp_path):
    assert await env.run(port="80", interactive=False) == 2
    assert not (tmp_path / ".backups").exists()
