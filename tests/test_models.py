import pytest

from backend_supervisor.config import DEFAULT_MANAGED_PATTERNS
from backend_supervisor.errors import CrashError, PortConflictError, UnknownProcessError
from backend_supervisor.models import LaunchSpec, OccupantKind, PortOccupant, ProcessState


@pytest.mark.parametrize(
    ("name", "kind"),
    [
        ("node", OccupantKind.MANAGED),
        ("Electron Helper", OccupantKind.MANAGED),
        ("main.exe", OccupantKind.MANAGED),
        ("go", OccupantKind.MANAGED),
        ("Unknown", OccupantKind.ZOMBIE),
        ("chrome", OccupantKind.FOREIGN),
        ("nginx", OccupantKind.FOREIGN),
        ("postgres", OccupantKind.FOREIGN),
    ],
)
def test_occupant_classification(name, kind):
    occupant = PortOccupant(pid=1, process_name=name, port=10300)
    assert occupant.classify(DEFAULT_MANAGED_PATTERNS) is kind


def test_empty_patterns_never_match():
    occupant = PortOccupant(pid=1, process_name="node", port=10300)
    assert occupant.classify(["", "python"]) is OccupantKind.FOREIGN


def test_active_states():
    assert ProcessState.RUNNING.is_active
    assert ProcessState.RESTARTING.is_active
    assert not ProcessState.STOPPED.is_active
    assert not ProcessState.CRASHED.is_active


def test_spec_from_dict_coerces_values():
    spec = LaunchSpec.from_dict("server", {
        "command": "go",
        "args": ["run", "main.go"],
        "env": {"APP_PORT": 10300},
        "port": "10300",
        "health_path": "/health",
    })
    assert spec.port == 10300
    assert spec.env == {"APP_PORT": "10300"}
    assert spec.strict
    assert spec.display_command == "go run main.go"


def test_spec_from_dict_rejects_typos_and_missing_command():
    with pytest.raises(ValueError, match="health_pth"):
        LaunchSpec.from_dict("server", {"command": "go", "health_pth": "/health"})
    with pytest.raises(ValueError, match="no command"):
        LaunchSpec.from_dict("server", {"args": []})


def test_error_messages():
    assert str(UnknownProcessError("server")) == "No process named 'server'"
    assert str(PortConflictError(10300, [12, 34])) == (
        "Port 10300 is still occupied (PID 12, 34); check it manually"
    )
    assert CrashError("server", 1, 3, 3).exhausted
    assert not CrashError("server", 1, 2, 3).exhausted


def test_listener_with_hidden_owner_is_foreign_not_zombie():
    occupant = PortOccupant(pid=None, process_name="Unknown", port=10300)
    assert occupant.classify(DEFAULT_MANAGED_PATTERNS) is OccupantKind.FOREIGN
    assert str(PortConflictError(10300, [None])) == (
        "Port 10300 is still occupied (PID ?); check it manually"
    )


def test_spec_from_dict_rejects_a_broken_ready_pattern():
    with pytest.raises(ValueError, match="ready_pattern"):
        LaunchSpec.from_dict("client", {"command": "npm", "ready_pattern": "compiled (ok"})
