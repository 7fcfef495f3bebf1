import signal
import subprocess
import sys
import time
from types import SimpleNamespace

import psutil
import pytest

from backend_supervisor.models import UNKNOWN_PROCESS_NAME, OccupantKind
from backend_supervisor.process_manager import inspector as inspector_mod
from backend_supervisor.process_manager.inspector import (
    PosixInspector,
    WindowsInspector,
    select_inspector,
)
from backend_supervisor.process_manager.ports import PortConflictResolver

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")


def _conn(port, pid, status=psutil.CONN_LISTEN):
    return SimpleNamespace(laddr=SimpleNamespace(ip="0.0.0.0", port=port), status=status, pid=pid)


class _FakeProcess:
    names = {101: "node", 202: "nginx"}

    def __init__(self, pid):
        if pid not in self.names:
            raise psutil.NoSuchProcess(pid)
        self.pid = pid

    def name(self):
        return self.names[self.pid]


async def test_lists_listening_pids_once_each(monkeypatch):
    conns = [
        _conn(10300, 101),
        _conn(10300, 101),  # IPv4 + IPv6 listeners of one process
        _conn(10300, 202),
        _conn(10300, 303, status=psutil.CONN_ESTABLISHED),
        _conn(8080, 404),
    ]
    monkeypatch.setattr(inspector_mod.psutil, "net_connections", lambda kind: conns)
    monkeypatch.setattr(inspector_mod.psutil, "Process", _FakeProcess)

    occupants = await PosixInspector().list_port_occupants(10300)

    assert [(o.pid, o.process_name, o.port) for o in occupants] == [
        (101, "node", 10300),
        (202, "nginx", 10300),
    ]


def test_unresolvable_process_name_is_unknown(monkeypatch):
    monkeypatch.setattr(inspector_mod.psutil, "Process", _FakeProcess)
    assert PosixInspector().process_name(999) == UNKNOWN_PROCESS_NAME


def test_access_denied_falls_back_to_lsof(monkeypatch):
    def denied(kind):
        raise psutil.AccessDenied()

    monkeypatch.setattr(inspector_mod.psutil, "net_connections", denied)
    monkeypatch.setattr(PosixInspector, "_run_listing", staticmethod(lambda cmd: "123\n456\n123\n"))

    assert PosixInspector()._listening_pids(10300) == [123, 456]


def test_listing_failure_means_port_is_free(monkeypatch):
    def broken(kind):
        raise OSError("no /proc")

    monkeypatch.setattr(inspector_mod.psutil, "net_connections", broken)
    assert PosixInspector()._listening_pids(10300) == []


def test_netstat_fallback_parses_listening_rows(monkeypatch):
    output = "\n".join([
        "Active Connections",
        "",
        "  Proto  Local Address          Foreign Address        State           PID",
        "  TCP    0.0.0.0:10300          0.0.0.0:0              LISTENING       4242",
        "  TCP    [::]:10300             [::]:0                 LISTENING       4242",
        "  TCP    0.0.0.0:103000         0.0.0.0:0              LISTENING       5555",
        "  TCP    127.0.0.1:10300        127.0.0.1:50000        ESTABLISHED     6666",
        "  TCP    0.0.0.0:8080           0.0.0.0:0              LISTENING       7777",
    ])
    monkeypatch.setattr(WindowsInspector, "_run_listing", staticmethod(lambda cmd: output))
    assert WindowsInspector()._fallback_listening_pids(10300) == [4242]


@posix_only
def test_terminate_missing_process_returns_false():
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    inspector = PosixInspector()
    assert inspector.terminate(proc.pid) is False
    assert inspector.terminate(proc.pid, forced=True, tree=True) is False
    assert inspector.kill_group(proc.pid) is False


@posix_only
def test_terminate_tree_signals_the_process_group():
    proc = subprocess.Popen(
        [sys.executable, "-c", "import time; time.sleep(30)"],
        **PosixInspector().spawn_options(),
    )
    try:
        assert PosixInspector().terminate(proc.pid, tree=True)
        assert proc.wait(timeout=5) == -signal.SIGTERM
    finally:
        if proc.poll() is None:
            proc.kill()
            proc.wait()


def test_select_inspector_matches_platform():
    expected = WindowsInspector if sys.platform == "win32" else PosixInspector
    assert isinstance(select_inspector(), expected)


def test_hidden_listener_without_lsof_answer_still_occupies_the_port(monkeypatch):
    # Another user's server: psutil sees the socket but not who owns it
    monkeypatch.setattr(inspector_mod.psutil, "net_connections",
                        lambda kind: [_conn(10300, None)])
    monkeypatch.setattr(PosixInspector, "_run_listing", staticmethod(lambda cmd: ""))

    assert PosixInspector()._listening_pids(10300) == [None]


async def test_hidden_listener_is_reported_as_foreign(monkeypatch):
    monkeypatch.setattr(inspector_mod.psutil, "net_connections",
                        lambda kind: [_conn(10300, None)])
    monkeypatch.setattr(PosixInspector, "_run_listing", staticmethod(lambda cmd: ""))

    [occupant] = await PosixInspector().list_port_occupants(10300)

    assert occupant.pid is None
    assert occupant.process_name == UNKNOWN_PROCESS_NAME
    assert occupant.classify(["node"]) is OccupantKind.FOREIGN


def test_hidden_listener_owner_comes_from_lsof(monkeypatch):
    monkeypatch.setattr(inspector_mod.psutil, "net_connections",
                        lambda kind: [_conn(10300, 101), _conn(10300, None)])
    monkeypatch.setattr(PosixInspector, "_run_listing",
                        staticmethod(lambda cmd: "101\n4242\n"))

    assert PosixInspector()._listening_pids(10300) == [101, 4242]


async def test_resolver_never_reports_a_hidden_listener_as_free(monkeypatch):
    monkeypatch.setattr(inspector_mod.psutil, "net_connections",
                        lambda kind: [_conn(10300, None)])
    monkeypatch.setattr(PosixInspector, "_run_listing", staticmethod(lambda cmd: ""))
    terminated = []
    monkeypatch.setattr(PosixInspector, "terminate",
                        lambda self, pid, **kw: terminated.append(pid) or True)
    resolver = PortConflictResolver(["node"], inspector=PosixInspector(), settle_delay=0)

    report = await resolver.resolve(10300)

    assert not report.free
    assert terminated == []
    assert report.conflict.pids == [None]
    assert "PID ?" in str(report.conflict)


def _orphan_leader() -> tuple[subprocess.Popen, int]:
    """Start a group leader that forks a sleeper, reports its pid and exits."""
    code = (
        "import subprocess, sys\n"
        "child = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(30)'])\n"
        "print(child.pid, flush=True)\n"
    )
    leader = subprocess.Popen(
        [sys.executable, "-c", code], stdout=subprocess.PIPE, text=True,
        **PosixInspector().spawn_options(),
    )
    child_pid = int(leader.stdout.readline())
    leader.wait(timeout=5)
    leader.stdout.close()
    return leader, child_pid


def _gone(pid: int) -> bool:
    try:
        return psutil.Process(pid).status() == psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return True


def _wait_gone(pid: int, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if _gone(pid):
            return True
        time.sleep(0.02)
    return False


def _reap(pid: int) -> None:
    try:
        psutil.Process(pid).kill()
    except psutil.NoSuchProcess:
        pass


@posix_only
def test_tree_terminate_reaches_children_of_an_exited_leader():
    leader, child_pid = _orphan_leader()
    try:
        assert PosixInspector().terminate(leader.pid, forced=True, tree=True)
        assert _wait_gone(child_pid)
    finally:
        _reap(child_pid)


@posix_only
def test_kill_group_clears_what_the_leader_left_behind():
    leader, child_pid = _orphan_leader()
    inspector = PosixInspector()
    try:
        assert inspector.kill_group(leader.pid) is True
        assert _wait_gone(child_pid)
    finally:
        _reap(child_pid)


def test_windows_has_no_group_to_sweep():
    assert WindowsInspector().kill_group(4242) is False
