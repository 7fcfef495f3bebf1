import sys

import pytest

from backend_supervisor.__main__ import main


@pytest.fixture
def project(tmp_path, monkeypatch):
    (tmp_path / "server").mkdir()
    (tmp_path / "server/config.json").write_text('{"server": {"port": 10777}}')
    monkeypatch.setenv("SUPERVISOR_PROJECT_ROOT", str(tmp_path))
    return tmp_path


def _run(monkeypatch, *argv) -> int:
    monkeypatch.setattr(sys, "argv", ["backend-supervisor", *argv])
    with pytest.raises(SystemExit) as excinfo:
        main()
    return excinfo.value.code


def test_current_port(project, monkeypatch, capsys):
    assert _run(monkeypatch, "current-port") == 0
    assert capsys.readouterr().out.strip() == "10777"


def test_change_port_rejects_out_of_range(project, monkeypatch):
    assert _run(monkeypatch, "change-port", "80") == 2
    assert "10777" in (project / "server/config.json").read_text()


def test_change_port_requires_a_port(project, monkeypatch):
    # argparse usage errors also exit with 2
    assert _run(monkeypatch, "change-port") == 2


def test_dev_rejects_an_invalid_port(project, monkeypatch):
    assert _run(monkeypatch, "dev", "80", "--no-console") == 2
    assert "10777" in (project / "server/config.json").read_text()
