import asyncio
import io

from backend_supervisor.console import DevConsole


def _console(stream=None):
    calls = []

    async def restart(name):
        calls.append(("restart", name))

    def status():
        calls.append(("status",))
        return "server  running"

    def quit():
        calls.append(("quit",))

    return DevConsole(restart, status, quit, stream=stream), calls


async def test_restart_aliases():
    console, calls = _console()
    for line in ("rs\n", "restart-server", " RC ", "restart-client"):
        await console.handle(line)
    assert calls == [
        ("restart", "server"),
        ("restart", "server"),
        ("restart", "client"),
        ("restart", "client"),
    ]


async def test_status_and_quit(capsys):
    console, calls = _console()
    await console.handle("st")
    await console.handle("quit")
    assert calls == [("status",), ("quit",)]
    assert "server  running" in capsys.readouterr().out


async def test_unknown_and_blank_lines(capsys):
    console, calls = _console()
    await console.handle("")
    await console.handle("deploy")
    assert calls == []
    assert "Unknown command: deploy" in capsys.readouterr().out


async def test_reads_commands_from_stream_until_eof(capsys):
    console, calls = _console(stream=io.StringIO("rs\nbogus\nq\n"))
    console.start()
    await asyncio.wait_for(console._task, timeout=5)
    assert calls == [("restart", "server"), ("quit",)]
    assert "Available commands" in capsys.readouterr().out
