"""MCP Server exposing the supervisor's control surface over HTTP."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from mcp.server.fastmcp import FastMCP

from backend_supervisor.errors import (
    PortConflictError,
    SupervisorError,
    UnknownProcessError,
    ValidationError,
)
from backend_supervisor.process_manager.supervisor import ProcessSupervisor

if TYPE_CHECKING:
    from backend_supervisor.port_config import PortChanger

# Default port for the persistent HTTP daemon
DEFAULT_PORT = 8901


def _not_found(name: str) -> dict[str, Any]:
    return {"name": name, "success": False, "state": "not_found",
            "message": f"No process named '{name}'"}


def create_server(
    supervisor: ProcessSupervisor | None = None,
    port: int = DEFAULT_PORT,
    port_changer: PortChanger | None = None,
) -> FastMCP:
    """Create and configure the MCP control server."""

    sv = supervisor or ProcessSupervisor()

    mcp = FastMCP(
        name="backend-supervisor",
        instructions=(
            "Supervises the backend server and its companion processes. "
            "Use process_status or list_processes to inspect, start_process / "
            "stop_process / restart_process to control, get_output for logs, "
            "and change_port to move the backend to another port."
        ),
        host="127.0.0.1",
        port=port,
        stateless_http=True,
    )

    # ------------------------------------------------------------------
    # Tool: start_process
    # ------------------------------------------------------------------
    @mcp.tool()
    async def start_process(name: str) -> dict:
        """Start a registered process and wait until it is running.

        Idempotent: if the process is already starting or running, returns
        its current status instead of starting a duplicate.

        Args:
            name: Name of the process (e.g. "server", "client").
        """
        try:
            managed = await sv.start(name)
        except UnknownProcessError:
            return _not_found(name)
        except SupervisorError as exc:
            return {**sv.status(name), "success": False, "message": str(exc)}
        return {**managed.snapshot(), "success": True,
                "message": f"'{name}' is {managed.state.value}"}

    # ------------------------------------------------------------------
    # Tool: stop_process
    # ------------------------------------------------------------------
    @mcp.tool()
    async def stop_process(name: str) -> dict:
        """Stop a managed process.

        Sends a graceful termination signal to the process tree, waits up to
        the grace period, then force-kills the tree.  Stopping a process that
        is already stopped succeeds.

        Args:
            name: Name of the process to stop.
        """
        try:
            managed = await sv.stop(name)
        except UnknownProcessError:
            return _not_found(name)
        except SupervisorError as exc:
            return {**sv.status(name), "success": False, "message": str(exc)}
        return {**managed.snapshot(), "success": True, "message": f"'{name}' stopped"}

    # ------------------------------------------------------------------
    # Tool: restart_process
    # ------------------------------------------------------------------
    @mcp.tool()
    async def restart_process(name: str) -> dict:
        """Stop and start a process.  Does not count as a crash restart.

        Args:
            name: Name of the process to restart.
        """
        try:
            managed = await sv.restart(name)
        except UnknownProcessError:
            return _not_found(name)
        except SupervisorError as exc:
            return {**sv.status(name), "success": False, "message": str(exc)}
        return {**managed.snapshot(), "success": True, "message": f"'{name}' restarted"}

    # ------------------------------------------------------------------
    # Tool: process_status
    # ------------------------------------------------------------------
    @mcp.tool()
    async def process_status(name: str) -> dict:
        """Current state, PID, crash-restart count and fault of one process.

        Args:
            name: Name of the process.
        """
        try:
            return {**sv.status(name), "success": True}
        except UnknownProcessError:
            return _not_found(name)

    # ------------------------------------------------------------------
    # Tool: list_processes
    # ------------------------------------------------------------------
    @mcp.tool()
    async def list_processes() -> dict:
        """List all registered processes with their current status."""
        processes = sv.list_all()
        return {
            "count": len(processes),
            "processes": processes,
        }

    # ------------------------------------------------------------------
    # Tool: get_output
    # ------------------------------------------------------------------
    @mcp.tool()
    async def get_output(
        name: str,
        stream: str = "all",
        tail: int = 2000,
    ) -> dict:
        """Get buffered stdout/stderr output from a process.

        Args:
            name: Name of the process.
            stream: Which stream(s) to retrieve: "stdout", "stderr", or "all".
            tail: Number of characters to retrieve from the end of the buffer.
                  Defaults to 2000. Max ~100,000 (buffer size).
        """
        try:
            return sv.get_output(name=name, stream=stream, tail=tail)
        except UnknownProcessError:
            return _not_found(name)

    # ------------------------------------------------------------------
    # Tool: check_health
    # ------------------------------------------------------------------
    @mcp.tool()
    async def check_health(name: str) -> dict:
        """Probe a process's health endpoint once.

        Args:
            name: Name of the process.
        """
        try:
            body = await sv.check_health(name)
        except UnknownProcessError:
            return _not_found(name)
        return {
            "name": name,
            "success": body is not None,
            "running": body is not None,
            "health": body,
        }

    # ------------------------------------------------------------------
    # Tool: change_port
    # ------------------------------------------------------------------
    @mcp.tool()
    async def change_port(new_port: int, strict: bool = False) -> dict:
        """Move the backend to another TCP port.

        Stops supervised processes on the old port, frees both ports of
        development processes, and rewrites every configuration file that
        mentions the port.

        Args:
            new_port: Target port, 1024-65535.
            strict: Abort without touching any file if the new port is held
                    by a process that is not ours.
        """
        if port_changer is None:
            return {"success": False, "message": "Port changes are not enabled"}
        try:
            summary = await port_changer.change_port(new_port, strict=strict)
        except ValidationError as exc:
            return {"success": False, "error": "validation", "message": str(exc)}
        except PortConflictError as exc:
            return {"success": False, "error": "port_conflict", "message": str(exc)}
        except SupervisorError as exc:
            return {"success": False, "error": "supervisor", "message": str(exc)}
        except OSError as exc:
            return {"success": False, "error": "io", "message": str(exc)}
        return {**summary.to_dict(), "success": True}

    return mcp
