from __future__ import annotations


class SupervisorError(Exception):
    """Base class for every failure the supervisor reports."""


class ValidationError(SupervisorError, ValueError):
    """Bad operator input, e.g. a port outside [1024, 65535]."""


class MissingDependencyError(SupervisorError):
    def __init__(self, executable: str) -> None:
        self.executable = executable
        super().__init__(f"Required executable not found on PATH: {executable}")


class UnknownProcessError(SupervisorError, KeyError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"No process named '{name}'")

    def __str__(self) -> str:
        # KeyError.__str__ would repr() the message
        return self.args[0]


class SpawnError(SupervisorError):
    """The OS refused to create the process. Never retried."""

    def __init__(self, name: str, reason: BaseException | str) -> None:
        self.name = name
        self.reason = reason
        super().__init__(f"Failed to spawn '{name}': {reason}")


class StartupError(SupervisorError):
    """A spawned process never reached the running state."""

    def __init__(self, name: str, message: str) -> None:
        self.name = name
        super().__init__(message)


class StartupTimeoutError(StartupError):
    """Health check never succeeded within the startup budget.

    The process is left running (unverified); stopping it is up to the caller.
    """

    def __init__(self, name: str, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(
            name, f"'{name}' did not pass its health check within {timeout:g}s"
        )


class EarlyExitError(StartupError):
    def __init__(self, name: str, exit_code: int | None) -> None:
        self.exit_code = exit_code
        super().__init__(
            name, f"'{name}' exited with code {exit_code} before it became ready"
        )


class CrashError(SupervisorError):
    def __init__(self, name: str, exit_code: int | None, restart_count: int, cap: int) -> None:
        self.name = name
        self.exit_code = exit_code
        self.restart_count = restart_count
        self.cap = cap
        super().__init__(
            f"'{name}' crashed with exit code {exit_code} "
            f"(restart {restart_count}/{cap})"
        )

    @property
    def exhausted(self) -> bool:
        return self.restart_count >= self.cap


class PortConflictError(SupervisorError):
    """Port still held by processes we are not allowed to terminate."""

    def __init__(self, port: int, pids: list[int | None]) -> None:
        self.port = port
        self.pids = pids
        listed = ", ".join("?" if p is None else str(p) for p in pids) or "unknown"
        super().__init__(
            f"Port {port} is still occupied (PID {listed}); check it manually"
        )


class ShutdownTimeoutError(SupervisorError):
    def __init__(self, name: str, pid: int, waited: float) -> None:
        self.name = name
        self.pid = pid
        self.waited = waited
        super().__init__(
            f"'{name}' (PID {pid}) did not exit within {waited:g}s"
        )
