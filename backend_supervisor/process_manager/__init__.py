"""Process supervision for the backend server and its companions.

  - ProcessSupervisor:    start / stop / restart / status of named processes,
                          crash restarts with a cap, graceful-then-forced stop
  - HealthChecker:        polls the backend's ``/health`` endpoint
  - PortConflictResolver: frees a port of development processes, never of
                          anything else
  - create_server:        MCP control surface over HTTP

Can run standalone:
    python -m backend_supervisor.process_manager
"""

from backend_supervisor.process_manager.health import HealthChecker
from backend_supervisor.process_manager.ports import PortConflictResolver
from backend_supervisor.process_manager.server import create_server
from backend_supervisor.process_manager.supervisor import ProcessSupervisor

__all__ = ["HealthChecker", "PortConflictResolver", "ProcessSupervisor", "create_server"]
