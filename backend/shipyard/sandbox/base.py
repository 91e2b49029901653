"""Abstract base class and factory for sandbox operations.

SandboxManager is the abstract interface for sandbox lifecycle management.
Use get_sandbox_manager() to get the process-wide instance.

IMPORTANT: SandboxManager implementations must NOT interface with the app database.
Chat sessions, messages and build jobs are handled by the caller (the agent
orchestrator, Celery tasks, etc.). The only database a manager touches is the
session's own preview database, through the DatabaseProvisioner.

A sandbox is one logical unit keyed by session id:
- a container running the agent (and, in FULL mode, the preview app)
- a dedicated preview database
- a routing entry (reverse-proxy labels or a host port)
"""

import threading
from abc import ABC
from abc import abstractmethod

from shipyard.sandbox.agent_client import SandboxAgentClient
from shipyard.sandbox.configs import AGENT_HEALTH_MAX_ATTEMPTS
from shipyard.sandbox.models import DestroyResult
from shipyard.sandbox.models import SandboxCreateOptions
from shipyard.sandbox.models import SandboxInfo
from shipyard.utils.logger import setup_logger

logger = setup_logger()


class SandboxError(Exception):
    """Base class for sandbox lifecycle failures."""


class SandboxNotFoundError(SandboxError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"No sandbox for session {session_id}")
        self.session_id = session_id


class SandboxCommandTimeoutError(SandboxError):
    """A one-shot command sandbox exceeded its timeout.

    The container is stopped but not removed so it can be inspected.
    """

    def __init__(self, session_id: str, container_name: str, timeout: float) -> None:
        super().__init__(
            f"Command in sandbox {container_name} did not finish within {timeout}s"
        )
        self.session_id = session_id
        self.container_name = container_name
        self.timeout = timeout


class SandboxManager(ABC):
    """Abstract interface for sandbox operations.

    Defines the contract for sandbox lifecycle management including:
    - Creation with reuse, restart-in-place and recreate decisions
    - Stop / restart / destroy
    - Agent readiness polling
    - Source updates
    - Project-wide listing and teardown

    Operations against a single session are expected to be serialized by the
    caller. create() treats an already running sandbox as a no-op, which makes
    concurrent creates for a started sandbox safe.

    Use get_sandbox_manager() to get the configured implementation.
    """

    @abstractmethod
    def create(self, options: SandboxCreateOptions) -> SandboxInfo:
        """Create the sandbox for a session, or reuse the existing one.

        - running: returned as is
        - stopped, production mode: deleted (with volumes) and recreated
        - stopped, other modes: restarted in place, then source is pulled
        - absent: created
        COMMAND sandboxes always replace any existing container and block
        until the command exits.

        Args:
            options: What to create. See SandboxCreateOptions

        Returns:
            SandboxInfo for the running (or, in COMMAND mode, finished) sandbox

        Raises:
            SandboxCommandTimeoutError: If a COMMAND sandbox exceeds its timeout
            docker.errors.APIError: If the container runtime rejects a call
        """
        ...

    @abstractmethod
    def get(self, session_id: str) -> SandboxInfo | None:
        """Return the session's sandbox, or None. Never creates."""
        ...

    @abstractmethod
    def stop(self, session_id: str) -> None:
        """Gracefully stop the sandbox. The container is kept for restart.

        Raises:
            SandboxNotFoundError: If the session has no sandbox
        """
        ...

    @abstractmethod
    def restart(self, session_id: str, pull: bool = True) -> SandboxInfo:
        """Restart the sandbox container, wait for the agent and optionally pull.

        Raises:
            SandboxNotFoundError: If the session has no sandbox
        """
        ...

    @abstractmethod
    def destroy(self, session_id: str) -> None:
        """Remove the container, its volumes and the session database.

        Stopping first is best effort. A failed database drop is logged and
        does not undo the container removal.
        """
        ...

    @abstractmethod
    def wait_for_agent(
        self, session_id: str, max_attempts: int = AGENT_HEALTH_MAX_ATTEMPTS
    ) -> bool:
        """Poll the agent health endpoint until it is alive and ready.

        Never raises.

        Returns:
            True if the agent became ready, False once attempts are exhausted
        """
        ...

    @abstractmethod
    def update_sandbox(self, session_id: str, branch: str, credential: str) -> None:
        """Pull the latest source into the sandbox.

        Production sandboxes are restarted afterwards (a rebuild is needed),
        development sandboxes rely on live reload.
        """
        ...

    @abstractmethod
    def list_project_sandboxes(self, project_id: str) -> list[SandboxInfo]:
        """All sandboxes labelled with the project id, running or not."""
        ...

    @abstractmethod
    def destroy_all_project_sandboxes(self, project_id: str) -> DestroyResult:
        """Destroy every sandbox of a project, tolerating individual failures."""
        ...

    @abstractmethod
    def get_agent_client(self, session_id: str) -> SandboxAgentClient:
        """Client for the agent inside the session's sandbox."""
        ...


# Singleton instance cache for the factory
_sandbox_manager_instance: SandboxManager | None = None
_sandbox_manager_lock = threading.Lock()


def get_sandbox_manager() -> SandboxManager:
    """Get the process-wide SandboxManager.

    This is the composition root: the docker client, database provisioner and
    routing strategy are built here and injected into the manager.
    """
    global _sandbox_manager_instance

    if _sandbox_manager_instance is None:
        with _sandbox_manager_lock:
            if _sandbox_manager_instance is None:
                import docker

                from shipyard.sandbox.database import DatabaseProvisioner
                from shipyard.sandbox.docker.docker_sandbox_manager import (
                    DockerSandboxManager,
                )
                from shipyard.sandbox.routing import get_routing_strategy

                _sandbox_manager_instance = DockerSandboxManager(
                    docker_client=docker.from_env(),
                    provisioner=DatabaseProvisioner(),
                    routing=get_routing_strategy(),
                )
                logger.info("Using DockerSandboxManager for sandbox operations")

    return _sandbox_manager_instance
