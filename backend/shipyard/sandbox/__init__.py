"""
Sandbox module: per-session containers running the code-generation agent.

Each sandbox is one container plus a dedicated preview database plus a
routing entry, all keyed by the chat session id.

Usage:
    from shipyard.sandbox import get_sandbox_manager

    sandbox_manager = get_sandbox_manager()
    sandbox_info = sandbox_manager.create(SandboxCreateOptions(...))

Module structure:
    - base.py: SandboxManager ABC and get_sandbox_manager() factory
    - models.py: Shared Pydantic models and container label codec
    - naming.py: Container, hostname and database names
    - routing.py: Reverse-proxy and local-port routing strategies
    - database.py: Preview database provisioning and introspection
    - agent_client.py: HTTP/SSE client for the in-container agent
    - docker/: Docker implementation of SandboxManager
    - cleanup.py: Idle sandbox sweeper
"""

from shipyard.sandbox.base import get_sandbox_manager
from shipyard.sandbox.base import SandboxCommandTimeoutError
from shipyard.sandbox.base import SandboxError
from shipyard.sandbox.base import SandboxManager
from shipyard.sandbox.base import SandboxNotFoundError
from shipyard.sandbox.docker.docker_sandbox_manager import DockerSandboxManager
from shipyard.sandbox.models import SandboxCreateOptions
from shipyard.sandbox.models import SandboxInfo

__all__ = [
    # Factory function (preferred)
    "get_sandbox_manager",
    # Interface
    "SandboxManager",
    # Implementations
    "DockerSandboxManager",
    # Models
    "SandboxCreateOptions",
    "SandboxInfo",
    # Errors
    "SandboxError",
    "SandboxNotFoundError",
    "SandboxCommandTimeoutError",
]
