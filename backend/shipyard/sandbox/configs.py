import os
from enum import Enum


class RoutingMode(str, Enum):
    """How a sandbox's preview app is reached from outside the host.

    PROXY: Reverse-proxy virtual host routing driven by container labels
    LOCAL_PORT: A host port from SANDBOX_PORT_RANGE_START..END is bound
    """

    PROXY = "proxy"
    LOCAL_PORT = "local_port"


# Container image running the in-sandbox agent and the preview app
SANDBOX_IMAGE = os.environ.get("SANDBOX_IMAGE", "ghcr.io/shipyard/sandbox:latest")

# Docker network shared by the sandboxes, the reverse proxy and this service.
# The agent is reached by container name on this network.
SANDBOX_NETWORK = os.environ.get("SANDBOX_NETWORK", "shipyard_network")

# Routing
SANDBOX_ROUTING_MODE = RoutingMode(
    os.environ.get(
        "SANDBOX_ROUTING_MODE",
        (
            RoutingMode.PROXY.value
            if os.environ.get("TRAEFIK_ENABLED", "false").lower() == "true"
            else RoutingMode.LOCAL_PORT.value
        ),
    )
)
SANDBOX_BASE_DOMAIN = os.environ.get("SANDBOX_BASE_DOMAIN", "localhost")
SANDBOX_PORT_RANGE_START = int(os.environ.get("SANDBOX_PORT_RANGE_START", "4000"))
SANDBOX_PORT_RANGE_END = int(os.environ.get("SANDBOX_PORT_RANGE_END", "4999"))

# Port the preview app listens on inside the container
SANDBOX_APP_PORT = int(os.environ.get("SANDBOX_APP_PORT", "3000"))
# Port of the in-container agent control API
SANDBOX_AGENT_PORT = int(os.environ.get("SANDBOX_AGENT_PORT", "9000"))

# Resource limits
SANDBOX_MEMORY_LIMIT = int(
    os.environ.get("SANDBOX_MEMORY_LIMIT", str(2 * 1024 * 1024 * 1024))
)
SANDBOX_CPU_SHARES = int(os.environ.get("SANDBOX_CPU_SHARES", "1024"))
SANDBOX_PIDS_LIMIT = int(os.environ.get("SANDBOX_PIDS_LIMIT", "512"))

# Working directory of the project checkout inside the container
SANDBOX_PROJECT_DIR = os.environ.get("SANDBOX_PROJECT_DIR", "/app/project")

# Agent readiness polling
AGENT_HEALTH_MAX_ATTEMPTS = int(os.environ.get("AGENT_HEALTH_MAX_ATTEMPTS", "30"))
AGENT_HEALTH_POLL_INTERVAL_SECONDS = float(
    os.environ.get("AGENT_HEALTH_POLL_INTERVAL_SECONDS", "1")
)
AGENT_HEALTH_REQUEST_TIMEOUT_SECONDS = 2.0

# Container stop timeouts (seconds)
SANDBOX_STOP_TIMEOUT_SECONDS = 10
SANDBOX_DESTROY_STOP_TIMEOUT_SECONDS = 5

# One-shot command sandboxes
SANDBOX_COMMAND_TIMEOUT_SECONDS = int(
    os.environ.get("SANDBOX_COMMAND_TIMEOUT_SECONDS", "3600")
)
SANDBOX_COMMAND_POLL_INTERVAL_SECONDS = 2.0

# Idle cleanup
CLEANUP_THRESHOLD_MINUTES = int(os.environ.get("CLEANUP_THRESHOLD_MINUTES", "30"))
CLEANUP_INTERVAL_MINUTES = int(os.environ.get("CLEANUP_INTERVAL_MINUTES", "5"))

# Exposes PLAN_TEST to the in-container planner (generate test tickets)
PLAN_TEST = os.environ.get("PLAN_TEST", "false").lower() == "true"
