from enum import Enum as PyEnum


class ChatSessionStatus(str, PyEnum):
    ACTIVE = "active"
    ARCHIVED = "archived"


class MessageRole(str, PyEnum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class BuildJobStatus(str, PyEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    def is_active(self) -> bool:
        return self in (BuildJobStatus.PENDING, BuildJobStatus.RUNNING)

    def is_terminal(self) -> bool:
        return self in (
            BuildJobStatus.COMPLETED,
            BuildJobStatus.FAILED,
            BuildJobStatus.CANCELLED,
        )


class SandboxMode(str, PyEnum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"
    REQUIREMENTS = "requirements"


class ServicesMode(str, PyEnum):
    """Which services a sandbox container runs.

    FULL: agent + preview app, externally routed
    AGENT_ONLY: agent control API only, no public route
    COMMAND: run a one-shot command to completion, no public route
    """

    FULL = "full"
    AGENT_ONLY = "agent-only"
    COMMAND = "command"


class SandboxStatus(str, PyEnum):
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"
    COMPLETED = "completed"
