"""Pydantic models for sandbox module communication."""

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import model_validator
from pydantic.alias_generators import to_camel

from shipyard.db.enums import SandboxMode
from shipyard.db.enums import SandboxStatus
from shipyard.db.enums import ServicesMode
from shipyard.sandbox.configs import SANDBOX_COMMAND_TIMEOUT_SECONDS

# Container label keys. Labels are how sandbox metadata survives restarts of
# this service: they are read back into a SandboxRecord on every lookup.
LABEL_TYPE = "shipyard.type"
LABEL_PROJECT_ID = "shipyard.project_id"
LABEL_SESSION_ID = "shipyard.session_id"
LABEL_MODE = "shipyard.mode"
LABEL_SERVICES_MODE = "shipyard.services_mode"
LABEL_BRANCH = "shipyard.branch"
LABEL_URL = "shipyard.url"
LABEL_HOST_PORT = "shipyard.host_port"
LABEL_REPO_URL = "shipyard.repo_url"
SANDBOX_LABEL_TYPE = "sandbox"


class SandboxCreateOptions(BaseModel):
    """Options for SandboxManager.create().

    branch, repo_url and credential are required unless mode is REQUIREMENTS.
    command is required iff services_mode is COMMAND.
    """

    project_id: str
    session_id: str
    mode: SandboxMode = SandboxMode.DEVELOPMENT
    services_mode: ServicesMode = ServicesMode.FULL
    branch: str | None = None
    repo_url: str | None = None
    credential: str | None = None
    command: list[str] | None = None
    command_env: dict[str, str] = Field(default_factory=dict)
    command_timeout: float = SANDBOX_COMMAND_TIMEOUT_SECONDS

    @model_validator(mode="after")
    def _check_required_fields(self) -> "SandboxCreateOptions":
        if self.mode != SandboxMode.REQUIREMENTS:
            missing = [
                name
                for name in ("branch", "repo_url", "credential")
                if not getattr(self, name)
            ]
            if missing:
                raise ValueError(
                    f"{', '.join(missing)} required for {self.mode.value} sandboxes"
                )

        if self.services_mode == ServicesMode.COMMAND and not self.command:
            raise ValueError("command is required when services_mode is 'command'")
        if self.services_mode != ServicesMode.COMMAND and self.command:
            raise ValueError("command is only allowed when services_mode is 'command'")
        if self.command_timeout <= 0:
            raise ValueError("command_timeout must be positive")
        return self


class SandboxInfo(BaseModel):
    """Information about a sandbox instance.

    Returned by SandboxManager.create() and other lookups. url is None when
    the sandbox exposes no externally routed service.
    """

    session_id: str
    project_id: str
    container_id: str
    name: str
    mode: SandboxMode
    services_mode: ServicesMode
    branch: str | None
    status: SandboxStatus
    url: str | None
    exit_code: int | None = None


@dataclass
class SandboxRecord:
    """Typed view of the metadata stored in a sandbox container's labels."""

    session_id: str
    project_id: str
    mode: SandboxMode
    services_mode: ServicesMode
    branch: str | None = None
    url: str | None = None
    host_port: int | None = None
    repo_url: str | None = None

    def to_labels(self) -> dict[str, str]:
        labels = {
            LABEL_TYPE: SANDBOX_LABEL_TYPE,
            LABEL_PROJECT_ID: self.project_id,
            LABEL_SESSION_ID: self.session_id,
            LABEL_MODE: self.mode.value,
            LABEL_SERVICES_MODE: self.services_mode.value,
        }
        if self.branch:
            labels[LABEL_BRANCH] = self.branch
        if self.url:
            labels[LABEL_URL] = self.url
        if self.host_port is not None:
            labels[LABEL_HOST_PORT] = str(self.host_port)
        if self.repo_url:
            labels[LABEL_REPO_URL] = self.repo_url
        return labels

    @classmethod
    def from_labels(cls, labels: dict[str, str]) -> "SandboxRecord":
        """Decode container labels.

        Raises:
            ValueError: If the labels do not describe a sandbox container
        """
        if labels.get(LABEL_TYPE) != SANDBOX_LABEL_TYPE:
            raise ValueError("Container is not a sandbox")

        host_port = labels.get(LABEL_HOST_PORT)
        return cls(
            session_id=labels[LABEL_SESSION_ID],
            project_id=labels[LABEL_PROJECT_ID],
            mode=SandboxMode(labels.get(LABEL_MODE, SandboxMode.DEVELOPMENT.value)),
            services_mode=ServicesMode(
                labels.get(LABEL_SERVICES_MODE, ServicesMode.FULL.value)
            ),
            branch=labels.get(LABEL_BRANCH) or None,
            url=labels.get(LABEL_URL) or None,
            host_port=int(host_port) if host_port else None,
            repo_url=labels.get(LABEL_REPO_URL) or None,
        )


class DestroyResult(BaseModel):
    destroyed: int
    failed: int


# =============================================================================
# In-container agent API payloads
# =============================================================================


class AgentApiModel(BaseModel):
    """The agent API speaks camelCase JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AgentHealth(AgentApiModel):
    """GET /agent/health

    alive means the agent process booted, ready means it accepts work
    (dependency install and dev server startup are done).
    """

    alive: bool = False
    ready: bool = False
    uptime: float | None = None
    details: dict[str, Any] | None = None


class FileInfo(AgentApiModel):
    name: str
    type: str
    path: str
    size: int | None = None
    last_modified: str | None = None
    children: list["FileInfo"] | None = None


class GitPullResult(AgentApiModel):
    success: bool
    changed: bool = False
    error: str | None = None


class GitRevertResult(AgentApiModel):
    success: bool
    error: str | None = None


class RequirementsDocs(AgentApiModel):
    docs: str = ""
    path: str = ""
    exists: bool = False


# =============================================================================
# Preview database introspection
# =============================================================================


class DatabaseInfo(BaseModel):
    connected: bool
    database_path: str
    tables_count: int
    database_size: str


class ColumnSchema(BaseModel):
    name: str
    type: str
    nullable: bool
    primary_key: bool = False
    foreign_key: str | None = None  # "table.column"


class TableSchema(BaseModel):
    name: str
    columns: list[ColumnSchema]
    row_count: int


class DatabaseSchema(BaseModel):
    tables: list[TableSchema]


class TableData(BaseModel):
    table_name: str
    total_rows: int
    returned_rows: int
    limit: int
    offset: int
    data: list[dict[str, Any]]


class QueryResult(BaseModel):
    columns: list[str]
    rows: int
    data: list[dict[str, Any]]
    query: str
