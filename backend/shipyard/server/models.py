from datetime import datetime
from typing import Any
from typing import TYPE_CHECKING

from pydantic import BaseModel

from shipyard.db.enums import BuildJobStatus
from shipyard.sandbox.models import AgentHealth

if TYPE_CHECKING:
    from shipyard.db.models import BuildJob


class MessageRequest(BaseModel):
    """Request to send a message to the agent of a chat session."""

    content: str
    # Image attachments forwarded to the planner
    attachments: list[dict[str, Any]] | None = None
    # Imported repositories build with the user's own token
    is_imported: bool = False


class AgentHealthResponse(BaseModel):
    session_id: str
    alive: bool
    ready: bool
    uptime: float | None = None

    @classmethod
    def from_health(
        cls, session_id: str, health: AgentHealth | None
    ) -> "AgentHealthResponse":
        if health is None:
            return cls(session_id=session_id, alive=False, ready=False)
        return cls(
            session_id=session_id,
            alive=health.alive,
            ready=health.ready,
            uptime=health.uptime,
        )


class BuildJobResponse(BaseModel):
    id: str
    status: BuildJobStatus
    tickets: list[dict[str, Any]]
    total_tickets: int
    completed_tickets: int
    failed_tickets: int
    total_cost: float
    error_message: str | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None

    @classmethod
    def from_model(cls, build_job: "BuildJob") -> "BuildJobResponse":
        return cls(
            id=str(build_job.id),
            status=build_job.status,
            tickets=build_job.tickets,
            total_tickets=build_job.total_tickets,
            completed_tickets=build_job.completed_tickets,
            failed_tickets=build_job.failed_tickets,
            total_cost=build_job.total_cost,
            error_message=build_job.error_message,
            created_at=build_job.created_at,
            started_at=build_job.started_at,
            completed_at=build_job.completed_at,
        )


class CancelBuildResponse(BaseModel):
    build_job_id: str
    cancelled: bool


class QueryRequest(BaseModel):
    """Read-only SQL run against the session's preview database."""

    query: str
