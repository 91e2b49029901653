"""Workflow state, tickets and the upstream plan/build event vocabulary.

Plan and build events arrive from the in-container agent as SSE frames,
either flat ({"type": "text_delta", "content": ...}) or wrapped in an
envelope ({"type": "text_delta", "data": {...}}). parse_plan_event and
parse_build_event accept both shapes.
"""

from enum import Enum
from typing import Annotated
from typing import Any
from typing import Literal
from typing import Union

from pydantic import Field
from pydantic import model_validator
from pydantic import TypeAdapter
from pydantic import ValidationError

from shipyard.sandbox.models import AgentApiModel
from shipyard.utils.logger import setup_logger

logger = setup_logger()


class TicketStatus(str, Enum):
    """Ticket status as written by the planner ("Todo", "InProgress", ...)."""

    TODO = "Todo"
    IN_PROGRESS = "InProgress"
    DONE = "Done"
    ERROR = "Error"

    @classmethod
    def _missing_(cls, value: object) -> "TicketStatus | None":
        # Also accept "todo", "in_progress", "IN_PROGRESS"
        if isinstance(value, str):
            normalized = value.replace("_", "").lower()
            for member in cls:
                if member.value.lower() == normalized:
                    return member
        return None

    def needs_build(self) -> bool:
        return self in (TicketStatus.TODO, TicketStatus.ERROR)


# Order in which ticket types are listed and built
TICKET_TYPE_ORDER = ["schema", "engine", "backend", "frontend", "test"]


class Ticket(AgentApiModel):
    id: str
    title: str
    description: str = ""
    type: str | None = None
    category: str | None = None
    estimated_effort: int = 1
    status: TicketStatus = TicketStatus.TODO
    error: str | None = None


class WorkflowPhase(str, Enum):
    IDLE = "idle"
    PLANNING = "planning"
    CLARIFICATION = "clarification"
    BUILDING = "building"
    COMPLETE = "complete"


_PHASES_WITH_TICKETS = (WorkflowPhase.BUILDING, WorkflowPhase.COMPLETE)


class AgentWorkflowState(AgentApiModel):
    """Transient state of one orchestrator invocation.

    Resumption after a clarification relies on the persisted conversation
    history, not on this object. tickets may only be non-empty while building
    or complete.
    """

    phase: WorkflowPhase = WorkflowPhase.IDLE
    tickets: list[Ticket] = Field(default_factory=list)
    tickets_path: str | None = None

    @model_validator(mode="after")
    def _tickets_only_when_building(self) -> "AgentWorkflowState":
        if self.tickets and self.phase not in _PHASES_WITH_TICKETS:
            raise ValueError(
                f"tickets must be empty in phase {self.phase.value}, "
                f"got {len(self.tickets)}"
            )
        return self

    def transition(
        self,
        phase: WorkflowPhase,
        tickets: list[Ticket] | None = None,
        tickets_path: str | None = None,
    ) -> None:
        """Move to phase, optionally replacing tickets and their path.

        Raises:
            ValueError: If the resulting state would hold tickets outside the
                building/complete phases
        """
        next_state = AgentWorkflowState(
            phase=phase,
            tickets=self.tickets if tickets is None else tickets,
            tickets_path=tickets_path or self.tickets_path,
        )
        self.phase = next_state.phase
        self.tickets = next_state.tickets
        self.tickets_path = next_state.tickets_path


class TokenUsage(AgentApiModel):
    input: int = 0
    output: int = 0
    cache_creation: int = 0
    cache_read: int = 0

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input=self.input + other.input,
            output=self.output + other.output,
            cache_creation=self.cache_creation + other.cache_creation,
            cache_read=self.cache_read + other.cache_read,
        )


################################################
# Plan events
################################################
class TextDeltaEvent(AgentApiModel):
    type: Literal["text_delta"] = "text_delta"
    content: str


class ToolUseEvent(AgentApiModel):
    type: Literal["tool_use"] = "tool_use"
    tool_name: str
    tool_id: str
    input: Any = None


class ToolResultEvent(AgentApiModel):
    type: Literal["tool_result"] = "tool_result"
    tool_id: str
    result: Any = None
    is_error: bool = False


class ClarificationEvent(AgentApiModel):
    type: Literal["clarification"] = "clarification"
    question: str | None = None


class TicketsGeneratedEvent(AgentApiModel):
    type: Literal["tickets_generated"] = "tickets_generated"
    tickets: list[Ticket]
    tickets_path: str | None = None


class PlanCompleteEvent(AgentApiModel):
    type: Literal["complete"] = "complete"
    tickets_path: str | None = None
    tokens_used: TokenUsage = Field(default_factory=TokenUsage)
    cost: float = 0.0


class AgentErrorEvent(AgentApiModel):
    """Shared by the plan and build streams."""

    type: Literal["error"] = "error"
    message: str


################################################
# Build events
################################################
class TicketStartEvent(AgentApiModel):
    type: Literal["ticket_start"] = "ticket_start"
    ticket: Ticket
    ticket_index: int
    total_tickets: int


class TicketCompleteEvent(AgentApiModel):
    type: Literal["ticket_complete"] = "ticket_complete"
    ticket: Ticket
    success: bool
    error: str | None = None
    tokens_used: TokenUsage | None = None
    cost: float | None = None


class BuildStatusEvent(AgentApiModel):
    type: Literal["status"] = "status"
    message: str


class BuildCompleteEvent(AgentApiModel):
    type: Literal["build_complete"] = "build_complete"
    success_count: int
    failed_count: int
    total_tickets: int
    total_tokens_used: TokenUsage = Field(default_factory=TokenUsage)
    total_cost: float = 0.0


PlanEvent = Annotated[
    Union[
        TextDeltaEvent,
        ToolUseEvent,
        ToolResultEvent,
        ClarificationEvent,
        TicketsGeneratedEvent,
        PlanCompleteEvent,
        AgentErrorEvent,
    ],
    Field(discriminator="type"),
]

BuildEvent = Annotated[
    Union[
        TicketStartEvent,
        TicketCompleteEvent,
        BuildStatusEvent,
        BuildCompleteEvent,
        AgentErrorEvent,
    ],
    Field(discriminator="type"),
]

_plan_event_adapter: TypeAdapter[PlanEvent] = TypeAdapter(PlanEvent)
_build_event_adapter: TypeAdapter[BuildEvent] = TypeAdapter(BuildEvent)


def _unwrap(raw: dict[str, Any]) -> dict[str, Any]:
    data = raw.get("data")
    if isinstance(data, dict) and "type" in raw:
        return {"type": raw["type"], **data}
    return raw


def parse_plan_event(raw: dict[str, Any]) -> PlanEvent | None:
    """Validate a raw plan event. Unknown or malformed events yield None."""
    try:
        return _plan_event_adapter.validate_python(_unwrap(raw))
    except ValidationError as e:
        logger.warning(f"Ignoring unrecognized plan event {raw.get('type')!r}: {e}")
        return None


def parse_build_event(raw: dict[str, Any]) -> BuildEvent | None:
    """Validate a raw build event. Unknown or malformed events yield None."""
    try:
        return _build_event_adapter.validate_python(_unwrap(raw))
    except ValidationError as e:
        logger.warning(f"Ignoring unrecognized build event {raw.get('type')!r}: {e}")
        return None


class AgentRunConfig(AgentApiModel):
    """Per-invocation settings for the orchestrator and build dispatcher."""

    project_id: str
    session_id: str
    user_id: str | None = None
    # Imported repositories build with the user's token, first-party ones
    # with the app token
    is_imported: bool = False
    cwd: str
    db_url: str | None = None
    enable_review: bool = True
    enable_test: bool = False
    test_url: str | None = None
