"""Unit tests for workflow state, tickets and upstream event parsing."""

import pytest

from shipyard.agent.models import AgentErrorEvent
from shipyard.agent.models import AgentWorkflowState
from shipyard.agent.models import BuildCompleteEvent
from shipyard.agent.models import parse_build_event
from shipyard.agent.models import parse_plan_event
from shipyard.agent.models import PlanCompleteEvent
from shipyard.agent.models import TextDeltaEvent
from shipyard.agent.models import Ticket
from shipyard.agent.models import TicketCompleteEvent
from shipyard.agent.models import TicketStatus
from shipyard.agent.models import TokenUsage
from shipyard.agent.models import ToolUseEvent
from shipyard.agent.models import WorkflowPhase


def _ticket(ticket_id: str = "T1") -> Ticket:
    return Ticket(id=ticket_id, title="Create users table", type="schema")


class TestTicketStatus:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("Todo", TicketStatus.TODO),
            ("todo", TicketStatus.TODO),
            ("in_progress", TicketStatus.IN_PROGRESS),
            ("IN_PROGRESS", TicketStatus.IN_PROGRESS),
            ("Done", TicketStatus.DONE),
            ("error", TicketStatus.ERROR),
        ],
    )
    def test_accepts_planner_and_snake_case(
        self, raw: str, expected: TicketStatus
    ) -> None:
        assert TicketStatus(raw) == expected

    def test_rejects_unknown(self) -> None:
        with pytest.raises(ValueError):
            TicketStatus("blocked")

    def test_needs_build(self) -> None:
        assert TicketStatus.TODO.needs_build()
        assert TicketStatus.ERROR.needs_build()
        assert not TicketStatus.DONE.needs_build()
        assert not TicketStatus.IN_PROGRESS.needs_build()


class TestTicket:
    def test_parses_camel_case(self) -> None:
        ticket = Ticket.model_validate(
            {
                "id": "T1",
                "title": "Users",
                "type": "schema",
                "estimatedEffort": 3,
                "status": "Todo",
            }
        )
        assert ticket.estimated_effort == 3
        assert ticket.model_dump(by_alias=True)["estimatedEffort"] == 3


class TestAgentWorkflowState:
    """Tests for the tickets-only-while-building invariant."""

    def test_starts_idle_without_tickets(self) -> None:
        state = AgentWorkflowState()
        assert state.phase == WorkflowPhase.IDLE
        assert state.tickets == []

    @pytest.mark.parametrize(
        "phase",
        [WorkflowPhase.IDLE, WorkflowPhase.PLANNING, WorkflowPhase.CLARIFICATION],
    )
    def test_rejects_tickets_outside_building(self, phase: WorkflowPhase) -> None:
        with pytest.raises(ValueError):
            AgentWorkflowState(phase=phase, tickets=[_ticket()])

    def test_transition_to_building_with_tickets(self) -> None:
        state = AgentWorkflowState()
        state.transition(WorkflowPhase.PLANNING)
        state.transition(
            WorkflowPhase.BUILDING, tickets=[_ticket()], tickets_path="/t.json"
        )

        assert state.phase == WorkflowPhase.BUILDING
        assert [ticket.id for ticket in state.tickets] == ["T1"]
        assert state.tickets_path == "/t.json"

        state.transition(WorkflowPhase.COMPLETE)
        assert state.tickets_path == "/t.json"
        assert len(state.tickets) == 1

    def test_invalid_transition_leaves_state_untouched(self) -> None:
        state = AgentWorkflowState()
        state.transition(WorkflowPhase.PLANNING)

        with pytest.raises(ValueError):
            state.transition(WorkflowPhase.CLARIFICATION, tickets=[_ticket()])

        assert state.phase == WorkflowPhase.PLANNING
        assert state.tickets == []


class TestTokenUsage:
    def test_addition(self) -> None:
        total = TokenUsage(input=10, output=5, cache_read=2) + TokenUsage(
            input=1, output=1, cache_creation=3
        )
        assert total == TokenUsage(input=11, output=6, cache_creation=3, cache_read=2)


class TestParsePlanEvent:
    """Tests for parse_plan_event."""

    def test_flat_event(self) -> None:
        event = parse_plan_event({"type": "text_delta", "content": "hi"})
        assert event == TextDeltaEvent(content="hi")

    def test_enveloped_event(self) -> None:
        event = parse_plan_event(
            {
                "type": "tool_use",
                "data": {"toolName": "Read", "toolId": "t1", "input": {"path": "a"}},
            }
        )
        assert isinstance(event, ToolUseEvent)
        assert event.tool_name == "Read"
        assert event.tool_id == "t1"

    def test_complete_with_token_usage(self) -> None:
        event = parse_plan_event(
            {
                "type": "complete",
                "data": {
                    "ticketsPath": "/t.json",
                    "tokensUsed": {"input": 100, "output": 50, "cacheRead": 7},
                    "cost": 0.25,
                },
            }
        )
        assert isinstance(event, PlanCompleteEvent)
        assert event.tokens_used.cache_read == 7
        assert event.cost == 0.25

    def test_unknown_event_is_ignored(self) -> None:
        assert parse_plan_event({"type": "heartbeat"}) is None

    def test_malformed_event_is_ignored(self) -> None:
        assert parse_plan_event({"type": "text_delta"}) is None


class TestParseBuildEvent:
    def test_ticket_complete(self) -> None:
        event = parse_build_event(
            {
                "type": "ticket_complete",
                "data": {
                    "ticket": {"id": "T1", "title": "Users"},
                    "success": False,
                    "error": "tests failed",
                },
            }
        )
        assert isinstance(event, TicketCompleteEvent)
        assert event.success is False
        assert event.error == "tests failed"

    def test_build_complete(self) -> None:
        event = parse_build_event(
            {
                "type": "build_complete",
                "successCount": 2,
                "failedCount": 0,
                "totalTickets": 2,
                "totalCost": 1.5,
            }
        )
        assert isinstance(event, BuildCompleteEvent)
        assert event.total_cost == 1.5

    def test_error_is_shared(self) -> None:
        assert parse_build_event({"type": "error", "message": "x"}) == (
            AgentErrorEvent(message="x")
        )

    def test_plan_only_event_is_rejected(self) -> None:
        assert parse_build_event({"type": "clarification", "question": "?"}) is None
