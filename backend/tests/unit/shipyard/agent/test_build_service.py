"""Unit tests for the build phase service."""

from unittest.mock import MagicMock

import httpx

from shipyard.agent.build_service import apply_ticket_result
from shipyard.agent.build_service import count_ticket_outcomes
from shipyard.agent.build_service import run_build
from shipyard.agent.build_service import sort_tickets_by_processing_order
from shipyard.agent.models import AgentErrorEvent
from shipyard.agent.models import BuildCompleteEvent
from shipyard.agent.models import BuildStatusEvent
from shipyard.agent.models import Ticket
from shipyard.agent.models import TicketCompleteEvent
from shipyard.agent.models import TicketStatus
from shipyard.sandbox.agent_client import AgentClientError


def _ticket(
    ticket_id: str,
    ticket_type: str | None = None,
    status: TicketStatus = TicketStatus.TODO,
) -> Ticket:
    return Ticket(id=ticket_id, title=ticket_id, type=ticket_type, status=status)


class TestSortTickets:
    def test_processing_order(self) -> None:
        tickets = [
            _ticket("T1", "test"),
            _ticket("T2", "frontend"),
            _ticket("T3", None),
            _ticket("T4", "backend"),
            _ticket("T5", "engine"),
            _ticket("T6", "schema"),
        ]

        ordered = sort_tickets_by_processing_order(tickets)

        assert [ticket.id for ticket in ordered] == [
            "T6",
            "T5",
            "T4",
            "T2",
            "T1",
            "T3",
        ]

    def test_stable_within_type(self) -> None:
        tickets = [_ticket("B", "schema"), _ticket("A", "schema")]
        assert [t.id for t in sort_tickets_by_processing_order(tickets)] == [
            "B",
            "A",
        ]


class TestRunBuild:
    """Tests for run_build."""

    def test_nothing_to_build(self) -> None:
        client = MagicMock()
        tickets = [_ticket("T1", status=TicketStatus.DONE)]

        events = list(run_build(client, tickets, "/t.json", cwd="/app/project"))

        assert events == [
            BuildCompleteEvent(success_count=0, failed_count=0, total_tickets=0)
        ]
        client.stream_build.assert_not_called()

    def test_sends_only_pending_tickets_in_order(self) -> None:
        client = MagicMock()
        client.stream_build.return_value = iter(
            [
                {"type": "status", "message": "Starting"},
                {"type": "unknown_event"},
                {
                    "type": "build_complete",
                    "successCount": 2,
                    "failedCount": 0,
                    "totalTickets": 2,
                },
            ]
        )
        tickets = [
            _ticket("T1", "frontend"),
            _ticket("T2", "schema", status=TicketStatus.DONE),
            _ticket("T3", "backend", status=TicketStatus.ERROR),
        ]

        events = list(
            run_build(
                client,
                tickets,
                "/t.json",
                cwd="/app/project",
                credential="tok",
                build_id="job-1",
            )
        )

        assert events[0] == BuildStatusEvent(message="Starting")
        assert isinstance(events[1], BuildCompleteEvent)
        assert len(events) == 2

        payload = client.stream_build.call_args.args[0]
        assert [ticket["id"] for ticket in payload] == ["T3", "T1"]
        assert payload[0]["status"] == "Error"
        kwargs = client.stream_build.call_args.kwargs
        assert kwargs["credential"] == "tok"
        assert kwargs["build_id"] == "job-1"
        assert kwargs["tickets_path"] == "/t.json"

    def test_stream_failure_ends_with_error_and_build_complete(self) -> None:
        def failing_stream(*args: object, **kwargs: object):
            yield {"type": "status", "message": "Starting"}
            raise AgentClientError("agent crashed", status_code=500)

        client = MagicMock()
        client.stream_build.side_effect = failing_stream
        tickets = [_ticket("T1", "schema"), _ticket("T2", "backend")]

        events = list(run_build(client, tickets, "/t.json", cwd="/app/project"))

        assert isinstance(events[-2], AgentErrorEvent)
        assert "agent crashed" in events[-2].message
        assert events[-1] == BuildCompleteEvent(
            success_count=0, failed_count=2, total_tickets=2
        )

    def test_transport_error_is_handled(self) -> None:
        client = MagicMock()
        client.stream_build.side_effect = httpx.ReadTimeout("timed out")

        events = list(
            run_build(client, [_ticket("T1", "schema")], None, cwd="/app/project")
        )

        assert isinstance(events[0], AgentErrorEvent)
        assert isinstance(events[1], BuildCompleteEvent)


class TestTicketSnapshot:
    """Tests for the stored ticket snapshot helpers."""

    def test_apply_success(self) -> None:
        tickets = [{"id": "T1", "status": "Todo"}, {"id": "T2", "status": "Todo"}]
        apply_ticket_result(
            tickets, TicketCompleteEvent(ticket=_ticket("T1"), success=True)
        )

        assert tickets[0] == {"id": "T1", "status": "Done", "error": None}
        assert tickets[1] == {"id": "T2", "status": "Todo"}

    def test_apply_failure_defaults_error(self) -> None:
        tickets = [{"id": "T1", "status": "Todo"}]
        apply_ticket_result(
            tickets, TicketCompleteEvent(ticket=_ticket("T1"), success=False)
        )

        assert tickets[0]["status"] == "Error"
        assert tickets[0]["error"] == "Unknown error"

    def test_count_outcomes(self) -> None:
        tickets = [
            {"id": "T1", "status": "Done"},
            {"id": "T2", "status": "Error"},
            {"id": "T3", "status": "Todo"},
            {"id": "T4"},
            {"id": "T5", "status": "done"},
        ]
        assert count_ticket_outcomes(tickets) == (2, 1)
