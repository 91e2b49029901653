"""Unit tests for the plan/build event processor."""

from shipyard.agent.event_processor import EventProcessor
from shipyard.agent.event_processor import format_build_summary
from shipyard.agent.event_processor import format_tickets_summary
from shipyard.agent.models import AgentErrorEvent
from shipyard.agent.models import BuildCompleteEvent
from shipyard.agent.models import ClarificationEvent
from shipyard.agent.models import PlanCompleteEvent
from shipyard.agent.models import TextDeltaEvent
from shipyard.agent.models import Ticket
from shipyard.agent.models import TicketCompleteEvent
from shipyard.agent.models import TicketsGeneratedEvent
from shipyard.agent.models import TicketStartEvent
from shipyard.agent.models import TokenUsage
from shipyard.agent.models import ToolResultEvent
from shipyard.agent.models import ToolUseEvent
from shipyard.agent.packets import ContentBlockDelta
from shipyard.agent.packets import ContentBlockStart
from shipyard.agent.packets import ContentBlockStop
from shipyard.agent.packets import StreamError
from shipyard.agent.packets import TextBlock
from shipyard.agent.packets import ToolBlock
from shipyard.agent.packets import ToolStart
from shipyard.agent.packets import ToolStatus
from shipyard.agent.packets import ToolStop


def _ticket(ticket_id: str, ticket_type: str | None, effort: int = 1) -> Ticket:
    return Ticket(
        id=ticket_id,
        title=f"Ticket {ticket_id}",
        type=ticket_type,
        estimated_effort=effort,
    )


class TestFormatTicketsSummary:
    def test_groups_by_type_in_build_order(self) -> None:
        summary = format_tickets_summary(
            [
                _ticket("T1", "frontend"),
                _ticket("T2", "schema", effort=2),
                _ticket("T3", "docs"),
            ]
        )

        assert summary.index("### Schema") < summary.index("### Frontend")
        assert summary.index("### Frontend") < summary.index("### Other")
        assert "- **T2**: Ticket T2 🔹🔹" in summary
        assert "- **T3**: Ticket T3 🔹" in summary
        assert "**Total: 3 tickets**" in summary

    def test_effort_markers_are_capped(self) -> None:
        summary = format_tickets_summary([_ticket("T1", "backend", effort=9)])
        assert "🔹" * 5 in summary
        assert "🔹" * 6 not in summary

    def test_empty(self) -> None:
        assert "No tickets generated" in format_tickets_summary([])


class TestFormatBuildSummary:
    def test_all_succeeded(self) -> None:
        summary = format_build_summary(3, 0, 3, 1.23456)
        assert "All 3 tickets completed successfully" in summary
        assert "$1.2346" in summary

    def test_some_failed(self) -> None:
        summary = format_build_summary(2, 1, 3, 0.0)
        assert "2/3 tickets completed" in summary
        assert "(1 failed)" in summary


class TestPlanEvents:
    """Tests for EventProcessor.process_plan_event."""

    def test_text_tool_text_produces_three_blocks(self) -> None:
        processor = EventProcessor()

        packets = [
            *processor.process_plan_event(TextDeltaEvent(content="Reading ")),
            *processor.process_plan_event(TextDeltaEvent(content="files")),
            *processor.process_plan_event(
                ToolUseEvent(tool_name="Read", tool_id="t1", input={"path": "a"})
            ),
            *processor.process_plan_event(
                ToolResultEvent(tool_id="t1", result="contents")
            ),
            *processor.process_plan_event(TextDeltaEvent(content="Done")),
        ]

        assert [type(packet) for packet in packets] == [
            ContentBlockStart,
            ContentBlockDelta,
            ContentBlockDelta,
            ContentBlockStop,
            ToolStart,
            ToolStop,
            ContentBlockStart,
            ContentBlockDelta,
        ]

        blocks = processor.get_accumulated_blocks()
        assert len(blocks) == 3
        assert blocks[0] == TextBlock(content="Reading files")
        assert isinstance(blocks[1], ToolBlock)
        assert blocks[1].status == ToolStatus.COMPLETED
        assert blocks[1].result == "contents"
        assert blocks[2] == TextBlock(content="Done")
        assert processor.get_accumulated_content() == "Reading files\n\nDone"

    def test_tool_error_result(self) -> None:
        processor = EventProcessor()
        list(processor.process_plan_event(ToolUseEvent(tool_name="Bash", tool_id="t1")))
        packets = list(
            processor.process_plan_event(
                ToolResultEvent(tool_id="t1", result="exit 1", is_error=True)
            )
        )

        assert packets == [ToolStop(tool_id="t1", tool_result="exit 1", is_error=True)]
        blocks = processor.get_accumulated_blocks()
        assert isinstance(blocks[0], ToolBlock)
        assert blocks[0].status == ToolStatus.ERROR

    def test_unmatched_tool_result_still_forwarded(self) -> None:
        processor = EventProcessor()
        packets = list(processor.process_plan_event(ToolResultEvent(tool_id="nope")))

        assert packets == [ToolStop(tool_id="nope")]
        assert processor.get_accumulated_blocks() == []

    def test_clarification_closes_partial_text(self) -> None:
        processor = EventProcessor()
        list(processor.process_plan_event(TextDeltaEvent(content="Which database?")))

        packets = list(processor.process_plan_event(ClarificationEvent()))

        assert packets == [ContentBlockStop()]
        assert processor.get_accumulated_blocks() == [
            TextBlock(content="Which database?")
        ]

    def test_plan_complete_closes_text_block(self) -> None:
        processor = EventProcessor()
        list(
            processor.process_plan_event(
                TicketsGeneratedEvent(tickets=[_ticket("T1", "schema")])
            )
        )
        list(processor.process_plan_event(PlanCompleteEvent()))

        packets = list(processor.emit_text("Build started"))

        assert packets == [ContentBlockStart(), ContentBlockDelta(text="Build started")]
        blocks = processor.get_accumulated_blocks()
        assert len(blocks) == 2
        assert "Generated Tickets" in blocks[0].content
        assert blocks[1] == TextBlock(content="Build started")

    def test_tickets_generated_records_tickets_and_summary(self) -> None:
        processor = EventProcessor()
        tickets = [_ticket("T1", "schema")]

        packets = list(
            processor.process_plan_event(
                TicketsGeneratedEvent(tickets=tickets, tickets_path="/t.json")
            )
        )

        assert isinstance(packets[0], ContentBlockStart)
        assert isinstance(packets[1], ContentBlockDelta)
        assert "Generated Tickets" in packets[1].text
        assert processor.get_tickets() == tickets
        assert processor.get_tickets_path() == "/t.json"

    def test_error_becomes_stream_error(self) -> None:
        processor = EventProcessor()
        packets = list(processor.process_plan_event(AgentErrorEvent(message="boom")))
        assert packets == [StreamError(message="boom")]

    def test_whitespace_only_text_is_dropped(self) -> None:
        processor = EventProcessor()
        list(processor.process_plan_event(TextDeltaEvent(content="  \n")))
        assert processor.get_accumulated_blocks() == []


class TestTokenAccounting:
    """Plan and build totals are tracked separately and summed."""

    def test_plan_plus_build_totals(self) -> None:
        processor = EventProcessor()
        list(
            processor.process_plan_event(
                PlanCompleteEvent(
                    tokens_used=TokenUsage(input=100, output=20, cache_read=5),
                    cost=0.5,
                )
            )
        )
        list(
            processor.process_build_event(
                TicketCompleteEvent(
                    ticket=_ticket("T1", "schema"),
                    success=True,
                    tokens_used=TokenUsage(input=10, output=1),
                    cost=0.1,
                )
            )
        )

        assert processor.get_token_usage() == {
            "input_tokens": 110,
            "output_tokens": 21,
            "context_tokens": 5,
            "total_tokens": 131,
        }
        assert abs(processor.get_total_cost() - 0.6) < 1e-9

    def test_build_complete_replaces_per_ticket_sums(self) -> None:
        processor = EventProcessor()
        list(
            processor.process_build_event(
                TicketCompleteEvent(
                    ticket=_ticket("T1", "schema"),
                    success=True,
                    tokens_used=TokenUsage(input=10, output=1),
                    cost=0.1,
                )
            )
        )
        list(
            processor.process_build_event(
                BuildCompleteEvent(
                    success_count=1,
                    failed_count=0,
                    total_tickets=1,
                    total_tokens_used=TokenUsage(input=40, output=4),
                    total_cost=0.3,
                )
            )
        )

        usage = processor.get_token_usage()
        assert usage["input_tokens"] == 40
        assert usage["output_tokens"] == 4
        assert processor.get_total_cost() == 0.3

    def test_reset_clears_everything(self) -> None:
        processor = EventProcessor()
        list(
            processor.process_plan_event(
                PlanCompleteEvent(tokens_used=TokenUsage(input=1), cost=1.0)
            )
        )
        list(processor.process_plan_event(TextDeltaEvent(content="x")))

        processor.reset()

        assert processor.get_token_usage()["input_tokens"] == 0
        assert processor.get_total_cost() == 0.0
        assert processor.get_accumulated_blocks() == []


class TestBuildEvents:
    def test_ticket_progress_text(self) -> None:
        processor = EventProcessor()
        ticket = _ticket("T1", "schema")

        list(
            processor.process_build_event(
                TicketStartEvent(ticket=ticket, ticket_index=0, total_tickets=2)
            )
        )
        list(
            processor.process_build_event(
                TicketCompleteEvent(ticket=ticket, success=False, error="lint")
            )
        )

        content = processor.get_accumulated_content()
        assert "Processing ticket 1/2:** Ticket T1" in content
        assert "❌ Ticket T1 failed: lint" in content

    def test_build_complete_closes_block(self) -> None:
        processor = EventProcessor()
        packets = list(
            processor.process_build_event(
                BuildCompleteEvent(success_count=1, failed_count=0, total_tickets=1)
            )
        )

        assert isinstance(packets[-1], ContentBlockStop)
        assert "Build Complete" in processor.get_accumulated_content()

        packets = list(processor.emit_text("Preview ready"))

        assert isinstance(packets[0], ContentBlockStart)
        assert processor.get_accumulated_blocks()[-1] == TextBlock(
            content="Preview ready"
        )
