"""Turns upstream plan/build events into normalized packets and a transcript.

The processor is both a translator and an accumulator: every packet it
yields is also folded into the blocks that get persisted on the assistant
message once the run finishes.
"""

from collections.abc import Generator

from shipyard.agent.models import AgentErrorEvent
from shipyard.agent.models import BuildCompleteEvent
from shipyard.agent.models import BuildEvent
from shipyard.agent.models import BuildStatusEvent
from shipyard.agent.models import ClarificationEvent
from shipyard.agent.models import PlanCompleteEvent
from shipyard.agent.models import PlanEvent
from shipyard.agent.models import TextDeltaEvent
from shipyard.agent.models import Ticket
from shipyard.agent.models import TICKET_TYPE_ORDER
from shipyard.agent.models import TicketCompleteEvent
from shipyard.agent.models import TicketsGeneratedEvent
from shipyard.agent.models import TicketStartEvent
from shipyard.agent.models import TokenUsage
from shipyard.agent.models import ToolResultEvent
from shipyard.agent.models import ToolUseEvent
from shipyard.agent.packets import AssistantBlock
from shipyard.agent.packets import ContentBlockDelta
from shipyard.agent.packets import ContentBlockStart
from shipyard.agent.packets import ContentBlockStop
from shipyard.agent.packets import NormalizedEvent
from shipyard.agent.packets import StreamError
from shipyard.agent.packets import TextBlock
from shipyard.agent.packets import ToolBlock
from shipyard.agent.packets import ToolStart
from shipyard.agent.packets import ToolStatus
from shipyard.agent.packets import ToolStop

OTHER_TICKET_TYPE = "other"
MAX_EFFORT_MARKERS = 5
EFFORT_MARKER = "🔹"


def format_tickets_summary(tickets: list[Ticket]) -> str:
    """Markdown list of tickets grouped by type."""
    if not tickets:
        return "\n\n**No tickets generated.**\n"

    by_type: dict[str, list[Ticket]] = {}
    for ticket in tickets:
        ticket_type = ticket.type if ticket.type in TICKET_TYPE_ORDER else None
        by_type.setdefault(ticket_type or OTHER_TICKET_TYPE, []).append(ticket)

    lines = ["\n\n## 📋 Generated Tickets\n"]
    for ticket_type in [*TICKET_TYPE_ORDER, OTHER_TICKET_TYPE]:
        type_tickets = by_type.get(ticket_type)
        if not type_tickets:
            continue

        lines.append(f"\n### {ticket_type.capitalize()}")
        for ticket in type_tickets:
            effort = EFFORT_MARKER * min(ticket.estimated_effort, MAX_EFFORT_MARKERS)
            lines.append(f"- **{ticket.id}**: {ticket.title} {effort}")

    lines.append(f"\n**Total: {len(tickets)} tickets**\n")
    return "\n".join(lines)


def format_build_summary(success: int, failed: int, total: int, cost: float) -> str:
    lines = ["\n\n## 🏁 Build Complete\n"]
    if failed == 0:
        lines.append(f"✅ **All {total} tickets completed successfully!**")
    else:
        lines.append(f"⚠️ **{success}/{total} tickets completed** ({failed} failed)")
    lines.append(f"\n💰 **Cost:** ${cost:.4f}")
    return "\n".join(lines)


class EventProcessor:
    """Stateful translator for one assistant message.

    Text deltas accumulate into the current text block. A tool call, a
    clarification, a phase completion or finalize_content() closes the
    current text block, so text after any of them starts a new block.

    Token usage is tracked per phase: the plan phase reports its total on
    `complete`, the build phase accumulates per ticket and is then replaced
    by the authoritative `build_complete` total. get_token_usage() returns
    the sum of both phases.
    """

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self._blocks: list[AssistantBlock] = []
        self._current_content = ""
        self._pending_tools: dict[str, int] = {}
        self._plan_tokens = TokenUsage()
        self._build_tokens = TokenUsage()
        self._plan_cost = 0.0
        self._build_cost = 0.0
        self._tickets: list[Ticket] = []
        self._tickets_path: str | None = None

    # --- Plan phase ---

    def process_plan_event(
        self, event: PlanEvent
    ) -> Generator[NormalizedEvent, None, None]:
        if isinstance(event, TextDeltaEvent):
            yield from self._handle_text_delta(event.content)

        elif isinstance(event, ToolUseEvent):
            # Close the open text block so text after the tool starts a new one
            if self._current_content:
                self.finalize_content()
                yield ContentBlockStop()

            self._blocks.append(
                ToolBlock(name=event.tool_name, input=event.input)
            )
            self._pending_tools[event.tool_id] = len(self._blocks) - 1
            yield ToolStart(
                tool_name=event.tool_name,
                tool_input=event.input,
                tool_id=event.tool_id,
            )

        elif isinstance(event, ToolResultEvent):
            tool_index = self._pending_tools.pop(event.tool_id, None)
            if tool_index is not None:
                tool_block = self._blocks[tool_index]
                if isinstance(tool_block, ToolBlock):
                    tool_block.status = (
                        ToolStatus.ERROR if event.is_error else ToolStatus.COMPLETED
                    )
                    tool_block.result = event.result
            yield ToolStop(
                tool_id=event.tool_id,
                tool_result=event.result,
                is_error=event.is_error,
            )

        elif isinstance(event, ClarificationEvent):
            self.finalize_content()
            yield ContentBlockStop()

        elif isinstance(event, TicketsGeneratedEvent):
            self._tickets = list(event.tickets)
            self._tickets_path = event.tickets_path
            yield from self._handle_text_delta(format_tickets_summary(event.tickets))

        elif isinstance(event, PlanCompleteEvent):
            if event.tickets_path:
                self._tickets_path = event.tickets_path
            self._plan_tokens = event.tokens_used
            self._plan_cost = event.cost
            self.finalize_content()
            yield ContentBlockStop()

        elif isinstance(event, AgentErrorEvent):
            yield StreamError(message=event.message)

    # --- Build phase ---

    def process_build_event(
        self, event: BuildEvent
    ) -> Generator[NormalizedEvent, None, None]:
        if isinstance(event, TicketStartEvent):
            yield from self._handle_text_delta(
                f"\n\n🔧 **Processing ticket {event.ticket_index + 1}/"
                f"{event.total_tickets}:** {event.ticket.title}\n"
            )

        elif isinstance(event, TicketCompleteEvent):
            if event.success:
                text = f"✅ Ticket {event.ticket.id} completed\n"
            else:
                text = (
                    f"❌ Ticket {event.ticket.id} failed: "
                    f"{event.error or 'Unknown error'}\n"
                )
            yield from self._handle_text_delta(text)

            if event.tokens_used:
                self._build_tokens = self._build_tokens + event.tokens_used
            self._build_cost += event.cost or 0.0

        elif isinstance(event, BuildStatusEvent):
            yield from self._handle_text_delta(f"ℹ️ {event.message}\n")

        elif isinstance(event, BuildCompleteEvent):
            yield from self._handle_text_delta(
                format_build_summary(
                    event.success_count,
                    event.failed_count,
                    event.total_tickets,
                    event.total_cost,
                )
            )
            # The build total supersedes the per-ticket sums
            self._build_tokens = event.total_tokens_used
            self._build_cost = event.total_cost
            self.finalize_content()
            yield ContentBlockStop()

        elif isinstance(event, AgentErrorEvent):
            yield StreamError(message=event.message)

    # --- Text helpers ---

    def _handle_text_delta(self, text: str) -> Generator[NormalizedEvent, None, None]:
        if self._current_content == "":
            yield ContentBlockStart()
        self._current_content += text
        yield ContentBlockDelta(text=text)

    def emit_text(self, text: str) -> Generator[NormalizedEvent, None, None]:
        """Emit orchestrator-authored text as part of the transcript."""
        yield from self._handle_text_delta(text)

    def finalize_content(self) -> None:
        """Close the current text block. Whitespace-only text is dropped."""
        if self._current_content.strip():
            self._blocks.append(TextBlock(content=self._current_content))
        self._current_content = ""

    # --- Accessors ---

    def get_accumulated_blocks(self) -> list[AssistantBlock]:
        self.finalize_content()
        return list(self._blocks)

    def get_accumulated_content(self) -> str:
        content = "".join(
            f"{block.content}\n\n"
            for block in self._blocks
            if isinstance(block, TextBlock)
        )
        if self._current_content.strip():
            content += self._current_content
        return content.strip()

    def get_token_usage(self) -> dict[str, int]:
        tokens = self._plan_tokens + self._build_tokens
        return {
            "input_tokens": tokens.input,
            "output_tokens": tokens.output,
            "context_tokens": tokens.cache_read,
            "total_tokens": tokens.input + tokens.output,
        }

    def get_total_cost(self) -> float:
        return self._plan_cost + self._build_cost

    def get_tickets(self) -> list[Ticket]:
        return list(self._tickets)

    def get_tickets_path(self) -> str | None:
        return self._tickets_path
