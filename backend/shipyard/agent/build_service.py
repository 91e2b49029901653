"""Build phase: process tickets through the sandbox agent."""

from collections.abc import Generator
from typing import Any

import httpx

from shipyard.agent.models import AgentErrorEvent
from shipyard.agent.models import BuildCompleteEvent
from shipyard.agent.models import BuildEvent
from shipyard.agent.models import parse_build_event
from shipyard.agent.models import Ticket
from shipyard.agent.models import TicketCompleteEvent
from shipyard.agent.models import TicketStatus
from shipyard.agent.models import TICKET_TYPE_ORDER
from shipyard.sandbox.agent_client import AgentClientError
from shipyard.sandbox.agent_client import SandboxAgentClient
from shipyard.utils.logger import setup_logger

logger = setup_logger()


def sort_tickets_by_processing_order(tickets: list[Ticket]) -> list[Ticket]:
    """Schema first, then engine, backend, frontend, test, then anything else.

    The sort is stable, so the planner's order is kept within a type.
    """

    def rank(ticket: Ticket) -> int:
        if ticket.type in TICKET_TYPE_ORDER:
            return TICKET_TYPE_ORDER.index(ticket.type)
        return len(TICKET_TYPE_ORDER)

    return sorted(tickets, key=rank)


def run_build(
    client: SandboxAgentClient,
    tickets: list[Ticket],
    tickets_path: str | None,
    cwd: str,
    db_url: str | None = None,
    review: bool = True,
    test_url: str | None = None,
    build_id: str | None = None,
    credential: str | None = None,
) -> Generator[BuildEvent, None, None]:
    """Build every ticket still in Todo or Error, yielding typed events.

    A failure of the stream itself ends with an error event followed by a
    build_complete that counts every ticket as failed, so consumers always
    see a terminal build_complete.
    """
    to_process = [ticket for ticket in tickets if ticket.status.needs_build()]

    if not to_process:
        yield BuildCompleteEvent(success_count=0, failed_count=0, total_tickets=0)
        return

    sorted_tickets = sort_tickets_by_processing_order(to_process)
    logger.info(f"Building {len(sorted_tickets)} of {len(tickets)} tickets")

    payload = [
        ticket.model_dump(mode="json", by_alias=True) for ticket in sorted_tickets
    ]

    try:
        for raw_event in client.stream_build(
            payload,
            tickets_path=tickets_path,
            cwd=cwd,
            db_url=db_url,
            review=review,
            test_url=test_url,
            build_id=build_id,
            credential=credential,
        ):
            event = parse_build_event(raw_event)
            if event is not None:
                yield event
    except (AgentClientError, httpx.HTTPError) as e:
        logger.error(f"Build stream failed: {e}")
        yield AgentErrorEvent(message=str(e))
        yield BuildCompleteEvent(
            success_count=0,
            failed_count=len(tickets),
            total_tickets=len(tickets),
        )


def apply_ticket_result(
    tickets: list[dict[str, Any]], event: TicketCompleteEvent
) -> None:
    """Record a ticket outcome in a stored ticket snapshot, in place."""
    for ticket in tickets:
        if ticket.get("id") != event.ticket.id:
            continue
        if event.success:
            ticket["status"] = TicketStatus.DONE.value
            ticket["error"] = None
        else:
            ticket["status"] = TicketStatus.ERROR.value
            ticket["error"] = event.error or "Unknown error"


def count_ticket_outcomes(tickets: list[dict[str, Any]]) -> tuple[int, int]:
    """(done, failed) counts of a stored ticket snapshot."""
    statuses = [TicketStatus(ticket.get("status", "Todo")) for ticket in tickets]
    return (
        statuses.count(TicketStatus.DONE),
        statuses.count(TicketStatus.ERROR),
    )
