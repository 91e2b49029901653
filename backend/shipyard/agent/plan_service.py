"""Plan phase: stream ticket generation from the sandbox agent."""

import datetime
import posixpath
from collections.abc import Generator
from typing import Any

import httpx

from shipyard.agent.models import AgentErrorEvent
from shipyard.agent.models import parse_plan_event
from shipyard.agent.models import PlanEvent
from shipyard.sandbox.agent_client import AgentClientError
from shipyard.sandbox.agent_client import SandboxAgentClient
from shipyard.utils.logger import setup_logger

logger = setup_logger()

TICKETS_DIR = "tickets"


def generate_tickets_path(cwd: str, now: datetime.datetime | None = None) -> str:
    """{cwd}/tickets/{YYYY-MM-DD-HH-MM-SS}.ticket.json, timestamp in UTC.

    The directory lives inside the sandbox; the planner creates it.
    """
    now = now or datetime.datetime.now(datetime.timezone.utc)
    timestamp = now.strftime("%Y-%m-%d-%H-%M-%S")
    return posixpath.join(cwd, TICKETS_DIR, f"{timestamp}.ticket.json")


def run_plan(
    client: SandboxAgentClient,
    prompt: str,
    cwd: str,
    tickets_path: str,
    no_test: bool = True,
    attachments: list[dict[str, Any]] | None = None,
    conversation_history: list[dict[str, str]] | None = None,
) -> Generator[PlanEvent, None, None]:
    """Run the plan phase and yield its typed events.

    When resuming after a clarification, prompt is the user's answer and
    conversation_history carries the earlier turns.

    Transport failures do not raise: they end the stream with an error event.
    """
    try:
        for raw_event in client.stream_plan(
            prompt,
            cwd=cwd,
            no_test=no_test,
            tickets_path=tickets_path,
            images=attachments,
            conversation_history=conversation_history,
        ):
            event = parse_plan_event(raw_event)
            if event is not None:
                yield event
    except (AgentClientError, httpx.HTTPError) as e:
        logger.error(f"Plan stream failed: {e}")
        yield AgentErrorEvent(message=str(e))
