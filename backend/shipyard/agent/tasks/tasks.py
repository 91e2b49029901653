"""Celery build worker: runs queued build jobs against the session sandbox."""

import copy
from uuid import UUID

from celery import shared_task
from celery import Task

from shipyard.agent.build_service import apply_ticket_result
from shipyard.agent.build_service import count_ticket_outcomes
from shipyard.agent.build_service import run_build
from shipyard.agent.models import AgentErrorEvent
from shipyard.agent.models import BuildCompleteEvent
from shipyard.agent.models import Ticket
from shipyard.agent.models import TicketCompleteEvent
from shipyard.background.celery.apps.app_base import task_logger
from shipyard.configs.constants import ShipyardCeleryTask
from shipyard.db.build_job import mark_build_job_finished
from shipyard.db.build_job import mark_build_job_running
from shipyard.db.build_job import update_build_job_progress
from shipyard.db.chat_session import get_chat_session_by_id
from shipyard.db.engine.sql_engine import get_session_with_default_engine
from shipyard.db.enums import BuildJobStatus

# Builds run for up to 2 hours
BUILD_TIMEOUT_SECONDS = 2 * 60 * 60


@shared_task(
    name=ShipyardCeleryTask.RUN_BUILD_JOB,
    soft_time_limit=BUILD_TIMEOUT_SECONDS,
    bind=True,
    ignore_result=True,
)
def run_build_job_task(
    self: Task,
    *,
    build_job_id: str,
    cwd: str,
    db_url: str | None = None,
    enable_review: bool = True,
    test_url: str | None = None,
    credential: str | None = None,
) -> None:
    """Run one queued build job.

    This task:
    1. Moves the job from PENDING to RUNNING (jobs cancelled while queued are skipped)
    2. Waits for the session's sandbox agent to be ready
    3. Streams the build, syncing ticket statuses and cost after each ticket
    4. Marks the job COMPLETED, or FAILED if any ticket or the stream failed

    The sandbox_build queue is consumed with concurrency 1.
    """
    # Import here to avoid circular imports
    from shipyard.sandbox import get_sandbox_manager

    job_id = UUID(build_job_id)
    task_logger.info(f"run_build_job_task starting for build job {build_job_id}")

    with get_session_with_default_engine() as db_session:
        build_job = mark_build_job_running(db_session, job_id)
        if build_job is None:
            task_logger.info(
                f"Build job {build_job_id} is missing or not pending, skipping"
            )
            return

        try:
            chat_session = get_chat_session_by_id(
                db_session, build_job.chat_session_id
            )
            if chat_session is None:
                raise RuntimeError(
                    f"Chat session {build_job.chat_session_id} not found"
                )

            sandbox_manager = get_sandbox_manager()
            session_id = chat_session.session_id

            # Unlike the plan phase, a build cannot proceed without the agent
            if not sandbox_manager.wait_for_agent(session_id):
                raise RuntimeError(f"Sandbox agent for session {session_id} not ready")

            tickets = copy.deepcopy(build_job.tickets)
            total_cost = 0.0
            stream_error: str | None = None

            with sandbox_manager.get_agent_client(session_id) as client:
                for event in run_build(
                    client,
                    [Ticket.model_validate(ticket) for ticket in tickets],
                    build_job.tickets_path,
                    cwd=cwd,
                    db_url=db_url,
                    review=enable_review,
                    test_url=test_url,
                    build_id=build_job_id,
                    credential=credential,
                ):
                    if isinstance(event, TicketCompleteEvent):
                        apply_ticket_result(tickets, event)
                        total_cost += event.cost or 0.0
                    elif isinstance(event, BuildCompleteEvent):
                        total_cost = event.total_cost
                    elif isinstance(event, AgentErrorEvent):
                        stream_error = event.message
                        task_logger.warning(
                            f"Build job {build_job_id} stream error: {event.message}"
                        )
                        continue
                    else:
                        continue

                    completed, failed = count_ticket_outcomes(tickets)
                    update_build_job_progress(
                        db_session,
                        build_job,
                        tickets=copy.deepcopy(tickets),
                        completed_tickets=completed,
                        failed_tickets=failed,
                        total_cost=total_cost,
                    )

            completed, failed = count_ticket_outcomes(tickets)
            status = (
                BuildJobStatus.FAILED
                if failed > 0 or stream_error
                else BuildJobStatus.COMPLETED
            )
            mark_build_job_finished(
                db_session, build_job, status, error_message=stream_error
            )
            task_logger.info(
                f"Build job {build_job_id} finished: {completed} done, {failed} failed"
            )

        except Exception as e:
            task_logger.exception(f"Build job {build_job_id} failed")
            db_session.rollback()
            mark_build_job_finished(
                db_session, build_job, BuildJobStatus.FAILED, error_message=str(e)
            )
            raise
