"""Hands the build phase to the Celery build worker.

At most one build may be active (pending or running) per chat session. The
check before insert gives the user a friendly message; the partial unique
index on build_jobs closes the race between two concurrent dispatches.
"""

from collections.abc import Callable
from collections.abc import Generator
from uuid import UUID
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from shipyard.agent.credentials import CredentialProvider
from shipyard.agent.event_processor import EventProcessor
from shipyard.agent.models import AgentRunConfig
from shipyard.agent.models import Ticket
from shipyard.agent.packets import ContentBlockStop
from shipyard.agent.packets import NormalizedEvent
from shipyard.configs.constants import ShipyardCeleryQueues
from shipyard.configs.constants import ShipyardCeleryTask
from shipyard.db.build_job import cancel_build_job
from shipyard.db.build_job import create_build_job__no_commit
from shipyard.db.build_job import has_active_build
from shipyard.db.build_job import mark_build_job_finished
from shipyard.db.chat_session import create_message
from shipyard.db.chat_session import get_chat_session_by_id
from shipyard.db.chat_session import get_chat_session_by_session_id
from shipyard.db.enums import BuildJobStatus
from shipyard.db.enums import MessageRole
from shipyard.db.enums import SandboxStatus
from shipyard.db.models import BuildJob
from shipyard.sandbox.base import SandboxManager
from shipyard.utils.logger import setup_logger

logger = setup_logger()

NO_TICKETS_PATH_TEXT = "\n\n❌ No tickets path set\n"
CHAT_SESSION_NOT_FOUND_TEXT = "\n\n❌ Chat session not found\n"
BUILD_IN_PROGRESS_TEXT = "\n\n⚠️ A build is already in progress for this session.\n"
NOT_CONNECTED_TEXT = (
    "\n\n❌ GitHub not connected. Please reconnect your GitHub account.\n"
)
BUILD_STARTED_TEXT = "\n\n🔨 Build started - processing tickets...\n"

# (build_job_id, celery_task_id, config, credential)
EnqueueFn = Callable[[UUID, str, AgentRunConfig, str], None]


def enqueue_build_job(
    build_job_id: UUID,
    celery_task_id: str,
    config: AgentRunConfig,
    credential: str,
) -> None:
    """Send the build job to the sandbox_build queue."""
    from shipyard.background.celery.apps.primary import celery_app

    result = celery_app.send_task(
        ShipyardCeleryTask.RUN_BUILD_JOB,
        kwargs=dict(
            build_job_id=str(build_job_id),
            cwd=config.cwd,
            db_url=config.db_url,
            enable_review=config.enable_review,
            test_url=config.test_url if config.enable_test else None,
            credential=credential,
        ),
        queue=ShipyardCeleryQueues.SANDBOX_BUILD,
        task_id=celery_task_id,
    )
    if not result:
        raise RuntimeError("send_task for run_build_job_task failed.")


class BuildDispatcher:
    def __init__(
        self,
        db_session: Session,
        credential_provider: CredentialProvider,
        enqueue: EnqueueFn = enqueue_build_job,
    ) -> None:
        self._db_session = db_session
        self._credential_provider = credential_provider
        self._enqueue = enqueue

    def _emit_notice(
        self, processor: EventProcessor, text: str
    ) -> Generator[NormalizedEvent, None, None]:
        yield from processor.emit_text(text)
        yield ContentBlockStop()

    def dispatch(
        self,
        processor: EventProcessor,
        config: AgentRunConfig,
        tickets: list[Ticket],
        tickets_path: str | None,
    ) -> Generator[NormalizedEvent, None, BuildJob | None]:
        """Create and enqueue a build job for the session.

        Every refusal is reported to the user as text and creates no rows.

        Returns:
            The pending BuildJob, or None if the build was refused
        """
        if not tickets_path:
            yield from self._emit_notice(processor, NO_TICKETS_PATH_TEXT)
            return None

        chat_session = get_chat_session_by_session_id(
            self._db_session, config.session_id
        )
        if chat_session is None:
            yield from self._emit_notice(processor, CHAT_SESSION_NOT_FOUND_TEXT)
            return None

        if has_active_build(self._db_session, chat_session.id):
            logger.info("Build already active, refusing", session_id=config.session_id)
            yield from self._emit_notice(processor, BUILD_IN_PROGRESS_TEXT)
            return None

        credential = self._credential_provider.resolve(
            config.is_imported, config.user_id
        )
        if not credential:
            yield from self._emit_notice(processor, NOT_CONNECTED_TEXT)
            return None

        ticket_snapshot = [
            ticket.model_dump(mode="json", by_alias=True) for ticket in tickets
        ]
        total_tickets = sum(1 for ticket in tickets if ticket.status.needs_build())
        celery_task_id = str(uuid4())

        try:
            build_job = create_build_job__no_commit(
                self._db_session,
                chat_session_id=chat_session.id,
                project_id=chat_session.project_id,
                tickets=ticket_snapshot,
                tickets_path=tickets_path,
                total_tickets=total_tickets,
            )
            build_job.celery_task_id = celery_task_id
            self._db_session.commit()
        except IntegrityError:
            # Lost the race against a concurrent dispatch for this session
            self._db_session.rollback()
            logger.info(
                "Concurrent build dispatch detected, refusing",
                session_id=config.session_id,
            )
            yield from self._emit_notice(processor, BUILD_IN_PROGRESS_TEXT)
            return None

        try:
            self._enqueue(build_job.id, celery_task_id, config, credential)
        except Exception as e:
            logger.exception(f"Failed to enqueue build job {build_job.id}")
            mark_build_job_finished(
                self._db_session,
                build_job,
                BuildJobStatus.FAILED,
                error_message=f"Failed to enqueue build: {e}",
            )
            raise

        logger.info(
            f"Build job {build_job.id} enqueued (celery task {celery_task_id})",
            session_id=config.session_id,
        )

        # Placeholder the chat UI renders as a live build view
        create_message(
            self._db_session,
            chat_session,
            MessageRole.ASSISTANT,
            content=None,
            message_metadata={"build_job_id": str(build_job.id)},
        )

        yield from self._emit_notice(processor, BUILD_STARTED_TEXT)
        return build_job

    def cancel_build(
        self, build_job_id: UUID, sandbox_manager: SandboxManager
    ) -> bool:
        """Cancel a pending or running build and stop the agent's work.

        Returns:
            False if the job does not exist or already finished
        """
        build_job = cancel_build_job(self._db_session, build_job_id)
        if build_job is None:
            return False

        chat_session = get_chat_session_by_id(
            self._db_session, build_job.chat_session_id
        )
        if chat_session is None:
            return True

        sandbox = sandbox_manager.get(chat_session.session_id)
        if sandbox is not None and sandbox.status == SandboxStatus.RUNNING:
            client = sandbox_manager.get_agent_client(chat_session.session_id)
            try:
                client.cancel_build(str(build_job_id))
            finally:
                client.close()

        return True
