"""Plan -> build workflow for one chat message.

    idle -> planning -> clarification          (suspends, returns)
                     -> building -> complete   (inline build)
                     -> building               (queued build, worker finishes it)

A clarification ends the invocation after persisting the partial transcript.
The next invocation, carrying the user's answer, starts a fresh planning pass
with the stored conversation history; nothing else survives between calls.
"""

import time
from collections.abc import Generator
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from shipyard.agent.build_service import run_build
from shipyard.agent.credentials import StaticCredentialProvider
from shipyard.agent.dispatcher import BuildDispatcher
from shipyard.agent.event_processor import EventProcessor
from shipyard.agent.models import AgentErrorEvent
from shipyard.agent.models import AgentRunConfig
from shipyard.agent.models import AgentWorkflowState
from shipyard.agent.models import ClarificationEvent
from shipyard.agent.models import PlanCompleteEvent
from shipyard.agent.models import WorkflowPhase
from shipyard.agent.packets import ContentBlockStop
from shipyard.agent.packets import ErrorBlock
from shipyard.agent.packets import MessageComplete
from shipyard.agent.packets import NormalizedEvent
from shipyard.agent.packets import StreamError
from shipyard.agent.plan_service import generate_tickets_path
from shipyard.agent.plan_service import run_plan
from shipyard.configs.app_configs import BUILD_DISPATCH_MODE
from shipyard.configs.constants import BuildDispatchMode
from shipyard.db.chat_session import get_chat_session_by_session_id
from shipyard.db.chat_session import get_conversation_history
from shipyard.db.chat_session import update_message
from shipyard.db.chat_session import update_session_activity
from shipyard.sandbox.agent_client import SandboxAgentClient
from shipyard.utils.logger import setup_logger

logger = setup_logger()

NO_TICKETS_TEXT = "\n\n⚠️ No tickets were generated. Please provide more details.\n"
UNKNOWN_ERROR = "Unknown error occurred"


class AgentOrchestrator:
    def __init__(
        self,
        db_session: Session,
        config: AgentRunConfig,
        agent_client: SandboxAgentClient,
        dispatcher: BuildDispatcher | None = None,
        dispatch_mode: BuildDispatchMode = BUILD_DISPATCH_MODE,
    ) -> None:
        self._db_session = db_session
        self._config = config
        self._agent_client = agent_client
        self._dispatch_mode = dispatch_mode
        self._dispatcher = dispatcher or BuildDispatcher(
            db_session, StaticCredentialProvider()
        )
        self.event_processor = EventProcessor()
        self.state = AgentWorkflowState()
        self._stream_error: str | None = None

    def run(
        self,
        message: str,
        assistant_message_id: UUID,
        attachments: list[dict[str, Any]] | None = None,
    ) -> Generator[NormalizedEvent, None, AgentWorkflowState]:
        """Run one plan -> build pass for a user message.

        Args:
            message: The feature request, or the answer to a clarification
            assistant_message_id: Message that receives the transcript
            attachments: Optional image attachments for the planner

        Yields:
            Normalized packets for the chat UI

        Returns:
            The final workflow state. phase CLARIFICATION means the workflow
            is suspended until the user answers.
        """
        session_id = self._config.session_id
        logger.info("Starting plan/build workflow", session_id=session_id)
        start_time = time.monotonic()

        try:
            conversation_history = self._fetch_conversation_history()
            if conversation_history:
                logger.info(
                    f"Resuming conversation with {len(conversation_history)} "
                    "previous messages",
                    session_id=session_id,
                )

            self.event_processor.reset()
            self.state = AgentWorkflowState()
            self._stream_error = None
            self.state.transition(WorkflowPhase.PLANNING)

            yield from self._run_plan_phase(message, attachments, conversation_history)

            if self._stream_error is not None:
                yield from self._fail(self._stream_error, assistant_message_id)
                return self.state

            if self.state.phase == WorkflowPhase.CLARIFICATION:
                logger.info("Waiting for clarification", session_id=session_id)
                self._finalize(assistant_message_id)
                yield MessageComplete()
                return self.state

            if self.state.tickets:
                logger.info(
                    f"Starting build phase with {len(self.state.tickets)} tickets",
                    session_id=session_id,
                )
                yield from self._run_build_phase()
                if self._stream_error is not None:
                    yield from self._fail(self._stream_error, assistant_message_id)
                    return self.state
            else:
                logger.info(
                    "No tickets generated, skipping build", session_id=session_id
                )
                self.state.transition(WorkflowPhase.COMPLETE)
                yield from self.event_processor.emit_text(NO_TICKETS_TEXT)
                yield ContentBlockStop()

            self._finalize(assistant_message_id)
            yield MessageComplete()

            logger.info(
                f"Workflow finished in {time.monotonic() - start_time:.2f}s",
                session_id=session_id,
            )
        except Exception as e:
            logger.exception("Error in plan/build workflow", session_id=session_id)
            yield from self._fail(str(e) or UNKNOWN_ERROR, assistant_message_id)

        return self.state

    def _fetch_conversation_history(self) -> list[dict[str, str]]:
        chat_session = get_chat_session_by_session_id(
            self._db_session, self._config.session_id
        )
        if chat_session is None:
            return []

        update_session_activity(self._db_session, chat_session.id)
        return get_conversation_history(self._db_session, chat_session.id)

    def _run_plan_phase(
        self,
        prompt: str,
        attachments: list[dict[str, Any]] | None,
        conversation_history: list[dict[str, str]],
    ) -> Generator[NormalizedEvent, None, None]:
        tickets_path = generate_tickets_path(self._config.cwd)

        for event in run_plan(
            self._agent_client,
            prompt,
            cwd=self._config.cwd,
            tickets_path=tickets_path,
            no_test=not self._config.enable_test,
            attachments=attachments,
            conversation_history=conversation_history,
        ):
            if isinstance(event, AgentErrorEvent):
                self._stream_error = event.message
                self.state.transition(WorkflowPhase.COMPLETE)
                break

            yield from self.event_processor.process_plan_event(event)

            if isinstance(event, ClarificationEvent):
                # The planner blocks on the answer; the next request resumes it
                self.state.transition(WorkflowPhase.CLARIFICATION)
                break

            if isinstance(event, PlanCompleteEvent):
                self.state.transition(
                    WorkflowPhase.BUILDING,
                    tickets=self.event_processor.get_tickets(),
                    tickets_path=self.event_processor.get_tickets_path()
                    or tickets_path,
                )

    def _run_build_phase(self) -> Generator[NormalizedEvent, None, None]:
        if self._dispatch_mode == BuildDispatchMode.QUEUED:
            yield from self._dispatcher.dispatch(
                self.event_processor,
                self._config,
                self.state.tickets,
                self.state.tickets_path,
            )
            return

        for event in run_build(
            self._agent_client,
            self.state.tickets,
            self.state.tickets_path,
            cwd=self._config.cwd,
            db_url=self._config.db_url,
            review=self._config.enable_review,
            test_url=self._config.test_url if self._config.enable_test else None,
        ):
            if isinstance(event, AgentErrorEvent):
                self._stream_error = event.message
                break

            yield from self.event_processor.process_build_event(event)

        self.state.transition(WorkflowPhase.COMPLETE)

    def _finalize(self, assistant_message_id: UUID) -> None:
        blocks = self.event_processor.get_accumulated_blocks()
        content = self.event_processor.get_accumulated_content()
        token_usage = self.event_processor.get_token_usage()
        total_cost = self.event_processor.get_total_cost()

        logger.info(
            f"Token usage: {token_usage['total_tokens']} total, "
            f"cost: ${total_cost:.4f}",
            session_id=self._config.session_id,
        )

        update_message(
            self._db_session,
            assistant_message_id,
            content=content or None,
            blocks=[block.model_dump(mode="json") for block in blocks],
            tokens_input=token_usage["input_tokens"],
            tokens_output=token_usage["output_tokens"],
            context_tokens=token_usage["context_tokens"],
            cost=total_cost,
        )

    def _fail(
        self, error_message: str, assistant_message_id: UUID
    ) -> Generator[NormalizedEvent, None, None]:
        self._handle_error(error_message, assistant_message_id)
        yield StreamError(message=error_message)

    def _handle_error(self, error_message: str, assistant_message_id: UUID) -> None:
        """Persist the partial transcript with the error appended."""
        try:
            self._db_session.rollback()

            blocks = [
                *self.event_processor.get_accumulated_blocks(),
                ErrorBlock(message=error_message),
            ]
            partial_content = self.event_processor.get_accumulated_content()
            content = (
                f"{partial_content}\n\n**Error:** {error_message}"
                if partial_content
                else f"**Error:** {error_message}"
            )
            token_usage = self.event_processor.get_token_usage()

            update_message(
                self._db_session,
                assistant_message_id,
                content=content,
                blocks=[block.model_dump(mode="json") for block in blocks],
                tokens_input=token_usage["input_tokens"],
                tokens_output=token_usage["output_tokens"],
                context_tokens=token_usage["context_tokens"],
                cost=self.event_processor.get_total_cost(),
            )
        except Exception:
            logger.exception(
                "Failed to persist error state", session_id=self._config.session_id
            )
