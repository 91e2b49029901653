"""Unit tests for BuildDispatcher."""

from collections.abc import Generator
from typing import Any
from unittest.mock import MagicMock
from unittest.mock import patch
from uuid import uuid4

import pytest
from sqlalchemy.exc import IntegrityError

from shipyard.agent.credentials import StaticCredentialProvider
from shipyard.agent.dispatcher import BUILD_IN_PROGRESS_TEXT
from shipyard.agent.dispatcher import BUILD_STARTED_TEXT
from shipyard.agent.dispatcher import BuildDispatcher
from shipyard.agent.dispatcher import CHAT_SESSION_NOT_FOUND_TEXT
from shipyard.agent.dispatcher import NO_TICKETS_PATH_TEXT
from shipyard.agent.dispatcher import NOT_CONNECTED_TEXT
from shipyard.agent.event_processor import EventProcessor
from shipyard.agent.models import AgentRunConfig
from shipyard.agent.models import Ticket
from shipyard.agent.models import TicketStatus
from shipyard.agent.packets import ContentBlockDelta
from shipyard.db.enums import BuildJobStatus
from shipyard.db.enums import MessageRole
from shipyard.db.enums import SandboxStatus

MODULE = "shipyard.agent.dispatcher"


def _run(generator: Generator) -> tuple[list, Any]:
    """Drain a generator, returning its packets and its return value."""
    packets = []
    while True:
        try:
            packets.append(next(generator))
        except StopIteration as stop:
            return packets, stop.value


def _text(packets: list) -> str:
    return "".join(
        packet.text for packet in packets if isinstance(packet, ContentBlockDelta)
    )


def _config(is_imported: bool = False) -> AgentRunConfig:
    return AgentRunConfig(
        project_id="p1",
        session_id="s1",
        user_id="u1",
        is_imported=is_imported,
        cwd="/app/project",
        db_url="postgresql://db/preview_s1",
        enable_test=True,
        test_url="http://preview",
    )


def _tickets() -> list[Ticket]:
    return [
        Ticket(id="T1", title="Users", type="schema"),
        Ticket(id="T2", title="Login", type="backend", status=TicketStatus.DONE),
    ]


@pytest.fixture
def chat_session() -> MagicMock:
    chat_session = MagicMock()
    chat_session.id = uuid4()
    chat_session.project_id = "p1"
    chat_session.session_id = "s1"
    return chat_session


@pytest.fixture
def db_session() -> MagicMock:
    return MagicMock()


@pytest.fixture
def enqueue() -> MagicMock:
    return MagicMock()


@pytest.fixture
def dispatcher(db_session: MagicMock, enqueue: MagicMock) -> BuildDispatcher:
    return BuildDispatcher(
        db_session, StaticCredentialProvider(app_token="app-tok"), enqueue=enqueue
    )


class TestDispatchRefusals:
    """Every refusal reports text and creates no rows."""

    def test_no_tickets_path(
        self, dispatcher: BuildDispatcher, enqueue: MagicMock
    ) -> None:
        with patch(f"{MODULE}.create_build_job__no_commit") as mock_create:
            packets, build_job = _run(
                dispatcher.dispatch(EventProcessor(), _config(), _tickets(), None)
            )

        assert build_job is None
        assert _text(packets) == NO_TICKETS_PATH_TEXT
        mock_create.assert_not_called()
        enqueue.assert_not_called()

    def test_chat_session_missing(self, dispatcher: BuildDispatcher) -> None:
        with (
            patch(f"{MODULE}.get_chat_session_by_session_id", return_value=None),
            patch(f"{MODULE}.create_build_job__no_commit") as mock_create,
        ):
            packets, build_job = _run(
                dispatcher.dispatch(EventProcessor(), _config(), _tickets(), "/t")
            )

        assert build_job is None
        assert _text(packets) == CHAT_SESSION_NOT_FOUND_TEXT
        mock_create.assert_not_called()

    def test_active_build(
        self,
        dispatcher: BuildDispatcher,
        chat_session: MagicMock,
        enqueue: MagicMock,
    ) -> None:
        with (
            patch(
                f"{MODULE}.get_chat_session_by_session_id", return_value=chat_session
            ),
            patch(f"{MODULE}.has_active_build", return_value=True),
            patch(f"{MODULE}.create_build_job__no_commit") as mock_create,
        ):
            packets, build_job = _run(
                dispatcher.dispatch(EventProcessor(), _config(), _tickets(), "/t")
            )

        assert build_job is None
        assert _text(packets) == BUILD_IN_PROGRESS_TEXT
        mock_create.assert_not_called()
        enqueue.assert_not_called()

    def test_imported_project_without_user_token(
        self, dispatcher: BuildDispatcher, chat_session: MagicMock
    ) -> None:
        with (
            patch(
                f"{MODULE}.get_chat_session_by_session_id", return_value=chat_session
            ),
            patch(f"{MODULE}.has_active_build", return_value=False),
            patch(f"{MODULE}.create_build_job__no_commit") as mock_create,
        ):
            packets, build_job = _run(
                dispatcher.dispatch(
                    EventProcessor(), _config(is_imported=True), _tickets(), "/t"
                )
            )

        assert build_job is None
        assert _text(packets) == NOT_CONNECTED_TEXT
        mock_create.assert_not_called()

    def test_lost_race_rolls_back(
        self,
        dispatcher: BuildDispatcher,
        db_session: MagicMock,
        chat_session: MagicMock,
        enqueue: MagicMock,
    ) -> None:
        db_session.commit.side_effect = IntegrityError("INSERT", {}, Exception())

        with (
            patch(
                f"{MODULE}.get_chat_session_by_session_id", return_value=chat_session
            ),
            patch(f"{MODULE}.has_active_build", return_value=False),
            patch(f"{MODULE}.create_build_job__no_commit"),
            patch(f"{MODULE}.create_message") as mock_create_message,
        ):
            packets, build_job = _run(
                dispatcher.dispatch(EventProcessor(), _config(), _tickets(), "/t")
            )

        assert build_job is None
        assert _text(packets) == BUILD_IN_PROGRESS_TEXT
        db_session.rollback.assert_called_once()
        enqueue.assert_not_called()
        mock_create_message.assert_not_called()


class TestDispatchSuccess:
    def test_creates_enqueues_and_announces(
        self,
        dispatcher: BuildDispatcher,
        db_session: MagicMock,
        chat_session: MagicMock,
        enqueue: MagicMock,
    ) -> None:
        created_job = MagicMock()
        created_job.id = uuid4()
        config = _config()

        with (
            patch(
                f"{MODULE}.get_chat_session_by_session_id", return_value=chat_session
            ),
            patch(f"{MODULE}.has_active_build", return_value=False),
            patch(
                f"{MODULE}.create_build_job__no_commit", return_value=created_job
            ) as mock_create,
            patch(f"{MODULE}.create_message") as mock_create_message,
        ):
            packets, build_job = _run(
                dispatcher.dispatch(EventProcessor(), config, _tickets(), "/t")
            )

        assert build_job is created_job
        assert _text(packets) == BUILD_STARTED_TEXT

        create_kwargs = mock_create.call_args.kwargs
        assert create_kwargs["chat_session_id"] == chat_session.id
        assert create_kwargs["tickets_path"] == "/t"
        # Only the Todo ticket counts toward the total
        assert create_kwargs["total_tickets"] == 1
        assert [t["id"] for t in create_kwargs["tickets"]] == ["T1", "T2"]
        db_session.commit.assert_called()

        build_job_id, celery_task_id, enqueued_config, credential = (
            enqueue.call_args.args
        )
        assert build_job_id == created_job.id
        assert celery_task_id == created_job.celery_task_id
        assert enqueued_config is config
        assert credential == "app-tok"

        args, kwargs = mock_create_message.call_args
        assert args[2] == MessageRole.ASSISTANT
        assert kwargs["message_metadata"] == {"build_job_id": str(created_job.id)}

    def test_enqueue_failure_marks_job_failed(
        self,
        dispatcher: BuildDispatcher,
        chat_session: MagicMock,
        enqueue: MagicMock,
    ) -> None:
        created_job = MagicMock()
        created_job.id = uuid4()
        enqueue.side_effect = ConnectionError("broker down")

        with (
            patch(
                f"{MODULE}.get_chat_session_by_session_id", return_value=chat_session
            ),
            patch(f"{MODULE}.has_active_build", return_value=False),
            patch(
                f"{MODULE}.create_build_job__no_commit", return_value=created_job
            ),
            patch(f"{MODULE}.mark_build_job_finished") as mock_finish,
            patch(f"{MODULE}.create_message") as mock_create_message,
        ):
            with pytest.raises(ConnectionError):
                _run(
                    dispatcher.dispatch(EventProcessor(), _config(), _tickets(), "/t")
                )

        args, kwargs = mock_finish.call_args
        assert args[1] is created_job
        assert args[2] == BuildJobStatus.FAILED
        assert "broker down" in kwargs["error_message"]
        mock_create_message.assert_not_called()


class TestCancelBuild:
    """Tests for BuildDispatcher.cancel_build."""

    def test_unknown_or_finished_job(self, dispatcher: BuildDispatcher) -> None:
        sandbox_manager = MagicMock()
        with patch(f"{MODULE}.cancel_build_job", return_value=None):
            assert dispatcher.cancel_build(uuid4(), sandbox_manager) is False
        sandbox_manager.get.assert_not_called()

    def test_cancels_running_agent_work(
        self, dispatcher: BuildDispatcher, chat_session: MagicMock
    ) -> None:
        build_job_id = uuid4()
        sandbox_manager = MagicMock()
        sandbox_manager.get.return_value.status = SandboxStatus.RUNNING
        agent_client = sandbox_manager.get_agent_client.return_value

        with (
            patch(f"{MODULE}.cancel_build_job", return_value=MagicMock()),
            patch(f"{MODULE}.get_chat_session_by_id", return_value=chat_session),
        ):
            assert dispatcher.cancel_build(build_job_id, sandbox_manager) is True

        sandbox_manager.get_agent_client.assert_called_once_with("s1")
        agent_client.cancel_build.assert_called_once_with(str(build_job_id))
        agent_client.close.assert_called_once()

    def test_stopped_sandbox_only_updates_record(
        self, dispatcher: BuildDispatcher, chat_session: MagicMock
    ) -> None:
        sandbox_manager = MagicMock()
        sandbox_manager.get.return_value.status = SandboxStatus.STOPPED

        with (
            patch(f"{MODULE}.cancel_build_job", return_value=MagicMock()),
            patch(f"{MODULE}.get_chat_session_by_id", return_value=chat_session),
        ):
            assert dispatcher.cancel_build(uuid4(), sandbox_manager) is True

        sandbox_manager.get_agent_client.assert_not_called()