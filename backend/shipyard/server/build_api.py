"""API endpoints for chat sessions driving the plan/build agent."""

from collections.abc import Generator
from uuid import UUID

from fastapi import APIRouter
from fastapi import Depends
from fastapi import HTTPException
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from shipyard.agent.credentials import StaticCredentialProvider
from shipyard.agent.dispatcher import BuildDispatcher
from shipyard.agent.models import AgentRunConfig
from shipyard.agent.orchestrator import AgentOrchestrator
from shipyard.agent.packets import format_sse
from shipyard.configs.app_configs import BUILD_ENABLE_REVIEW
from shipyard.configs.app_configs import BUILD_ENABLE_TEST
from shipyard.configs.app_configs import BUILD_TEST_URL
from shipyard.configs.constants import PUBLIC_API_TAGS
from shipyard.db.build_job import get_build_job
from shipyard.db.build_job import get_latest_build_job
from shipyard.db.chat_session import create_message
from shipyard.db.chat_session import get_chat_session_by_session_id
from shipyard.db.chat_session import update_session_activity
from shipyard.db.engine.sql_engine import get_session
from shipyard.db.engine.sql_engine import get_session_with_default_engine
from shipyard.db.enums import MessageRole
from shipyard.db.models import ChatSession
from shipyard.sandbox import get_sandbox_manager
from shipyard.sandbox import SandboxInfo
from shipyard.sandbox import SandboxManager
from shipyard.sandbox import SandboxNotFoundError
from shipyard.sandbox.agent_client import AgentClientError
from shipyard.sandbox.configs import SANDBOX_PROJECT_DIR
from shipyard.sandbox.database import DatabaseProvisioner
from shipyard.sandbox.database import InvalidQueryError
from shipyard.sandbox.models import DatabaseInfo
from shipyard.sandbox.models import DatabaseSchema
from shipyard.sandbox.models import FileInfo
from shipyard.sandbox.models import QueryResult
from shipyard.sandbox.models import TableData
from shipyard.server.models import AgentHealthResponse
from shipyard.server.models import BuildJobResponse
from shipyard.server.models import CancelBuildResponse
from shipyard.server.models import MessageRequest
from shipyard.server.models import QueryRequest
from shipyard.utils.logger import setup_logger

logger = setup_logger()

SSE_DONE_FRAME = "data: [DONE]\n\n"

router = APIRouter(prefix="/build")


def get_database_provisioner() -> DatabaseProvisioner:
    return DatabaseProvisioner()


def _require_chat_session(db_session: Session, session_id: str) -> ChatSession:
    chat_session = get_chat_session_by_session_id(db_session, session_id)
    if chat_session is None:
        raise HTTPException(status_code=404, detail="Chat session not found")
    return chat_session


def _require_sandbox(sandbox_manager: SandboxManager, session_id: str) -> SandboxInfo:
    sandbox = sandbox_manager.get(session_id)
    if sandbox is None:
        raise SandboxNotFoundError(session_id)
    return sandbox


@router.post("/sessions/{session_id}/send-message", tags=PUBLIC_API_TAGS)
def send_message(
    session_id: str,
    request: MessageRequest,
    db_session: Session = Depends(get_session),
    sandbox_manager: SandboxManager = Depends(get_sandbox_manager),
    provisioner: DatabaseProvisioner = Depends(get_database_provisioner),
) -> StreamingResponse:
    """Send a message to the session's agent and stream the plan/build run.

    Returns a Server-Sent Events stream of normalized packets terminated by
    a [DONE] frame.
    """
    chat_session = _require_chat_session(db_session, session_id)
    try:
        _require_sandbox(sandbox_manager, session_id)
    except SandboxNotFoundError:
        raise HTTPException(
            status_code=404,
            detail=(
                "Sandbox not found. Start a preview for this session first to "
                "initialize the environment."
            ),
        )

    create_message(db_session, chat_session, MessageRole.USER, request.content)
    update_session_activity(db_session, chat_session.id)
    assistant_message = create_message(
        db_session, chat_session, MessageRole.ASSISTANT, content=None
    )
    assistant_message_id = assistant_message.id

    config = AgentRunConfig(
        project_id=str(chat_session.project_id),
        session_id=session_id,
        user_id=chat_session.user_id,
        is_imported=request.is_imported,
        cwd=SANDBOX_PROJECT_DIR,
        db_url=provisioner.database_url(session_id),
        enable_review=BUILD_ENABLE_REVIEW,
        enable_test=BUILD_ENABLE_TEST,
        test_url=BUILD_TEST_URL,
    )
    message_content = request.content
    attachments = request.attachments

    def stream_generator() -> Generator[str, None, None]:
        """Stream generator that manages its own database session.

        StreamingResponse consumes the generator after the endpoint returns,
        when the request-scoped db_session is already closed.
        """
        with get_session_with_default_engine() as stream_db_session:
            with sandbox_manager.get_agent_client(session_id) as agent_client:
                orchestrator = AgentOrchestrator(
                    stream_db_session,
                    config,
                    agent_client,
                    dispatcher=BuildDispatcher(
                        stream_db_session, StaticCredentialProvider()
                    ),
                )
                for packet in orchestrator.run(
                    message_content, assistant_message_id, attachments
                ):
                    yield format_sse(packet)
        yield SSE_DONE_FRAME

    return StreamingResponse(
        stream_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
            "X-Assistant-Message-Id": str(assistant_message_id),
        },
    )


@router.get("/sessions/{session_id}/sandbox", tags=PUBLIC_API_TAGS)
def get_sandbox_info(
    session_id: str,
    sandbox_manager: SandboxManager = Depends(get_sandbox_manager),
) -> SandboxInfo:
    try:
        return _require_sandbox(sandbox_manager, session_id)
    except SandboxNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/sessions/{session_id}/sandbox/health", tags=PUBLIC_API_TAGS)
def get_agent_health(
    session_id: str,
    sandbox_manager: SandboxManager = Depends(get_sandbox_manager),
) -> AgentHealthResponse:
    """Single health probe of the session's agent. Unreachable reads as not alive."""
    try:
        _require_sandbox(sandbox_manager, session_id)
    except SandboxNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    with sandbox_manager.get_agent_client(session_id) as agent_client:
        health = agent_client.get_health()
    return AgentHealthResponse.from_health(session_id, health)


@router.get("/sessions/{session_id}/files", tags=PUBLIC_API_TAGS)
def list_sandbox_files(
    session_id: str,
    sandbox_manager: SandboxManager = Depends(get_sandbox_manager),
) -> list[FileInfo]:
    try:
        _require_sandbox(sandbox_manager, session_id)
        with sandbox_manager.get_agent_client(session_id) as agent_client:
            return agent_client.list_files()
    except SandboxNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except AgentClientError as e:
        logger.warning(f"Listing files failed for session {session_id}: {e}")
        raise HTTPException(status_code=502, detail=str(e))


# -----------------------------------------------------------------------------
# Preview database viewer
# -----------------------------------------------------------------------------


@router.get("/sessions/{session_id}/database", tags=PUBLIC_API_TAGS)
def get_database_info(
    session_id: str,
    provisioner: DatabaseProvisioner = Depends(get_database_provisioner),
) -> DatabaseInfo:
    return provisioner.get_database_info(session_id)


@router.get("/sessions/{session_id}/database/schema", tags=PUBLIC_API_TAGS)
def get_database_schema(
    session_id: str,
    provisioner: DatabaseProvisioner = Depends(get_database_provisioner),
) -> DatabaseSchema:
    return provisioner.get_database_schema(session_id)


@router.get(
    "/sessions/{session_id}/database/tables/{table_name}", tags=PUBLIC_API_TAGS
)
def get_table_data(
    session_id: str,
    table_name: str,
    limit: int = 100,
    offset: int = 0,
    provisioner: DatabaseProvisioner = Depends(get_database_provisioner),
) -> TableData:
    try:
        return provisioner.get_table_data(session_id, table_name, limit, offset)
    except InvalidQueryError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/sessions/{session_id}/database/query", tags=PUBLIC_API_TAGS)
def execute_query(
    session_id: str,
    request: QueryRequest,
    provisioner: DatabaseProvisioner = Depends(get_database_provisioner),
) -> QueryResult:
    try:
        return provisioner.execute_query(session_id, request.query)
    except InvalidQueryError as e:
        raise HTTPException(status_code=400, detail=str(e))


# -----------------------------------------------------------------------------
# Build jobs
# -----------------------------------------------------------------------------


@router.get("/sessions/{session_id}/build", tags=PUBLIC_API_TAGS)
def get_latest_build(
    session_id: str,
    db_session: Session = Depends(get_session),
) -> BuildJobResponse:
    """The most recent build job of a chat session."""
    chat_session = _require_chat_session(db_session, session_id)
    build_job = get_latest_build_job(db_session, chat_session.id)
    if build_job is None:
        raise HTTPException(status_code=404, detail="No build for this session")
    return BuildJobResponse.from_model(build_job)


@router.get("/jobs/{build_job_id}", tags=PUBLIC_API_TAGS)
def get_build_status(
    build_job_id: UUID,
    db_session: Session = Depends(get_session),
) -> BuildJobResponse:
    build_job = get_build_job(db_session, build_job_id)
    if build_job is None:
        raise HTTPException(status_code=404, detail="Build job not found")
    return BuildJobResponse.from_model(build_job)


@router.post("/jobs/{build_job_id}/cancel", tags=PUBLIC_API_TAGS)
def cancel_build(
    build_job_id: UUID,
    db_session: Session = Depends(get_session),
    sandbox_manager: SandboxManager = Depends(get_sandbox_manager),
) -> CancelBuildResponse:
    """Cancel a pending or running build.

    cancelled is False when the job already finished.
    """
    if get_build_job(db_session, build_job_id) is None:
        raise HTTPException(status_code=404, detail="Build job not found")

    dispatcher = BuildDispatcher(db_session, StaticCredentialProvider())
    cancelled = dispatcher.cancel_build(build_job_id, sandbox_manager)
    return CancelBuildResponse(build_job_id=str(build_job_id), cancelled=cancelled)
