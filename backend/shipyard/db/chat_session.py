"""Database operations for chat sessions and their messages."""

import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from shipyard.db.enums import MessageRole
from shipyard.db.models import ChatMessage
from shipyard.db.models import ChatSession
from shipyard.utils.logger import setup_logger

logger = setup_logger()


def get_chat_session_by_session_id(
    db_session: Session, session_id: str
) -> ChatSession | None:
    """Look up a chat session by its external session id."""
    stmt = select(ChatSession).where(ChatSession.session_id == session_id)
    return db_session.execute(stmt).scalar_one_or_none()


def get_chat_session_by_id(
    db_session: Session, chat_session_id: UUID
) -> ChatSession | None:
    stmt = select(ChatSession).where(ChatSession.id == chat_session_id)
    return db_session.execute(stmt).scalar_one_or_none()


def update_session_activity(db_session: Session, chat_session_id: UUID) -> None:
    """Update the last activity timestamp for a session."""
    chat_session = get_chat_session_by_id(db_session, chat_session_id)
    if chat_session:
        chat_session.last_activity_at = datetime.datetime.now(datetime.timezone.utc)
        db_session.commit()


def get_inactive_sessions(
    db_session: Session, cutoff: datetime.datetime
) -> list[ChatSession]:
    """Sessions whose last activity is older than cutoff."""
    stmt = select(ChatSession).where(ChatSession.last_activity_at < cutoff)
    return list(db_session.execute(stmt).scalars().all())


def get_last_activity_at(
    db_session: Session, chat_session_id: UUID
) -> datetime.datetime | None:
    """Read last_activity_at straight from the database.

    Bypasses the identity map so a concurrent update by another process is
    visible.
    """
    stmt = (
        select(ChatSession.last_activity_at)
        .where(ChatSession.id == chat_session_id)
        .execution_options(populate_existing=True)
    )
    return db_session.execute(stmt).scalar_one_or_none()


def get_conversation_history(
    db_session: Session, chat_session_id: UUID
) -> list[dict[str, str]]:
    """Prior user/assistant turns in planner format, oldest first.

    Messages without text content (build placeholders, empty assistant
    messages still streaming) are skipped.
    """
    stmt = (
        select(ChatMessage.role, ChatMessage.content)
        .where(
            ChatMessage.chat_session_id == chat_session_id,
            ChatMessage.role.in_([MessageRole.USER, MessageRole.ASSISTANT]),
        )
        .order_by(ChatMessage.timestamp)
    )
    return [
        {"role": role.value, "content": content}
        for role, content in db_session.execute(stmt).all()
        if content
    ]


def create_message(
    db_session: Session,
    chat_session: ChatSession,
    role: MessageRole,
    content: str | None,
    message_metadata: dict[str, Any] | None = None,
) -> ChatMessage:
    message = ChatMessage(
        project_id=chat_session.project_id,
        chat_session_id=chat_session.id,
        role=role,
        content=content,
        message_metadata=message_metadata,
    )
    db_session.add(message)
    db_session.commit()
    db_session.refresh(message)

    logger.info(
        f"Created {role.value} message {message.id} for chat session {chat_session.id}"
    )
    return message


def update_message(
    db_session: Session,
    message_id: UUID,
    content: str | None,
    blocks: list[dict[str, Any]],
    tokens_input: int,
    tokens_output: int,
    context_tokens: int,
    cost: float | None = None,
) -> ChatMessage | None:
    """Persist the transcript accumulated for an assistant message.

    Returns:
        Updated ChatMessage or None if not found
    """
    stmt = select(ChatMessage).where(ChatMessage.id == message_id)
    message = db_session.execute(stmt).scalar_one_or_none()
    if message is None:
        logger.warning(f"Assistant message {message_id} not found, nothing to update")
        return None

    message.content = content
    message.blocks = blocks
    message.tokens_input = tokens_input
    message.tokens_output = tokens_output
    message.context_tokens = context_tokens
    if cost is not None:
        message.cost = cost
    db_session.commit()

    logger.info(f"Updated assistant message {message_id}")
    return message
