import datetime
from typing import Any
from uuid import UUID
from uuid import uuid4

from sqlalchemy import DateTime
from sqlalchemy import Enum
from sqlalchemy import Float
from sqlalchemy import ForeignKey
from sqlalchemy import func
from sqlalchemy import Index
from sqlalchemy import Integer
from sqlalchemy import String
from sqlalchemy import Text
from sqlalchemy import text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.orm import Mapped
from sqlalchemy.orm import mapped_column
from sqlalchemy.orm import relationship

from shipyard.db.enums import BuildJobStatus
from shipyard.db.enums import ChatSessionStatus
from shipyard.db.enums import MessageRole


class Base(DeclarativeBase):
    __abstract__ = True


class ChatSession(Base):
    """A conversation with the agent. Maps 1:1 to a sandbox while active.

    `session_id` is the external key used for container/database naming,
    `id` is the durable row id that build jobs and messages reference.
    """

    __tablename__ = "chat_sessions"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )
    session_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    project_id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    branch_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[ChatSessionStatus] = mapped_column(
        Enum(ChatSessionStatus, native_enum=False),
        nullable=False,
        default=ChatSessionStatus.ACTIVE,
    )
    last_activity_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    # Planner conversation id, used to resume after a clarification
    claude_session_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    messages: Mapped[list["ChatMessage"]] = relationship(
        "ChatMessage",
        back_populates="chat_session",
        cascade="all, delete-orphan",
        order_by="ChatMessage.timestamp",
    )
    build_jobs: Mapped[list["BuildJob"]] = relationship(
        "BuildJob", back_populates="chat_session", cascade="all, delete-orphan"
    )

    __table_args__ = (Index("ix_chat_sessions_last_activity_at", "last_activity_at"),)


class ChatMessage(Base):
    __tablename__ = "chat_messages"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )
    project_id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), nullable=False)
    chat_session_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("chat_sessions.id", ondelete="CASCADE"),
        nullable=False,
    )
    role: Mapped[MessageRole] = mapped_column(
        Enum(MessageRole, native_enum=False), nullable=False
    )
    content: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Ordered text/tool/error blocks rendered by the chat UI
    blocks: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONB, nullable=True)
    timestamp: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    tokens_input: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tokens_output: Mapped[int | None] = mapped_column(Integer, nullable=True)
    context_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cost: Mapped[float | None] = mapped_column(Float, nullable=True)
    message_metadata: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata", JSONB, nullable=True
    )

    chat_session: Mapped[ChatSession] = relationship(
        "ChatSession", back_populates="messages"
    )

    __table_args__ = (
        Index("ix_chat_messages_session_timestamp", "chat_session_id", "timestamp"),
    )


class BuildJob(Base):
    __tablename__ = "build_jobs"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )
    chat_session_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("chat_sessions.id", ondelete="CASCADE"),
        nullable=False,
    )
    project_id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), nullable=False)
    status: Mapped[BuildJobStatus] = mapped_column(
        Enum(BuildJobStatus, native_enum=False),
        nullable=False,
        default=BuildJobStatus.PENDING,
    )
    # Snapshot of the tickets at dispatch time, updated by the worker
    tickets: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONB, nullable=False, default=list
    )
    tickets_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    total_tickets: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed_tickets: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_tickets: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_cost: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    celery_task_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    started_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    chat_session: Mapped[ChatSession] = relationship(
        "ChatSession", back_populates="build_jobs"
    )

    __table_args__ = (
        Index("ix_build_jobs_chat_session_id", "chat_session_id"),
        Index("ix_build_jobs_status", "status"),
        # At most one pending/running build per chat session
        Index(
            "uq_build_jobs_active_per_session",
            "chat_session_id",
            unique=True,
            postgresql_where=text("status IN ('PENDING', 'RUNNING')"),
        ),
    )
