"""Database operations for queued build jobs."""

import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import func
from sqlalchemy import select
from sqlalchemy.orm import Session

from shipyard.db.enums import BuildJobStatus
from shipyard.db.models import BuildJob
from shipyard.utils.logger import setup_logger

logger = setup_logger()

ACTIVE_BUILD_STATUSES = [BuildJobStatus.PENDING, BuildJobStatus.RUNNING]


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def get_build_job(db_session: Session, build_job_id: UUID) -> BuildJob | None:
    stmt = select(BuildJob).where(BuildJob.id == build_job_id)
    return db_session.execute(stmt).scalar_one_or_none()


def has_active_build(db_session: Session, chat_session_id: UUID) -> bool:
    stmt = select(func.count(BuildJob.id)).where(
        BuildJob.chat_session_id == chat_session_id,
        BuildJob.status.in_(ACTIVE_BUILD_STATUSES),
    )
    return (db_session.execute(stmt).scalar() or 0) > 0


def get_latest_build_job(
    db_session: Session, chat_session_id: UUID
) -> BuildJob | None:
    stmt = (
        select(BuildJob)
        .where(BuildJob.chat_session_id == chat_session_id)
        .order_by(BuildJob.created_at.desc())
        .limit(1)
    )
    return db_session.execute(stmt).scalar_one_or_none()


def create_build_job__no_commit(
    db_session: Session,
    chat_session_id: UUID,
    project_id: UUID,
    tickets: list[dict[str, Any]],
    tickets_path: str,
    total_tickets: int,
) -> BuildJob:
    """Create a pending build job.

    NOTE: This function uses flush() instead of commit(). The caller is
    responsible for committing the transaction when ready. The flush raises
    IntegrityError when the session already has an active build.
    """
    build_job = BuildJob(
        chat_session_id=chat_session_id,
        project_id=project_id,
        status=BuildJobStatus.PENDING,
        tickets=tickets,
        tickets_path=tickets_path,
        total_tickets=total_tickets,
    )
    db_session.add(build_job)
    db_session.flush()
    return build_job


def mark_build_job_running(db_session: Session, build_job_id: UUID) -> BuildJob | None:
    """Move a pending job to RUNNING.

    Returns None (and changes nothing) when the job is missing or no longer
    pending, e.g. it was cancelled while queued.
    """
    build_job = get_build_job(db_session, build_job_id)
    if build_job is None or build_job.status != BuildJobStatus.PENDING:
        return None

    build_job.status = BuildJobStatus.RUNNING
    build_job.started_at = _now()
    db_session.commit()
    return build_job


def update_build_job_progress(
    db_session: Session,
    build_job: BuildJob,
    tickets: list[dict[str, Any]],
    completed_tickets: int,
    failed_tickets: int,
    total_cost: float,
) -> None:
    build_job.tickets = tickets
    build_job.completed_tickets = completed_tickets
    build_job.failed_tickets = failed_tickets
    build_job.total_cost = total_cost
    db_session.commit()


def mark_build_job_finished(
    db_session: Session,
    build_job: BuildJob,
    status: BuildJobStatus,
    error_message: str | None = None,
) -> None:
    if not status.is_terminal():
        raise ValueError(f"{status} is not a terminal build status")

    # A cancel that raced the worker wins
    db_session.refresh(build_job)
    if build_job.status == BuildJobStatus.CANCELLED:
        logger.info(f"Build job {build_job.id} was cancelled, keeping that status")
        return

    build_job.status = status
    build_job.error_message = error_message
    build_job.completed_at = _now()
    db_session.commit()
    logger.info(f"Build job {build_job.id} finished with status {status.value}")


def cancel_build_job(db_session: Session, build_job_id: UUID) -> BuildJob | None:
    """Cancel a pending or running job.

    Returns:
        The cancelled job, or None if it does not exist or already finished
    """
    build_job = get_build_job(db_session, build_job_id)
    if build_job is None or not build_job.status.is_active():
        return None

    build_job.status = BuildJobStatus.CANCELLED
    build_job.completed_at = _now()
    db_session.commit()
    logger.info(f"Cancelled build job {build_job_id}")
    return build_job
