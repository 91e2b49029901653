"""Stops sandboxes of chat sessions that have gone idle."""

import datetime

from sqlalchemy.orm import Session

from shipyard.db.chat_session import get_inactive_sessions
from shipyard.db.chat_session import get_last_activity_at
from shipyard.db.enums import SandboxMode
from shipyard.db.enums import SandboxStatus
from shipyard.sandbox.base import SandboxManager
from shipyard.sandbox.configs import CLEANUP_THRESHOLD_MINUTES
from shipyard.utils.logger import setup_logger

logger = setup_logger()


def cleanup_inactive_sessions(
    db_session: Session,
    sandbox_manager: SandboxManager,
    threshold_minutes: int = CLEANUP_THRESHOLD_MINUTES,
    now: datetime.datetime | None = None,
) -> int:
    """Stop the running sandboxes of sessions idle for longer than the threshold.

    Activity is re-read right before each stop and the stop only goes ahead
    when it still equals the value the candidate query saw, so any activity
    after selection leaves the session alone. Production sandboxes are never stopped.
    Containers are only stopped, never removed.

    Returns:
        Number of sandboxes stopped
    """
    now = now or datetime.datetime.now(datetime.timezone.utc)
    cutoff = now - datetime.timedelta(minutes=threshold_minutes)

    inactive_sessions = get_inactive_sessions(db_session, cutoff)
    logger.info(
        f"Found {len(inactive_sessions)} sessions inactive since {cutoff.isoformat()}"
    )

    stopped = 0
    skipped = 0

    for chat_session in inactive_sessions:
        session_id = chat_session.session_id
        try:
            last_activity_at = get_last_activity_at(db_session, chat_session.id)
            if last_activity_at != chat_session.last_activity_at:
                logger.info(
                    "Skipping, session became active again", session_id=session_id
                )
                skipped += 1
                continue

            sandbox = sandbox_manager.get(session_id)
            if sandbox is None or sandbox.status != SandboxStatus.RUNNING:
                continue

            if sandbox.mode == SandboxMode.PRODUCTION:
                logger.info("Skipping production sandbox", session_id=session_id)
                skipped += 1
                continue

            sandbox_manager.stop(session_id)
            stopped += 1
            logger.info("Stopped idle sandbox", session_id=session_id)
        except Exception as e:
            logger.error(f"Failed to clean up sandbox: {e}", session_id=session_id)

    logger.info(
        f"Stopped {stopped}/{len(inactive_sessions)} idle sandboxes"
        + (f" ({skipped} skipped)" if skipped else "")
    )
    return stopped
