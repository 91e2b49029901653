"""Unit tests for the idle sandbox cleanup beat task."""

from collections.abc import Iterator
from contextlib import contextmanager
from unittest.mock import MagicMock
from unittest.mock import patch

import pytest

from shipyard.sandbox.tasks.tasks import cleanup_idle_sandboxes_task

MODULE = "shipyard.sandbox.tasks.tasks"


@contextmanager
def _fake_session() -> Iterator[MagicMock]:
    yield MagicMock()


class TestCleanupIdleSandboxesTask:
    def test_skips_when_lock_held(self) -> None:
        redis_client = MagicMock()
        redis_client.lock.return_value.acquire.return_value = False

        with (
            patch(f"{MODULE}.get_redis_client", return_value=redis_client),
            patch("shipyard.sandbox.cleanup.cleanup_inactive_sessions") as mock_cleanup,
        ):
            assert cleanup_idle_sandboxes_task.run() is None

        mock_cleanup.assert_not_called()
        redis_client.lock.return_value.release.assert_not_called()

    def test_runs_sweep_and_releases_lock(self) -> None:
        redis_client = MagicMock()
        lock = redis_client.lock.return_value
        lock.acquire.return_value = True
        lock.owned.return_value = True
        sandbox_manager = MagicMock()

        with (
            patch(f"{MODULE}.get_redis_client", return_value=redis_client),
            patch(
                f"{MODULE}.get_session_with_default_engine", side_effect=_fake_session
            ),
            patch("shipyard.sandbox.get_sandbox_manager", return_value=sandbox_manager),
            patch(
                "shipyard.sandbox.cleanup.cleanup_inactive_sessions", return_value=3
            ) as mock_cleanup,
        ):
            assert cleanup_idle_sandboxes_task.run(threshold_minutes=10) == 3

        args = mock_cleanup.call_args.args
        assert args[1] is sandbox_manager
        assert args[2] == 10
        lock.release.assert_called_once()

    def test_lock_released_on_failure(self) -> None:
        redis_client = MagicMock()
        lock = redis_client.lock.return_value
        lock.acquire.return_value = True
        lock.owned.return_value = True

        with (
            patch(f"{MODULE}.get_redis_client", return_value=redis_client),
            patch(
                f"{MODULE}.get_session_with_default_engine", side_effect=_fake_session
            ),
            patch("shipyard.sandbox.get_sandbox_manager"),
            patch(
                "shipyard.sandbox.cleanup.cleanup_inactive_sessions",
                side_effect=RuntimeError("db down"),
            ),
        ):
            with pytest.raises(RuntimeError):
                cleanup_idle_sandboxes_task.run()

        lock.release.assert_called_once()
