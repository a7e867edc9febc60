# =============================================================================
# Unit Tests — Celery Checkpoint Sweep
# =============================================================================
#
# The task is called directly (no broker). get_sync_session is patched to
# a sync sqlite engine holding the checkpoints table.
# =============================================================================

import time
from contextlib import contextmanager
from unittest.mock import patch

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from convoflow.db.models import Checkpoint
from convoflow.workers.celery_app import celery_app
from convoflow.workers.tasks import cleanup_expired_checkpoints


@pytest.fixture
def sync_sessions():
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    Checkpoint.__table__.create(engine)
    factory = sessionmaker(bind=engine, expire_on_commit=False)

    @contextmanager
    def session_scope():
        session = factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    now = int(time.time())
    with session_scope() as session:
        session.add_all([
            Checkpoint(run_id="old", user_id="alice", step=3, state_json="{}",
                       created_at=now - 10_000, updated_at=now - 10_000),
            Checkpoint(run_id="fresh", user_id="bob", step=1, state_json="{}",
                       created_at=now, updated_at=now),
        ])

    with patch("convoflow.workers.tasks.get_sync_session", session_scope):
        yield session_scope


def _remaining(session_scope) -> list[str]:
    with session_scope() as session:
        return sorted(session.scalars(select(Checkpoint.run_id)))


class TestCleanupTask:

    def test_deletes_idle_rows(self, sync_sessions):
        result = cleanup_expired_checkpoints(max_age_seconds=3600)

        assert result["deleted"] == 1
        assert result["cutoff"] <= int(time.time()) - 3600
        assert _remaining(sync_sessions) == ["fresh"]

    def test_default_window_uses_ttl(self, sync_sessions):
        with patch("convoflow.workers.tasks.settings") as fake_settings:
            fake_settings.checkpoint_ttl_seconds = 100_000
            result = cleanup_expired_checkpoints()
        assert result["deleted"] == 0
        assert _remaining(sync_sessions) == ["fresh", "old"]

    def test_connection_errors_propagate_when_called_directly(self):
        @contextmanager
        def broken():
            raise OperationalError("DELETE", {}, Exception("connection refused"))
            yield

        with patch("convoflow.workers.tasks.get_sync_session", broken):
            with pytest.raises(OperationalError):
                cleanup_expired_checkpoints(max_age_seconds=60)


class TestCeleryConfig:

    def test_json_only(self):
        assert celery_app.conf.task_serializer == "json"
        assert celery_app.conf.accept_content == ["json"]

    def test_sweep_is_scheduled(self):
        entry = celery_app.conf.beat_schedule["cleanup-expired-checkpoints"]
        assert entry["task"] == "cleanup_expired_checkpoints"
        assert entry["task"] in celery_app.tasks
