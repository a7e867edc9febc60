# =============================================================================
# Celery Task Definitions — Checkpoint Maintenance
# =============================================================================
#
# cleanup_expired_checkpoints deletes every checkpoint whose updated_at
# is older than the retention window. It is an administrative sweep:
# ownership is not considered and nothing is decrypted.
#
# IMPORTANT: Celery workers are SYNCHRONOUS.
# - Do NOT use `async/await` in Celery tasks
# - Do NOT use the async SQLAlchemy engine (use sync engine instead)
# The DELETE statement is shared with SecureCheckpointStore.cleanup()
# so the API and the worker apply the same rule.
# =============================================================================

import logging
import time

from sqlalchemy.exc import OperationalError

from convoflow.config import settings
from convoflow.db.engine import get_sync_session
from convoflow.services.checkpoints import expired_checkpoints
from convoflow.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(
    bind=True,
    name="cleanup_expired_checkpoints",
    # Connection drops are retried; the next beat tick covers anything else.
    max_retries=3,
    default_retry_delay=60,
)
def cleanup_expired_checkpoints(self, max_age_seconds: int | None = None) -> dict:
    """
    Delete checkpoints idle for longer than `max_age_seconds`.

    Args:
        max_age_seconds: Retention window; defaults to CHECKPOINT_TTL_SECONDS.

    Returns:
        {"deleted": n, "cutoff": unix_seconds}
    """
    max_age = settings.checkpoint_ttl_seconds if max_age_seconds is None else max_age_seconds
    cutoff = int(time.time()) - max_age

    try:
        with get_sync_session() as session:
            result = session.execute(expired_checkpoints(cutoff))
            deleted = result.rowcount or 0
    except OperationalError as e:
        logger.warning("Checkpoint sweep failed, retrying: %s", e)
        raise self.retry(exc=e) from e

    logger.info("Checkpoint sweep: deleted %d rows idle > %ds", deleted, max_age)
    return {"deleted": deleted, "cutoff": cutoff}
