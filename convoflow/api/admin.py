# =============================================================================
# Admin API — Checkpoint Maintenance
# =============================================================================
#
# GET  /admin/checkpoints/stats    row count, age range, average size,
#                                  per-user counts
# POST /admin/checkpoints/cleanup  delete checkpoints idle longer than
#                                  the retention window
#
# Both require the admin role. The periodic sweep runs in Celery beat
# (convoflow.workers.tasks); this endpoint is for on-demand cleanup.
# =============================================================================

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from convoflow.api.deps import get_checkpoint_store, require_admin
from convoflow.models.requests import CleanupRequest
from convoflow.models.responses import CheckpointStatsResponse, CleanupResponse
from convoflow.services.auth import Principal
from convoflow.services.checkpoints import SecureCheckpointStore

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Admin"])


@router.get(
    "/admin/checkpoints/stats",
    response_model=CheckpointStatsResponse,
    summary="Checkpoint store statistics",
)
async def checkpoint_stats(
    principal: Principal = Depends(require_admin),
    store: SecureCheckpointStore = Depends(get_checkpoint_store),
) -> CheckpointStatsResponse:
    stats = await store.stats(principal)
    return CheckpointStatsResponse(
        total=stats.total,
        oldest=stats.oldest,
        newest=stats.newest,
        avg_size_bytes=stats.avg_size_bytes,
        per_user_counts=stats.per_user_counts,
    )


@router.post(
    "/admin/checkpoints/cleanup",
    response_model=CleanupResponse,
    summary="Delete expired checkpoints",
)
async def cleanup_checkpoints(
    request: CleanupRequest | None = None,
    principal: Principal = Depends(require_admin),
    store: SecureCheckpointStore = Depends(get_checkpoint_store),
) -> CleanupResponse:
    max_age = store.ttl_seconds
    if request is not None and request.max_age_seconds is not None:
        max_age = request.max_age_seconds

    deleted = await store.cleanup(max_age)
    logger.info(
        "Manual checkpoint cleanup by %s: %d deleted (max_age=%ds)",
        principal.user_id, deleted, max_age,
    )
    return CleanupResponse(deleted=deleted, max_age_seconds=max_age)
