# =============================================================================
# Audit Logging Middleware — Request/Response Lifecycle Logging
# =============================================================================
#
# Records every API request to the audit_logs table: who touched which
# conversation, when, and with what outcome.
#
# DESIGN DECISION: Starlette middleware (not a FastAPI dependency) because:
# 1. Middleware wraps the ENTIRE request lifecycle (captures status code)
# 2. Captures timing across the full request
# 3. Does not require every endpoint to explicitly opt-in
# 4. Audit writes use their own DB session to avoid lifecycle conflicts
#
# DESIGN DECISION: Non-blocking writes. The audit log is persisted
# after the response is generated. Failures are logged but never crash
# the actual request.
# =============================================================================

from __future__ import annotations

import logging
import re
import time

from starlette.middleware.base import (
    BaseHTTPMiddleware,
    RequestResponseEndpoint,
)
from starlette.requests import Request
from starlette.responses import Response

from convoflow.config import settings
from convoflow.db.engine import async_session_factory
from convoflow.db.models import AuditLog

logger = logging.getLogger(__name__)

# Endpoints to skip audit logging (health check, docs)
_SKIP_PATHS = {"/health", "/docs", "/redoc", "/openapi.json"}

_RUN_PATH_RE = re.compile(r"^/chat/(?!stream$)([^/]+)")


class AuditLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware that logs all API requests to the audit_logs table.

    Reads user_id and api_key_name from request.state (set by the auth
    dependency) and audit_run_id (set by POST /chat once the run id is
    known). For /chat/{run_id} paths the run id comes from the URL.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        if not settings.audit_logging_enabled:
            return await call_next(request)

        if request.url.path in _SKIP_PATHS:
            return await call_next(request)

        start_time = time.monotonic()
        response = await call_next(request)
        elapsed_ms = int((time.monotonic() - start_time) * 1000)

        run_id = getattr(request.state, "audit_run_id", None)
        if run_id is None:
            match = _RUN_PATH_RE.match(request.url.path)
            run_id = match.group(1) if match else None

        # Persist audit log (own session, non-blocking)
        try:
            async with async_session_factory() as session:
                session.add(AuditLog(
                    user_id=getattr(request.state, "user_id", None),
                    api_key_name=getattr(request.state, "api_key_name", None),
                    run_id=run_id,
                    method=request.method,
                    path=str(request.url.path)[:500],
                    client_ip=request.client.host if request.client else None,
                    status_code=response.status_code,
                    response_time_ms=elapsed_ms,
                ))
                await session.commit()
        except Exception as e:
            logger.warning("Failed to write audit log: %s", e)

        return response
