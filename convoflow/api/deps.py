# =============================================================================
# API Dependencies — Authentication and Shared Services
# =============================================================================
#
# get_current_principal()  X-API-Key → Principal (or the system admin
#                          when auth is disabled)
# require_admin()          403 unless the principal is an admin
# get_checkpoint_store()   process-wide SecureCheckpointStore
# get_pipeline_services()  process-wide LLM + tool services
#
# DESIGN DECISION: FastAPI dependencies (not middleware) for auth.
# Each endpoint opts in via Depends(), the resolved Principal is
# available in the handler, and tests swap any of these through
# app.dependency_overrides.
#
# DESIGN DECISION: APIKeyHeader(auto_error=False) so that when auth is
# disabled a missing header is not an error. The dependency decides.
# =============================================================================

from __future__ import annotations

import logging
from datetime import UTC, datetime

from fastapi import Depends, HTTPException, Request
from fastapi.security import APIKeyHeader
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from convoflow.agents.orchestrator import build_checkpoint_store, build_services
from convoflow.agents.services import PipelineServices
from convoflow.config import Settings, get_settings
from convoflow.db.engine import get_async_session
from convoflow.db.models import ApiKey
from convoflow.errors import ConvoflowError
from convoflow.services.auth import SYSTEM_PRINCIPAL, Principal, Role, hash_api_key
from convoflow.services.checkpoints import SecureCheckpointStore

logger = logging.getLogger(__name__)

# Security scheme for OpenAPI docs (shows "Authorize" button in Swagger UI)
_api_key_scheme = APIKeyHeader(name="X-API-Key", auto_error=False)


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


async def get_current_principal(
    request: Request,
    raw_key: str | None = Depends(_api_key_scheme),
    session: AsyncSession = Depends(get_async_session),
    settings: Settings = Depends(get_settings),
) -> Principal:
    """
    Resolve the acting Principal for a request.

    When auth_enabled=False: the system admin principal.
    When auth_enabled=True:
    - SHA-256 hashes the X-API-Key header and looks it up in api_keys
    - Validates: is_active, not expired
    - Updates last_used_at
    - Stores the key name and user on request.state for audit logging

    Raises:
        HTTPException 401: Missing or invalid API key
        HTTPException 403: Key is inactive or expired
    """
    if not settings.auth_enabled:
        request.state.user_id = SYSTEM_PRINCIPAL.user_id
        return SYSTEM_PRINCIPAL

    if not raw_key:
        raise HTTPException(
            status_code=401,
            detail="Missing API key. Provide an 'X-API-Key' header.",
        )

    stmt = select(ApiKey).where(ApiKey.key_hash == hash_api_key(raw_key))
    result = await session.execute(stmt)
    api_key = result.scalar_one_or_none()

    if api_key is None:
        raise HTTPException(status_code=401, detail="Invalid API key.")

    if not api_key.is_active:
        raise HTTPException(status_code=403, detail="API key has been deactivated.")

    expires_at = api_key.expires_at
    if expires_at is not None and expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=UTC)
    if expires_at is not None and expires_at < datetime.now(UTC):
        raise HTTPException(status_code=403, detail="API key has expired.")

    try:
        role = Role.parse(api_key.role)
    except ValueError:
        logger.error("API key '%s' has unknown role '%s'", api_key.key_prefix, api_key.role)
        raise HTTPException(status_code=403, detail="API key has an invalid role.") from None

    api_key.last_used_at = datetime.now(UTC)
    await session.commit()

    request.state.api_key_name = api_key.name
    request.state.user_id = api_key.user_id

    return Principal(
        user_id=api_key.user_id,
        role=role,
        permissions=frozenset(api_key.permissions or ()),
    )


def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    """
    Raises:
        HTTPException 403: The caller is not an admin.
    """
    if not principal.is_admin:
        raise HTTPException(status_code=403, detail="Admin role required.")
    return principal


# ---------------------------------------------------------------------------
# Shared Services
# ---------------------------------------------------------------------------
# Lazy singletons: the store holds the field cipher (an ephemeral key
# must be the same for every request), and the services hold the LLM
# client pool.
# ---------------------------------------------------------------------------

_store: SecureCheckpointStore | None = None
_services: PipelineServices | None = None


def get_checkpoint_store() -> SecureCheckpointStore:
    global _store
    if _store is None:
        _store = build_checkpoint_store()
    return _store


def get_pipeline_services() -> PipelineServices:
    global _services
    if _services is None:
        _services = build_services()
    return _services


# ---------------------------------------------------------------------------
# Error Mapping
# ---------------------------------------------------------------------------


def to_http_error(error: ConvoflowError) -> HTTPException:
    """Map a domain error to an HTTPException with its status code."""
    return HTTPException(status_code=error.status_code, detail=error.message)
