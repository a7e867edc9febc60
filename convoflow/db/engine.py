# =============================================================================
# Database Engine & Session Management
# =============================================================================
#
# DESIGN DECISION: Async SQLAlchemy Engine (asyncpg) for the API process.
# The checkpoint store receives `async_session_factory` and opens one short
# session per operation, so a checkpoint write commits before the engine
# moves to the next step.
#
# IMPORTANT: Celery workers are SYNCHRONOUS and cannot use the async
# engine. The TTL sweep uses the lazy sync engine (psycopg2) below.
#
# COMMIT POLICY:
# 1. Dependency-injected (get_async_session via Depends): auto-commits when
#    the request handler returns (API key lookups, last_used_at updates).
# 2. Self-managed (async_session_factory() directly): checkpoint store and
#    audit middleware. These MUST commit explicitly.
# =============================================================================

from collections.abc import AsyncGenerator, Generator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import Session, sessionmaker

from convoflow.config import settings

# ---------------------------------------------------------------------------
# Async Engine
# ---------------------------------------------------------------------------
# pool_size/max_overflow sized for one API process. Every pipeline step
# holds a connection only for the duration of its checkpoint write.
# ---------------------------------------------------------------------------
async_engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_size=5,
    max_overflow=10,
)

# expire_on_commit=False: loaded rows stay readable after commit without
# a new round trip, which async sessions cannot do implicitly.
async_session_factory = async_sessionmaker(
    bind=async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


# ---------------------------------------------------------------------------
# Sync Engine — For Celery Workers (Lazy Initialization)
# ---------------------------------------------------------------------------
# Lazy so the API process never needs psycopg2 importable.
# ---------------------------------------------------------------------------

_sync_engine = None
_sync_session_factory = None


def _get_sync_engine():
    """Lazily create and cache the sync SQLAlchemy engine."""
    global _sync_engine
    if _sync_engine is None:
        _sync_engine = create_engine(
            settings.database_url_sync,
            echo=settings.debug,
            pool_size=5,
            max_overflow=10,
        )
    return _sync_engine


def _get_sync_session_factory():
    """Lazily create and cache the sync session factory."""
    global _sync_session_factory
    if _sync_session_factory is None:
        _sync_session_factory = sessionmaker(
            bind=_get_sync_engine(),
            class_=Session,
            expire_on_commit=False,
        )
    return _sync_session_factory


@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """
    Context manager that provides a sync database session for Celery workers.

    Usage in Celery tasks:
        with get_sync_session() as session:
            session.execute(delete(Checkpoint).where(...))
            # Auto-commits on exit, auto-rollbacks on exception
    """
    factory = _get_sync_session_factory()
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency that provides a database session per request.

    The session commits when the handler returns and rolls back if it
    raises.
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
