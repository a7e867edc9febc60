# =============================================================================
# FastAPI Application
# =============================================================================
#
# Run from project root:
#   uvicorn convoflow.main:app --reload
#
# Tables are created at startup with create_all; existing tables are
# left untouched.
# =============================================================================

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from convoflow.api.admin import router as admin_router
from convoflow.api.audit import AuditLoggingMiddleware
from convoflow.api.chat import router as chat_router
from convoflow.config import settings
from convoflow.db.engine import async_engine
from convoflow.db.models import Base
from convoflow.models.responses import HealthResponse

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("%s %s started", settings.app_name, settings.app_version)
    yield
    await async_engine.dispose()


app = FastAPI(
    title="Convoflow",
    description="Conversational retrieval pipeline with checkpointed runs and sandboxed tools",
    version=settings.app_version,
    lifespan=lifespan,
)
app.add_middleware(AuditLoggingMiddleware)
app.include_router(chat_router)
app.include_router(admin_router)


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health() -> HealthResponse:
    return HealthResponse(version=settings.app_version, service=settings.app_name)
