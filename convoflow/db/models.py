# =============================================================================
# Database Models — SQLAlchemy ORM
# =============================================================================
#
# SCHEMA OVERVIEW:
#
# ┌──────────────────────────────┐   ┌──────────────────┐   ┌──────────────┐
# │  checkpoints                 │   │  api_keys        │   │  audit_logs  │
# ├──────────────────────────────┤   ├──────────────────┤   ├──────────────┤
# │ run_id (PK)                  │   │ id (PK)          │   │ id (PK)      │
# │ user_id      (owner)         │   │ name             │   │ user_id      │
# │ step         (monotonic)     │   │ key_prefix       │   │ run_id       │
# │ state_json   (text, partly   │   │ key_hash         │   │ method, path │
# │              encrypted)      │   │ user_id, role    │   │ status_code  │
# │ created_at   (unix seconds)  │   │ permissions      │   │ ...          │
# │ updated_at   (unix seconds)  │   │ is_active, ...   │   └──────────────┘
# └──────────────────────────────┘   └──────────────────┘
#
# DESIGN DECISIONS:
#
# 1. Checkpoint timestamps are integer unix seconds, not DateTime.
#    The TTL sweep compares updated_at against `now - max_age` and the
#    row format is shared with non-Python readers.
#
# 2. state_json is Text, not JSONB. Encrypted fields are opaque base64
#    strings; the database never needs to query inside the state, and
#    LENGTH(state_json) gives stats() the stored size directly.
#
# 3. JSON columns use JSONB on PostgreSQL and plain JSON elsewhere so the
#    same models work against SQLite in tests.
# =============================================================================

from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class for all ORM models."""

    pass


class Checkpoint(Base):
    """
    The latest persisted snapshot of one run.

    One row per run, updated in place as the step advances. The first
    write fixes user_id; later writes by other non-admin users are
    rejected by the store.
    """

    __tablename__ = "checkpoints"

    run_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    step: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    state_json: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<Checkpoint(run_id='{self.run_id}', user_id='{self.user_id}', "
            f"step={self.step})>"
        )


class ApiKey(Base):
    """
    An API key for authenticating requests.

    Maps a hashed secret to the principal it acts as: user_id, role
    ("user" | "admin") and a permission list (e.g. ["tools:*"]).
    """

    __tablename__ = "api_keys"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    key_prefix: Mapped[str] = mapped_column(String(20), nullable=False)
    key_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)

    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="user")
    permissions: Mapped[list | None] = mapped_column(
        JSONType, nullable=True, default=list,
    )

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    last_used_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<ApiKey(id={self.id}, name='{self.name}', "
            f"prefix='{self.key_prefix}', role='{self.role}')>"
        )


class AuditLog(Base):
    """Immutable audit trail for conversation API requests."""

    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    api_key_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    run_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    method: Mapped[str] = mapped_column(String(10), nullable=False)
    path: Mapped[str] = mapped_column(String(500), nullable=False)
    client_ip: Mapped[str | None] = mapped_column(String(45), nullable=True)
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False,
    )


# ---------------------------------------------------------------------------
# Indexes
# ---------------------------------------------------------------------------
# checkpoints.updated_at drives the TTL sweep; checkpoints.user_id drives
# per-user stats.
# ---------------------------------------------------------------------------

checkpoint_updated_idx = Index("idx_checkpoint_updated_at", Checkpoint.updated_at)
checkpoint_user_idx = Index("idx_checkpoint_user_id", Checkpoint.user_id)

api_key_prefix_idx = Index("idx_api_key_prefix", ApiKey.key_prefix)

audit_log_user_idx = Index(
    "idx_audit_log_user_created", AuditLog.user_id, AuditLog.created_at,
)
audit_log_run_idx = Index("idx_audit_log_run", AuditLog.run_id)
