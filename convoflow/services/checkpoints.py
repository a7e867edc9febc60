# =============================================================================
# Secure Checkpoint Store — Encrypted, Access-Controlled Run Snapshots
# =============================================================================
#
# Persists the latest RunState of each run in the `checkpoints` table.
#
# WRITE PATH (put):
#   state ──▶ encrypt each SENSITIVE field (AES-GCM, fresh nonce) ──▶ JSON
#         ──▶ insert (first write fixes the owner) or update in place
#         ──▶ log the REDACTED state (never clear, never ciphertext)
#
# READ PATH (get):
#   row ──▶ ownership check ──▶ touch updated_at ──▶ JSON
#       ──▶ decrypt each SENSITIVE field; a field that fails
#           authentication stays encrypted and a warning is logged
#       ──▶ a corrupt row raises CheckpointReadError carrying its step
#
# ACCESS RULES:
#   - admins may read/write/delete any run
#   - other principals only runs they own; a write to a run that does not
#     exist yet establishes ownership
#   - violations raise AccessDeniedError (or CheckpointNotFoundError for
#     reads/deletes when hide_foreign_runs is set)
#
# DESIGN DECISION: Compare-and-swap on step.
# A put whose step is not strictly greater than the stored one raises
# StaleCheckpointError. A retried request racing an in-flight one can
# never roll a run back to an older step.
#
# DESIGN DECISION: One short session per operation.
# The store owns its transactions (async_session_factory, explicit
# commit) so a checkpoint is durable before the engine takes the next
# step, independent of any request-scoped session.
# =============================================================================

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from sqlalchemy import Delete, delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from convoflow.db.models import Checkpoint
from convoflow.errors import (
    AccessDeniedError,
    CheckpointDecryptionError,
    CheckpointNotFoundError,
    CheckpointReadError,
    CheckpointWriteError,
    StaleCheckpointError,
)
from convoflow.graph.state import redact
from convoflow.services.auth import ANONYMOUS_PRINCIPAL, Principal
from convoflow.services.crypto import DecryptionFailed, FieldCipher

logger = logging.getLogger(__name__)

DEFAULT_SENSITIVE_FIELDS = ("messages", "generated_text")
DEFAULT_REDACTED_FIELDS = ("messages", "generated_text", "documents", "task_entities")


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class CheckpointRecord:
    run_id: str
    owner_id: str
    step: int
    state: dict[str, Any]
    created_at: int
    updated_at: int


@dataclass
class CheckpointStats:
    """
    Store-wide statistics.

    per_user_counts is only populated for admin callers.
    """

    total: int
    oldest: int | None
    newest: int | None
    avg_size_bytes: float
    per_user_counts: dict[str, int] | None = None


def expired_checkpoints(cutoff: int) -> Delete:
    """DELETE statement for rows not updated since `cutoff` (unix seconds)."""
    return delete(Checkpoint).where(Checkpoint.updated_at < cutoff)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class SecureCheckpointStore:
    """
    Checkpoint persistence with field-level encryption and per-user ACLs.

    Args:
        session_factory: Async session factory bound to the checkpoint DB.
        cipher: Field cipher for the sensitive fields.
        sensitive_fields: Top-level state keys encrypted at rest.
        redacted_fields: Top-level state keys never written to logs.
        ttl_seconds: Default retention window for cleanup().
        hide_foreign_runs: Report another user's run as not found on
            read/delete instead of access denied.
        decrypt_fail_closed: Raise CheckpointDecryptionError instead of
            returning a field that failed decryption in encrypted form.
        clock: Source of unix time; injectable for tests.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cipher: FieldCipher,
        *,
        sensitive_fields: Iterable[str] = DEFAULT_SENSITIVE_FIELDS,
        redacted_fields: Iterable[str] = DEFAULT_REDACTED_FIELDS,
        ttl_seconds: int = 86400,
        hide_foreign_runs: bool = False,
        decrypt_fail_closed: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._session_factory = session_factory
        self._cipher = cipher
        self.sensitive_fields = frozenset(sensitive_fields)
        # Anything encrypted at rest is also kept out of the logs
        self.redacted_fields = frozenset(redacted_fields) | self.sensitive_fields
        self.ttl_seconds = ttl_seconds
        self._hide_foreign_runs = hide_foreign_runs
        self._decrypt_fail_closed = decrypt_fail_closed
        self._clock = clock

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    async def get(self, run_id: str, principal: Principal | None) -> CheckpointRecord:
        """
        Load and decrypt the latest checkpoint of a run.

        Also refreshes updated_at, so runs that are still being read are
        not reaped by the TTL sweep.

        Raises:
            CheckpointNotFoundError: No row (or a foreign row with
                hide_foreign_runs).
            AccessDeniedError: The row belongs to another user.
            CheckpointReadError: The database failed or the row is corrupt.
        """
        principal = principal or ANONYMOUS_PRINCIPAL
        try:
            async with self._session_factory() as session:
                row = await session.get(Checkpoint, run_id)
                if row is None:
                    raise CheckpointNotFoundError(run_id)
                self._authorize(row, principal, "read")

                row.updated_at = self._now()
                record = CheckpointRecord(
                    run_id=row.run_id,
                    owner_id=row.user_id,
                    step=row.step,
                    state={},
                    created_at=row.created_at,
                    updated_at=row.updated_at,
                )
                state_json = row.state_json
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to read checkpoint for run %s: %s", run_id, e)
            raise CheckpointReadError(f"Failed to read checkpoint: {e}") from e

        record.state = self._decode(run_id, state_json, record.step)
        return record

    async def put(
        self,
        run_id: str,
        step: int,
        state: dict[str, Any],
        principal: Principal | None,
    ) -> None:
        """
        Persist `state` as step `step` of a run.

        The first write for a run fixes its owner (the acting user, or
        "system" when anonymous). An admin writing someone else's run
        keeps the original owner.

        Raises:
            AccessDeniedError: The run belongs to another user.
            StaleCheckpointError: `step` is not after the stored step.
            CheckpointWriteError: The state is not serialisable or the
                database failed.
        """
        principal = principal or ANONYMOUS_PRINCIPAL
        state_json = self._encode(run_id, state)
        now = self._now()

        try:
            async with self._session_factory() as session:
                row = await session.get(Checkpoint, run_id, with_for_update=True)
                if row is None:
                    session.add(Checkpoint(
                        run_id=run_id,
                        user_id=principal.user_id,
                        step=step,
                        state_json=state_json,
                        created_at=now,
                        updated_at=now,
                    ))
                else:
                    self._authorize(row, principal, "write")
                    if step <= row.step:
                        raise StaleCheckpointError(run_id, step, row.step)
                    row.step = step
                    row.state_json = state_json
                    row.updated_at = now
                await session.commit()
        except IntegrityError as e:
            # Lost the race to create the row
            raise StaleCheckpointError(run_id, step, -1) from e
        except SQLAlchemyError as e:
            logger.error("Failed to write checkpoint for run %s: %s", run_id, e)
            raise CheckpointWriteError(f"Failed to write checkpoint: {e}") from e

        logger.info(
            "Checkpoint saved: run=%s step=%d user=%s state=%s",
            run_id, step, principal.user_id,
            redact(state, self.redacted_fields),
        )

    async def delete(self, run_id: str, principal: Principal | None) -> None:
        """
        Delete a run's checkpoint.

        Raises:
            CheckpointNotFoundError: No such run.
            AccessDeniedError: The run belongs to another user.
            CheckpointWriteError: The database failed.
        """
        principal = principal or ANONYMOUS_PRINCIPAL
        try:
            async with self._session_factory() as session:
                row = await session.get(Checkpoint, run_id)
                if row is None:
                    raise CheckpointNotFoundError(run_id)
                self._authorize(row, principal, "delete")
                await session.delete(row)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to delete checkpoint for run %s: %s", run_id, e)
            raise CheckpointWriteError(f"Failed to delete checkpoint: {e}") from e

        logger.info("Checkpoint deleted: run=%s by user=%s", run_id, principal.user_id)

    async def cleanup(self, max_age_seconds: int | None = None) -> int:
        """
        Delete checkpoints not updated within the retention window.

        Administrative sweep: ownership is not considered. Database
        errors are logged and reported as zero rows deleted.

        Args:
            max_age_seconds: Retention window; defaults to ttl_seconds.

        Returns:
            Number of rows deleted.
        """
        max_age = self.ttl_seconds if max_age_seconds is None else max_age_seconds
        cutoff = self._now() - max_age
        try:
            async with self._session_factory() as session:
                result = await session.execute(expired_checkpoints(cutoff))
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Checkpoint cleanup failed: %s", e)
            return 0

        deleted = result.rowcount or 0
        logger.info(
            "Checkpoint cleanup: deleted %d rows older than %ds", deleted, max_age
        )
        return deleted

    async def stats(self, principal: Principal | None) -> CheckpointStats:
        """Row count, age range, average stored size, and per-user counts (admin)."""
        principal = principal or ANONYMOUS_PRINCIPAL
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(
                        func.count(Checkpoint.run_id),
                        func.min(Checkpoint.created_at),
                        func.max(Checkpoint.updated_at),
                        func.avg(func.length(Checkpoint.state_json)),
                    )
                )
                total, oldest, newest, avg_size = result.one()

                per_user: dict[str, int] | None = None
                if principal.is_admin:
                    rows = await session.execute(
                        select(Checkpoint.user_id, func.count(Checkpoint.run_id))
                        .group_by(Checkpoint.user_id)
                    )
                    per_user = {user_id: count for user_id, count in rows.all()}
        except SQLAlchemyError as e:
            logger.error("Checkpoint stats failed: %s", e)
            return CheckpointStats(total=0, oldest=None, newest=None, avg_size_bytes=0.0)

        return CheckpointStats(
            total=total or 0,
            oldest=oldest,
            newest=newest,
            avg_size_bytes=round(float(avg_size or 0.0), 2),
            per_user_counts=per_user,
        )

    # -----------------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------------

    def _now(self) -> int:
        return int(self._clock())

    def _authorize(self, row: Checkpoint, principal: Principal, action: str) -> None:
        if principal.is_admin or row.user_id == principal.user_id:
            return
        logger.warning(
            "Denied %s of run %s: owner=%s actor=%s",
            action, row.run_id, row.user_id, principal.user_id,
        )
        if self._hide_foreign_runs and action != "write":
            raise CheckpointNotFoundError(row.run_id)
        raise AccessDeniedError(
            f"User '{principal.user_id}' may not {action} run '{row.run_id}'"
        )

    def _encode(self, run_id: str, state: dict[str, Any]) -> str:
        stored = dict(state)
        try:
            for name in self.sensitive_fields:
                value = stored.get(name)
                if value is not None:
                    stored[name] = self._cipher.encrypt(value)
            return json.dumps(stored)
        except (TypeError, ValueError) as e:
            raise CheckpointWriteError(
                f"State for run '{run_id}' is not JSON-serialisable: {e}"
            ) from e

    def _decode(self, run_id: str, state_json: str, step: int) -> dict[str, Any]:
        try:
            state = json.loads(state_json)
        except json.JSONDecodeError as e:
            raise CheckpointReadError(
                f"Corrupt checkpoint for run '{run_id}': {e}", step
            ) from e
        if not isinstance(state, dict):
            raise CheckpointReadError(
                f"Corrupt checkpoint for run '{run_id}': state is not an object", step
            )

        for name in self.sensitive_fields:
            value = state.get(name)
            if not isinstance(value, str):
                continue
            try:
                state[name] = self._cipher.decrypt(value)
            except DecryptionFailed as e:
                if self._decrypt_fail_closed:
                    raise CheckpointDecryptionError(run_id, name, step) from e
                logger.warning(
                    "Could not decrypt field '%s' of run %s (%s); "
                    "returning it encrypted",
                    name, run_id, e,
                )
        return state
