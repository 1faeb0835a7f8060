"""PostgreSQL implementation of the enrollment store."""

from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Any

import asyncpg

from ..contracts import CLAIMABLE_STATUSES, EnrollmentStatus, RunStatus
from .models import Enrollment, Run, Transition
from .repository import EnrollmentStore

_TERMINAL = [
    EnrollmentStatus.COMPLETED.value,
    EnrollmentStatus.FAILED.value,
    EnrollmentStatus.CANCELLED.value,
]
_CLAIMABLE = [s.value for s in CLAIMABLE_STATUSES]

_ENROLLMENT_COLUMNS = (
    "id, workflow_id, workspace_id, lead_id, event_id, status, context_json, "
    "current_step_order, next_run_at, locked_at, lock_owner, last_error, "
    "resume_key, resume_payload, no_reply_at, enrolled_at, completed_at"
)


def _json(value: Any) -> Any:
    # asyncpg hands JSONB back as text unless a codec is registered.
    if isinstance(value, str):
        return json.loads(value)
    return value


def _affected(status: str) -> int:
    # asyncpg returns command tags such as "UPDATE 1".
    return int(status.split()[-1])


class PostgresEnrollmentStore(EnrollmentStore):
    """Persist enrollment state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS enrollments (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                workspace_id TEXT,
                lead_id TEXT,
                event_id TEXT NOT NULL,
                status TEXT NOT NULL,
                context_json JSONB NOT NULL DEFAULT '{}'::jsonb,
                current_step_order INTEGER NOT NULL,
                next_run_at TIMESTAMPTZ,
                locked_at TIMESTAMPTZ,
                lock_owner TEXT,
                last_error TEXT,
                resume_key TEXT,
                resume_payload JSONB,
                no_reply_at TIMESTAMPTZ,
                enrolled_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ,
                UNIQUE (workflow_id, event_id)
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_enrollments_due "
            "ON enrollments (status, next_run_at)"
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_enrollments_resume "
            "ON enrollments (resume_key) WHERE resume_key IS NOT NULL"
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
                seq BIGSERIAL PRIMARY KEY,
                id TEXT UNIQUE NOT NULL,
                enrollment_id TEXT NOT NULL,
                step_id TEXT NOT NULL,
                step_order INTEGER NOT NULL,
                status TEXT NOT NULL,
                started_at TIMESTAMPTZ NOT NULL,
                finished_at TIMESTAMPTZ,
                error TEXT
            )
            """
        )

    @staticmethod
    def _to_enrollment(row: asyncpg.Record) -> Enrollment:
        return Enrollment(
            id=row["id"],
            workflow_id=row["workflow_id"],
            workspace_id=row["workspace_id"],
            lead_id=row["lead_id"],
            event_id=row["event_id"],
            status=EnrollmentStatus(row["status"]),
            context_json=_json(row["context_json"]) or {},
            current_step_order=row["current_step_order"],
            next_run_at=row["next_run_at"],
            locked_at=row["locked_at"],
            lock_owner=row["lock_owner"],
            last_error=row["last_error"],
            resume_key=row["resume_key"],
            resume_payload=_json(row["resume_payload"]),
            no_reply_at=row["no_reply_at"],
            enrolled_at=row["enrolled_at"],
            completed_at=row["completed_at"],
        )

    @staticmethod
    def _to_run(row: asyncpg.Record) -> Run:
        return Run(
            id=row["id"],
            enrollment_id=row["enrollment_id"],
            step_id=row["step_id"],
            step_order=row["step_order"],
            status=RunStatus(row["status"]),
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            error=row["error"],
        )

    # ------------------------------------------------------------------
    async def create_enrollment(self, enrollment: Enrollment) -> bool:
        conn = await self._connect()
        try:
            inserted = await conn.fetchval(
                f"""
                INSERT INTO enrollments ({_ENROLLMENT_COLUMNS})
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17)
                ON CONFLICT (workflow_id, event_id) DO NOTHING
                RETURNING id
                """,
                enrollment.id,
                enrollment.workflow_id,
                enrollment.workspace_id,
                enrollment.lead_id,
                enrollment.event_id,
                enrollment.status.value,
                json.dumps(enrollment.context_json),
                enrollment.current_step_order,
                enrollment.next_run_at,
                enrollment.locked_at,
                enrollment.lock_owner,
                enrollment.last_error,
                enrollment.resume_key,
                json.dumps(enrollment.resume_payload)
                if enrollment.resume_payload is not None
                else None,
                enrollment.no_reply_at,
                enrollment.enrolled_at,
                enrollment.completed_at,
            )
        finally:
            await conn.close()
        return inserted is not None

    async def get_enrollment(self, enrollment_id: str) -> Enrollment | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_ENROLLMENT_COLUMNS} FROM enrollments WHERE id = $1",
                enrollment_id,
            )
        finally:
            await conn.close()
        return self._to_enrollment(row) if row else None

    async def list_enrollments(
        self,
        status: EnrollmentStatus | None = None,
        workflow_id: str | None = None,
        limit: int | None = None,
    ) -> list[Enrollment]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"""
                SELECT {_ENROLLMENT_COLUMNS} FROM enrollments
                WHERE ($1::text IS NULL OR status = $1)
                  AND ($2::text IS NULL OR workflow_id = $2)
                ORDER BY enrolled_at DESC
                LIMIT $3
                """,
                EnrollmentStatus(status).value if status is not None else None,
                workflow_id,
                limit,
            )
        finally:
            await conn.close()
        return [self._to_enrollment(r) for r in rows]

    async def count_by_status(self) -> dict[str, int]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT status, COUNT(*) AS n FROM enrollments GROUP BY status"
            )
        finally:
            await conn.close()
        return {r["status"]: r["n"] for r in rows}

    async def find_due(
        self, now: datetime, lease: timedelta, limit: int
    ) -> list[Enrollment]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"""
                SELECT {_ENROLLMENT_COLUMNS} FROM enrollments
                WHERE status = ANY($1::text[])
                  AND next_run_at IS NOT NULL AND next_run_at <= $2
                  AND (lock_owner IS NULL OR locked_at IS NULL OR locked_at < $3)
                ORDER BY next_run_at ASC
                LIMIT $4
                """,
                _CLAIMABLE,
                now,
                now - lease,
                limit,
            )
        finally:
            await conn.close()
        return [self._to_enrollment(r) for r in rows]

    async def try_claim(
        self, enrollment_id: str, owner: str, now: datetime, lease: timedelta
    ) -> bool:
        conn = await self._connect()
        try:
            status = await conn.execute(
                """
                UPDATE enrollments SET lock_owner = $1, locked_at = $2
                WHERE id = $3 AND status = ANY($4::text[])
                  AND (lock_owner IS NULL OR locked_at IS NULL OR locked_at < $5)
                """,
                owner,
                now,
                enrollment_id,
                _CLAIMABLE,
                now - lease,
            )
        finally:
            await conn.close()
        return _affected(status) == 1

    async def renew_lock(self, enrollment_id: str, owner: str, now: datetime) -> bool:
        conn = await self._connect()
        try:
            status = await conn.execute(
                "UPDATE enrollments SET locked_at = $1 "
                "WHERE id = $2 AND lock_owner = $3 AND NOT (status = ANY($4::text[]))",
                now,
                enrollment_id,
                owner,
                _TERMINAL,
            )
        finally:
            await conn.close()
        return _affected(status) == 1

    async def release_lock(self, enrollment_id: str, owner: str) -> bool:
        conn = await self._connect()
        try:
            status = await conn.execute(
                "UPDATE enrollments SET lock_owner = NULL, locked_at = NULL "
                "WHERE id = $1 AND lock_owner = $2",
                enrollment_id,
                owner,
            )
        finally:
            await conn.close()
        return _affected(status) == 1

    async def mark_running(self, enrollment_id: str, owner: str) -> bool:
        conn = await self._connect()
        try:
            status = await conn.execute(
                "UPDATE enrollments SET status = $1 "
                "WHERE id = $2 AND lock_owner = $3 AND NOT (status = ANY($4::text[]))",
                EnrollmentStatus.RUNNING.value,
                enrollment_id,
                owner,
                _TERMINAL,
            )
        finally:
            await conn.close()
        return _affected(status) == 1

    async def apply_transition(
        self, enrollment_id: str, owner: str, transition: Transition
    ) -> bool:
        conn = await self._connect()
        try:
            status = await conn.execute(
                """
                UPDATE enrollments SET
                    status = $1, current_step_order = $2, next_run_at = $3,
                    context_json = $4, last_error = $5, resume_key = $6,
                    resume_payload = NULL, completed_at = $7, no_reply_at = $12,
                    lock_owner = CASE WHEN $8 THEN NULL ELSE lock_owner END,
                    locked_at = CASE WHEN $8 THEN NULL ELSE locked_at END
                WHERE id = $9 AND lock_owner = $10 AND NOT (status = ANY($11::text[]))
                """,
                transition.status.value,
                transition.current_step_order,
                transition.next_run_at,
                json.dumps(transition.context_json),
                transition.last_error,
                transition.resume_key,
                transition.completed_at,
                transition.release_lock,
                enrollment_id,
                owner,
                _TERMINAL,
                transition.no_reply_at,
            )
        finally:
            await conn.close()
        return _affected(status) == 1

    async def cancel_enrollment(self, enrollment_id: str, now: datetime) -> bool:
        conn = await self._connect()
        try:
            status = await conn.execute(
                """
                UPDATE enrollments SET status = $1, next_run_at = NULL,
                    lock_owner = NULL, locked_at = NULL, resume_key = NULL,
                    no_reply_at = NULL, completed_at = $2
                WHERE id = $3 AND NOT (status = ANY($4::text[]))
                """,
                EnrollmentStatus.CANCELLED.value,
                now,
                enrollment_id,
                _TERMINAL,
            )
        finally:
            await conn.close()
        return _affected(status) == 1

    async def find_waiting(self, resume_key: str) -> list[Enrollment]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"SELECT {_ENROLLMENT_COLUMNS} FROM enrollments "
                "WHERE status = $1 AND resume_key = $2",
                EnrollmentStatus.WAITING.value,
                resume_key,
            )
        finally:
            await conn.close()
        return [self._to_enrollment(r) for r in rows]

    async def resume_enrollment(
        self, enrollment_id: str, now: datetime, payload: dict[str, Any]
    ) -> bool:
        conn = await self._connect()
        try:
            status = await conn.execute(
                """
                UPDATE enrollments SET status = $1, next_run_at = $2,
                    resume_key = NULL, no_reply_at = NULL, resume_payload = $3
                WHERE id = $4 AND status = $5
                """,
                EnrollmentStatus.PENDING.value,
                now,
                json.dumps(payload),
                enrollment_id,
                EnrollmentStatus.WAITING.value,
            )
        finally:
            await conn.close()
        return _affected(status) == 1

    async def find_no_reply_due(self, now: datetime, limit: int) -> list[Enrollment]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"""
                SELECT {_ENROLLMENT_COLUMNS} FROM enrollments
                WHERE status = $1 AND no_reply_at IS NOT NULL AND no_reply_at <= $2
                ORDER BY no_reply_at ASC
                LIMIT $3
                """,
                EnrollmentStatus.WAITING.value,
                now,
                limit,
            )
        finally:
            await conn.close()
        return [self._to_enrollment(r) for r in rows]

    async def take_no_reply(self, enrollment_id: str, no_reply_at: datetime) -> bool:
        conn = await self._connect()
        try:
            status = await conn.execute(
                "UPDATE enrollments SET no_reply_at = NULL "
                "WHERE id = $1 AND status = $2 AND no_reply_at = $3",
                enrollment_id,
                EnrollmentStatus.WAITING.value,
                no_reply_at,
            )
        finally:
            await conn.close()
        return _affected(status) == 1

    async def append_run(self, run: Run) -> Run:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO runs (id, enrollment_id, step_id, step_order, status,
                                  started_at, finished_at, error)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                """,
                run.id,
                run.enrollment_id,
                run.step_id,
                run.step_order,
                run.status.value,
                run.started_at,
                run.finished_at,
                run.error,
            )
        finally:
            await conn.close()
        return run

    async def list_runs(self, enrollment_id: str, limit: int | None = None) -> list[Run]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT id, enrollment_id, step_id, step_order, status,
                       started_at, finished_at, error
                FROM runs WHERE enrollment_id = $1
                ORDER BY started_at DESC, seq DESC
                LIMIT $2
                """,
                enrollment_id,
                limit,
            )
        finally:
            await conn.close()
        return [self._to_run(r) for r in reversed(rows)]

    async def count_consecutive_errors(self, enrollment_id: str) -> int:
        conn = await self._connect()
        try:
            count = await conn.fetchval(
                """
                SELECT COUNT(*) FROM runs
                WHERE enrollment_id = $1 AND status = $2
                  AND seq > COALESCE(
                      (SELECT MAX(seq) FROM runs WHERE enrollment_id = $1 AND status = $3),
                      0)
                """,
                enrollment_id,
                RunStatus.ERROR.value,
                RunStatus.SUCCESS.value,
            )
        finally:
            await conn.close()
        return int(count or 0)
