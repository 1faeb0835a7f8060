"""SQLite implementation of the enrollment store."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from ..contracts import CLAIMABLE_STATUSES, EnrollmentStatus, RunStatus
from .models import Enrollment, Run, Transition
from .repository import EnrollmentStore

_TERMINAL = (
    EnrollmentStatus.COMPLETED.value,
    EnrollmentStatus.FAILED.value,
    EnrollmentStatus.CANCELLED.value,
)

_ENROLLMENT_COLUMNS = (
    "id, workflow_id, workspace_id, lead_id, event_id, status, context_json, "
    "current_step_order, next_run_at, locked_at, lock_owner, last_error, "
    "resume_key, resume_payload, no_reply_at, enrolled_at, completed_at"
)


def _ts(value: datetime | None) -> str | None:
    # Fixed-width UTC strings so lexical order equals time order.
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SQLiteEnrollmentStore(EnrollmentStore):
    """Persist enrollment state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._guard = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._guard:
            cur = self._conn.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS enrollments (
                    id TEXT PRIMARY KEY,
                    workflow_id TEXT NOT NULL,
                    workspace_id TEXT,
                    lead_id TEXT,
                    event_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    context_json TEXT NOT NULL,
                    current_step_order INTEGER NOT NULL,
                    next_run_at TEXT,
                    locked_at TEXT,
                    lock_owner TEXT,
                    last_error TEXT,
                    resume_key TEXT,
                    resume_payload TEXT,
                    no_reply_at TEXT,
                    enrolled_at TEXT NOT NULL,
                    completed_at TEXT,
                    UNIQUE (workflow_id, event_id)
                )
                """
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_enrollments_due "
                "ON enrollments (status, next_run_at)"
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_enrollments_resume "
                "ON enrollments (resume_key)"
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS runs (
                    id TEXT PRIMARY KEY,
                    enrollment_id TEXT NOT NULL,
                    step_id TEXT NOT NULL,
                    step_order INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    finished_at TEXT,
                    error TEXT
                )
                """
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_runs_enrollment "
                "ON runs (enrollment_id, started_at)"
            )

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._guard:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._guard:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._guard:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _insert_enrollment(self, enrollment: Enrollment) -> bool:
        try:
            self._execute(
                f"INSERT INTO enrollments ({_ENROLLMENT_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                enrollment.id,
                enrollment.workflow_id,
                enrollment.workspace_id,
                enrollment.lead_id,
                enrollment.event_id,
                enrollment.status.value,
                json.dumps(enrollment.context_json),
                enrollment.current_step_order,
                _ts(enrollment.next_run_at),
                _ts(enrollment.locked_at),
                enrollment.lock_owner,
                enrollment.last_error,
                enrollment.resume_key,
                json.dumps(enrollment.resume_payload)
                if enrollment.resume_payload is not None
                else None,
                _ts(enrollment.no_reply_at),
                _ts(enrollment.enrolled_at),
                _ts(enrollment.completed_at),
            )
        except sqlite3.IntegrityError:
            return False
        return True

    @staticmethod
    def _to_enrollment(row: sqlite3.Row) -> Enrollment:
        return Enrollment(
            id=row["id"],
            workflow_id=row["workflow_id"],
            workspace_id=row["workspace_id"],
            lead_id=row["lead_id"],
            event_id=row["event_id"],
            status=EnrollmentStatus(row["status"]),
            context_json=json.loads(row["context_json"]) if row["context_json"] else {},
            current_step_order=row["current_step_order"],
            next_run_at=_dt(row["next_run_at"]),
            locked_at=_dt(row["locked_at"]),
            lock_owner=row["lock_owner"],
            last_error=row["last_error"],
            resume_key=row["resume_key"],
            resume_payload=json.loads(row["resume_payload"])
            if row["resume_payload"]
            else None,
            no_reply_at=_dt(row["no_reply_at"]),
            enrolled_at=_dt(row["enrolled_at"]),
            completed_at=_dt(row["completed_at"]),
        )

    @staticmethod
    def _to_run(row: sqlite3.Row) -> Run:
        return Run(
            id=row["id"],
            enrollment_id=row["enrollment_id"],
            step_id=row["step_id"],
            step_order=row["step_order"],
            status=RunStatus(row["status"]),
            started_at=_dt(row["started_at"]),
            finished_at=_dt(row["finished_at"]),
            error=row["error"],
        )

    # ------------------------------------------------------------------
    # Repository API
    async def create_enrollment(self, enrollment: Enrollment) -> bool:
        return await asyncio.to_thread(self._insert_enrollment, enrollment)

    async def get_enrollment(self, enrollment_id: str) -> Enrollment | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_ENROLLMENT_COLUMNS} FROM enrollments WHERE id = ?",
            enrollment_id,
        )
        return self._to_enrollment(row) if row else None

    async def list_enrollments(
        self,
        status: EnrollmentStatus | None = None,
        workflow_id: str | None = None,
        limit: int | None = None,
    ) -> list[Enrollment]:
        clauses: list[str] = []
        params: list[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(EnrollmentStatus(status).value)
        if workflow_id is not None:
            clauses.append("workflow_id = ?")
            params.append(workflow_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        query = f"SELECT {_ENROLLMENT_COLUMNS} FROM enrollments {where} ORDER BY enrolled_at DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [self._to_enrollment(r) for r in rows]

    async def count_by_status(self) -> dict[str, int]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT status, COUNT(*) AS n FROM enrollments GROUP BY status",
        )
        return {r["status"]: r["n"] for r in rows}

    async def find_due(
        self, now: datetime, lease: timedelta, limit: int
    ) -> list[Enrollment]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"""
            SELECT {_ENROLLMENT_COLUMNS} FROM enrollments
            WHERE status IN (?, ?)
              AND next_run_at IS NOT NULL AND next_run_at <= ?
              AND (lock_owner IS NULL OR locked_at IS NULL OR locked_at < ?)
            ORDER BY next_run_at ASC
            LIMIT ?
            """,
            *(s.value for s in CLAIMABLE_STATUSES),
            _ts(now),
            _ts(now - lease),
            limit,
        )
        return [self._to_enrollment(r) for r in rows]

    async def try_claim(
        self, enrollment_id: str, owner: str, now: datetime, lease: timedelta
    ) -> bool:
        changed = await asyncio.to_thread(
            self._execute,
            """
            UPDATE enrollments SET lock_owner = ?, locked_at = ?
            WHERE id = ? AND status IN (?, ?)
              AND (lock_owner IS NULL OR locked_at IS NULL OR locked_at < ?)
            """,
            owner,
            _ts(now),
            enrollment_id,
            *(s.value for s in CLAIMABLE_STATUSES),
            _ts(now - lease),
        )
        return changed == 1

    async def renew_lock(self, enrollment_id: str, owner: str, now: datetime) -> bool:
        changed = await asyncio.to_thread(
            self._execute,
            "UPDATE enrollments SET locked_at = ? "
            "WHERE id = ? AND lock_owner = ? AND status NOT IN (?, ?, ?)",
            _ts(now),
            enrollment_id,
            owner,
            *_TERMINAL,
        )
        return changed == 1

    async def release_lock(self, enrollment_id: str, owner: str) -> bool:
        changed = await asyncio.to_thread(
            self._execute,
            "UPDATE enrollments SET lock_owner = NULL, locked_at = NULL "
            "WHERE id = ? AND lock_owner = ?",
            enrollment_id,
            owner,
        )
        return changed == 1

    async def mark_running(self, enrollment_id: str, owner: str) -> bool:
        changed = await asyncio.to_thread(
            self._execute,
            "UPDATE enrollments SET status = ? "
            "WHERE id = ? AND lock_owner = ? AND status NOT IN (?, ?, ?)",
            EnrollmentStatus.RUNNING.value,
            enrollment_id,
            owner,
            *_TERMINAL,
        )
        return changed == 1

    async def apply_transition(
        self, enrollment_id: str, owner: str, transition: Transition
    ) -> bool:
        lock_sql = (
            "lock_owner = NULL, locked_at = NULL"
            if transition.release_lock
            else "lock_owner = lock_owner"
        )
        changed = await asyncio.to_thread(
            self._execute,
            f"""
            UPDATE enrollments SET
                status = ?, current_step_order = ?, next_run_at = ?,
                context_json = ?, last_error = ?, resume_key = ?, no_reply_at = ?,
                resume_payload = NULL, completed_at = ?, {lock_sql}
            WHERE id = ? AND lock_owner = ? AND status NOT IN (?, ?, ?)
            """,
            transition.status.value,
            transition.current_step_order,
            _ts(transition.next_run_at),
            json.dumps(transition.context_json),
            transition.last_error,
            transition.resume_key,
            _ts(transition.no_reply_at),
            _ts(transition.completed_at),
            enrollment_id,
            owner,
            *_TERMINAL,
        )
        return changed == 1

    async def cancel_enrollment(self, enrollment_id: str, now: datetime) -> bool:
        changed = await asyncio.to_thread(
            self._execute,
            """
            UPDATE enrollments SET status = ?, next_run_at = NULL,
                lock_owner = NULL, locked_at = NULL, resume_key = NULL,
                no_reply_at = NULL, completed_at = ?
            WHERE id = ? AND status NOT IN (?, ?, ?)
            """,
            EnrollmentStatus.CANCELLED.value,
            _ts(now),
            enrollment_id,
            *_TERMINAL,
        )
        return changed == 1

    async def find_waiting(self, resume_key: str) -> list[Enrollment]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_ENROLLMENT_COLUMNS} FROM enrollments "
            "WHERE status = ? AND resume_key = ?",
            EnrollmentStatus.WAITING.value,
            resume_key,
        )
        return [self._to_enrollment(r) for r in rows]

    async def resume_enrollment(
        self, enrollment_id: str, now: datetime, payload: dict[str, Any]
    ) -> bool:
        changed = await asyncio.to_thread(
            self._execute,
            """
            UPDATE enrollments SET status = ?, next_run_at = ?,
                resume_key = NULL, no_reply_at = NULL, resume_payload = ?
            WHERE id = ? AND status = ?
            """,
            EnrollmentStatus.PENDING.value,
            _ts(now),
            json.dumps(payload),
            enrollment_id,
            EnrollmentStatus.WAITING.value,
        )
        return changed == 1

    async def find_no_reply_due(self, now: datetime, limit: int) -> list[Enrollment]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_ENROLLMENT_COLUMNS} FROM enrollments "
            "WHERE status = ? AND no_reply_at IS NOT NULL AND no_reply_at <= ? "
            "ORDER BY no_reply_at ASC LIMIT ?",
            EnrollmentStatus.WAITING.value,
            _ts(now),
            limit,
        )
        return [self._to_enrollment(r) for r in rows]

    async def take_no_reply(self, enrollment_id: str, no_reply_at: datetime) -> bool:
        changed = await asyncio.to_thread(
            self._execute,
            "UPDATE enrollments SET no_reply_at = NULL "
            "WHERE id = ? AND status = ? AND no_reply_at = ?",
            enrollment_id,
            EnrollmentStatus.WAITING.value,
            _ts(no_reply_at),
        )
        return changed == 1

    async def append_run(self, run: Run) -> Run:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO runs (id, enrollment_id, step_id, step_order, status, "
            "started_at, finished_at, error) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            run.id,
            run.enrollment_id,
            run.step_id,
            run.step_order,
            run.status.value,
            _ts(run.started_at),
            _ts(run.finished_at),
            run.error,
        )
        return run

    async def list_runs(self, enrollment_id: str, limit: int | None = None) -> list[Run]:
        query = (
            "SELECT id, enrollment_id, step_id, step_order, status, started_at, "
            "finished_at, error FROM runs WHERE enrollment_id = ? "
            "ORDER BY started_at DESC, rowid DESC"
        )
        params: list[Any] = [enrollment_id]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [self._to_run(r) for r in reversed(rows)]

    async def count_consecutive_errors(self, enrollment_id: str) -> int:
        row = await asyncio.to_thread(
            self._fetchone,
            """
            SELECT COUNT(*) AS n FROM runs
            WHERE enrollment_id = ? AND status = ?
              AND rowid > COALESCE(
                  (SELECT MAX(rowid) FROM runs WHERE enrollment_id = ? AND status = ?),
                  0)
            """,
            enrollment_id,
            RunStatus.ERROR.value,
            enrollment_id,
            RunStatus.SUCCESS.value,
        )
        return row["n"] if row else 0

    def close(self) -> None:
        with self._guard:
            self._conn.close()
