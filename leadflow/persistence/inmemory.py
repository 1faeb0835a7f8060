"""In-memory implementation of the enrollment store."""

from __future__ import annotations

import asyncio
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Dict, List

from ..contracts import CLAIMABLE_STATUSES, EnrollmentStatus, RunStatus
from .models import Enrollment, Run, Transition
from .repository import EnrollmentStore


class InMemoryEnrollmentStore(EnrollmentStore):
    """Store enrollment state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Every conditional write runs under a
    single lock so concurrent coroutines observe it as one atomic step.
    """

    def __init__(self) -> None:
        self._enrollments: Dict[str, Enrollment] = {}
        self._pairs: Dict[tuple[str, str], str] = {}
        self._runs: Dict[str, List[Run]] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def create_enrollment(self, enrollment: Enrollment) -> bool:
        async with self._lock:
            pair = (enrollment.workflow_id, enrollment.event_id)
            if pair in self._pairs:
                return False
            self._pairs[pair] = enrollment.id
            self._enrollments[enrollment.id] = enrollment.model_copy(deep=True)
            return True

    async def get_enrollment(self, enrollment_id: str) -> Enrollment | None:
        row = self._enrollments.get(enrollment_id)
        return row.model_copy(deep=True) if row else None

    async def list_enrollments(
        self,
        status: EnrollmentStatus | None = None,
        workflow_id: str | None = None,
        limit: int | None = None,
    ) -> list[Enrollment]:
        rows = [
            e
            for e in self._enrollments.values()
            if (status is None or e.status == status)
            and (workflow_id is None or e.workflow_id == workflow_id)
        ]
        rows.sort(key=lambda e: e.enrolled_at, reverse=True)
        if limit is not None:
            rows = rows[:limit]
        return [e.model_copy(deep=True) for e in rows]

    async def count_by_status(self) -> dict[str, int]:
        return dict(Counter(e.status.value for e in self._enrollments.values()))

    async def find_due(
        self, now: datetime, lease: timedelta, limit: int
    ) -> list[Enrollment]:
        threshold = now - lease
        due = [
            e
            for e in self._enrollments.values()
            if e.status in CLAIMABLE_STATUSES
            and e.next_run_at is not None
            and e.next_run_at <= now
            and (e.lock_owner is None or e.locked_at is None or e.locked_at < threshold)
        ]
        due.sort(key=lambda e: e.next_run_at)
        return [e.model_copy(deep=True) for e in due[:limit]]

    # ------------------------------------------------------------------
    # Conditional writes
    async def try_claim(
        self, enrollment_id: str, owner: str, now: datetime, lease: timedelta
    ) -> bool:
        async with self._lock:
            row = self._enrollments.get(enrollment_id)
            if row is None or row.status not in CLAIMABLE_STATUSES:
                return False
            expired = row.locked_at is None or row.locked_at < now - lease
            if row.lock_owner is not None and not expired:
                return False
            row.lock_owner = owner
            row.locked_at = now
            return True

    async def renew_lock(self, enrollment_id: str, owner: str, now: datetime) -> bool:
        async with self._lock:
            row = self._enrollments.get(enrollment_id)
            if row is None or row.lock_owner != owner or row.is_terminal:
                return False
            row.locked_at = now
            return True

    async def release_lock(self, enrollment_id: str, owner: str) -> bool:
        async with self._lock:
            row = self._enrollments.get(enrollment_id)
            if row is None or row.lock_owner != owner:
                return False
            row.lock_owner = None
            row.locked_at = None
            return True

    async def mark_running(self, enrollment_id: str, owner: str) -> bool:
        async with self._lock:
            row = self._enrollments.get(enrollment_id)
            if row is None or row.lock_owner != owner or row.is_terminal:
                return False
            row.status = EnrollmentStatus.RUNNING
            return True

    async def apply_transition(
        self, enrollment_id: str, owner: str, transition: Transition
    ) -> bool:
        async with self._lock:
            row = self._enrollments.get(enrollment_id)
            if row is None or row.lock_owner != owner or row.is_terminal:
                return False
            row.status = transition.status
            row.current_step_order = transition.current_step_order
            row.next_run_at = transition.next_run_at
            row.context_json = dict(transition.context_json)
            row.last_error = transition.last_error
            row.resume_key = transition.resume_key
            row.no_reply_at = transition.no_reply_at
            row.resume_payload = None
            row.completed_at = transition.completed_at
            if transition.release_lock:
                row.lock_owner = None
                row.locked_at = None
            return True

    async def cancel_enrollment(self, enrollment_id: str, now: datetime) -> bool:
        async with self._lock:
            row = self._enrollments.get(enrollment_id)
            if row is None or row.is_terminal:
                return False
            row.status = EnrollmentStatus.CANCELLED
            row.next_run_at = None
            row.lock_owner = None
            row.locked_at = None
            row.resume_key = None
            row.no_reply_at = None
            row.completed_at = now
            return True

    async def find_waiting(self, resume_key: str) -> list[Enrollment]:
        return [
            e.model_copy(deep=True)
            for e in self._enrollments.values()
            if e.status == EnrollmentStatus.WAITING and e.resume_key == resume_key
        ]

    async def resume_enrollment(
        self, enrollment_id: str, now: datetime, payload: dict[str, Any]
    ) -> bool:
        async with self._lock:
            row = self._enrollments.get(enrollment_id)
            if row is None or row.status != EnrollmentStatus.WAITING:
                return False
            row.status = EnrollmentStatus.PENDING
            row.next_run_at = now
            row.resume_key = None
            row.no_reply_at = None
            row.resume_payload = dict(payload)
            return True

    async def find_no_reply_due(self, now: datetime, limit: int) -> list[Enrollment]:
        due = [
            e
            for e in self._enrollments.values()
            if e.status == EnrollmentStatus.WAITING
            and e.no_reply_at is not None
            and e.no_reply_at <= now
        ]
        due.sort(key=lambda e: e.no_reply_at)
        return [e.model_copy(deep=True) for e in due[:limit]]

    async def take_no_reply(self, enrollment_id: str, no_reply_at: datetime) -> bool:
        async with self._lock:
            row = self._enrollments.get(enrollment_id)
            if (
                row is None
                or row.status != EnrollmentStatus.WAITING
                or row.no_reply_at != no_reply_at
            ):
                return False
            row.no_reply_at = None
            return True

    # ------------------------------------------------------------------
    # Run audit trail
    async def append_run(self, run: Run) -> Run:
        async with self._lock:
            self._runs.setdefault(run.enrollment_id, []).append(run.model_copy())
        return run

    async def list_runs(self, enrollment_id: str, limit: int | None = None) -> list[Run]:
        runs = sorted(self._runs.get(enrollment_id, []), key=lambda r: r.started_at)
        if limit is not None:
            runs = runs[-limit:]
        return [r.model_copy() for r in runs]

    async def count_consecutive_errors(self, enrollment_id: str) -> int:
        count = 0
        for run in reversed(await self.list_runs(enrollment_id)):
            if run.status == RunStatus.SUCCESS:
                break
            if run.status == RunStatus.ERROR:
                count += 1
        return count
