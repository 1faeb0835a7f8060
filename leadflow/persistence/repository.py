"""Repository abstraction for enrollment state persistence."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Protocol

from ..contracts import EnrollmentStatus
from .models import Enrollment, Run, Transition


class EnrollmentStore(Protocol):
    """Protocol for enrollment persistence backends.

    Every method that changes an existing row is a single conditional write:
    the condition and the update are evaluated atomically by the backend and
    the boolean result reports whether the row matched.
    """

    async def create_enrollment(self, enrollment: Enrollment) -> bool:
        """Insert ``enrollment``; ``False`` if (workflow, event) already exists."""

    async def get_enrollment(self, enrollment_id: str) -> Enrollment | None:
        """Retrieve an enrollment by id."""

    async def list_enrollments(
        self,
        status: EnrollmentStatus | None = None,
        workflow_id: str | None = None,
        limit: int | None = None,
    ) -> list[Enrollment]:
        """Return enrollments, newest first."""

    async def count_by_status(self) -> dict[str, int]:
        """Return the number of enrollments per status."""

    async def find_due(
        self, now: datetime, lease: timedelta, limit: int
    ) -> list[Enrollment]:
        """Return due, unclaimed enrollments ordered by ``next_run_at``."""

    async def try_claim(
        self, enrollment_id: str, owner: str, now: datetime, lease: timedelta
    ) -> bool:
        """Take the lock if it is free or its lease expired."""

    async def renew_lock(self, enrollment_id: str, owner: str, now: datetime) -> bool:
        """Refresh ``locked_at`` if ``owner`` still holds a non-terminal row."""

    async def release_lock(self, enrollment_id: str, owner: str) -> bool:
        """Clear the lock if ``owner`` still holds it."""

    async def mark_running(self, enrollment_id: str, owner: str) -> bool:
        """Set status ``running`` if ``owner`` holds the lock."""

    async def apply_transition(
        self, enrollment_id: str, owner: str, transition: Transition
    ) -> bool:
        """Write execution state if ``owner`` holds the lock."""

    async def cancel_enrollment(self, enrollment_id: str, now: datetime) -> bool:
        """Cancel a non-terminal enrollment regardless of lock state."""

    async def find_waiting(self, resume_key: str) -> list[Enrollment]:
        """Return waiting enrollments registered under ``resume_key``."""

    async def resume_enrollment(
        self, enrollment_id: str, now: datetime, payload: dict[str, Any]
    ) -> bool:
        """Move a ``waiting`` enrollment back to ``pending``."""

    async def find_no_reply_due(self, now: datetime, limit: int) -> list[Enrollment]:
        """Return waiting enrollments whose no-reply deadline has passed."""

    async def take_no_reply(self, enrollment_id: str, no_reply_at: datetime) -> bool:
        """Clear the no-reply deadline if the row still waits with ``no_reply_at``."""

    async def append_run(self, run: Run) -> Run:
        """Append an audit record."""

    async def list_runs(self, enrollment_id: str, limit: int | None = None) -> list[Run]:
        """Return runs ordered by start time, most recent last."""

    async def count_consecutive_errors(self, enrollment_id: str) -> int:
        """Count ``error`` runs since the last ``success`` run."""
