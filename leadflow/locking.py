"""Lease-based claims on enrollment rows.

A claim is a conditional write of ``lock_owner``/``locked_at``. It succeeds
only when the row is unclaimed or its lease has lapsed, so a crashed worker's
enrollments become claimable again once ``lease`` has passed. Step actions
must therefore tolerate being retried after partial execution.
"""

from __future__ import annotations

import logging
import os
import socket
import uuid
from datetime import timedelta
from typing import Optional

from .clock import Clock, SystemClock
from .constants import DEFAULT_LEASE_SECONDS
from .exceptions import LockConflictError
from .persistence import EnrollmentStore

logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    """Identify this process uniquely across hosts and restarts."""
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"


class LockManager:
    """Claim, renew and release enrollment leases."""

    def __init__(
        self,
        store: EnrollmentStore,
        clock: Optional[Clock] = None,
        lease: timedelta = timedelta(seconds=DEFAULT_LEASE_SECONDS),
    ) -> None:
        self._store = store
        self._clock = clock or SystemClock()
        self.lease = lease

    async def try_claim(
        self,
        enrollment_id: str,
        worker_id: str,
        lease: Optional[timedelta] = None,
    ) -> bool:
        claimed = await self._store.try_claim(
            enrollment_id, worker_id, self._clock.now(), lease or self.lease
        )
        if not claimed:
            logger.debug(f"Worker {worker_id} lost claim on enrollment {enrollment_id}")
        return claimed

    async def claim(
        self,
        enrollment_id: str,
        worker_id: str,
        lease: Optional[timedelta] = None,
    ) -> None:
        """Like :meth:`try_claim` but raises ``LockConflictError`` on contention."""
        if not await self.try_claim(enrollment_id, worker_id, lease):
            raise LockConflictError(enrollment_id)

    async def renew(self, enrollment_id: str, worker_id: str) -> bool:
        """Restamp ``locked_at`` so the lease runs from now again.

        The lease length is not stored on the row; every claimant measures
        expiry with its own lease when it calls :meth:`try_claim`.
        """
        return await self._store.renew_lock(enrollment_id, worker_id, self._clock.now())

    async def release(self, enrollment_id: str, worker_id: str) -> None:
        released = await self._store.release_lock(enrollment_id, worker_id)
        if not released:
            logger.debug(
                f"Worker {worker_id} no longer owned enrollment {enrollment_id} at release"
            )
