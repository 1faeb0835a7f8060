"""Polling loop that drives due enrollments through their workflows."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Union

from .catalog import WorkflowCatalog
from .clock import Clock, SystemClock
from .config import SchedulerConfig
from .contracts import (
    Advanced,
    Completed,
    EnrollmentStatus,
    PermanentFailure,
    RunStatus,
    TransientFailure,
    WaitingForEvent,
    Workflow,
)
from .exceptions import EnrollmentCancelled, LockConflictError
from .execute import StepExecutor
from .intake import EventIntakeHandler
from .locking import LockManager, default_worker_id
from .persistence import Enrollment, EnrollmentStore, Run, Transition
from .utils.retry import RetryPolicy

logger = logging.getLogger(__name__)

DISABLED_WORKFLOW_ERROR = "Workflow was disabled during execution"


class SchedulerLoop:
    """Claims due enrollments and commits the outcome of each executed step.

    Several loops may run against one store, in one process or many. Every
    write to an enrollment is gated on holding its lease, so a row is only
    ever advanced by one worker at a time.
    """

    def __init__(
        self,
        store: EnrollmentStore,
        catalog: WorkflowCatalog,
        executor: StepExecutor,
        lock_manager: Optional[LockManager] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Optional[Clock] = None,
        config: Optional[SchedulerConfig] = None,
        worker_id: Optional[str] = None,
        intake: Optional[EventIntakeHandler] = None,
    ) -> None:
        self._store = store
        self._catalog = catalog
        self._executor = executor
        self._intake = intake
        self._clock = clock or SystemClock()
        self._config = config or SchedulerConfig()
        self._lock_manager = lock_manager or LockManager(
            store, self._clock, timedelta(seconds=self._config.lease_seconds)
        )
        self._retry = retry_policy or RetryPolicy()
        self.worker_id = worker_id or default_worker_id()
        self._stopping = asyncio.Event()

    @property
    def lease(self) -> timedelta:
        return self._lock_manager.lease

    def stop(self) -> None:
        self._stopping.set()

    async def run(self, lifespan: Optional[float] = None) -> None:
        """Poll until :meth:`stop` is called or ``lifespan`` seconds elapse."""
        logger.info(f"Worker {self.worker_id} started")
        started = time.monotonic()
        self._stopping.clear()
        while not self._stopping.is_set():
            try:
                processed = await self.tick()
            except Exception:
                logger.exception(f"Worker {self.worker_id} tick failed")
                processed = 0
            if lifespan is not None and time.monotonic() - started >= lifespan:
                break
            if processed:
                continue
            try:
                await asyncio.wait_for(
                    self._stopping.wait(), timeout=self._config.poll_interval_seconds
                )
            except asyncio.TimeoutError:
                pass
        logger.info(f"Worker {self.worker_id} stopped")

    async def tick(self) -> int:
        """Emit overdue no-reply events, then process one batch of due enrollments.

        Returns the number of enrollments this worker claimed.
        """
        if self._intake is not None:
            await self._intake.emit_no_reply_events(self._config.batch_size)

        due = await self._store.find_due(
            self._clock.now(), self.lease, self._config.batch_size
        )
        if not due:
            return 0

        semaphore = asyncio.Semaphore(max(1, self._config.concurrency))

        async def guarded(enrollment: Enrollment) -> bool:
            async with semaphore:
                try:
                    return await self.process(enrollment.id)
                except Exception:
                    logger.exception(
                        f"Unexpected failure processing enrollment {enrollment.id}"
                    )
                    return False

        results = await asyncio.gather(*(guarded(e) for e in due))
        return sum(1 for claimed in results if claimed)

    async def process(self, enrollment_id: str) -> bool:
        """Claim one enrollment and run it until it has to wait.

        Returns ``False`` when another worker holds the claim.
        """
        if not await self._lock_manager.try_claim(enrollment_id, self.worker_id):
            return False

        try:
            await self._run_claimed(enrollment_id)
        except LockConflictError:
            logger.warning(
                f"Worker {self.worker_id} lost lease on enrollment {enrollment_id} mid-execution"
            )
        finally:
            # No-op when a transition already released it.
            await self._lock_manager.release(enrollment_id, self.worker_id)
        return True

    # ------------------------------------------------------------------
    async def _run_claimed(self, enrollment_id: str) -> None:
        enrollment = await self._store.get_enrollment(enrollment_id)
        if enrollment is None or enrollment.is_terminal:
            return
        if not await self._store.mark_running(enrollment_id, self.worker_id):
            raise LockConflictError(enrollment_id)

        workflow = await self._catalog.get_workflow(enrollment.workflow_id)
        if workflow is None or not workflow.is_enabled:
            logger.info(
                f"Failing enrollment {enrollment_id}: workflow {enrollment.workflow_id} "
                "is missing or disabled"
            )
            await self._commit(
                enrollment_id,
                Transition(
                    status=EnrollmentStatus.FAILED,
                    current_step_order=enrollment.current_step_order,
                    context_json=enrollment.context_json,
                    last_error=DISABLED_WORKFLOW_ERROR,
                    completed_at=self._clock.now(),
                ),
            )
            return

        context = dict(enrollment.context_json)
        if enrollment.resume_payload:
            context.update(enrollment.resume_payload)
        order = enrollment.current_step_order
        last_error = enrollment.last_error

        async def checkpoint() -> None:
            await self._checkpoint(enrollment_id)

        for _ in range(self._config.max_steps_per_claim):
            step = workflow.step_at(order)
            if step is None:
                await self._finish_without_step(enrollment_id, workflow, order, context)
                return

            current = enrollment.model_copy(
                update={"context_json": context, "current_step_order": order}
            )
            started_at = self._clock.now()
            try:
                await checkpoint()
                outcome = await self._executor.execute(
                    current, step, workflow=workflow, checkpoint=checkpoint
                )
            except EnrollmentCancelled:
                await self._record_run(
                    enrollment_id, step.id, order, RunStatus.ABORTED, started_at,
                    "Enrollment cancelled",
                )
                logger.info(f"Aborted step {order} of cancelled enrollment {enrollment_id}")
                return

            if isinstance(outcome, (TransientFailure, PermanentFailure)):
                await self._record_run(
                    enrollment_id, step.id, order, RunStatus.ERROR, started_at,
                    outcome.reason,
                )
                await self._handle_failure(enrollment_id, order, context, outcome)
                return

            await self._record_run(
                enrollment_id, step.id, order, RunStatus.SUCCESS, started_at
            )
            context = outcome.context
            last_error = None

            if isinstance(outcome, Completed):
                await self._complete(enrollment_id, workflow, context)
                return
            if isinstance(outcome, WaitingForEvent):
                resume_key = outcome.resume_condition.resume_key
                await self._commit(
                    enrollment_id,
                    Transition(
                        status=EnrollmentStatus.WAITING,
                        current_step_order=order,
                        context_json=context,
                        resume_key=resume_key,
                        no_reply_at=outcome.no_reply_at,
                    ),
                )
                logger.info(f"Enrollment {enrollment_id} waiting on {resume_key}")
                return

            assert isinstance(outcome, Advanced)
            order = outcome.next_step_order
            if outcome.next_run_at > self._clock.now():
                await self._commit(
                    enrollment_id,
                    Transition(
                        status=EnrollmentStatus.PENDING,
                        current_step_order=order,
                        next_run_at=outcome.next_run_at,
                        context_json=context,
                    ),
                )
                return

            # Due already: keep the claim and carry on with the next step.
            committed = await self._commit(
                enrollment_id,
                Transition(
                    status=EnrollmentStatus.RUNNING,
                    current_step_order=order,
                    next_run_at=outcome.next_run_at,
                    context_json=context,
                    release_lock=False,
                ),
            )
            if not committed:
                return

        logger.info(
            f"Enrollment {enrollment_id} yielded after {self._config.max_steps_per_claim} steps"
        )
        await self._commit(
            enrollment_id,
            Transition(
                status=EnrollmentStatus.PENDING,
                current_step_order=order,
                next_run_at=self._clock.now(),
                context_json=context,
                last_error=last_error,
            ),
        )

    async def _checkpoint(self, enrollment_id: str) -> None:
        """Renew the lease, or find out why it cannot be renewed."""
        if await self._lock_manager.renew(enrollment_id, self.worker_id):
            return
        current = await self._store.get_enrollment(enrollment_id)
        if current is not None and current.status == EnrollmentStatus.CANCELLED:
            raise EnrollmentCancelled(enrollment_id)
        raise LockConflictError(enrollment_id)

    async def _finish_without_step(
        self,
        enrollment_id: str,
        workflow: Workflow,
        order: int,
        context: Dict[str, Any],
    ) -> None:
        if order > workflow.last_step_order:
            await self._complete(enrollment_id, workflow, context)
            return
        await self._handle_failure(
            enrollment_id,
            order,
            context,
            PermanentFailure(reason=f"Workflow {workflow.id} has no step {order}"),
        )

    async def _complete(
        self, enrollment_id: str, workflow: Workflow, context: Dict[str, Any]
    ) -> None:
        await self._commit(
            enrollment_id,
            Transition(
                status=EnrollmentStatus.COMPLETED,
                current_step_order=workflow.last_step_order + 1,
                context_json=context,
                completed_at=self._clock.now(),
            ),
        )
        logger.info(f"Enrollment {enrollment_id} completed workflow {workflow.id}")

    async def _handle_failure(
        self,
        enrollment_id: str,
        order: int,
        context: Dict[str, Any],
        outcome: Union[TransientFailure, PermanentFailure],
    ) -> None:
        now = self._clock.now()
        if isinstance(outcome, TransientFailure):
            attempts = await self._store.count_consecutive_errors(enrollment_id)
            if not self._retry.is_terminal(attempts):
                delay = self._retry.next_delay(attempts)
                logger.warning(
                    f"Step {order} of enrollment {enrollment_id} failed "
                    f"(attempt {attempts}/{self._retry.max_attempts}), "
                    f"retrying in {delay.total_seconds():.0f}s: {outcome.reason}"
                )
                await self._commit(
                    enrollment_id,
                    Transition(
                        status=EnrollmentStatus.PENDING,
                        current_step_order=order,
                        next_run_at=now + delay,
                        context_json=context,
                        last_error=outcome.reason,
                    ),
                )
                return
            logger.warning(
                f"Enrollment {enrollment_id} exhausted {attempts} attempts at step {order}"
            )
        reason = outcome.reason

        await self._commit(
            enrollment_id,
            Transition(
                status=EnrollmentStatus.FAILED,
                current_step_order=order,
                context_json=context,
                last_error=reason,
                completed_at=now,
            ),
        )
        logger.info(f"Enrollment {enrollment_id} failed at step {order}: {reason}")

    async def _commit(self, enrollment_id: str, transition: Transition) -> bool:
        if await self._store.apply_transition(enrollment_id, self.worker_id, transition):
            return True
        # The row was cancelled or the lease went to another worker.
        logger.warning(
            f"Worker {self.worker_id} could not commit {transition.status.value} "
            f"for enrollment {enrollment_id}"
        )
        return False

    async def _record_run(
        self,
        enrollment_id: str,
        step_id: str,
        step_order: int,
        status: RunStatus,
        started_at: datetime,
        error: Optional[str] = None,
    ) -> None:
        await self._store.append_run(
            Run(
                enrollment_id=enrollment_id,
                step_id=step_id,
                step_order=step_order,
                status=status,
                started_at=started_at,
                finished_at=self._clock.now(),
                error=error,
            )
        )
