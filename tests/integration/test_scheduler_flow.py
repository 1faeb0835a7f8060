"""End-to-end tests for the scheduler loop driving enrollments."""

import asyncio
import random
from datetime import timedelta

import pytest

from leadflow.config import SchedulerConfig
from leadflow.contracts import EnrollmentStatus, RunStatus, TriggerEvent
from leadflow.exceptions import PermanentActionError, TransientActionError
from leadflow.execute import StepExecutor
from leadflow.intake import EventIntakeHandler
from leadflow.locking import LockManager
from leadflow.persistence import SQLiteEnrollmentStore
from leadflow.scheduler import DISABLED_WORKFLOW_ERROR, SchedulerLoop
from leadflow.utils.retry import RetryPolicy

LEAD_PAYLOAD = {"lead": {"phone": "+15555550100", "email": "ada@example.com"}}


def _loop(store, catalog, sender, clock, worker_id="worker-1", intake=None, **config):
    return SchedulerLoop(
        store,
        catalog,
        StepExecutor(sender, clock),
        lock_manager=LockManager(store, clock),
        retry_policy=RetryPolicy(max_attempts=3, base_delay=30, jitter=0, rng=random.Random(1)),
        clock=clock,
        config=SchedulerConfig(**config),
        worker_id=worker_id,
        intake=intake,
    )


async def _enroll(store, catalog, clock, event_id="evt-1"):
    intake = EventIntakeHandler(store, catalog, clock=clock)
    ack = await intake.ingest(
        TriggerEvent(
            event_id=event_id,
            workspace_id="ws-1",
            lead_id="lead-1",
            event_type="lead_created",
            payload=LEAD_PAYLOAD,
        )
    )
    assert len(ack.enrollment_ids) == 1
    return ack.enrollment_ids[0]


async def _assert_monotonic(store, enrollment_id):
    orders = [r.step_order for r in await store.list_runs(enrollment_id)]
    assert orders == sorted(orders)


@pytest.mark.asyncio
async def test_send_then_wait_delay_scenario(store, catalog, sender, clock, make_workflow):
    catalog.register(
        make_workflow(
            ("send-message", {"channel": "sms", "body": "Thanks for signing up"}),
            ("wait-delay", {"hours": 1}),
        )
    )
    t0 = clock.now()
    enrollment_id = await _enroll(store, catalog, clock)
    loop = _loop(store, catalog, sender, clock)

    assert await loop.tick() == 1
    row = await store.get_enrollment(enrollment_id)
    assert row.status == EnrollmentStatus.PENDING
    assert row.current_step_order == 1
    assert row.next_run_at == t0 + timedelta(hours=1)
    assert row.lock_owner is None
    assert len(sender.sent) == 1

    clock.set(t0 + timedelta(minutes=30))
    assert await loop.tick() == 0
    row = await store.get_enrollment(enrollment_id)
    assert row.current_step_order == 1
    assert row.status == EnrollmentStatus.PENDING

    clock.set(t0 + timedelta(hours=1, seconds=1))
    assert await loop.tick() == 1
    row = await store.get_enrollment(enrollment_id)
    assert row.status == EnrollmentStatus.COMPLETED
    assert row.completed_at == clock.now()
    assert row.next_run_at is None
    assert row.lock_owner is None
    assert len(sender.sent) == 1
    await _assert_monotonic(store, enrollment_id)


@pytest.mark.asyncio
async def test_transient_failures_back_off_then_fail(store, catalog, sender, clock, make_workflow):
    catalog.register(make_workflow(("send-message", {"body": "Hi"})))
    enrollment_id = await _enroll(store, catalog, clock)
    loop = _loop(store, catalog, sender, clock)
    sender.fail_next(TransientActionError("gateway 503"), times=3)

    assert await loop.tick() == 1
    row = await store.get_enrollment(enrollment_id)
    assert row.status == EnrollmentStatus.PENDING
    assert row.last_error == "gateway 503"
    assert row.next_run_at == clock.now() + timedelta(seconds=30)

    clock.advance(seconds=30)
    await loop.tick()
    row = await store.get_enrollment(enrollment_id)
    assert row.next_run_at == clock.now() + timedelta(seconds=60)

    clock.advance(seconds=60)
    await loop.tick()
    row = await store.get_enrollment(enrollment_id)
    assert row.status == EnrollmentStatus.FAILED
    assert row.last_error == "gateway 503"
    assert row.next_run_at is None
    assert sender.sent == []

    runs = await store.list_runs(enrollment_id)
    assert [r.status for r in runs] == [RunStatus.ERROR] * 3


@pytest.mark.asyncio
async def test_success_resets_retry_count(store, catalog, sender, clock, make_workflow):
    catalog.register(make_workflow(("send-message", {"body": "Hi"})))
    enrollment_id = await _enroll(store, catalog, clock)
    loop = _loop(store, catalog, sender, clock)
    sender.fail_next(TransientActionError("blip"), times=2)

    await loop.tick()
    clock.advance(seconds=30)
    await loop.tick()
    clock.advance(seconds=60)
    await loop.tick()

    row = await store.get_enrollment(enrollment_id)
    assert row.status == EnrollmentStatus.COMPLETED
    assert row.last_error is None
    assert len(sender.sent) == 1


@pytest.mark.asyncio
async def test_permanent_failure_short_circuits(store, catalog, sender, clock, make_workflow):
    catalog.register(make_workflow(("send-message", {"body": "Hi"})))
    enrollment_id = await _enroll(store, catalog, clock)
    sender.fail_next(PermanentActionError("number blocked"))

    await _loop(store, catalog, sender, clock).tick()
    row = await store.get_enrollment(enrollment_id)
    assert row.status == EnrollmentStatus.FAILED
    assert row.last_error == "number blocked"
    assert row.completed_at == clock.now()


@pytest.mark.asyncio
async def test_disabled_workflow_fails_enrollment(store, catalog, sender, clock, make_workflow):
    catalog.register(make_workflow(("send-message", {"body": "Hi"})))
    enrollment_id = await _enroll(store, catalog, clock)
    catalog.register(make_workflow(("send-message", {"body": "Hi"}), enabled=False))

    await _loop(store, catalog, sender, clock).tick()
    row = await store.get_enrollment(enrollment_id)
    assert row.status == EnrollmentStatus.FAILED
    assert row.last_error == DISABLED_WORKFLOW_ERROR
    assert sender.sent == []


@pytest.mark.asyncio
async def test_empty_workflow_completes(store, catalog, sender, clock, make_workflow):
    catalog.register(make_workflow())
    enrollment_id = await _enroll(store, catalog, clock)

    await _loop(store, catalog, sender, clock).tick()
    row = await store.get_enrollment(enrollment_id)
    assert row.status == EnrollmentStatus.COMPLETED


@pytest.mark.asyncio
async def test_wait_for_reply_round_trip(store, catalog, sender, clock, make_workflow):
    catalog.register(
        make_workflow(
            ("send-message", {"body": "Want a demo?"}),
            ("wait-for-reply", {}),
            ("branch", {"contains": ["yes"], "if_true": 3, "if_false": 4}),
            ("send-message", {"body": "Booking you in"}),
        )
    )
    enrollment_id = await _enroll(store, catalog, clock)
    loop = _loop(store, catalog, sender, clock)

    await loop.tick()
    row = await store.get_enrollment(enrollment_id)
    assert row.status == EnrollmentStatus.WAITING
    assert row.resume_key == "reply:sms:+15555550100"
    assert row.current_step_order == 1
    assert row.next_run_at is None
    assert row.lock_owner is None

    clock.advance(days=2)
    assert await loop.tick() == 0

    assert await store.resume_enrollment(
        enrollment_id, clock.now(), {"reply": {"body": "Yes, please"}}
    )
    await loop.tick()
    row = await store.get_enrollment(enrollment_id)
    assert row.status == EnrollmentStatus.COMPLETED
    assert row.context_json["reply"] == {"body": "Yes, please"}
    assert row.resume_payload is None
    assert [m.body for m in sender.sent] == ["Want a demo?", "Booking you in"]
    await _assert_monotonic(store, enrollment_id)


@pytest.mark.asyncio
async def test_wait_for_reply_as_last_step(store, catalog, sender, clock, make_workflow):
    workflow = make_workflow(
        ("send-message", {"body": "Want a demo?"}),
        ("wait-for-reply", {}),
    )
    catalog.register(workflow)
    enrollment_id = await _enroll(store, catalog, clock)
    loop = _loop(store, catalog, sender, clock)

    assert await loop.tick() == 1
    row = await store.get_enrollment(enrollment_id)
    assert row.status == EnrollmentStatus.WAITING
    assert row.current_step_order <= workflow.last_step_order
    assert row.current_step_order == 1

    clock.advance(hours=3)
    assert await store.resume_enrollment(enrollment_id, clock.now(), {"reply": {"body": "yes"}})
    assert await loop.tick() == 1
    row = await store.get_enrollment(enrollment_id)
    assert row.status == EnrollmentStatus.COMPLETED
    assert row.current_step_order == 2
    assert row.context_json["reply"] == {"body": "yes"}
    assert not any(key.startswith("_") for key in row.context_json)
    assert [m.body for m in sender.sent] == ["Want a demo?"]
    await _assert_monotonic(store, enrollment_id)


@pytest.mark.asyncio
async def test_no_reply_deadline_enrolls_follow_up(store, catalog, sender, clock, make_workflow):
    catalog.register(
        make_workflow(
            ("send-message", {"body": "Want a demo?"}),
            ("wait-for-reply", {"no_reply_hours": 24}),
            ("send-message", {"body": "Booking you in"}),
        )
    )
    catalog.register(
        make_workflow(
            ("send-message", {"body": "Still interested?"}),
            workflow_id="wf-nudge",
            trigger="no_reply_after_hours",
        )
    )
    t0 = clock.now()
    enrollment_id = await _enroll(store, catalog, clock)
    intake = EventIntakeHandler(store, catalog, clock=clock)
    loop = _loop(store, catalog, sender, clock, intake=intake)

    await loop.tick()
    row = await store.get_enrollment(enrollment_id)
    assert row.status == EnrollmentStatus.WAITING
    assert row.no_reply_at == t0 + timedelta(hours=24)
    assert row.next_run_at is None

    clock.set(t0 + timedelta(hours=12))
    assert await loop.tick() == 0

    clock.set(t0 + timedelta(hours=24, seconds=1))
    assert await loop.tick() == 1
    assert [m.body for m in sender.sent] == ["Want a demo?", "Still interested?"]
    follow_ups = await store.list_enrollments(workflow_id="wf-nudge")
    assert len(follow_ups) == 1
    assert follow_ups[0].status == EnrollmentStatus.COMPLETED
    assert follow_ups[0].event_id == f"no-reply:{enrollment_id}:1"

    row = await store.get_enrollment(enrollment_id)
    assert row.status == EnrollmentStatus.WAITING
    assert row.no_reply_at is None

    clock.advance(hours=1)
    assert await loop.tick() == 0
    assert len(await store.list_enrollments(workflow_id="wf-nudge")) == 1

    # A late reply still resumes the original wait.
    assert await store.resume_enrollment(enrollment_id, clock.now(), {"reply": {"body": "ok"}})
    await loop.tick()
    row = await store.get_enrollment(enrollment_id)
    assert row.status == EnrollmentStatus.COMPLETED
    assert sender.sent[-1].body == "Booking you in"


@pytest.mark.asyncio
async def test_cancel_before_send_records_aborted_run(store, catalog, sender, clock, make_workflow):
    catalog.register(make_workflow(("send-message", {"body": "Hi"})))
    enrollment_id = await _enroll(store, catalog, clock)
    loop = _loop(store, catalog, sender, clock)

    original_renew = loop._lock_manager.renew

    async def renew_after_cancel(eid, worker_id):
        await store.cancel_enrollment(eid, clock.now())
        return await original_renew(eid, worker_id)

    loop._lock_manager.renew = renew_after_cancel
    assert await loop.tick() == 1

    row = await store.get_enrollment(enrollment_id)
    assert row.status == EnrollmentStatus.CANCELLED
    assert sender.sent == []
    runs = await store.list_runs(enrollment_id)
    assert [r.status for r in runs] == [RunStatus.ABORTED]


@pytest.mark.asyncio
async def test_chained_steps_are_bounded_per_claim(store, catalog, sender, clock, make_workflow):
    catalog.register(make_workflow(*[("send-message", {"body": f"#{i}"}) for i in range(5)]))
    enrollment_id = await _enroll(store, catalog, clock)
    loop = _loop(store, catalog, sender, clock, max_steps_per_claim=2)

    await loop.tick()
    row = await store.get_enrollment(enrollment_id)
    assert row.status == EnrollmentStatus.PENDING
    assert row.current_step_order == 2
    assert row.next_run_at == clock.now()

    await loop.tick()
    await loop.tick()
    row = await store.get_enrollment(enrollment_id)
    assert row.status == EnrollmentStatus.COMPLETED
    assert [m.body for m in sender.sent] == [f"#{i}" for i in range(5)]


@pytest.mark.asyncio
async def test_crashed_worker_rows_are_recovered_after_lease(
    store, catalog, sender, clock, make_workflow
):
    catalog.register(make_workflow(("send-message", {"body": "Hi"})))
    enrollment_id = await _enroll(store, catalog, clock)
    loop = _loop(store, catalog, sender, clock)

    # Simulate a worker that claimed and marked the row, then died.
    assert await store.try_claim(enrollment_id, "dead-worker", clock.now(), loop.lease)
    assert await store.mark_running(enrollment_id, "dead-worker")
    assert await loop.tick() == 0

    clock.advance(seconds=loop.lease.total_seconds() + 1)
    assert await loop.tick() == 1
    row = await store.get_enrollment(enrollment_id)
    assert row.status == EnrollmentStatus.COMPLETED


@pytest.mark.asyncio
async def test_competing_workers_execute_each_step_once(tmp_path, catalog, clock, make_workflow):
    from leadflow.senders import InMemoryMessageSender

    store = SQLiteEnrollmentStore(tmp_path / "shared.db")
    sender = InMemoryMessageSender()
    catalog.register(make_workflow(("send-message", {"body": "Hi"}), ("send-message", {"body": "Again"})))
    for i in range(10):
        await _enroll(store, catalog, clock, event_id=f"evt-{i}")

    loops = [_loop(store, catalog, sender, clock, worker_id=f"w{i}") for i in range(3)]
    await asyncio.gather(*(loop.tick() for loop in loops))

    counts = await store.count_by_status()
    assert counts == {"completed": 10}
    assert len(sender.sent) == 20
    assert len({m.idempotency_key for m in sender.sent}) == 20
    store.close()


@pytest.mark.asyncio
async def test_run_stops_after_lifespan(store, catalog, sender, clock, make_workflow):
    catalog.register(make_workflow(("send-message", {"body": "Hi"})))
    enrollment_id = await _enroll(store, catalog, clock)
    loop = _loop(store, catalog, sender, clock, poll_interval_seconds=0.01)

    await asyncio.wait_for(loop.run(lifespan=0.05), timeout=2)
    row = await store.get_enrollment(enrollment_id)
    assert row.status == EnrollmentStatus.COMPLETED
