"""Contract tests shared by the in-memory and SQLite enrollment stores."""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from leadflow.contracts import EnrollmentStatus, RunStatus
from leadflow.persistence import (
    Enrollment,
    InMemoryEnrollmentStore,
    Run,
    SQLiteEnrollmentStore,
    Transition,
)

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
LEASE = timedelta(minutes=5)


def _enrollment(event_id="evt-1", workflow_id="wf-1", **overrides) -> Enrollment:
    fields = dict(
        workflow_id=workflow_id,
        workspace_id="ws-1",
        lead_id="lead-1",
        event_id=event_id,
        context_json={"lead": {"phone": "+15555550100"}},
        next_run_at=T0,
        enrolled_at=T0,
    )
    fields.update(overrides)
    return Enrollment(**fields)


@pytest.fixture(params=["memory", "sqlite"])
def any_store(request, tmp_path):
    if request.param == "memory":
        yield InMemoryEnrollmentStore()
    else:
        store = SQLiteEnrollmentStore(tmp_path / "enrollments.db")
        yield store
        store.close()


@pytest.mark.asyncio
async def test_create_is_unique_per_workflow_and_event(any_store):
    first = _enrollment()
    assert await any_store.create_enrollment(first)
    assert not await any_store.create_enrollment(_enrollment())
    # Same event, different workflow is a separate enrollment.
    assert await any_store.create_enrollment(_enrollment(workflow_id="wf-2"))

    rows = await any_store.list_enrollments()
    assert len(rows) == 2
    stored = await any_store.get_enrollment(first.id)
    assert stored.context_json == {"lead": {"phone": "+15555550100"}}
    assert stored.next_run_at == T0
    assert stored.status == EnrollmentStatus.PENDING


@pytest.mark.asyncio
async def test_find_due_orders_by_next_run_and_skips_locked(any_store):
    late = _enrollment("evt-late", next_run_at=T0 - timedelta(minutes=1))
    early = _enrollment("evt-early", next_run_at=T0 - timedelta(minutes=10))
    future = _enrollment("evt-future", next_run_at=T0 + timedelta(minutes=1))
    locked = _enrollment("evt-locked", next_run_at=T0 - timedelta(minutes=20))
    for e in (late, early, future, locked):
        await any_store.create_enrollment(e)
    assert await any_store.try_claim(locked.id, "worker-a", T0, LEASE)

    due = await any_store.find_due(T0, LEASE, limit=10)
    assert [e.id for e in due] == [early.id, late.id]

    limited = await any_store.find_due(T0, LEASE, limit=1)
    assert [e.id for e in limited] == [early.id]

    # Once the lease lapses the locked row is due again.
    due_later = await any_store.find_due(T0 + timedelta(minutes=6), LEASE, limit=10)
    assert due_later[0].id == locked.id


@pytest.mark.asyncio
async def test_find_due_ignores_waiting_and_terminal_rows(any_store):
    waiting = _enrollment("evt-w")
    done = _enrollment("evt-d")
    await any_store.create_enrollment(waiting)
    await any_store.create_enrollment(done)
    await any_store.try_claim(waiting.id, "w", T0, LEASE)
    await any_store.apply_transition(
        waiting.id,
        "w",
        Transition(
            status=EnrollmentStatus.WAITING,
            current_step_order=1,
            resume_key="reply:sms:+15555550100",
        ),
    )
    await any_store.try_claim(done.id, "w", T0, LEASE)
    await any_store.apply_transition(
        done.id,
        "w",
        Transition(status=EnrollmentStatus.COMPLETED, current_step_order=2, completed_at=T0),
    )

    assert await any_store.find_due(T0 + timedelta(days=1), LEASE, 10) == []


@pytest.mark.asyncio
async def test_apply_transition_requires_lock_owner(any_store):
    enrollment = _enrollment()
    await any_store.create_enrollment(enrollment)
    transition = Transition(
        status=EnrollmentStatus.PENDING,
        current_step_order=1,
        next_run_at=T0 + timedelta(hours=1),
        context_json={"step": 1},
    )

    assert not await any_store.apply_transition(enrollment.id, "worker-a", transition)
    assert await any_store.try_claim(enrollment.id, "worker-a", T0, LEASE)
    assert not await any_store.apply_transition(enrollment.id, "worker-b", transition)
    assert await any_store.apply_transition(enrollment.id, "worker-a", transition)

    row = await any_store.get_enrollment(enrollment.id)
    assert row.current_step_order == 1
    assert row.next_run_at == T0 + timedelta(hours=1)
    assert row.context_json == {"step": 1}
    assert row.lock_owner is None


@pytest.mark.asyncio
async def test_transition_can_keep_lock(any_store):
    enrollment = _enrollment()
    await any_store.create_enrollment(enrollment)
    await any_store.try_claim(enrollment.id, "worker-a", T0, LEASE)
    assert await any_store.mark_running(enrollment.id, "worker-a")

    await any_store.apply_transition(
        enrollment.id,
        "worker-a",
        Transition(
            status=EnrollmentStatus.RUNNING,
            current_step_order=1,
            next_run_at=T0,
            release_lock=False,
        ),
    )
    row = await any_store.get_enrollment(enrollment.id)
    assert row.status == EnrollmentStatus.RUNNING
    assert row.lock_owner == "worker-a"


@pytest.mark.asyncio
async def test_terminal_rows_are_never_rewritten(any_store):
    enrollment = _enrollment()
    await any_store.create_enrollment(enrollment)
    await any_store.try_claim(enrollment.id, "worker-a", T0, LEASE)
    await any_store.apply_transition(
        enrollment.id,
        "worker-a",
        Transition(
            status=EnrollmentStatus.FAILED,
            current_step_order=0,
            last_error="boom",
            completed_at=T0,
        ),
    )

    assert not await any_store.try_claim(enrollment.id, "worker-a", T0, LEASE)
    assert not await any_store.cancel_enrollment(enrollment.id, T0)
    row = await any_store.get_enrollment(enrollment.id)
    assert row.status == EnrollmentStatus.FAILED
    assert row.last_error == "boom"
    assert row.next_run_at is None


@pytest.mark.asyncio
async def test_cancel_is_accepted_while_locked(any_store):
    enrollment = _enrollment()
    await any_store.create_enrollment(enrollment)
    await any_store.try_claim(enrollment.id, "worker-a", T0, LEASE)

    assert await any_store.cancel_enrollment(enrollment.id, T0)
    row = await any_store.get_enrollment(enrollment.id)
    assert row.status == EnrollmentStatus.CANCELLED
    assert row.completed_at == T0
    assert row.next_run_at is None
    assert not await any_store.apply_transition(
        enrollment.id,
        "worker-a",
        Transition(status=EnrollmentStatus.PENDING, current_step_order=1, next_run_at=T0),
    )


@pytest.mark.asyncio
async def test_resume_only_moves_waiting_rows(any_store):
    waiting = _enrollment("evt-w")
    pending = _enrollment("evt-p")
    await any_store.create_enrollment(waiting)
    await any_store.create_enrollment(pending)
    await any_store.try_claim(waiting.id, "w", T0, LEASE)
    await any_store.apply_transition(
        waiting.id,
        "w",
        Transition(
            status=EnrollmentStatus.WAITING,
            current_step_order=2,
            resume_key="reply:sms:+15555550100",
        ),
    )

    matches = await any_store.find_waiting("reply:sms:+15555550100")
    assert [e.id for e in matches] == [waiting.id]
    assert await any_store.find_waiting("reply:sms:+19999999999") == []

    later = T0 + timedelta(hours=2)
    payload = {"reply": {"body": "yes"}}
    assert await any_store.resume_enrollment(waiting.id, later, payload)
    assert not await any_store.resume_enrollment(waiting.id, later, payload)
    assert not await any_store.resume_enrollment(pending.id, later, payload)

    row = await any_store.get_enrollment(waiting.id)
    assert row.status == EnrollmentStatus.PENDING
    assert row.next_run_at == later
    assert row.resume_key is None
    assert row.resume_payload == payload
    assert row.current_step_order == 2


@pytest.mark.asyncio
async def test_no_reply_deadlines(any_store):
    early = _enrollment("evt-early")
    late = _enrollment("evt-late")
    untracked = _enrollment("evt-none")
    for enrollment, deadline in (
        (early, T0 + timedelta(hours=1)),
        (late, T0 + timedelta(hours=3)),
        (untracked, None),
    ):
        await any_store.create_enrollment(enrollment)
        await any_store.try_claim(enrollment.id, "w", T0, LEASE)
        await any_store.apply_transition(
            enrollment.id,
            "w",
            Transition(
                status=EnrollmentStatus.WAITING,
                current_step_order=1,
                resume_key="reply:sms:+15555550100",
                no_reply_at=deadline,
            ),
        )

    assert await any_store.find_no_reply_due(T0, 10) == []
    due = await any_store.find_no_reply_due(T0 + timedelta(hours=4), 10)
    assert [e.id for e in due] == [early.id, late.id]
    assert due[0].no_reply_at == T0 + timedelta(hours=1)
    assert len(await any_store.find_no_reply_due(T0 + timedelta(hours=4), 1)) == 1

    assert not await any_store.take_no_reply(early.id, T0)
    assert await any_store.take_no_reply(early.id, T0 + timedelta(hours=1))
    assert not await any_store.take_no_reply(early.id, T0 + timedelta(hours=1))
    row = await any_store.get_enrollment(early.id)
    assert row.status == EnrollmentStatus.WAITING
    assert row.no_reply_at is None

    # Resuming the late row drops its deadline with the wait.
    assert await any_store.resume_enrollment(late.id, T0 + timedelta(hours=2), {})
    assert (await any_store.get_enrollment(late.id)).no_reply_at is None
    assert await any_store.find_no_reply_due(T0 + timedelta(hours=4), 10) == []


@pytest.mark.asyncio
async def test_runs_and_consecutive_errors(any_store):
    enrollment = _enrollment()
    await any_store.create_enrollment(enrollment)

    def run(status, minutes, order=0):
        return Run(
            enrollment_id=enrollment.id,
            step_id="step-0",
            step_order=order,
            status=status,
            started_at=T0 + timedelta(minutes=minutes),
            finished_at=T0 + timedelta(minutes=minutes),
        )

    await any_store.append_run(run(RunStatus.ERROR, 1))
    await any_store.append_run(run(RunStatus.SUCCESS, 2))
    await any_store.append_run(run(RunStatus.ERROR, 3, order=1))
    await any_store.append_run(run(RunStatus.ABORTED, 4, order=1))
    await any_store.append_run(run(RunStatus.ERROR, 5, order=1))

    assert await any_store.count_consecutive_errors(enrollment.id) == 2
    runs = await any_store.list_runs(enrollment.id)
    assert [r.started_at for r in runs] == sorted(r.started_at for r in runs)
    recent = await any_store.list_runs(enrollment.id, limit=2)
    assert [r.status for r in recent] == [RunStatus.ABORTED, RunStatus.ERROR]


@pytest.mark.asyncio
async def test_list_and_count(any_store):
    a = _enrollment("evt-a", enrolled_at=T0)
    b = _enrollment("evt-b", enrolled_at=T0 + timedelta(minutes=1), workflow_id="wf-2")
    await any_store.create_enrollment(a)
    await any_store.create_enrollment(b)
    await any_store.cancel_enrollment(a.id, T0)

    assert [e.id for e in await any_store.list_enrollments()] == [b.id, a.id]
    assert [e.id for e in await any_store.list_enrollments(workflow_id="wf-2")] == [b.id]
    cancelled = await any_store.list_enrollments(status=EnrollmentStatus.CANCELLED)
    assert [e.id for e in cancelled] == [a.id]
    assert await any_store.count_by_status() == {"pending": 1, "cancelled": 1}


def test_transition_invariants():
    with pytest.raises(ValidationError):
        Transition(status=EnrollmentStatus.COMPLETED, current_step_order=1, next_run_at=T0)
    with pytest.raises(ValidationError):
        Transition(status=EnrollmentStatus.FAILED, current_step_order=1, release_lock=False)
    with pytest.raises(ValidationError):
        Transition(status=EnrollmentStatus.WAITING, current_step_order=1)
    with pytest.raises(ValidationError):
        Transition(
            status=EnrollmentStatus.PENDING,
            current_step_order=1,
            next_run_at=T0,
            resume_key="reply:sms:+1",
        )
    with pytest.raises(ValidationError):
        Transition(
            status=EnrollmentStatus.PENDING,
            current_step_order=1,
            next_run_at=T0,
            no_reply_at=T0,
        )


def test_sqlite_store_persists_across_instances(tmp_path):
    import asyncio

    path = tmp_path / "durable.db"
    enrollment = _enrollment()
    first = SQLiteEnrollmentStore(path)
    asyncio.run(first.create_enrollment(enrollment))
    first.close()

    second = SQLiteEnrollmentStore(path)
    row = asyncio.run(second.get_enrollment(enrollment.id))
    second.close()
    assert row is not None
    assert row.enrolled_at == T0
    assert row.context_json == enrollment.context_json
