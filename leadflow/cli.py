"""Command line interface for running Leadflow workers."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import timedelta
from typing import Optional

import typer

from leadflow import (
    EventIntakeHandler,
    InboundSignatureValidator,
    LockManager,
    RetryPolicy,
    SchedulerLoop,
    StepExecutor,
    SystemClock,
    TriggerEvent,
    get_catalog,
    get_sender,
    get_store,
    load_config,
)
from leadflow.contracts import EnrollmentStatus
from leadflow.readmodel import get_enrollment_detail

app = typer.Typer(help="CLI for Leadflow workflow enrollments")

# Command groups
worker_app = typer.Typer(help="Commands for running scheduler workers")
enrollment_app = typer.Typer(help="Commands for inspecting enrollments")
event_app = typer.Typer(help="Commands for trigger events")
workflow_app = typer.Typer(help="Commands for workflow definitions")

app.add_typer(worker_app, name="worker")
app.add_typer(enrollment_app, name="enrollment")
app.add_typer(event_app, name="event")
app.add_typer(workflow_app, name="workflow")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", help="Root logger level"),
) -> None:
    """Leadflow CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@worker_app.command("run")
def worker_run(
    lifespan: Optional[float] = None,
    worker_id: Optional[str] = None,
) -> None:
    """
    Run a scheduler worker against the configured store.

    The worker polls for due enrollments, claims them and executes their
    steps. Several workers may run against the same database.

    Args:
        lifespan: Worker timeout in seconds (default: run indefinitely)
        worker_id: Lock owner name (default: host, pid and a random suffix)

    Example:
        leadflow worker run
        leadflow --log-level info worker run --lifespan 300
    """
    config = load_config()
    clock = SystemClock()
    store = get_store()
    catalog = get_catalog()
    sender = get_sender()
    executor = StepExecutor(
        sender, clock=clock, send_timeout=config.sender.timeout_seconds
    )
    intake = EventIntakeHandler(
        store,
        catalog,
        validator=InboundSignatureValidator(config.webhooks, clock),
        clock=clock,
    )
    loop = SchedulerLoop(
        store,
        catalog,
        executor,
        lock_manager=LockManager(
            store, clock, timedelta(seconds=config.scheduler.lease_seconds)
        ),
        retry_policy=RetryPolicy.from_config(config.retry),
        clock=clock,
        config=config.scheduler,
        worker_id=worker_id,
        intake=intake,
    )

    async def _serve() -> None:
        await sender.connect()
        try:
            await loop.run(lifespan=lifespan)
        finally:
            await sender.disconnect()

    typer.echo(f"Starting worker: {loop.worker_id}")
    asyncio.run(_serve())


@enrollment_app.command("list")
def enrollment_list(
    status: Optional[EnrollmentStatus] = None,
    workflow: Optional[str] = None,
    limit: int = 50,
) -> None:
    """
    List enrollments, newest first.

    Example:
        leadflow enrollment list --status failed
        # Output: 7f1c...    wf-welcome    failed    step=2    SMTP 550
    """
    store = get_store()
    enrollments = asyncio.run(
        store.list_enrollments(status=status, workflow_id=workflow, limit=limit)
    )
    if not enrollments:
        typer.echo("No enrollments found")
        return
    for e in enrollments:
        line = f"{e.id}\t{e.workflow_id}\t{e.status.value}\tstep={e.current_step_order}"
        if e.last_error:
            line += f"\t{e.last_error}"
        typer.echo(line)


@enrollment_app.command("stats")
def enrollment_stats() -> None:
    """Show the number of enrollments in each status."""
    counts = asyncio.run(get_store().count_by_status())
    if not counts:
        typer.echo("No enrollments found")
        return
    for status in EnrollmentStatus:
        if status.value in counts:
            typer.echo(f"{status.value}\t{counts[status.value]}")


@enrollment_app.command("show")
def enrollment_show(enrollment_id: str, runs: int = 20) -> None:
    """
    Show an enrollment with its workflow and most recent runs as JSON.

    Args:
        enrollment_id: Enrollment to inspect (get from 'enrollment list')
        runs: Number of recent runs to include
    """
    detail = asyncio.run(
        get_enrollment_detail(get_store(), get_catalog(), enrollment_id, run_limit=runs)
    )
    if detail is None:
        typer.echo("Enrollment not found")
        raise typer.Exit(code=1)
    typer.echo(detail.model_dump_json(by_alias=True, indent=2))


@enrollment_app.command("cancel")
def enrollment_cancel(enrollment_id: str) -> None:
    """Cancel an enrollment; a worker executing it stops at its next checkpoint."""
    store = get_store()
    cancelled = asyncio.run(store.cancel_enrollment(enrollment_id, SystemClock().now()))
    if not cancelled:
        typer.echo("Enrollment not found or already finished")
        raise typer.Exit(code=1)
    typer.echo(f"Cancelled {enrollment_id}")


@event_app.command("emit")
def event_emit(
    event_type: str,
    workspace: str = typer.Option(..., help="Workspace the event belongs to"),
    lead: Optional[str] = typer.Option(None, help="Lead the event is about"),
    payload: str = typer.Option("{}", help="JSON object passed to workflows"),
    event_id: Optional[str] = typer.Option(None, help="Idempotency id of the event"),
) -> None:
    """
    Emit a trigger event and enroll the lead in matching workflows.

    Example:
        leadflow event emit lead_created --workspace ws-1 --lead lead-9 \\
            --payload '{"lead": {"phone": "+15555550100"}}'
    """
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as exc:
        typer.secho(f"Invalid payload: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not isinstance(data, dict):
        typer.secho("Payload must be a JSON object", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    fields = {"event_id": event_id} if event_id else {}
    event = TriggerEvent(
        workspace_id=workspace, lead_id=lead, event_type=event_type, payload=data, **fields
    )
    handler = EventIntakeHandler(get_store(), get_catalog())
    ack = asyncio.run(handler.ingest(event))
    typer.echo(f"Event {ack.event_id} accepted={ack.accepted}")
    for enrollment_id in ack.enrollment_ids:
        typer.echo(f"Enrolled: {enrollment_id}")


@workflow_app.command("list")
def workflow_list() -> None:
    """List workflows known to the catalog with their trigger and state."""
    workflows = asyncio.run(get_catalog().list_workflows())
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        state = "enabled" if wf.is_enabled else "disabled"
        typer.echo(
            f"{wf.id}\t{wf.name}\t{wf.trigger_event_type}\t{state}\tsteps={len(wf.steps)}"
        )


if __name__ == "__main__":
    app()
