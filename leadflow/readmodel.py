"""Enrollment detail view consumed by admin tooling."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from .catalog import WorkflowCatalog
from .persistence import EnrollmentStore


class _ReadModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class WorkflowSummary(_ReadModel):
    id: str
    name: str
    trigger_event_type: str
    is_enabled: bool


class StepSummary(_ReadModel):
    step_order: int
    action_type: str
    action_config: Dict[str, Any]


class RunDetail(_ReadModel):
    id: str
    step_id: str
    status: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
    step: Optional[StepSummary] = None


class EnrollmentDetail(_ReadModel):
    """Serialized with camelCase keys via ``model_dump(by_alias=True)``."""

    id: str
    workflow_id: str
    workspace_id: Optional[str] = None
    lead_id: Optional[str] = None
    event_id: str
    status: str
    enrolled_at: datetime
    completed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    context_json: Optional[Dict[str, Any]] = None
    current_step_order: Optional[int] = None
    next_run_at: Optional[datetime] = None
    locked_at: Optional[datetime] = None
    lock_owner: Optional[str] = None
    workflow: Optional[WorkflowSummary] = None
    runs: List[RunDetail] = []


async def get_enrollment_detail(
    store: EnrollmentStore,
    catalog: WorkflowCatalog,
    enrollment_id: str,
    run_limit: int = 20,
) -> Optional[EnrollmentDetail]:
    """Assemble the detail view, or ``None`` for an unknown id."""
    enrollment = await store.get_enrollment(enrollment_id)
    if enrollment is None:
        return None

    workflow = await catalog.get_workflow(enrollment.workflow_id)
    steps = {s.id: s for s in workflow.steps} if workflow else {}
    runs = []
    for run in reversed(await store.list_runs(enrollment_id, limit=run_limit)):
        step = steps.get(run.step_id)
        runs.append(
            RunDetail(
                id=run.id,
                step_id=run.step_id,
                status=run.status.value,
                started_at=run.started_at,
                finished_at=run.finished_at,
                error=run.error,
                step=StepSummary(
                    step_order=step.step_order,
                    action_type=step.action_type.value,
                    action_config=step.action_config,
                )
                if step
                else None,
            )
        )

    return EnrollmentDetail(
        id=enrollment.id,
        workflow_id=enrollment.workflow_id,
        workspace_id=enrollment.workspace_id,
        lead_id=enrollment.lead_id,
        event_id=enrollment.event_id,
        status=enrollment.status.value,
        enrolled_at=enrollment.enrolled_at,
        completed_at=enrollment.completed_at,
        last_error=enrollment.last_error,
        context_json=enrollment.context_json,
        current_step_order=enrollment.current_step_order,
        next_run_at=enrollment.next_run_at,
        locked_at=enrollment.locked_at,
        lock_owner=enrollment.lock_owner,
        workflow=WorkflowSummary(
            id=workflow.id,
            name=workflow.name,
            trigger_event_type=workflow.trigger_event_type,
            is_enabled=workflow.is_enabled,
        )
        if workflow
        else None,
        runs=runs,
    )
