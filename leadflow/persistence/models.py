"""Data models for persisted enrollment state."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator

from ..contracts import EnrollmentStatus, RunStatus


class Enrollment(BaseModel):
    """One lead's journey through one workflow."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_id: str
    workspace_id: Optional[str] = None
    lead_id: Optional[str] = None
    event_id: str
    status: EnrollmentStatus = EnrollmentStatus.PENDING
    context_json: dict[str, Any] = Field(default_factory=dict)
    current_step_order: int = 0
    next_run_at: Optional[datetime] = None
    locked_at: Optional[datetime] = None
    lock_owner: Optional[str] = None
    last_error: Optional[str] = None
    resume_key: Optional[str] = None
    resume_payload: Optional[dict[str, Any]] = None
    no_reply_at: Optional[datetime] = None
    enrolled_at: datetime
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class Run(BaseModel):
    """Immutable record of one attempt to execute one step."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    enrollment_id: str
    step_id: str
    step_order: int
    status: RunStatus
    started_at: datetime
    finished_at: Optional[datetime] = None
    error: Optional[str] = None


class Transition(BaseModel):
    """Full write of an enrollment's execution fields by its lock holder."""

    status: EnrollmentStatus
    current_step_order: int
    next_run_at: Optional[datetime] = None
    context_json: dict[str, Any] = Field(default_factory=dict)
    last_error: Optional[str] = None
    resume_key: Optional[str] = None
    no_reply_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    release_lock: bool = True

    @model_validator(mode="after")
    def _check_invariants(self) -> "Transition":
        if self.status.is_terminal:
            if self.next_run_at is not None:
                raise ValueError("terminal enrollments cannot be scheduled")
            if not self.release_lock:
                raise ValueError("terminal enrollments must release their lock")
        if self.status == EnrollmentStatus.WAITING:
            if self.resume_key is None:
                raise ValueError("waiting enrollments need a resume key")
            if self.next_run_at is not None:
                raise ValueError("waiting enrollments are not polled")
        elif self.resume_key is not None:
            raise ValueError("only waiting enrollments carry a resume key")
        if self.no_reply_at is not None and self.status != EnrollmentStatus.WAITING:
            raise ValueError("only waiting enrollments track a no-reply deadline")
        return self
