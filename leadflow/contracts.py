"""Core contracts shared by the intake, scheduler and executor."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


class EnrollmentStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {EnrollmentStatus.COMPLETED, EnrollmentStatus.FAILED, EnrollmentStatus.CANCELLED}
)
CLAIMABLE_STATUSES = (EnrollmentStatus.PENDING, EnrollmentStatus.RUNNING)


class RunStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    ABORTED = "aborted"


class ActionType(str, Enum):
    SEND_MESSAGE = "send-message"
    WAIT_DELAY = "wait-delay"
    WAIT_FOR_REPLY = "wait-for-reply"
    BRANCH = "branch"


class Channel(str, Enum):
    SMS = "sms"
    EMAIL = "email"


class WorkflowStep(BaseModel):
    """One action in a workflow's ordered sequence."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    step_order: int = Field(ge=0)
    action_type: ActionType
    action_config: Dict[str, Any] = Field(default_factory=dict)


class Workflow(BaseModel):
    """Read-only workflow definition."""

    id: str
    workspace_id: str
    name: str = ""
    trigger_event_type: str
    is_enabled: bool = True
    steps: List[WorkflowStep] = Field(default_factory=list)

    def step_at(self, step_order: int) -> Optional[WorkflowStep]:
        """Return the step defined at ``step_order`` if any."""
        for step in self.steps:
            if step.step_order == step_order:
                return step
        return None

    @property
    def last_step_order(self) -> int:
        """Highest defined step order, ``-1`` for an empty workflow."""
        return max((s.step_order for s in self.steps), default=-1)


class TriggerEvent(BaseModel):
    """Business event that may enroll a lead into workflows."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workspace_id: Optional[str] = None
    lead_id: Optional[str] = None
    event_type: str = Field(min_length=1)
    payload: Dict[str, Any]
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ResumeCondition(BaseModel):
    """What inbound callback releases a waiting enrollment."""

    kind: Literal["reply", "receipt"] = "reply"
    channel: Channel
    key: str

    @property
    def resume_key(self) -> str:
        return f"{self.kind}:{self.channel.value}:{self.key}"


# ---------------------------------------------------------------------------
# Step outcomes


class Advanced(BaseModel):
    kind: Literal["advanced"] = "advanced"
    next_step_order: int
    next_run_at: datetime
    context: Dict[str, Any] = Field(default_factory=dict)


class WaitingForEvent(BaseModel):
    kind: Literal["waiting"] = "waiting"
    resume_condition: ResumeCondition
    context: Dict[str, Any] = Field(default_factory=dict)
    no_reply_at: Optional[datetime] = None


class Completed(BaseModel):
    kind: Literal["completed"] = "completed"
    context: Dict[str, Any] = Field(default_factory=dict)


class TransientFailure(BaseModel):
    kind: Literal["transient_failure"] = "transient_failure"
    reason: str


class PermanentFailure(BaseModel):
    kind: Literal["permanent_failure"] = "permanent_failure"
    reason: str


Outcome = Union[Advanced, WaitingForEvent, Completed, TransientFailure, PermanentFailure]


# ---------------------------------------------------------------------------
# Intake results


class IntakeAck(BaseModel):
    """Acknowledgment returned to trigger producers."""

    event_id: str
    accepted: bool = True
    enrollment_ids: List[str] = Field(default_factory=list)


class CallbackResult(BaseModel):
    """Outcome of an inbound provider callback."""

    accepted: bool
    reason: Optional[str] = None
    resumed: List[str] = Field(default_factory=list)
    cancelled: List[str] = Field(default_factory=list)
