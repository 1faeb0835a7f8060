"""Leadflow: lease-locked execution of lead nurture workflow enrollments."""

from .catalog import InMemoryWorkflowCatalog, WorkflowCatalog, get_catalog, load_catalog
from .clock import FrozenClock, SystemClock
from .config import LeadflowConfig, load_config
from .contracts import (
    ActionType,
    Channel,
    EnrollmentStatus,
    TriggerEvent,
    Workflow,
    WorkflowStep,
)
from .execute import StepExecutor
from .intake import EventIntakeHandler
from .locking import LockManager
from .persistence import Enrollment, EnrollmentStore, get_store
from .scheduler import SchedulerLoop
from .security import InboundSignatureValidator
from .senders import get_sender
from .utils.retry import RetryPolicy

__version__ = "0.1.0"
__all__ = [
    "ActionType",
    "Channel",
    "Enrollment",
    "EnrollmentStatus",
    "EnrollmentStore",
    "EventIntakeHandler",
    "FrozenClock",
    "InMemoryWorkflowCatalog",
    "InboundSignatureValidator",
    "LeadflowConfig",
    "LockManager",
    "RetryPolicy",
    "SchedulerLoop",
    "StepExecutor",
    "SystemClock",
    "TriggerEvent",
    "Workflow",
    "WorkflowCatalog",
    "WorkflowStep",
    "get_catalog",
    "get_sender",
    "get_store",
    "load_catalog",
    "load_config",
]
