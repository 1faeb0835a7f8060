"""Exception taxonomy for the enrollment engine."""

from __future__ import annotations


class LeadflowError(Exception):
    """Base class for engine errors."""


class WebhookValidationError(LeadflowError):
    """Inbound callback failed signature, auth or timestamp checks."""

    def __init__(self, provider: str, reason: str) -> None:
        super().__init__(f"{provider} webhook rejected: {reason}")
        self.provider = provider
        self.reason = reason


class LockConflictError(LeadflowError):
    """Another worker holds a live lease on the enrollment."""

    def __init__(self, enrollment_id: str) -> None:
        super().__init__(f"Enrollment {enrollment_id} is claimed by another worker")
        self.enrollment_id = enrollment_id


class ActionError(LeadflowError):
    """Failure raised while performing a step action."""


class TransientActionError(ActionError):
    """Retryable failure: network errors, timeouts, ambiguous send outcomes."""


class PermanentActionError(ActionError):
    """Non-retryable failure: malformed configuration, unsupported action."""


class EnrollmentCancelled(LeadflowError):
    """The enrollment was cancelled while a worker was executing it."""

    def __init__(self, enrollment_id: str) -> None:
        super().__init__(f"Enrollment {enrollment_id} was cancelled")
        self.enrollment_id = enrollment_id
