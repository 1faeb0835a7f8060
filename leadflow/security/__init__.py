"""Inbound callback verification and security audit trail."""

from .audit import AuditLog, SecurityEvent
from .signatures import (
    InboundSignatureValidator,
    compute_twilio_signature,
    validate_basic_auth,
    validate_sendgrid_signature,
    validate_twilio_signature,
)

__all__ = [
    "AuditLog",
    "InboundSignatureValidator",
    "SecurityEvent",
    "compute_twilio_signature",
    "validate_basic_auth",
    "validate_sendgrid_signature",
    "validate_twilio_signature",
]
