"""Outbound message capability called by the step executor."""

from __future__ import annotations

import abc
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from ..contracts import Channel


class OutboundMessage(BaseModel):
    """A message the engine asks the capability to deliver."""

    channel: Channel
    to: str
    body: str
    subject: Optional[str] = None
    idempotency_key: str
    workspace_id: Optional[str] = None
    lead_id: Optional[str] = None
    enrollment_id: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SendReceipt(BaseModel):
    """Provider acknowledgment of an accepted message."""

    external_id: str
    status: str = "queued"


class MessageSender(metaclass=abc.ABCMeta):
    """Abstract capability for sending SMS and email.

    Implementations raise ``TransientActionError`` when delivery may be
    retried and ``PermanentActionError`` when it never will succeed. They
    must tolerate repeated calls with the same ``idempotency_key``.
    """

    async def connect(self) -> None:
        """Open connections (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connections (no-op by default)."""
        pass

    @abc.abstractmethod
    async def send(self, message: OutboundMessage) -> SendReceipt:
        """Deliver ``message`` and return the provider receipt."""
        raise NotImplementedError
