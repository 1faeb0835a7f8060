"""Audit logging utilities for security events."""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class SecurityEvent(BaseModel):
    """A rejected or otherwise security-relevant inbound request."""

    event: str
    provider: str
    details: Dict[str, Any] = Field(default_factory=dict)
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class AuditLog:
    """Records rejected webhooks.

    Entries go to the ``leadflow.security.audit`` logger at warning level and
    the most recent ones are kept in memory for inspection.
    """

    def __init__(self, max_entries: int = 1000) -> None:
        self._entries: Deque[SecurityEvent] = deque(maxlen=max_entries)

    async def record(self, event: str, provider: str, **details: Any) -> SecurityEvent:
        """Persist an audit log entry."""
        entry = SecurityEvent(event=event, provider=provider, details=details)
        self._entries.append(entry)
        logger.warning(f"Security event {event} from {provider}: {details}")
        return entry

    @property
    def entries(self) -> List[SecurityEvent]:
        return list(self._entries)
