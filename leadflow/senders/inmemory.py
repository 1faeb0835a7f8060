"""In-memory sender for tests and local runs."""

from __future__ import annotations

import asyncio
import uuid
from collections import deque
from typing import Deque, Dict, List, Optional

from ..exceptions import ActionError
from .base import MessageSender, OutboundMessage, SendReceipt


class InMemoryMessageSender(MessageSender):
    """Records delivered messages and deduplicates by idempotency key.

    Failures can be scripted with :meth:`fail_next`; a ``delay`` makes every
    send sleep, which lets tests exercise the executor's timeout.
    """

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.sent: List[OutboundMessage] = []
        self._receipts: Dict[str, SendReceipt] = {}
        self._failures: Deque[ActionError] = deque()

    def fail_next(self, error: ActionError, times: int = 1) -> None:
        for _ in range(times):
            self._failures.append(error)

    async def send(self, message: OutboundMessage) -> SendReceipt:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self._failures:
            raise self._failures.popleft()
        existing = self._receipts.get(message.idempotency_key)
        if existing is not None:
            return existing
        receipt = SendReceipt(external_id=f"msg-{uuid.uuid4().hex[:12]}")
        self._receipts[message.idempotency_key] = receipt
        self.sent.append(message)
        return receipt

    def last_sent(self) -> Optional[OutboundMessage]:
        return self.sent[-1] if self.sent else None
