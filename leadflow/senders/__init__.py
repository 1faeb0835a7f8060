"""Sender factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import LeadflowConfig, load_config
from .base import MessageSender, OutboundMessage, SendReceipt
from .inmemory import InMemoryMessageSender


def get_sender(
    backend: Optional[str] = None, config: Optional[LeadflowConfig] = None
) -> MessageSender:
    """Factory function to get the configured message sender."""

    config = config or load_config()
    backend = (backend or os.getenv("LEADFLOW_SENDER") or config.sender.backend).lower()

    if backend == "inmemory":
        return InMemoryMessageSender()
    elif backend == "http":
        from .http import HttpMessageSender

        if not config.sender.endpoint:
            raise ValueError("sender.endpoint is required for the http backend")
        return HttpMessageSender(
            endpoint=config.sender.endpoint,
            api_key=config.sender.api_key,
            timeout=config.sender.timeout_seconds,
        )
    else:
        raise ValueError(f"Unsupported sender backend: {backend}")


__all__ = [
    "InMemoryMessageSender",
    "MessageSender",
    "OutboundMessage",
    "SendReceipt",
    "get_sender",
]
