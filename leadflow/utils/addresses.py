"""Normalization of phone numbers and email addresses for matching."""

from __future__ import annotations

import re
from email.utils import parseaddr

from ..contracts import Channel

_PHONE_NOISE = re.compile(r"[\s\-().]")


def normalize_phone(value: str) -> str:
    return _PHONE_NOISE.sub("", value.strip())


def normalize_email(value: str) -> str:
    _, address = parseaddr(value)
    return (address or value).strip().lower()


def normalize_address(channel: Channel, value: str) -> str:
    if Channel(channel) == Channel.SMS:
        return normalize_phone(value)
    return normalize_email(value)
