from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel

from .constants import (
    DEFAULT_BACKOFF_FACTOR,
    DEFAULT_BASE_DELAY_SECONDS,
    DEFAULT_BATCH_SIZE,
    DEFAULT_CONCURRENCY,
    DEFAULT_JITTER,
    DEFAULT_LEASE_SECONDS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_DELAY_SECONDS,
    DEFAULT_MAX_STEPS_PER_CLAIM,
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_SEND_TIMEOUT_SECONDS,
    SIGNATURE_REPLAY_WINDOW_SECONDS,
)


class SchedulerConfig(BaseModel):
    """Polling and lease settings for worker processes."""

    lease_seconds: float = DEFAULT_LEASE_SECONDS
    batch_size: int = DEFAULT_BATCH_SIZE
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    concurrency: int = DEFAULT_CONCURRENCY
    max_steps_per_claim: int = DEFAULT_MAX_STEPS_PER_CLAIM


class RetryConfig(BaseModel):
    """Backoff settings for transient step failures."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay_seconds: float = DEFAULT_BASE_DELAY_SECONDS
    factor: float = DEFAULT_BACKOFF_FACTOR
    max_delay_seconds: float = DEFAULT_MAX_DELAY_SECONDS
    jitter: float = DEFAULT_JITTER


class SenderConfig(BaseModel):
    """Outbound message capability settings."""

    backend: Literal["inmemory", "http"] = "inmemory"
    endpoint: Optional[str] = None
    api_key: Optional[str] = None
    timeout_seconds: float = DEFAULT_SEND_TIMEOUT_SECONDS


class WebhookConfig(BaseModel):
    """Secrets used to verify inbound provider callbacks."""

    twilio_auth_token: Optional[str] = None
    sendgrid_public_key: Optional[str] = None
    sendgrid_inbound_username: Optional[str] = None
    sendgrid_inbound_password: Optional[str] = None
    replay_window_seconds: int = SIGNATURE_REPLAY_WINDOW_SECONDS


class LeadflowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    catalog_path: Optional[str] = None
    scheduler: SchedulerConfig = SchedulerConfig()
    retry: RetryConfig = RetryConfig()
    sender: SenderConfig = SenderConfig()
    webhooks: WebhookConfig = WebhookConfig()


_WEBHOOK_ENV = {
    "TWILIO_AUTH_TOKEN": "twilio_auth_token",
    "SENDGRID_WEBHOOK_VERIFICATION_KEY": "sendgrid_public_key",
    "SENDGRID_INBOUND_USERNAME": "sendgrid_inbound_username",
    "SENDGRID_INBOUND_PASSWORD": "sendgrid_inbound_password",
}


def load_config(path: Optional[str] = None) -> LeadflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to LEADFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("LEADFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = LeadflowConfig(**data)
    else:
        config = LeadflowConfig()

    env_db_url = os.getenv("LEADFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    for env_name, field in _WEBHOOK_ENV.items():
        value = os.getenv(env_name)
        if value:
            setattr(config.webhooks, field, value)
    return config
