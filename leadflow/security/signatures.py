"""Signature verification for inbound provider webhooks.

Each ``validate_*`` function is a pure function of its inputs and returns a
boolean. Malformed input of any kind is a failed validation, never an
exception: callers treat ``False`` as a rejection without inspecting why.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
from typing import Any, Mapping, Optional

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import (
    load_der_public_key,
    load_pem_public_key,
)

from ..clock import Clock, SystemClock
from ..config import WebhookConfig
from ..constants import SIGNATURE_REPLAY_WINDOW_SECONDS

logger = logging.getLogger(__name__)

_MALFORMED = (
    AttributeError,
    ValueError,
    TypeError,
    binascii.Error,
    UnsupportedAlgorithm,
)


def _twilio_canonical(url: str, params: Mapping[str, Any]) -> str:
    data = url
    for key in sorted(params):
        value = params[key]
        values = value if isinstance(value, (list, tuple)) else [value]
        for item in sorted(str(v) for v in values):
            data += key + item
    return data


def compute_twilio_signature(
    url: str, params: Mapping[str, Any], auth_token: str
) -> str:
    """Return the base64 HMAC-SHA1 Twilio would send for this request."""
    digest = hmac.new(
        auth_token.encode("utf-8"),
        _twilio_canonical(url, params).encode("utf-8"),
        hashlib.sha1,
    ).digest()
    return base64.b64encode(digest).decode("ascii")


def validate_twilio_signature(
    url: str, signature: str, auth_token: str, params: Mapping[str, Any]
) -> bool:
    """Check an ``X-Twilio-Signature`` header value."""
    try:
        if not signature or not auth_token:
            return False
        expected = compute_twilio_signature(url, params, auth_token)
        return hmac.compare_digest(
            signature.encode("utf-8"), expected.encode("utf-8")
        )
    except _MALFORMED as exc:
        logger.debug(f"Malformed Twilio webhook input: {exc}")
        return False


def _load_ec_public_key(public_key: str | bytes) -> ec.EllipticCurvePublicKey:
    raw = public_key.encode("ascii") if isinstance(public_key, str) else public_key
    raw = raw.strip()
    if raw.startswith(b"-----BEGIN"):
        key = load_pem_public_key(raw)
    else:
        # SendGrid publishes the key as base64 DER without PEM armor.
        key = load_der_public_key(base64.b64decode(raw, validate=True))
    if not isinstance(key, ec.EllipticCurvePublicKey):
        raise TypeError("SendGrid verification key must be an EC public key")
    return key


def validate_sendgrid_signature(
    public_key: str | bytes,
    signature: str,
    timestamp: str,
    body: str | bytes,
    *,
    now: float,
    replay_window: int = SIGNATURE_REPLAY_WINDOW_SECONDS,
) -> bool:
    """Check a SendGrid signed event webhook.

    ``now`` is the verifier's current Unix time; requests whose timestamp
    differs from it by more than ``replay_window`` seconds in either
    direction are rejected before any cryptography runs.
    """
    try:
        if not signature or not timestamp or not public_key:
            return False
        if abs(int(now) - int(timestamp)) > replay_window:
            logger.debug(f"SendGrid webhook timestamp {timestamp} outside replay window")
            return False
        raw_body = body.encode("utf-8") if isinstance(body, str) else body
        key = _load_ec_public_key(public_key)
        key.verify(
            base64.b64decode(signature, validate=True),
            timestamp.encode("utf-8") + raw_body,
            ec.ECDSA(hashes.SHA256()),
        )
        return True
    except InvalidSignature:
        return False
    except _MALFORMED as exc:
        logger.debug(f"Malformed SendGrid webhook input: {exc}")
        return False


def validate_basic_auth(
    auth_header: Optional[str], username: str, password: str
) -> bool:
    """Check an ``Authorization: Basic`` header used by SendGrid Inbound Parse."""
    try:
        if not auth_header or not username or not password:
            return False
        scheme, _, encoded = auth_header.partition(" ")
        if scheme.lower() != "basic" or not encoded:
            return False
        decoded = base64.b64decode(encoded.strip(), validate=True)
        user, sep, secret = decoded.partition(b":")
        if not sep:
            return False
        user_ok = hmac.compare_digest(user, username.encode("utf-8"))
        secret_ok = hmac.compare_digest(secret, password.encode("utf-8"))
        return user_ok and secret_ok
    except _MALFORMED as exc:
        logger.debug(f"Malformed basic auth header: {exc}")
        return False


class InboundSignatureValidator:
    """Verifies inbound webhooks against configured provider secrets.

    A provider whose secret is not configured rejects every request.
    """

    def __init__(
        self, config: Optional[WebhookConfig] = None, clock: Optional[Clock] = None
    ) -> None:
        self.config = config or WebhookConfig()
        self.clock = clock or SystemClock()

    def validate_twilio(
        self, url: str, signature: str, params: Mapping[str, Any]
    ) -> bool:
        token = self.config.twilio_auth_token
        if not token:
            logger.warning("TWILIO_AUTH_TOKEN not configured; rejecting Twilio webhook")
            return False
        return validate_twilio_signature(url, signature, token, params)

    def validate_sendgrid(self, signature: str, timestamp: str, body: str | bytes) -> bool:
        key = self.config.sendgrid_public_key
        if not key:
            logger.warning(
                "SendGrid verification key not configured; rejecting event webhook"
            )
            return False
        return validate_sendgrid_signature(
            key,
            signature,
            timestamp,
            body,
            now=self.clock.now().timestamp(),
            replay_window=self.config.replay_window_seconds,
        )

    def validate_sendgrid_inbound(self, auth_header: Optional[str]) -> bool:
        username = self.config.sendgrid_inbound_username
        password = self.config.sendgrid_inbound_password
        if not username or not password:
            logger.warning("SendGrid inbound credentials not configured; rejecting")
            return False
        return validate_basic_auth(auth_header, username, password)
