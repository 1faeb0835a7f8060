"""HTTP sender posting to a messaging gateway."""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from ..exceptions import PermanentActionError, TransientActionError
from .base import MessageSender, OutboundMessage, SendReceipt

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = {408, 425, 429}


class HttpMessageSender(MessageSender):
    """Send messages through a gateway exposing ``POST /messages``.

    The gateway is expected to deduplicate on the ``Idempotency-Key`` header
    and answer with a JSON body containing the provider message ``id``.
    """

    def __init__(
        self,
        endpoint: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.endpoint = endpoint.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    async def connect(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)

    async def disconnect(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def send(self, message: OutboundMessage) -> SendReceipt:
        await self.connect()
        headers = {"Idempotency-Key": message.idempotency_key}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            response = await self._client.post(
                f"{self.endpoint}/messages",
                json=message.model_dump(mode="json"),
                headers=headers,
                timeout=self.timeout,
            )
        except httpx.TimeoutException as exc:
            raise TransientActionError(
                f"{message.channel.value} send timed out; delivery unknown"
            ) from exc
        except httpx.TransportError as exc:
            raise TransientActionError(f"{message.channel.value} send failed: {exc}") from exc

        status = response.status_code
        if status >= 500 or status in _RETRYABLE_STATUS:
            raise TransientActionError(f"Gateway returned {status}: {response.text}")
        if status >= 400:
            raise PermanentActionError(f"Gateway rejected message ({status}): {response.text}")

        try:
            data = response.json()
            external_id = str(data["id"])
        except (ValueError, KeyError, TypeError) as exc:
            # Accepted but unreadable: the message may be out, so retry with the same key.
            raise TransientActionError(f"Unreadable gateway response: {exc}") from exc
        logger.debug(f"Gateway accepted {message.idempotency_key} as {external_id}")
        return SendReceipt(external_id=external_id, status=data.get("status", "queued"))
