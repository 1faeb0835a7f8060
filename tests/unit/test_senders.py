"""Sender tests."""

import json

import httpx
import pytest

from leadflow.contracts import Channel
from leadflow.exceptions import PermanentActionError, TransientActionError
from leadflow.senders import InMemoryMessageSender, OutboundMessage
from leadflow.senders.http import HttpMessageSender


def _message(key="enr-1:0") -> OutboundMessage:
    return OutboundMessage(
        channel=Channel.SMS,
        to="+15555550100",
        body="Hello",
        idempotency_key=key,
        enrollment_id="enr-1",
    )


def _sender(handler) -> HttpMessageSender:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpMessageSender("https://gateway.test/", api_key="k-1", client=client)


@pytest.mark.asyncio
async def test_http_sender_posts_with_idempotency_key():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(202, json={"id": "SM42", "status": "queued"})

    receipt = await _sender(handler).send(_message())

    assert receipt.external_id == "SM42"
    assert seen["url"] == "https://gateway.test/messages"
    assert seen["headers"]["Idempotency-Key"] == "enr-1:0"
    assert seen["headers"]["Authorization"] == "Bearer k-1"
    assert seen["body"]["to"] == "+15555550100"
    assert seen["body"]["channel"] == "sms"


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [408, 429, 500, 503])
async def test_http_sender_retryable_statuses(status):
    sender = _sender(lambda request: httpx.Response(status, text="busy"))
    with pytest.raises(TransientActionError):
        await sender.send(_message())


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [400, 401, 404, 422])
async def test_http_sender_rejections_are_permanent(status):
    sender = _sender(lambda request: httpx.Response(status, text="bad number"))
    with pytest.raises(PermanentActionError):
        await sender.send(_message())


@pytest.mark.asyncio
async def test_http_sender_network_errors_are_transient():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransientActionError):
        await _sender(handler).send(_message())

    def slow(request):
        raise httpx.ReadTimeout("read timed out", request=request)

    with pytest.raises(TransientActionError, match="delivery unknown"):
        await _sender(slow).send(_message())


@pytest.mark.asyncio
async def test_http_sender_unreadable_success_is_transient():
    sender = _sender(lambda request: httpx.Response(200, text="ok"))
    with pytest.raises(TransientActionError):
        await sender.send(_message())


@pytest.mark.asyncio
async def test_inmemory_sender_dedups_and_scripts_failures():
    sender = InMemoryMessageSender()
    sender.fail_next(TransientActionError("flaky"), times=2)

    for _ in range(2):
        with pytest.raises(TransientActionError):
            await sender.send(_message())

    first = await sender.send(_message())
    again = await sender.send(_message())
    other = await sender.send(_message("enr-1:1"))

    assert first.external_id == again.external_id
    assert other.external_id != first.external_id
    assert len(sender.sent) == 2
    assert sender.last_sent().idempotency_key == "enr-1:1"
