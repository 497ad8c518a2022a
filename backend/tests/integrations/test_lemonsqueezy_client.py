"""Tests for the LemonSqueezy adapter using httpx.MockTransport."""

import json

import httpx
import pytest

from hookly.core.config import Settings
from hookly.core.exceptions import PaymentProviderError
from hookly.core.signatures import compute_signature
from hookly.integrations.lemonsqueezy import LemonSqueezyClient
from hookly.ports import PaymentProviderPort

pytestmark = pytest.mark.unit


@pytest.fixture
def settings():
    return Settings(
        lemonsqueezy_api_key="ls_test_key",
        lemonsqueezy_api_url="https://api.lemonsqueezy.test/v1",
        lemonsqueezy_webhook_secret="whsec_client_test",
    )


def _client(settings, handler):
    return LemonSqueezyClient(settings, transport=httpx.MockTransport(handler))


def test_satisfies_payment_provider_port(settings):
    assert isinstance(LemonSqueezyClient(settings), PaymentProviderPort)


def test_verify_webhook_signature(settings):
    client = LemonSqueezyClient(settings)
    body = b'{"hello":"world"}'
    assert client.verify_webhook_signature(body, compute_signature(body, "whsec_client_test"))
    assert not client.verify_webhook_signature(body, compute_signature(body, "wrong"))


def test_verify_fails_closed_without_secret(settings):
    client = LemonSqueezyClient(settings.model_copy(update={"lemonsqueezy_webhook_secret": ""}))
    body = b"{}"
    assert client.verify_webhook_signature(body, compute_signature(body, "")) is False


async def test_get_subscription(settings):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["accept"] = request.headers["Accept"]
        return httpx.Response(200, json={"data": {"id": "42", "attributes": {"status": "active"}}})

    data = await _client(settings, handler).get_subscription("42")

    assert data["attributes"]["status"] == "active"
    assert seen == {
        "method": "GET",
        "url": "https://api.lemonsqueezy.test/v1/subscriptions/42",
        "auth": "Bearer ls_test_key",
        "accept": "application/vnd.api+json",
    }


async def test_update_subscription_sends_json_api_body(settings):
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["method"] = request.method
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"data": {"id": "42", "attributes": {"variant_id": 7}}})

    await _client(settings, handler).update_subscription("42", {"variant_id": 7})

    assert captured["method"] == "PATCH"
    assert captured["body"] == {"data": {"type": "subscriptions", "id": "42", "attributes": {"variant_id": 7}}}


async def test_cancel_subscription_uses_delete(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "DELETE"
        return httpx.Response(200, json={"data": {"id": "42", "attributes": {"cancelled": True}}})

    data = await _client(settings, handler).cancel_subscription("42")
    assert data["attributes"]["cancelled"] is True


async def test_error_status_raises_provider_error(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"errors": [{"detail": "not found"}]})

    with pytest.raises(PaymentProviderError, match="404"):
        await _client(settings, handler).get_subscription("missing")


async def test_transport_error_raises_provider_error(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(PaymentProviderError):
        await _client(settings, handler).get_subscription("42")


async def test_missing_api_key_raises(settings):
    client = LemonSqueezyClient(settings.model_copy(update={"lemonsqueezy_api_key": ""}))
    with pytest.raises(PaymentProviderError, match="not configured"):
        await client.get_subscription("42")
