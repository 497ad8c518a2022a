"""LemonSqueezy integration: webhook verification and subscription admin calls.

The subscription operations use the LemonSqueezy JSON:API endpoints
(https://docs.lemonsqueezy.com/api). They are called from admin and checkout
flows; the webhook path only needs verify_webhook_signature.
"""

from typing import Any

import httpx
import structlog

from hookly.core.config import Settings, get_settings
from hookly.core.exceptions import PaymentProviderError
from hookly.core.signatures import verify_signature

logger = structlog.get_logger(__name__)

JSON_API = "application/vnd.api+json"


class LemonSqueezyClient:
    """PaymentProviderPort implementation for LemonSqueezy."""

    def __init__(self, settings: Settings | None = None, transport: httpx.AsyncBaseTransport | None = None):
        """Initialize the client.

        Args:
            settings: Defaults to get_settings()
            transport: Optional httpx transport (tests pass httpx.MockTransport)
        """
        self.settings = settings or get_settings()
        self._transport = transport

    def verify_webhook_signature(self, raw_body: bytes, signature: str | None) -> bool:
        if not self.settings.lemonsqueezy_webhook_secret:
            logger.error("lemonsqueezy_webhook_secret_missing")
            return False
        return verify_signature(raw_body, signature, self.settings.lemonsqueezy_webhook_secret)

    async def get_subscription(self, subscription_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/subscriptions/{subscription_id}")

    async def update_subscription(self, subscription_id: str, attributes: dict[str, Any]) -> dict[str, Any]:
        body = {"data": {"type": "subscriptions", "id": str(subscription_id), "attributes": attributes}}
        return await self._request("PATCH", f"/subscriptions/{subscription_id}", json=body)

    async def cancel_subscription(self, subscription_id: str) -> dict[str, Any]:
        """Cancel at period end. LemonSqueezy keeps the subscription active until then."""
        return await self._request("DELETE", f"/subscriptions/{subscription_id}")

    async def _request(self, method: str, endpoint: str, json: dict | None = None) -> dict[str, Any]:
        if not self.settings.lemonsqueezy_api_key:
            raise PaymentProviderError("LemonSqueezy API key not configured")

        headers = {
            "Authorization": f"Bearer {self.settings.lemonsqueezy_api_key}",
            "Accept": JSON_API,
            "Content-Type": JSON_API,
        }
        url = f"{self.settings.lemonsqueezy_api_url.rstrip('/')}{endpoint}"

        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=10.0) as client:
                response = await client.request(method, url, headers=headers, json=json)
        except httpx.HTTPError as e:
            logger.warning("lemonsqueezy_request_failed", method=method, endpoint=endpoint, error=str(e))
            raise PaymentProviderError(f"LemonSqueezy request failed: {e}") from e

        if response.status_code >= 400:
            logger.warning(
                "lemonsqueezy_error_response",
                method=method,
                endpoint=endpoint,
                status_code=response.status_code,
            )
            raise PaymentProviderError(f"LemonSqueezy {method} {endpoint} returned {response.status_code}: {response.text}")

        return response.json().get("data", {})
