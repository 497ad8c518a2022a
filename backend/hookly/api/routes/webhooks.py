"""Payment provider webhook endpoint.

POST /api/webhooks/lemonsqueezy

The signature is checked against the raw body before it is parsed. The
provider gets 400 only for authentication and payload-shape problems; every
admitted event, including unknown types and business failures, gets 200 so
the provider does not redeliver it. Failed events are retried internally.
"""

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request

from hookly.core.exceptions import MalformedPayloadError, WebhookAuthenticationError
from hookly.db.base import get_session_factory
from hookly.services.billing import build_billing_services
from hookly.services.processor import WebhookProcessor

logger = structlog.get_logger(__name__)

router = APIRouter()

SIGNATURE_HEADER = "X-Signature"


def get_webhook_processor() -> WebhookProcessor:
    """Dependency that provides the webhook pipeline.

    Override this dependency in tests via app.dependency_overrides.
    """
    return build_billing_services(get_session_factory()).processor


@router.post("/webhooks/lemonsqueezy")
async def lemonsqueezy_webhook(
    request: Request,
    processor: WebhookProcessor = Depends(get_webhook_processor),
):
    """Receive a LemonSqueezy event. Returns 200 once the event is admitted."""
    raw_body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)

    try:
        receipt = await processor.ingest(raw_body, signature)
    except WebhookAuthenticationError:
        raise HTTPException(status_code=400, detail="Invalid signature")
    except MalformedPayloadError as e:
        logger.warning("webhook_payload_malformed", field=e.field, error=str(e))
        raise HTTPException(status_code=400, detail=str(e))

    return {
        "status": "ok",
        "external_id": receipt.external_id,
        "decision": receipt.decision.value,
        "result": receipt.status.value,
    }
