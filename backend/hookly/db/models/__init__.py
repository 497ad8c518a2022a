"""Re-export all models so Base.metadata sees them."""

from hookly.db.models.account import Account
from hookly.db.models.conversion_event import ConversionEvent
from hookly.db.models.webhook_event import WebhookEvent

__all__ = [
    "Account",
    "ConversionEvent",
    "WebhookEvent",
]
