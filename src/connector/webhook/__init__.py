"""GitHub webhook handling for the connector.

This module verifies and classifies inbound GitHub deliveries:
- issues opened/closed
- pull_request opened/closed
- push
- release published
- issue_comment created

Deliveries are verified against X-Hub-Signature-256 when a webhook secret
is configured.
"""

from .handler import WebhookHandler, create_webhook_handler
from .models import DeliveryAction, DeliveryHeaders

__all__ = [
    "DeliveryAction",
    "DeliveryHeaders",
    "WebhookHandler",
    "create_webhook_handler",
]
