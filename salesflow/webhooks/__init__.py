"""Outbound webhooks: subscriptions, signed delivery, retries and replay."""

from __future__ import annotations

from .delivery import RetrySummary, WebhookDeliveryService, ip_allowed
from .manager import (
    DeliverySummary,
    PublishResult,
    SubscriptionCreate,
    SubscriptionUpdate,
    WebhookManager,
    WebhookStats,
)
from .signing import generate_secret, sign_payload, verify_signature

__all__ = [
    "DeliverySummary",
    "PublishResult",
    "RetrySummary",
    "SubscriptionCreate",
    "SubscriptionUpdate",
    "WebhookDeliveryService",
    "WebhookManager",
    "WebhookStats",
    "generate_secret",
    "ip_allowed",
    "sign_payload",
    "verify_signature",
]
