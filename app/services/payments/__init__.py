"""
Payment Service Layer (Grant Ledger)

This package applies the effect of a succeeded payment exactly once,
idempotently across webhook retries and concurrent deliveries.
"""

from app.services.payments.service import (
    PROVIDER_YOOKASSA,
    PROVIDER_CRYPTOBOT,
    TYPE_SUBSCRIPTION,
    TYPE_DEVICE_SLOT,
    STATUS_PENDING,
    STATUS_SUCCEEDED,
    STATUS_CANCELED,
    STATUS_FAILED,
    WebhookEvent,
    WebhookResult,
    ApplyResult,
    parse_yookassa_event,
    parse_cryptobot_event,
    start_checkout,
    attach_provider_payment_id,
    handle_webhook,
    apply_payment,
    reapply_unapplied_payments,
)

from app.services.payments.exceptions import (
    PaymentServiceError,
    ProviderNotConfiguredError,
    InvalidPlanError,
    DeviceLimitReachedError,
    InvalidWebhookPayloadError,
    PaymentNotFoundError,
)

__all__ = [
    "PROVIDER_YOOKASSA",
    "PROVIDER_CRYPTOBOT",
    "TYPE_SUBSCRIPTION",
    "TYPE_DEVICE_SLOT",
    "STATUS_PENDING",
    "STATUS_SUCCEEDED",
    "STATUS_CANCELED",
    "STATUS_FAILED",
    "WebhookEvent",
    "WebhookResult",
    "ApplyResult",
    "parse_yookassa_event",
    "parse_cryptobot_event",
    "start_checkout",
    "attach_provider_payment_id",
    "handle_webhook",
    "apply_payment",
    "reapply_unapplied_payments",
    "PaymentServiceError",
    "ProviderNotConfiguredError",
    "InvalidPlanError",
    "DeviceLimitReachedError",
    "InvalidWebhookPayloadError",
    "PaymentNotFoundError",
]
