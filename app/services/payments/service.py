"""
Payment Service Layer (Grant Ledger)

Applies the effect of a succeeded payment (time extension or device slots)
exactly once.

State machine per payment:
    PENDING --webhook, conditional--> SUCCEEDED --claim--> target pinned --> APPLIED

Guarantees:
- PENDING -> SUCCEEDED is a conditional update: duplicate deliveries are no-ops
- processing_at is the claim: at most one caller applies a payment at a time
- the outcome (target_expires_at / target_device_limit) is computed once and
  persisted conditionally, so a retry after a crash reuses the exact same target
- applied_at is set exactly once; processing_at is always released on failure,
  leaving the payment retryable by the next webhook delivery or the reapply job
- the user is notified once per applied payment (notification_sent claim)

No in-process locks: the database conditional updates are the critical sections.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

import config
import database
from database import IS_NULL, NOT_NULL
from app.constants.devices import MAX_DEVICE_LIMIT, MIN_DEVICE_LIMIT, clamp_device_limit
from app.core.metrics import get_metrics
from app.services.notifications import service as notification_service
from app.services.panel import PanelAdapter
from app.services.subscriptions import service as subscription_service
from app.services.payments.exceptions import (
    DeviceLimitReachedError,
    InvalidPlanError,
    InvalidWebhookPayloadError,
    PaymentNotFoundError,
    PaymentServiceError,
    ProviderNotConfiguredError,
)
from app.utils.date_utils import utcnow
from app.utils.logging_helpers import classify_error

logger = logging.getLogger(__name__)

PROVIDER_YOOKASSA = "yookassa"
PROVIDER_CRYPTOBOT = "cryptobot"

TYPE_SUBSCRIPTION = "SUBSCRIPTION"
TYPE_DEVICE_SLOT = "DEVICE_SLOT"

STATUS_PENDING = "PENDING"
STATUS_SUCCEEDED = "SUCCEEDED"
STATUS_CANCELED = "CANCELED"
STATUS_FAILED = "FAILED"

# Provider status that means "money received"
_SUCCESS_STATUSES = {
    PROVIDER_YOOKASSA: "succeeded",
    PROVIDER_CRYPTOBOT: "paid",
}


# ====================================================================================
# Result Types
# ====================================================================================

@dataclass
class WebhookEvent:
    """Provider webhook reduced to the fields the ledger needs"""
    provider: str
    provider_payment_id: str
    status: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def succeeded(self) -> bool:
        return self.status == _SUCCESS_STATUSES.get(self.provider)

    @property
    def local_payment_id(self) -> Optional[int]:
        """Our payment id echoed back by the provider in metadata/payload"""
        value = self.metadata.get("paymentId")
        try:
            return int(value) if value is not None else None
        except (TypeError, ValueError):
            return None


@dataclass
class ApplyResult:
    """Outcome of one apply_payment call"""
    payment_id: int
    outcome: str  # "applied" | "already_applied" | "claimed_elsewhere" | "not_succeeded"
    target_expires_at: Optional[datetime] = None
    target_device_limit: Optional[int] = None
    notified: bool = False


@dataclass
class WebhookResult:
    """Outcome of one webhook delivery"""
    handled: bool
    payment_id: Optional[int] = None
    transitioned: bool = False
    apply: Optional[ApplyResult] = None
    reason: Optional[str] = None


# ====================================================================================
# Webhook parsing
# ====================================================================================

def parse_yookassa_event(body: Any) -> Optional[WebhookEvent]:
    """
    YooKassa notification: {"event": "...", "object": {"id", "status", "metadata": {...}}}.
    Unknown fields are ignored; None if the body carries no payment id.

    Raises:
        InvalidWebhookPayloadError: body is not a JSON object
    """
    if not isinstance(body, dict):
        raise InvalidWebhookPayloadError("YooKassa webhook body must be an object")
    obj = body.get("object")
    if not isinstance(obj, dict):
        return None
    payment_id = obj.get("id")
    if not isinstance(payment_id, str) or not payment_id:
        return None
    metadata = obj.get("metadata")
    return WebhookEvent(
        provider=PROVIDER_YOOKASSA,
        provider_payment_id=payment_id,
        status=str(obj.get("status") or ""),
        metadata=metadata if isinstance(metadata, dict) else {},
        raw=body,
    )


def parse_cryptobot_event(body: Any) -> Optional[WebhookEvent]:
    """
    Crypto Pay update: {"update_type": "invoice_paid", "payload": {invoice}} where
    the invoice carries invoice_id, status and our own payload as a JSON string.
    A flat invoice body is accepted as well.

    Raises:
        InvalidWebhookPayloadError: body is not a JSON object
    """
    if not isinstance(body, dict):
        raise InvalidWebhookPayloadError("CryptoBot webhook body must be an object")
    invoice = body.get("payload") if isinstance(body.get("payload"), dict) else body
    invoice_id = invoice.get("invoice_id")
    if invoice_id is None or invoice_id == "":
        return None

    metadata: Dict[str, Any] = {}
    own_payload = invoice.get("payload")
    if isinstance(own_payload, str) and own_payload:
        try:
            parsed = json.loads(own_payload)
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            metadata = parsed

    return WebhookEvent(
        provider=PROVIDER_CRYPTOBOT,
        provider_payment_id=str(invoice_id),
        status=str(invoice.get("status") or ""),
        metadata=metadata,
        raw=body,
    )


# ====================================================================================
# Checkout
# ====================================================================================

async def start_checkout(
    telegram_id: int,
    provider: str,
    payment_type: str,
    plan_days: Optional[int] = None,
    device_slots: int = 1,
) -> Dict[str, Any]:
    """
    Create a PENDING payment for a checkout attempt.

    Invoice creation at the provider happens outside this service; its id is
    attached later with attach_provider_payment_id().

    Raises:
        ProviderNotConfiguredError: provider is not configured
        InvalidPlanError: unknown plan / type / slot count
        DeviceLimitReachedError: device slots would exceed the maximum
        UserBlockedError: the user is banned
    """
    await subscription_service.assert_not_blocked(telegram_id)
    if not config.provider_enabled(provider):
        raise ProviderNotConfiguredError(f"Payment provider {provider} is not configured")

    if payment_type == TYPE_SUBSCRIPTION:
        if plan_days not in config.PLAN_PRICES:
            raise InvalidPlanError(f"Price is not configured for plan {plan_days}")
        amount = config.PLAN_PRICES[plan_days]
        device_slots = None
    elif payment_type == TYPE_DEVICE_SLOT:
        if device_slots is None or device_slots <= 0:
            raise InvalidPlanError("device_slots must be positive")
        view = await subscription_service.get_subscription_view(telegram_id)
        current = view.device_limit if view else MIN_DEVICE_LIMIT
        if current + device_slots > MAX_DEVICE_LIMIT:
            raise DeviceLimitReachedError(
                f"Device limit {current} + {device_slots} exceeds maximum {MAX_DEVICE_LIMIT}"
            )
        amount = config.DEVICE_SLOT_PRICE * device_slots
        plan_days = None
    else:
        raise InvalidPlanError(f"Unknown payment type: {payment_type}")

    user = await database.get_or_create_user(telegram_id)
    payment = await database.create_payment(
        user_id=user["id"],
        provider=provider,
        payment_type=payment_type,
        amount=amount,
        currency=config.PAYMENT_CURRENCY,
        plan_days=plan_days,
        device_slots=device_slots,
    )
    logger.info(
        f"CHECKOUT_STARTED payment_id={payment['id']} telegram_id={telegram_id} "
        f"provider={provider} type={payment_type} plan_days={plan_days} slots={device_slots}"
    )
    return payment


async def attach_provider_payment_id(payment_id: int, provider_payment_id: str) -> bool:
    """Record the provider's id once; False if it was already set."""
    updated = await database.update_where(
        "payments",
        payment_id,
        {"provider_payment_id": IS_NULL},
        {"provider_payment_id": provider_payment_id},
    )
    return updated == 1


# ====================================================================================
# Webhook intake
# ====================================================================================

async def _find_payment(event: WebhookEvent) -> Optional[Dict[str, Any]]:
    payment = await database.get_payment_by_provider_id(event.provider, event.provider_payment_id)
    if payment is not None:
        return payment
    local_id = event.local_payment_id
    if local_id is None:
        return None
    payment = await database.get_payment(local_id)
    if payment is None or payment["provider"] != event.provider:
        return None
    return payment


async def handle_webhook(
    event: Optional[WebhookEvent],
    panel: Optional[PanelAdapter] = None,
    now: Optional[datetime] = None,
) -> WebhookResult:
    """
    Process one webhook delivery.

    Only a success status is processed; everything else is acknowledged and
    ignored. Every delivery of a succeeded-but-unapplied payment triggers
    apply_payment(), which is what makes provider retries self-healing.

    Raises:
        PanelError / asyncpg errors from apply_payment: the payment stays
        retryable and the webhook server answers 5xx so the provider retries
    """
    if event is None:
        return WebhookResult(handled=False, reason="no_payment_id")
    if not event.succeeded:
        logger.info(
            f"WEBHOOK_IGNORED provider={event.provider} provider_payment_id={event.provider_payment_id} "
            f"status={event.status}"
        )
        return WebhookResult(handled=False, reason="status_ignored")

    now = now or utcnow()
    payment = await _find_payment(event)
    if payment is None:
        logger.warning(
            f"WEBHOOK_PAYMENT_NOT_FOUND provider={event.provider} provider_payment_id={event.provider_payment_id}"
        )
        return WebhookResult(handled=False, reason="payment_not_found")

    patch: Dict[str, Any] = {
        "status": STATUS_SUCCEEDED,
        "paid_at": now,
        "raw_webhook": json.dumps(event.raw, default=str),
    }
    if payment.get("provider_payment_id") is None:
        patch["provider_payment_id"] = event.provider_payment_id
    transitioned = await database.update_where(
        "payments", payment["id"], {"status": STATUS_PENDING}, patch
    ) == 1
    if transitioned:
        get_metrics().increment_counter("payments_succeeded_total")
        logger.info(f"PAYMENT_SUCCEEDED payment_id={payment['id']} provider={event.provider}")

    payment = await database.get_payment(payment["id"])
    if payment["status"] != STATUS_SUCCEEDED:
        logger.warning(f"WEBHOOK_PAYMENT_NOT_SUCCEEDED payment_id={payment['id']} status={payment['status']}")
        return WebhookResult(handled=True, payment_id=payment["id"], transitioned=False, reason="not_pending")

    apply = await apply_payment(payment["id"], panel=panel, now=now)
    return WebhookResult(handled=True, payment_id=payment["id"], transitioned=transitioned, apply=apply)


# ====================================================================================
# Ledger application
# ====================================================================================

async def _pin_target(
    payment: Dict[str, Any],
    telegram_id: int,
    panel: Optional[PanelAdapter],
    now: datetime,
) -> Dict[str, Any]:
    """
    Compute the payment's outcome once and persist it conditionally.
    A target that is already pinned is reused as is.
    """
    if payment["type"] == TYPE_SUBSCRIPTION:
        column = "target_expires_at"
    elif payment["type"] == TYPE_DEVICE_SLOT:
        column = "target_device_limit"
    else:
        raise PaymentServiceError(f"Unknown payment type {payment['type']} for payment {payment['id']}")

    if payment.get(column) is not None:
        logger.info(f"PAYMENT_TARGET_REUSED payment_id={payment['id']} {column}={payment[column]}")
        return payment

    current = (await subscription_service.reconcile(telegram_id, panel, now)).subscription
    if column == "target_expires_at":
        target = subscription_service.compute_extended_floor(
            now, current.get("expires_at"), current.get("paid_until"), payment["plan_days"]
        )
    else:
        target = clamp_device_limit(current.get("device_limit", MIN_DEVICE_LIMIT) + (payment.get("device_slots") or 1))

    pinned = await database.update_where("payments", payment["id"], {column: IS_NULL}, {column: target})
    if pinned == 0:
        # Another writer pinned first: its target wins
        payment = await database.get_payment(payment["id"])
        logger.info(f"PAYMENT_TARGET_PIN_LOST payment_id={payment['id']} {column}={payment[column]}")
        return payment

    logger.info(f"PAYMENT_TARGET_PINNED payment_id={payment['id']} {column}={target}")
    return {**payment, column: target}


async def _notify_once(payment: Dict[str, Any], telegram_id: int) -> bool:
    claimed = await database.update_where(
        "payments",
        payment["id"],
        {"notification_sent": False, "applied_at": NOT_NULL},
        {"notification_sent": True},
    )
    if claimed != 1:
        return False
    result = await notification_service.notify_payment_applied(telegram_id, payment)
    return result.ok


async def apply_payment(
    payment_id: int,
    panel: Optional[PanelAdapter] = None,
    now: Optional[datetime] = None,
) -> ApplyResult:
    """
    Apply a SUCCEEDED payment exactly once.

    1. claim: processing_at = now WHERE applied_at IS NULL AND processing_at IS NULL
    2. pin the target (once)
    3. push the pinned target through the reconciler, mark applied_at
    4. always release the claim if applied_at is still NULL

    Returns:
        ApplyResult; outcome "claimed_elsewhere" means another caller holds the claim

    Raises:
        PaymentNotFoundError: unknown payment id
        PanelError / database errors: payment left retryable with its pinned target
    """
    now = now or utcnow()
    payment = await database.get_payment(payment_id)
    if payment is None:
        raise PaymentNotFoundError(f"Payment {payment_id} not found")
    if payment["status"] != STATUS_SUCCEEDED:
        return ApplyResult(payment_id=payment_id, outcome="not_succeeded")
    if payment["applied_at"] is not None:
        return ApplyResult(
            payment_id=payment_id,
            outcome="already_applied",
            target_expires_at=payment.get("target_expires_at"),
            target_device_limit=payment.get("target_device_limit"),
        )

    claimed = await database.update_where(
        "payments",
        payment_id,
        {"applied_at": IS_NULL, "processing_at": IS_NULL},
        {"processing_at": now},
    )
    if claimed == 0:
        logger.info(f"PAYMENT_CLAIM_SKIPPED payment_id={payment_id} (applied or in progress)")
        return ApplyResult(payment_id=payment_id, outcome="claimed_elsewhere")

    user = await database.get_user_by_id(payment["user_id"])
    applied = False
    try:
        if user is None:
            raise PaymentServiceError(f"User {payment['user_id']} of payment {payment_id} not found")
        telegram_id = user["telegram_id"]
        payment = await _pin_target(payment, telegram_id, panel, now)

        if payment["type"] == TYPE_SUBSCRIPTION:
            await subscription_service.raise_floor_and_push(telegram_id, payment["target_expires_at"], panel, now)
        else:
            await subscription_service.apply_device_limit(telegram_id, payment["target_device_limit"], panel, now)

        applied = await database.update_where(
            "payments",
            payment_id,
            {"applied_at": IS_NULL},
            {"applied_at": now, "processing_at": None},
        ) == 1
    except Exception as e:
        get_metrics().increment_counter("payments_apply_failed_total")
        kind = classify_error(e)
        logger.error(
            f"PAYMENT_APPLY_FAILED payment_id={payment_id} error_kind={kind.value} "
            f"error={type(e).__name__}: {e} (target pinned, retry is safe)"
        )
        raise
    finally:
        if not applied:
            await database.update_where(
                "payments",
                payment_id,
                {"applied_at": IS_NULL, "processing_at": now},
                {"processing_at": None},
            )

    get_metrics().increment_counter("payments_applied_total")
    logger.info(
        f"PAYMENT_APPLIED payment_id={payment_id} type={payment['type']} "
        f"target_expires_at={payment.get('target_expires_at')} target_device_limit={payment.get('target_device_limit')}"
    )
    notified = await _notify_once({**payment, "applied_at": now}, telegram_id)
    return ApplyResult(
        payment_id=payment_id,
        outcome="applied",
        target_expires_at=payment.get("target_expires_at"),
        target_device_limit=payment.get("target_device_limit"),
        notified=notified,
    )


async def reapply_unapplied_payments(
    limit: int = 100,
    panel: Optional[PanelAdapter] = None,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """
    Retry SUCCEEDED payments that were never applied (Panel was down, process crashed).
    One payment's failure is logged and does not stop the others.

    Returns:
        {"scanned", "applied", "skipped", "failed"}
    """
    stats = {"scanned": 0, "applied": 0, "skipped": 0, "failed": 0}
    for payment in await database.list_unapplied_payments(limit):
        stats["scanned"] += 1
        try:
            result = await apply_payment(payment["id"], panel=panel, now=now)
        except Exception as e:
            stats["failed"] += 1
            logger.warning(
                f"PAYMENT_REAPPLY_FAILED payment_id={payment['id']} "
                f"error_kind={classify_error(e).value} error={e}"
            )
            continue
        if result.outcome == "applied":
            stats["applied"] += 1
        else:
            stats["skipped"] += 1
    logger.info(f"PAYMENT_REAPPLY_DONE {stats}")
    return stats
