"""
Promo Service Layer

Redeems a promo code inside one serializable transaction:

    terms accepted? -> load promo -> existing use? -> reserve cooldown
    -> insert use -> conditional used_count increment -> raise paid_until floor

Every abort rolls the whole transaction back, so a rejected redemption never
leaves a cooldown reservation or a use row behind. No Panel call happens here:
the next reconcile pushes the new floor.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

import config
import database
from database import IS_NULL, AnyOf, Cmp, DuplicateRowError, Increment
from app.core.metrics import get_metrics
from app.services.panel import PanelAdapter
from app.services.subscriptions import service as subscription_service
from app.services.promo.exceptions import InvalidPromoError, PromoAlreadyExistsError
from app.utils.date_utils import utcnow

logger = logging.getLogger(__name__)


class PromoOutcome(str, Enum):
    APPLIED = "applied"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    EXHAUSTED = "exhausted"
    ALREADY_USED = "already_used"
    COOLDOWN = "cooldown"
    OFFER_REQUIRED = "offer_required"


@dataclass
class PromoResult:
    """Outcome of a redemption attempt"""
    outcome: PromoOutcome
    bonus_days: Optional[int] = None
    paid_until: Optional[datetime] = None

    @property
    def applied(self) -> bool:
        return self.outcome == PromoOutcome.APPLIED


class _RedemptionAborted(Exception):
    """Rolls the redemption transaction back with a user-facing outcome"""

    def __init__(self, outcome: PromoOutcome):
        self.outcome = outcome
        super().__init__(outcome.value)


def normalize_code(code: str) -> str:
    """Promo codes are case-insensitive and ignore surrounding whitespace."""
    return (code or "").strip().lower()


def _unavailable_outcome(promo: Optional[Dict[str, Any]], now: datetime) -> Optional[PromoOutcome]:
    """not_found / expired / exhausted, or None if the promo can still be redeemed."""
    if promo is None:
        return PromoOutcome.NOT_FOUND
    if promo.get("expires_at") is not None and promo["expires_at"] <= now:
        return PromoOutcome.EXPIRED
    max_uses = promo.get("max_uses")
    if max_uses is not None and promo["used_count"] >= max_uses:
        return PromoOutcome.EXHAUSTED
    return None


def _has_accepted_terms(user: Optional[Dict[str, Any]]) -> bool:
    return (
        user is not None
        and user.get("offer_accepted_at") is not None
        and user.get("offer_version") == config.OFFER_VERSION
    )


async def _outcome_after_use_conflict(code: str, user_id: int, now: datetime) -> PromoOutcome:
    """Lost the promo_code_uses unique race: decide from a fresh read outside the transaction."""
    promo = await database.get_promo_by_code(code)
    if promo is not None and await database.get_promo_use(promo["id"], user_id) is not None:
        return PromoOutcome.ALREADY_USED
    return _unavailable_outcome(promo, now) or PromoOutcome.ALREADY_USED


async def accept_terms(telegram_id: int, now: Optional[datetime] = None) -> None:
    """Record acceptance of the current offer version."""
    now = now or utcnow()
    await database.get_or_create_user(telegram_id)
    await database.accept_offer(telegram_id, config.OFFER_VERSION, now)
    logger.info(f"OFFER_ACCEPTED telegram_id={telegram_id} version={config.OFFER_VERSION}")


async def redeem_promo(
    telegram_id: int,
    code: str,
    panel: Optional[PanelAdapter] = None,
    now: Optional[datetime] = None,
    cooldown_seconds: Optional[int] = None,
) -> PromoResult:
    """
    Redeem a promo code for a user.

    Returns:
        PromoResult; outcome APPLIED carries bonus_days and the new paid_until

    Raises:
        UserBlockedError: the user is banned
        PanelError: the subscription did not exist yet and the Panel is unavailable
    """
    await subscription_service.assert_not_blocked(telegram_id)
    now = now or utcnow()
    if cooldown_seconds is None:
        cooldown_seconds = config.PROMO_COOLDOWN_SECONDS
    normalized = normalize_code(code)

    user = await database.get_user(telegram_id)
    if not _has_accepted_terms(user):
        logger.info(f"PROMO_REJECTED telegram_id={telegram_id} code={normalized} outcome=offer_required")
        return PromoResult(PromoOutcome.OFFER_REQUIRED)

    # The floor lives on the subscription row; create it before the transaction
    await subscription_service.ensure_subscription(telegram_id, panel, now)
    cooldown_edge = now - timedelta(seconds=cooldown_seconds)

    async def _redeem(conn) -> PromoResult:
        promo = await database.get_promo_by_code(normalized, conn=conn)
        unavailable = _unavailable_outcome(promo, now)
        if unavailable is not None:
            raise _RedemptionAborted(unavailable)

        if await database.get_promo_use(promo["id"], user["id"], conn=conn) is not None:
            raise _RedemptionAborted(PromoOutcome.ALREADY_USED)

        reserved = await database.update_where(
            "users",
            user["id"],
            {"last_promo_activated_at": AnyOf(IS_NULL, Cmp("<=", cooldown_edge))},
            {"last_promo_activated_at": now},
            conn=conn,
        )
        if reserved == 0:
            raise _RedemptionAborted(PromoOutcome.COOLDOWN)

        await database.insert_promo_use(promo["id"], user["id"], now, conn=conn)

        expected: Dict[str, Any] = {"expires_at": AnyOf(IS_NULL, Cmp(">", now))}
        if promo.get("max_uses") is not None:
            expected["used_count"] = Cmp("<", promo["max_uses"])
        incremented = await database.update_where(
            "promo_codes", promo["id"], expected, {"used_count": Increment(1)}, conn=conn
        )
        if incremented == 0:
            raise _RedemptionAborted(PromoOutcome.EXHAUSTED)

        subscription = await database.get_subscription_by_user(user["id"], conn=conn)
        paid_until = subscription_service.compute_extended_floor(
            now, subscription.get("expires_at"), subscription.get("paid_until"), promo["bonus_days"]
        )
        await database.update_where(
            "subscriptions", subscription["id"], {}, {"paid_until": paid_until}, conn=conn
        )
        return PromoResult(PromoOutcome.APPLIED, bonus_days=promo["bonus_days"], paid_until=paid_until)

    try:
        result = await database.with_transaction(_redeem)
    except _RedemptionAborted as aborted:
        outcome = aborted.outcome
        if outcome == PromoOutcome.EXHAUSTED:
            # Lost the increment race: report what a fresh read says
            fresh = await database.get_promo_by_code(normalized)
            outcome = _unavailable_outcome(fresh, now) or PromoOutcome.EXHAUSTED
        result = PromoResult(outcome)
    except DuplicateRowError:
        result = PromoResult(await _outcome_after_use_conflict(normalized, user["id"], now))

    if result.applied:
        get_metrics().increment_counter("promo_redemptions_total")
        logger.info(
            f"PROMO_REDEEMED telegram_id={telegram_id} code={normalized} "
            f"bonus_days={result.bonus_days} paid_until={result.paid_until}"
        )
    else:
        logger.info(f"PROMO_REJECTED telegram_id={telegram_id} code={normalized} outcome={result.outcome.value}")
    return result


async def create_promo(
    code: str,
    bonus_days: int,
    max_uses: Optional[int] = None,
    expires_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Create a promo code (admin).

    Raises:
        InvalidPromoError: empty code, bonus_days <= 0 or max_uses <= 0
        PromoAlreadyExistsError: normalized code already exists
    """
    normalized = normalize_code(code)
    if not normalized:
        raise InvalidPromoError("Promo code must not be empty")
    if bonus_days <= 0:
        raise InvalidPromoError("bonus_days must be positive")
    if max_uses is not None and max_uses <= 0:
        raise InvalidPromoError("max_uses must be positive or None")

    try:
        promo = await database.create_promo(normalized, bonus_days, max_uses, expires_at)
    except DuplicateRowError as e:
        raise PromoAlreadyExistsError(f"Promo code {normalized} already exists") from e
    logger.info(
        f"PROMO_CREATED code={normalized} bonus_days={bonus_days} max_uses={max_uses} expires_at={expires_at}"
    )
    return promo
