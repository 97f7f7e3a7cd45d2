"""
Subscription Service Layer (Reconciler)

Computes the authoritative state of one subscription from the Panel account and
the local paid-until floor, and pushes corrections to whichever side is behind.

Sources of truth:
- Panel: live expiry / enabled / device limit of the account
- subscriptions.paid_until: the latest point the user has paid or earned through
- subscriptions.device_limit: local value is authoritative for the device limit

Effective expiry is always max(Panel expiry, paid_until); effective_expires_at()
is the only place that formula lives.

Failure semantics: Panel errors propagate. Foreground callers surface them;
the background sweeper catches, logs and keeps the last-known local snapshot.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

import database
from database import IS_NULL, AnyOf, Cmp
from app.constants.devices import MAX_DEVICE_LIMIT, MIN_DEVICE_LIMIT, clamp_device_limit
from app.services.panel import AccountPatch, AccountState, PanelAdapter, get_panel, identity_for
from app.services.subscriptions.exceptions import (
    DeviceLimitReachedError,
    FloorContentionError,
    SubscriptionCreationError,
    SubscriptionNotFoundError,
    UserBlockedError,
)
from app.utils.date_utils import add_days, latest, utcnow

logger = logging.getLogger(__name__)

STATUS_ACTIVE = "ACTIVE"
STATUS_EXPIRED = "EXPIRED"
STATUS_DISABLED = "DISABLED"

# Conditional floor writes retried before giving up
FLOOR_CAS_ATTEMPTS = 5


# ====================================================================================
# Result Types
# ====================================================================================

@dataclass
class ReconcileResult:
    """Subscription after reconciliation"""
    subscription: Dict[str, Any]
    effective_expires_at: Optional[datetime]
    enabled: bool


@dataclass
class SubscriptionView:
    """Read-only local snapshot with derived fields"""
    telegram_id: int
    status: str
    enabled: bool
    device_limit: int
    expires_at: Optional[datetime]
    paid_until: Optional[datetime]
    effective_expires_at: Optional[datetime]
    panel_sub_id: Optional[str]
    last_synced_at: Optional[datetime]


# ====================================================================================
# Pure rules
# ====================================================================================

def effective_expires_at(expires_at: Optional[datetime], paid_until: Optional[datetime]) -> Optional[datetime]:
    """max(Panel expiry, local floor); whichever is present if only one is."""
    return latest(expires_at, paid_until)


def derive_status(effective: Optional[datetime], enabled: bool, now: datetime) -> str:
    """
    EXPIRED iff effective expiry has passed; otherwise ACTIVE iff enabled.
    No effective expiry at all means the account never expires.
    """
    if effective is not None and effective <= now:
        return STATUS_EXPIRED
    return STATUS_ACTIVE if enabled else STATUS_DISABLED


def compute_extended_floor(
    now: datetime,
    expires_at: Optional[datetime],
    paid_until: Optional[datetime],
    days: int,
) -> datetime:
    """
    New paid-until floor after granting `days`: extension starts from the latest
    of now, the effective expiry and the current floor, so paid time is never lost.
    """
    base = latest(now, effective_expires_at(expires_at, paid_until), paid_until)
    return add_days(base, days)


# ====================================================================================
# Local row
# ====================================================================================

async def assert_not_blocked(telegram_id: int) -> None:
    """Raises UserBlockedError for a banned user; user-facing entry points call this first."""
    if await database.is_blocked(telegram_id):
        logger.info(f"USER_BLOCKED telegram_id={telegram_id}")
        raise UserBlockedError(telegram_id)


async def ensure_subscription(
    telegram_id: int,
    panel: Optional[PanelAdapter] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Idempotently create the local row and the Panel account.

    Concurrent creators converge: the Panel account is adopted by identity,
    and the loser of the subscriptions.user_id unique race re-reads the winner's row.

    Returns:
        Subscription row (with telegram_id)

    Raises:
        PanelError: Panel unavailable while the account must be created
        UserBlockedError: no row yet and the user is banned
        SubscriptionCreationError: row vanished between the unique violation and the re-read
    """
    now = now or utcnow()
    user = await database.get_or_create_user(telegram_id)
    subscription = await database.get_subscription_by_user(user["id"])
    if subscription is not None:
        return subscription
    await assert_not_blocked(telegram_id)

    panel = panel or get_panel()
    namespace = panel.default_namespace
    account = await panel.create_account(namespace, identity_for(telegram_id), device_limit=MIN_DEVICE_LIMIT)
    device_limit = clamp_device_limit(account.device_limit or MIN_DEVICE_LIMIT)
    status = derive_status(account.expires_at, account.enabled, now)

    try:
        subscription = await database.insert_subscription(
            user_id=user["id"],
            panel_namespace=namespace,
            account_ref=account.ref,
            panel_sub_id=account.sub_id,
            device_limit=device_limit,
            enabled=account.enabled,
            expires_at=account.expires_at,
            status=status,
            now=now,
        )
        logger.info(f"SUBSCRIPTION_CREATED telegram_id={telegram_id} ref={account.ref}")
    except database.DuplicateRowError:
        subscription = await database.get_subscription_by_user(user["id"])
        if subscription is None:
            raise SubscriptionCreationError(f"Subscription for {telegram_id} not found after unique violation")
        logger.info(f"SUBSCRIPTION_CREATE_RACE_LOST telegram_id={telegram_id}")
    return subscription


async def _persist_clamp(subscription: Dict[str, Any]) -> Dict[str, Any]:
    clamped = clamp_device_limit(subscription.get("device_limit"))
    if clamped != subscription.get("device_limit"):
        logger.warning(
            f"DEVICE_LIMIT_CLAMPED subscription_id={subscription['id']} "
            f"from={subscription.get('device_limit')} to={clamped}"
        )
        await database.update_subscription(subscription["id"], {"device_limit": clamped})
        subscription = {**subscription, "device_limit": clamped}
    return subscription


async def _repair_desync(
    subscription: Dict[str, Any],
    panel: PanelAdapter,
    now: datetime,
) -> Tuple[Dict[str, Any], AccountState]:
    """
    The local reference points to a missing Panel account: re-resolve it by the
    stable identity (current namespace, then the default one) or recreate it,
    and rewrite the local reference.
    """
    identity = identity_for(subscription["telegram_id"])
    namespace = subscription["panel_namespace"]
    account = await panel.find_account_by_identity(namespace, identity)
    if account is None and namespace != panel.default_namespace:
        namespace = panel.default_namespace
        account = await panel.find_account_by_identity(namespace, identity)
    if account is None:
        effective = effective_expires_at(subscription.get("expires_at"), subscription.get("paid_until"))
        account = await panel.create_account(
            namespace,
            identity,
            device_limit=subscription["device_limit"],
            expires_at=effective,
            enabled=effective is None or effective > now,
        )

    logger.warning(
        f"PANEL_DESYNC_REPAIRED subscription_id={subscription['id']} "
        f"old_ref={subscription['account_ref']} new_ref={account.ref} namespace={namespace}"
    )
    patch = {"panel_namespace": namespace, "account_ref": account.ref, "panel_sub_id": account.sub_id}
    await database.update_subscription(subscription["id"], patch)
    return {**subscription, **patch}, account


async def _resolve_account(
    subscription: Dict[str, Any],
    panel: PanelAdapter,
    now: datetime,
) -> Tuple[Dict[str, Any], AccountState]:
    account = await panel.get_account(subscription["panel_namespace"], subscription["account_ref"])
    if account is None:
        return await _repair_desync(subscription, panel, now)
    return subscription, account


# ====================================================================================
# Reconciliation
# ====================================================================================

async def reconcile_with_account(
    subscription: Dict[str, Any],
    account: AccountState,
    panel: PanelAdapter,
    now: datetime,
) -> ReconcileResult:
    """
    Reconcile one subscription against an already fetched Panel account.

    1. paid_until ahead of the Panel → push {expires_at: paid_until, enabled: true}
    2. Panel device limit differs → push the local value
    3. effective expiry passed but Panel still enabled → disable on the Panel
    4. persist enabled / expires_at / status / last_synced_at
    """
    namespace = subscription["panel_namespace"]
    ref = subscription["account_ref"]
    device_limit = clamp_device_limit(subscription.get("device_limit"))
    paid_until = subscription.get("paid_until")
    expires_at = account.expires_at
    enabled = account.enabled

    floor_ahead = paid_until is not None and paid_until > now and (expires_at is None or paid_until > expires_at)
    limit_differs = panel.enforce_device_limit and account.device_limit != device_limit

    if floor_ahead:
        await panel.apply_account_state(
            namespace, ref, AccountPatch(expires_at=paid_until, enabled=True, device_limit=device_limit)
        )
        logger.info(
            f"PAID_FLOOR_PUSHED subscription_id={subscription['id']} "
            f"panel_expires_at={expires_at} paid_until={paid_until}"
        )
        expires_at, enabled = paid_until, True
    elif limit_differs:
        await panel.apply_account_state(namespace, ref, AccountPatch(device_limit=device_limit))
        logger.info(
            f"DEVICE_LIMIT_PUSHED subscription_id={subscription['id']} "
            f"panel={account.device_limit} local={device_limit}"
        )

    effective = effective_expires_at(expires_at, paid_until)
    if effective is not None and effective <= now and enabled:
        await panel.apply_account_state(namespace, ref, AccountPatch(enabled=False))
        logger.info(f"EXPIRED_ACCOUNT_DISABLED subscription_id={subscription['id']} effective={effective}")
        enabled = False

    status = derive_status(effective, enabled, now)
    patch: Dict[str, Any] = {
        "enabled": enabled,
        "expires_at": expires_at,
        "status": status,
        "last_synced_at": now,
    }
    if device_limit != subscription.get("device_limit"):
        patch["device_limit"] = device_limit
    if account.sub_id and account.sub_id != subscription.get("panel_sub_id"):
        patch["panel_sub_id"] = account.sub_id
    await database.update_subscription(subscription["id"], patch)

    return ReconcileResult(
        subscription={**subscription, **patch, "device_limit": device_limit},
        effective_expires_at=effective,
        enabled=enabled,
    )


async def reconcile(
    telegram_id: int,
    panel: Optional[PanelAdapter] = None,
    now: Optional[datetime] = None,
) -> ReconcileResult:
    """
    Full foreground reconciliation of one user's subscription.

    Raises:
        PanelError: Panel unavailable (caller decides whether to propagate)
    """
    now = now or utcnow()
    panel = panel or get_panel()
    subscription = await ensure_subscription(telegram_id, panel, now)
    subscription = await _persist_clamp(subscription)
    subscription, account = await _resolve_account(subscription, panel, now)
    return await reconcile_with_account(subscription, account, panel, now)


async def _push_state(
    subscription: Dict[str, Any],
    panel: PanelAdapter,
    now: datetime,
    paid_until: Optional[datetime],
    expires_at: Optional[datetime],
    enabled: bool,
) -> Dict[str, Any]:
    await panel.apply_account_state(
        subscription["panel_namespace"],
        subscription["account_ref"],
        AccountPatch(expires_at=expires_at, enabled=enabled, device_limit=subscription["device_limit"]),
    )
    effective = effective_expires_at(expires_at, paid_until)
    patch = {
        "paid_until": paid_until,
        "expires_at": expires_at,
        "enabled": enabled,
        "status": derive_status(effective, enabled, now),
        "last_synced_at": now,
    }
    await database.update_subscription(subscription["id"], patch)
    return {**subscription, **patch}


async def set_floor_and_push(
    telegram_id: int,
    expires_at: datetime,
    enabled: bool = True,
    panel: Optional[PanelAdapter] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Force-set the floor and the Panel expiry to `expires_at` (admin tools, direct grants).
    Unlike raise_floor_and_push this may move the floor backwards.
    """
    now = now or utcnow()
    panel = panel or get_panel()
    subscription = await ensure_subscription(telegram_id, panel, now)
    subscription = await _persist_clamp(subscription)
    subscription, _ = await _resolve_account(subscription, panel, now)
    subscription = await _push_state(subscription, panel, now, expires_at, expires_at, enabled)
    logger.info(f"FLOOR_SET telegram_id={telegram_id} expires_at={expires_at} enabled={enabled}")
    return subscription


async def _current_floor(subscription: Dict[str, Any]) -> Optional[datetime]:
    fresh = await database.get_subscription_by_user(subscription["user_id"])
    if fresh is None:
        raise SubscriptionNotFoundError(f"Subscription {subscription['id']} disappeared")
    return fresh.get("paid_until")


async def _raise_floor(subscription: Dict[str, Any], target: datetime) -> datetime:
    """
    paid_until = max(paid_until, target) as a conditional update. When another
    writer raised the floor first, recompute from a fresh read and try again.
    """
    floor = latest(subscription.get("paid_until"), target)
    for _ in range(FLOOR_CAS_ATTEMPTS):
        raised = await database.update_where(
            "subscriptions",
            subscription["id"],
            {"paid_until": AnyOf(IS_NULL, Cmp("<=", floor))},
            {"paid_until": floor},
        )
        if raised:
            return floor
        floor = latest(await _current_floor(subscription), target)
    raise FloorContentionError(f"paid_until of subscription {subscription['id']} kept moving")


async def raise_floor_and_push(
    telegram_id: int,
    target: datetime,
    panel: Optional[PanelAdapter] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Raise the floor to at least `target` and push it to the Panel.

    The floor is written first, so a grant is durable even if the Panel call
    fails. After each push the floor is re-read: a grant that landed while the
    Panel call was in flight is pushed too, never overwritten.
    """
    now = now or utcnow()
    panel = panel or get_panel()
    subscription = await ensure_subscription(telegram_id, panel, now)
    subscription = await _persist_clamp(subscription)
    subscription, account = await _resolve_account(subscription, panel, now)
    floor = await _raise_floor(subscription, target)

    pushed: Optional[datetime] = None
    for _ in range(FLOOR_CAS_ATTEMPTS):
        wanted = latest(account.expires_at, floor)
        if wanted == pushed:
            break
        await panel.apply_account_state(
            subscription["panel_namespace"],
            subscription["account_ref"],
            AccountPatch(expires_at=wanted, enabled=True, device_limit=subscription["device_limit"]),
        )
        pushed = wanted
        floor = latest(floor, await _current_floor(subscription))

    patch = {
        "expires_at": pushed,
        "enabled": True,
        "status": derive_status(effective_expires_at(pushed, floor), True, now),
        "last_synced_at": now,
    }
    await database.update_where(
        "subscriptions", subscription["id"], {"expires_at": AnyOf(IS_NULL, Cmp("<=", pushed))}, patch
    )
    logger.info(f"FLOOR_RAISED telegram_id={telegram_id} target={target} paid_until={floor} panel_expires_at={pushed}")
    return {**subscription, **patch, "paid_until": floor}


async def extend(
    telegram_id: int,
    days: int,
    panel: Optional[PanelAdapter] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Grant `days` on top of the current effective expiry (admin grant)."""
    if days <= 0:
        raise ValueError("days must be positive")
    now = now or utcnow()
    panel = panel or get_panel()
    result = await reconcile(telegram_id, panel, now)
    subscription = result.subscription
    target = compute_extended_floor(now, subscription.get("expires_at"), subscription.get("paid_until"), days)
    logger.info(f"SUBSCRIPTION_EXTENDED telegram_id={telegram_id} days={days} target={target}")
    return await raise_floor_and_push(telegram_id, target, panel, now)


async def apply_device_limit(
    telegram_id: int,
    device_limit: int,
    panel: Optional[PanelAdapter] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Clamp, persist and push a device limit."""
    now = now or utcnow()
    panel = panel or get_panel()
    clamped = clamp_device_limit(device_limit)
    subscription = await ensure_subscription(telegram_id, panel, now)
    subscription, _ = await _resolve_account(subscription, panel, now)
    await panel.apply_account_state(
        subscription["panel_namespace"], subscription["account_ref"], AccountPatch(device_limit=clamped)
    )
    await database.update_subscription(subscription["id"], {"device_limit": clamped, "last_synced_at": now})
    logger.info(f"DEVICE_LIMIT_SET telegram_id={telegram_id} device_limit={clamped}")
    return {**subscription, "device_limit": clamped, "last_synced_at": now}


async def add_device_slot(
    telegram_id: int,
    panel: Optional[PanelAdapter] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Admin: one more device.

    Raises:
        DeviceLimitReachedError: already at MAX_DEVICE_LIMIT
    """
    subscription = await ensure_subscription(telegram_id, panel, now)
    current = clamp_device_limit(subscription.get("device_limit"))
    if current >= MAX_DEVICE_LIMIT:
        raise DeviceLimitReachedError(f"Device limit already at maximum ({MAX_DEVICE_LIMIT})")
    return await apply_device_limit(telegram_id, current + 1, panel, now)


async def get_subscription_view(telegram_id: int, now: Optional[datetime] = None) -> Optional[SubscriptionView]:
    """Local snapshot only (no Panel call); None if the user has no subscription."""
    now = now or utcnow()
    user = await database.get_user(telegram_id)
    if user is None:
        return None
    subscription = await database.get_subscription_by_user(user["id"])
    if subscription is None:
        return None
    effective = effective_expires_at(subscription.get("expires_at"), subscription.get("paid_until"))
    return SubscriptionView(
        telegram_id=telegram_id,
        status=derive_status(effective, subscription["enabled"], now),
        enabled=subscription["enabled"],
        device_limit=clamp_device_limit(subscription.get("device_limit")),
        expires_at=subscription.get("expires_at"),
        paid_until=subscription.get("paid_until"),
        effective_expires_at=effective,
        panel_sub_id=subscription.get("panel_sub_id"),
        last_synced_at=subscription.get("last_synced_at"),
    )
