"""
Subscription Service Package

Subscription Reconciler: keeps the Panel account, the local subscription row
and the paid-until floor consistent.
"""

from app.services.subscriptions.service import (
    STATUS_ACTIVE,
    STATUS_EXPIRED,
    STATUS_DISABLED,
    effective_expires_at,
    derive_status,
    compute_extended_floor,
    ensure_subscription,
    reconcile,
    reconcile_with_account,
    assert_not_blocked,
    set_floor_and_push,
    raise_floor_and_push,
    extend,
    apply_device_limit,
    add_device_slot,
    get_subscription_view,
    ReconcileResult,
    SubscriptionView,
)

from app.services.subscriptions.exceptions import (
    SubscriptionServiceError,
    SubscriptionNotFoundError,
    DeviceLimitReachedError,
    SubscriptionCreationError,
    FloorContentionError,
    UserBlockedError,
)

__all__ = [
    "STATUS_ACTIVE",
    "STATUS_EXPIRED",
    "STATUS_DISABLED",
    "effective_expires_at",
    "derive_status",
    "compute_extended_floor",
    "ensure_subscription",
    "reconcile",
    "reconcile_with_account",
    "assert_not_blocked",
    "set_floor_and_push",
    "raise_floor_and_push",
    "extend",
    "apply_device_limit",
    "add_device_slot",
    "get_subscription_view",
    "ReconcileResult",
    "SubscriptionView",
    "SubscriptionServiceError",
    "SubscriptionNotFoundError",
    "DeviceLimitReachedError",
    "SubscriptionCreationError",
    "FloorContentionError",
    "UserBlockedError",
]
