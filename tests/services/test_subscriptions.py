"""
Unit tests for subscription service layer (reconciler).

Tests focus on business logic:
- Effective expiry / status rules
- Race-safe creation
- Floor push, expiry disable, device-limit correction
- Desync repair
"""
import asyncio
from datetime import timedelta

import pytest

from panel_client import PanelError
from app.services.subscriptions import service as subscription_service
from app.services.subscriptions.service import (
    STATUS_ACTIVE,
    STATUS_DISABLED,
    STATUS_EXPIRED,
    compute_extended_floor,
    derive_status,
    effective_expires_at,
)
from app.services.subscriptions.exceptions import DeviceLimitReachedError, UserBlockedError

TG = 1001
IDENTITY = "tg:1001"


class TestPureRules:
    """Tests for effective expiry, status and extension rules"""

    def test_effective_is_max_of_both(self, now):
        """Effective expiry is the later of Panel expiry and paid-until floor"""
        assert effective_expires_at(now, now + timedelta(days=3)) == now + timedelta(days=3)
        assert effective_expires_at(now + timedelta(days=5), now) == now + timedelta(days=5)

    def test_effective_with_one_side_missing(self, now):
        assert effective_expires_at(None, now) == now
        assert effective_expires_at(now, None) == now
        assert effective_expires_at(None, None) is None

    def test_status_expired_when_effective_passed(self, now):
        assert derive_status(now - timedelta(seconds=1), True, now) == STATUS_EXPIRED
        assert derive_status(now, True, now) == STATUS_EXPIRED

    def test_status_active_or_disabled(self, now):
        assert derive_status(now + timedelta(days=1), True, now) == STATUS_ACTIVE
        assert derive_status(now + timedelta(days=1), False, now) == STATUS_DISABLED
        assert derive_status(None, True, now) == STATUS_ACTIVE

    def test_extension_starts_from_latest(self, now):
        """Remaining paid time is never lost"""
        assert compute_extended_floor(now, None, now + timedelta(days=5), 30) == now + timedelta(days=35)
        assert compute_extended_floor(now, now + timedelta(days=10), now + timedelta(days=5), 30) == now + timedelta(days=40)

    def test_extension_of_expired_starts_now(self, now):
        assert compute_extended_floor(now, now - timedelta(days=10), None, 30) == now + timedelta(days=30)


class TestEnsureSubscription:
    """Tests for ensure_subscription"""

    @pytest.mark.asyncio
    async def test_creates_row_and_account(self, fake_db, panel, now):
        subscription = await subscription_service.ensure_subscription(TG, panel, now)

        account = panel.account(IDENTITY)
        assert account is not None
        assert subscription["account_ref"] == account.ref
        assert subscription["panel_namespace"] == panel.default_namespace
        assert subscription["device_limit"] == 1
        assert subscription["telegram_id"] == TG

    @pytest.mark.asyncio
    async def test_idempotent(self, fake_db, panel, now):
        first = await subscription_service.ensure_subscription(TG, panel, now)
        second = await subscription_service.ensure_subscription(TG, panel, now)

        assert first["id"] == second["id"]
        assert panel.call_count("create_account") == 1

    @pytest.mark.asyncio
    async def test_adopts_existing_panel_account(self, fake_db, panel, now):
        """Account left on the Panel by an earlier run is reused, not duplicated"""
        existing = panel.add_account(IDENTITY, expires_at=now + timedelta(days=3))

        subscription = await subscription_service.ensure_subscription(TG, panel, now)

        assert subscription["account_ref"] == existing.ref
        assert len(panel.namespaces[panel.default_namespace]) == 1

    @pytest.mark.asyncio
    async def test_concurrent_creators_converge(self, fake_db, panel, now):
        results = await asyncio.gather(
            *(subscription_service.ensure_subscription(TG, panel, now) for _ in range(5))
        )

        assert len({r["id"] for r in results}) == 1
        assert len(fake_db.tables["subscriptions"]) == 1
        assert len(panel.namespaces[panel.default_namespace]) == 1

    @pytest.mark.asyncio
    async def test_banned_user_gets_no_new_account(self, fake_db, panel, now):
        await fake_db.add_blocked_identity(TG, "abuse")

        with pytest.raises(UserBlockedError):
            await subscription_service.ensure_subscription(TG, panel, now)

        assert panel.call_count("create_account") == 0
        assert fake_db.subscription_of(TG) is None

    @pytest.mark.asyncio
    async def test_banned_user_existing_row_still_returned(self, fake_db, panel, now):
        """Background reconciliation of an existing row is not gated"""
        created = await subscription_service.ensure_subscription(TG, panel, now)
        await fake_db.add_blocked_identity(TG)

        again = await subscription_service.ensure_subscription(TG, panel, now)

        assert again["id"] == created["id"]


class TestReconcile:
    """Tests for reconcile"""

    @pytest.mark.asyncio
    async def test_floor_ahead_is_pushed(self, fake_db, panel, now):
        """expires_at = null, paid_until = now+7d → Panel gets now+7d, enabled"""
        await subscription_service.ensure_subscription(TG, panel, now)
        fake_db.subscription_of(TG)["paid_until"] = now + timedelta(days=7)

        result = await subscription_service.reconcile(TG, panel, now)

        account = panel.account(IDENTITY)
        assert account.expires_at == now + timedelta(days=7)
        assert account.enabled is True
        assert result.effective_expires_at == now + timedelta(days=7)
        assert fake_db.subscription_of(TG)["status"] == STATUS_ACTIVE

    @pytest.mark.asyncio
    async def test_floor_reenables_disabled_account(self, fake_db, panel, now):
        panel.add_account(IDENTITY, expires_at=now - timedelta(days=2), enabled=False)
        await subscription_service.ensure_subscription(TG, panel, now)
        fake_db.subscription_of(TG)["paid_until"] = now + timedelta(days=30)

        result = await subscription_service.reconcile(TG, panel, now)

        assert result.enabled is True
        assert panel.account(IDENTITY).enabled is True

    @pytest.mark.asyncio
    async def test_panel_ahead_is_kept(self, fake_db, panel, now):
        """Panel expiry later than the floor is not shortened"""
        panel.add_account(IDENTITY, expires_at=now + timedelta(days=30))
        await subscription_service.ensure_subscription(TG, panel, now)
        fake_db.subscription_of(TG)["paid_until"] = now + timedelta(days=10)

        result = await subscription_service.reconcile(TG, panel, now)

        assert panel.account(IDENTITY).expires_at == now + timedelta(days=30)
        assert result.effective_expires_at == now + timedelta(days=30)
        assert panel.call_count("apply_account_state") == 0

    @pytest.mark.asyncio
    async def test_expired_account_is_disabled(self, fake_db, panel, now):
        """Panel expiry now-1d, no floor → disabled on the Panel, EXPIRED locally"""
        panel.add_account(IDENTITY, expires_at=now - timedelta(days=1), enabled=True)
        await subscription_service.ensure_subscription(TG, panel, now)

        result = await subscription_service.reconcile(TG, panel, now)

        assert panel.account(IDENTITY).enabled is False
        assert result.enabled is False
        row = fake_db.subscription_of(TG)
        assert row["status"] == STATUS_EXPIRED
        assert row["enabled"] is False

    @pytest.mark.asyncio
    async def test_local_device_limit_wins(self, fake_db, panel, now):
        panel.add_account(IDENTITY, expires_at=now + timedelta(days=5), device_limit=1)
        await subscription_service.ensure_subscription(TG, panel, now)
        fake_db.subscription_of(TG)["device_limit"] = 3

        await subscription_service.reconcile(TG, panel, now)

        assert panel.account(IDENTITY).device_limit == 3

    @pytest.mark.asyncio
    async def test_out_of_range_limit_is_clamped_and_persisted(self, fake_db, panel, now):
        await subscription_service.ensure_subscription(TG, panel, now)
        fake_db.subscription_of(TG)["device_limit"] = 42

        result = await subscription_service.reconcile(TG, panel, now)

        assert result.subscription["device_limit"] == 6
        assert fake_db.subscription_of(TG)["device_limit"] == 6
        assert panel.account(IDENTITY).device_limit == 6

    @pytest.mark.asyncio
    async def test_desync_is_repaired(self, fake_db, panel, now):
        """Account deleted on the Panel → recreated by identity, local reference rewritten"""
        await subscription_service.ensure_subscription(TG, panel, now)
        row = fake_db.subscription_of(TG)
        row["paid_until"] = now + timedelta(days=12)
        old_ref = row["account_ref"]
        panel.namespaces[panel.default_namespace].clear()

        await subscription_service.reconcile(TG, panel, now)

        account = panel.account(IDENTITY)
        assert account is not None
        assert account.ref != old_ref
        assert fake_db.subscription_of(TG)["account_ref"] == account.ref
        assert account.expires_at == now + timedelta(days=12)

    @pytest.mark.asyncio
    async def test_desync_resolved_in_default_namespace(self, fake_db, panel, now):
        """Stale namespace: the account is found by identity in the default one"""
        await subscription_service.ensure_subscription(TG, panel, now)
        fake_db.subscription_of(TG)["panel_namespace"] = 99

        await subscription_service.reconcile(TG, panel, now)

        row = fake_db.subscription_of(TG)
        assert row["panel_namespace"] == panel.default_namespace
        assert row["account_ref"] == panel.account(IDENTITY).ref
        assert len(panel.namespaces[panel.default_namespace]) == 1

    @pytest.mark.asyncio
    async def test_panel_errors_propagate(self, fake_db, panel, now):
        await subscription_service.ensure_subscription(TG, panel, now)
        panel.down = True

        with pytest.raises(PanelError):
            await subscription_service.reconcile(TG, panel, now)


class TestFloorOperations:
    """Tests for raise_floor_and_push / set_floor_and_push / extend"""

    @pytest.mark.asyncio
    async def test_raise_never_lowers_floor(self, fake_db, panel, now):
        await subscription_service.ensure_subscription(TG, panel, now)
        await subscription_service.raise_floor_and_push(TG, now + timedelta(days=20), panel, now)
        await subscription_service.raise_floor_and_push(TG, now + timedelta(days=5), panel, now)

        row = fake_db.subscription_of(TG)
        assert row["paid_until"] == now + timedelta(days=20)
        assert panel.account(IDENTITY).expires_at == now + timedelta(days=20)

    @pytest.mark.asyncio
    async def test_stale_read_keeps_concurrent_raise(self, fake_db, panel, now):
        stale = await subscription_service.ensure_subscription(TG, panel, now)
        fake_db.subscription_of(TG)["paid_until"] = now + timedelta(days=40)

        floor = await subscription_service._raise_floor(stale, now + timedelta(days=30))

        assert floor == now + timedelta(days=40)
        assert fake_db.subscription_of(TG)["paid_until"] == now + timedelta(days=40)

    @pytest.mark.asyncio
    async def test_set_floor_can_move_backwards(self, fake_db, panel, now):
        await subscription_service.ensure_subscription(TG, panel, now)
        await subscription_service.raise_floor_and_push(TG, now + timedelta(days=20), panel, now)
        await subscription_service.set_floor_and_push(TG, now + timedelta(days=2), panel=panel, now=now)

        assert fake_db.subscription_of(TG)["paid_until"] == now + timedelta(days=2)
        assert panel.account(IDENTITY).expires_at == now + timedelta(days=2)

    @pytest.mark.asyncio
    async def test_extend_adds_to_effective_expiry(self, fake_db, panel, now):
        panel.add_account(IDENTITY, expires_at=now + timedelta(days=10))
        await subscription_service.ensure_subscription(TG, panel, now)

        await subscription_service.extend(TG, 7, panel, now)

        assert fake_db.subscription_of(TG)["paid_until"] == now + timedelta(days=17)
        assert panel.account(IDENTITY).expires_at == now + timedelta(days=17)

    @pytest.mark.asyncio
    async def test_extend_rejects_non_positive_days(self, fake_db, panel, now):
        with pytest.raises(ValueError):
            await subscription_service.extend(TG, 0, panel, now)


class TestDeviceLimit:
    """Tests for apply_device_limit / add_device_slot"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("requested,stored", [(0, 1), (-3, 1), (4, 4), (6, 6), (100, 6)])
    async def test_limit_always_clamped(self, fake_db, panel, now, requested, stored):
        await subscription_service.apply_device_limit(TG, requested, panel, now)

        assert fake_db.subscription_of(TG)["device_limit"] == stored
        assert panel.account(IDENTITY).device_limit == stored

    @pytest.mark.asyncio
    async def test_add_slot(self, fake_db, panel, now):
        await subscription_service.add_device_slot(TG, panel, now)

        assert fake_db.subscription_of(TG)["device_limit"] == 2

    @pytest.mark.asyncio
    async def test_add_slot_at_max(self, fake_db, panel, now):
        await subscription_service.apply_device_limit(TG, 6, panel, now)

        with pytest.raises(DeviceLimitReachedError):
            await subscription_service.add_device_slot(TG, panel, now)


class TestSubscriptionView:
    """Tests for get_subscription_view"""

    @pytest.mark.asyncio
    async def test_no_user(self, fake_db, now):
        assert await subscription_service.get_subscription_view(TG, now) is None

    @pytest.mark.asyncio
    async def test_view_derives_status(self, fake_db, panel, now):
        await subscription_service.ensure_subscription(TG, panel, now)
        row = fake_db.subscription_of(TG)
        row["expires_at"] = now - timedelta(days=1)
        row["paid_until"] = now + timedelta(days=3)

        view = await subscription_service.get_subscription_view(TG, now)

        assert view.effective_expires_at == now + timedelta(days=3)
        assert view.status == STATUS_ACTIVE
        assert panel.call_count("list_accounts") == 0
