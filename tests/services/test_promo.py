"""
Unit tests for promo service layer.

Tests focus on business logic:
- Outcome for every rejection reason and its priority
- Cooldown reservation and rollback
- Floor computation (no Panel push)
- Promo creation validation
"""
from datetime import timedelta

import pytest

import config
from app.services.promo import service as promo_service
from app.services.promo.service import PromoOutcome
from app.services.promo.exceptions import InvalidPromoError, PromoAlreadyExistsError
from app.services.subscriptions import service as subscription_service
from app.services.subscriptions.exceptions import UserBlockedError

TG = 4004


async def _ready_user(fake_db, panel, now, telegram_id=TG):
    await promo_service.accept_terms(telegram_id, now)
    await subscription_service.ensure_subscription(telegram_id, panel, now)
    return fake_db.user_of(telegram_id)


class TestNormalizeCode:
    def test_case_and_whitespace(self):
        assert promo_service.normalize_code("  Spring-2026 ") == "spring-2026"

    def test_none(self):
        assert promo_service.normalize_code(None) == ""


class TestRedeemPromo:
    """Tests for redeem_promo"""

    @pytest.mark.asyncio
    async def test_terms_required(self, fake_db, panel, now):
        await fake_db.get_or_create_user(TG)
        await fake_db.create_promo("gift", 7, None, None)

        result = await promo_service.redeem_promo(TG, "gift", panel, now)

        assert result.outcome == PromoOutcome.OFFER_REQUIRED
        assert fake_db.transactions == 0

    @pytest.mark.asyncio
    async def test_banned_user_rejected(self, fake_db, panel, now):
        await _ready_user(fake_db, panel, now)
        await fake_db.create_promo("gift", 7, None, None)
        await fake_db.add_blocked_identity(TG)

        with pytest.raises(UserBlockedError):
            await promo_service.redeem_promo(TG, "gift", panel, now)

        assert fake_db.transactions == 0
        assert fake_db.subscription_of(TG)["paid_until"] is None

    @pytest.mark.asyncio
    async def test_outdated_terms_version(self, fake_db, panel, now):
        await _ready_user(fake_db, panel, now)
        fake_db.user_of(TG)["offer_version"] = "v0-" + config.OFFER_VERSION

        result = await promo_service.redeem_promo(TG, "gift", panel, now)

        assert result.outcome == PromoOutcome.OFFER_REQUIRED

    @pytest.mark.asyncio
    async def test_applied_raises_floor_without_panel_push(self, fake_db, panel, now):
        await _ready_user(fake_db, panel, now)
        await fake_db.create_promo("gift", 7, 10, None)
        panel.calls.clear()

        result = await promo_service.redeem_promo(TG, "  GIFT ", panel, now)

        assert result.applied
        assert result.bonus_days == 7
        assert result.paid_until == now + timedelta(days=7)
        assert fake_db.subscription_of(TG)["paid_until"] == now + timedelta(days=7)
        assert fake_db.user_of(TG)["last_promo_activated_at"] == now
        assert fake_db.tables["promo_codes"][1]["used_count"] == 1
        assert len(fake_db.tables["promo_code_uses"]) == 1
        assert panel.calls == []

    @pytest.mark.asyncio
    async def test_bonus_stacks_on_remaining_time(self, fake_db, panel, now):
        await _ready_user(fake_db, panel, now)
        fake_db.subscription_of(TG)["expires_at"] = now + timedelta(days=10)
        await fake_db.create_promo("gift", 7, None, None)

        result = await promo_service.redeem_promo(TG, "gift", panel, now)

        assert result.paid_until == now + timedelta(days=17)

    @pytest.mark.asyncio
    async def test_not_found(self, fake_db, panel, now):
        await _ready_user(fake_db, panel, now)

        result = await promo_service.redeem_promo(TG, "missing", panel, now)

        assert result.outcome == PromoOutcome.NOT_FOUND

    @pytest.mark.asyncio
    async def test_expired(self, fake_db, panel, now):
        await _ready_user(fake_db, panel, now)
        await fake_db.create_promo("old", 7, None, now - timedelta(minutes=1))

        result = await promo_service.redeem_promo(TG, "old", panel, now)

        assert result.outcome == PromoOutcome.EXPIRED

    @pytest.mark.asyncio
    async def test_exhausted(self, fake_db, panel, now):
        await _ready_user(fake_db, panel, now)
        promo = await fake_db.create_promo("full", 7, 2, None)
        fake_db.tables["promo_codes"][promo["id"]]["used_count"] = 2

        result = await promo_service.redeem_promo(TG, "full", panel, now)

        assert result.outcome == PromoOutcome.EXHAUSTED

    @pytest.mark.asyncio
    async def test_expired_beats_exhausted(self, fake_db, panel, now):
        await _ready_user(fake_db, panel, now)
        promo = await fake_db.create_promo("both", 7, 1, now - timedelta(days=1))
        fake_db.tables["promo_codes"][promo["id"]]["used_count"] = 1

        result = await promo_service.redeem_promo(TG, "both", panel, now)

        assert result.outcome == PromoOutcome.EXPIRED

    @pytest.mark.asyncio
    async def test_already_used_beats_cooldown(self, fake_db, panel, now):
        """Retrying the same code inside the cooldown window reports already_used"""
        await _ready_user(fake_db, panel, now)
        await fake_db.create_promo("gift", 7, None, None)
        await promo_service.redeem_promo(TG, "gift", panel, now)

        result = await promo_service.redeem_promo(TG, "gift", panel, now + timedelta(minutes=5))

        assert result.outcome == PromoOutcome.ALREADY_USED
        assert fake_db.user_of(TG)["last_promo_activated_at"] == now

    @pytest.mark.asyncio
    async def test_cooldown_between_codes(self, fake_db, panel, now):
        await _ready_user(fake_db, panel, now)
        await fake_db.create_promo("one", 7, None, None)
        await fake_db.create_promo("two", 3, None, None)
        await promo_service.redeem_promo(TG, "one", panel, now)

        result = await promo_service.redeem_promo(TG, "two", panel, now + timedelta(minutes=59))

        assert result.outcome == PromoOutcome.COOLDOWN
        assert fake_db.tables["promo_codes"][2]["used_count"] == 0
        assert len(fake_db.tables["promo_code_uses"]) == 1

    @pytest.mark.asyncio
    async def test_cooldown_window_elapsed(self, fake_db, panel, now):
        await _ready_user(fake_db, panel, now)
        await fake_db.create_promo("one", 7, None, None)
        await fake_db.create_promo("two", 3, None, None)
        await promo_service.redeem_promo(TG, "one", panel, now)

        later = now + timedelta(seconds=config.PROMO_COOLDOWN_SECONDS)
        result = await promo_service.redeem_promo(TG, "two", panel, later)

        assert result.applied
        assert result.paid_until == now + timedelta(days=10)

    @pytest.mark.asyncio
    async def test_custom_cooldown(self, fake_db, panel, now):
        await _ready_user(fake_db, panel, now)
        await fake_db.create_promo("one", 7, None, None)
        await fake_db.create_promo("two", 3, None, None)
        await promo_service.redeem_promo(TG, "one", panel, now)

        result = await promo_service.redeem_promo(
            TG, "two", panel, now + timedelta(seconds=30), cooldown_seconds=10
        )

        assert result.applied

    @pytest.mark.asyncio
    async def test_duplicate_use_rolls_back_cooldown(self, fake_db, panel, now, monkeypatch):
        """A use row inserted concurrently: already_used, and the cooldown reservation is undone"""
        user = await _ready_user(fake_db, panel, now)
        promo = await fake_db.create_promo("gift", 7, None, None)

        real_get_use = fake_db.get_promo_use
        reads = []

        async def racing_get_use(promo_id, user_id, conn=None):
            found = await real_get_use(promo_id, user_id, conn)
            if not reads:
                # Another request inserts the use right after our existence check
                await fake_db.insert_promo_use(promo["id"], user["id"], now)
            reads.append(conn)
            return found

        monkeypatch.setattr(fake_db, "get_promo_use", racing_get_use)

        result = await promo_service.redeem_promo(TG, "gift", panel, now)

        assert result.outcome == PromoOutcome.ALREADY_USED
        assert fake_db.user_of(TG)["last_promo_activated_at"] is None
        assert fake_db.tables["promo_codes"][promo["id"]]["used_count"] == 0
        assert fake_db.rollbacks == 1
        # the outcome comes from a second read outside the transaction
        assert len(reads) == 2
        assert reads[1] is None


class TestCreatePromo:
    """Tests for create_promo"""

    @pytest.mark.asyncio
    async def test_code_is_normalized(self, fake_db):
        promo = await promo_service.create_promo("  SPRING ", 14, max_uses=100)

        assert promo["code"] == "spring"
        assert promo["used_count"] == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code,bonus_days,max_uses", [("", 7, None), ("x", 0, None), ("x", 7, 0)])
    async def test_invalid(self, fake_db, code, bonus_days, max_uses):
        with pytest.raises(InvalidPromoError):
            await promo_service.create_promo(code, bonus_days, max_uses)

    @pytest.mark.asyncio
    async def test_duplicate(self, fake_db):
        await promo_service.create_promo("spring", 14)

        with pytest.raises(PromoAlreadyExistsError):
            await promo_service.create_promo("Spring", 7)
