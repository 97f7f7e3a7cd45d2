"""
Pytest configuration and shared fixtures for service layer tests.

FakeDatabase implements the subset of `database` the services call, with the
same conditional-update semantics (database.Predicate.matches / Increment).
Every call yields to the event loop once, so concurrent tests really interleave.
FakePanel stands in for PanelAdapter.
"""
import asyncio
import copy
import itertools
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest

from database import DuplicateRowError, Increment, as_predicate
from panel_client import PanelConnectionError, PanelNotFoundError
from app.constants.devices import clamp_device_limit
from app.core.circuit_breaker import reset_circuit_breakers
from app.core.metrics import reset_metrics
from app.core.result import Result
from app.services.panel import KEEP, AccountPatch, AccountState

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


# ====================================================================================
# Fake database
# ====================================================================================

class _Transaction:
    """Connection token handed to with_transaction callbacks; collects undo steps."""

    def __init__(self):
        self.undo: List[Any] = []


class FakeDatabase:
    DuplicateRowError = DuplicateRowError

    def __init__(self):
        self.tables: Dict[str, Dict[int, Dict[str, Any]]] = {
            "users": {},
            "subscriptions": {},
            "payments": {},
            "promo_codes": {},
            "promo_code_uses": {},
            "blocked_identities": {},
        }
        self._ids = {name: itertools.count(1) for name in self.tables}
        self._tx_lock = asyncio.Lock()
        self.transactions = 0
        self.rollbacks = 0

    # ---------------------------------------------------------------------
    # helpers
    # ---------------------------------------------------------------------

    def _insert(self, table: str, row: Dict[str, Any], conn: Any = None) -> Dict[str, Any]:
        row_id = next(self._ids[table])
        stored = {"id": row_id, **row}
        self.tables[table][row_id] = stored
        if isinstance(conn, _Transaction):
            conn.undo.append(lambda: self.tables[table].pop(row_id, None))
        return dict(stored)

    def _find(self, table: str, **conditions) -> Optional[Dict[str, Any]]:
        for row in self.tables[table].values():
            if all(row.get(k) == v for k, v in conditions.items()):
                return row
        return None

    def _with_telegram_id(self, subscription: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if subscription is None:
            return None
        user = self.tables["users"][subscription["user_id"]]
        return {**subscription, "telegram_id": user["telegram_id"]}

    # ---------------------------------------------------------------------
    # primitives
    # ---------------------------------------------------------------------

    async def update_where(self, table, row_id, expected, patch, conn=None) -> int:
        await asyncio.sleep(0)
        row = self.tables[table].get(row_id)
        if row is None:
            return 0
        for column, condition in expected.items():
            if not as_predicate(condition).matches(row.get(column)):
                return 0
        before = dict(row)
        for column, value in patch.items():
            row[column] = row.get(column, 0) + value.amount if isinstance(value, Increment) else value
        if table == "promo_codes" and row["max_uses"] is not None and row["used_count"] > row["max_uses"]:
            row.clear()
            row.update(before)
            raise AssertionError("promo_codes_usage_check violated")
        if isinstance(conn, _Transaction):
            conn.undo.append(lambda: (row.clear(), row.update(before)))
        return 1

    async def with_transaction(self, fn, isolation="serializable", retries=3):
        async with self._tx_lock:
            self.transactions += 1
            tx = _Transaction()
            try:
                return await fn(tx)
            except BaseException:
                self.rollbacks += 1
                for step in reversed(tx.undo):
                    step()
                raise

    # ---------------------------------------------------------------------
    # users
    # ---------------------------------------------------------------------

    async def get_user(self, telegram_id, conn=None):
        await asyncio.sleep(0)
        row = self._find("users", telegram_id=telegram_id)
        return dict(row) if row else None

    async def get_user_by_id(self, user_id, conn=None):
        await asyncio.sleep(0)
        row = self.tables["users"].get(user_id)
        return dict(row) if row else None

    async def get_or_create_user(self, telegram_id, username=None):
        await asyncio.sleep(0)
        row = self._find("users", telegram_id=telegram_id)
        if row is not None:
            return dict(row)
        return self._insert("users", {
            "telegram_id": telegram_id,
            "username": username,
            "offer_accepted_at": None,
            "offer_version": None,
            "last_promo_activated_at": None,
        })

    async def accept_offer(self, telegram_id, version, now):
        row = self._find("users", telegram_id=telegram_id)
        if row is None:
            return False
        row.update(offer_accepted_at=now, offer_version=version)
        return True

    async def delete_user_data(self, user_id):
        for table in ("promo_code_uses", "payments", "subscriptions"):
            for row_id in [i for i, r in self.tables[table].items() if r["user_id"] == user_id]:
                del self.tables[table][row_id]
        self.tables["users"].pop(user_id, None)

    # ---------------------------------------------------------------------
    # subscriptions
    # ---------------------------------------------------------------------

    async def get_subscription_by_user(self, user_id, conn=None):
        await asyncio.sleep(0)
        row = self._find("subscriptions", user_id=user_id)
        return self._with_telegram_id(dict(row)) if row else None

    async def insert_subscription(
        self, user_id, panel_namespace, account_ref, panel_sub_id, device_limit, enabled, expires_at, status, now
    ):
        await asyncio.sleep(0)
        if self._find("subscriptions", user_id=user_id) is not None:
            raise DuplicateRowError("subscriptions", "subscriptions_user_id_key")
        row = self._insert("subscriptions", {
            "user_id": user_id,
            "panel_namespace": panel_namespace,
            "account_ref": account_ref,
            "panel_sub_id": panel_sub_id,
            "device_limit": device_limit,
            "enabled": enabled,
            "expires_at": expires_at,
            "paid_until": None,
            "status": status,
            "last_synced_at": now,
        })
        return self._with_telegram_id(row)

    async def update_subscription(self, subscription_id, patch, conn=None):
        return await self.update_where("subscriptions", subscription_id, {}, patch, conn=conn)

    async def list_sweep_candidates(self, after_id, limit, now):
        await asyncio.sleep(0)
        rows = [
            self._with_telegram_id(dict(r))
            for i, r in sorted(self.tables["subscriptions"].items())
            if i > after_id and (
                r["status"] == "ACTIVE"
                or r["enabled"]
                or r["expires_at"] is None
                or r["expires_at"] <= now
                or (r["paid_until"] is not None and r["paid_until"] > now)
            )
        ]
        return rows[:limit]

    # ---------------------------------------------------------------------
    # payments
    # ---------------------------------------------------------------------

    async def create_payment(
        self, user_id, provider, payment_type, amount, currency,
        plan_days=None, device_slots=None, provider_payment_id=None,
    ):
        await asyncio.sleep(0)
        if provider_payment_id is not None and self._find(
            "payments", provider=provider, provider_payment_id=provider_payment_id
        ):
            raise DuplicateRowError("payments", "payments_provider_unique")
        return self._insert("payments", {
            "user_id": user_id,
            "provider": provider,
            "provider_payment_id": provider_payment_id,
            "type": payment_type,
            "plan_days": plan_days,
            "device_slots": device_slots,
            "amount": amount,
            "currency": currency,
            "status": "PENDING",
            "paid_at": None,
            "target_expires_at": None,
            "target_device_limit": None,
            "processing_at": None,
            "applied_at": None,
            "notification_sent": False,
            "raw_webhook": None,
        })

    async def get_payment(self, payment_id, conn=None):
        await asyncio.sleep(0)
        row = self.tables["payments"].get(payment_id)
        return dict(row) if row else None

    async def get_payment_by_provider_id(self, provider, provider_payment_id):
        await asyncio.sleep(0)
        row = self._find("payments", provider=provider, provider_payment_id=provider_payment_id)
        return dict(row) if row else None

    async def list_unapplied_payments(self, limit=100):
        rows = [
            dict(r) for _, r in sorted(self.tables["payments"].items())
            if r["status"] == "SUCCEEDED" and r["applied_at"] is None and r["processing_at"] is None
        ]
        return rows[:limit]

    # ---------------------------------------------------------------------
    # promo codes
    # ---------------------------------------------------------------------

    async def get_promo_by_code(self, code, conn=None):
        await asyncio.sleep(0)
        row = self._find("promo_codes", code=code)
        return dict(row) if row else None

    async def create_promo(self, code, bonus_days, max_uses, expires_at):
        if self._find("promo_codes", code=code) is not None:
            raise DuplicateRowError("promo_codes", "promo_codes_code_key")
        return self._insert("promo_codes", {
            "code": code,
            "bonus_days": bonus_days,
            "max_uses": max_uses,
            "used_count": 0,
            "expires_at": expires_at,
        })

    async def get_promo_use(self, promo_id, user_id, conn=None):
        await asyncio.sleep(0)
        row = self._find("promo_code_uses", promo_id=promo_id, user_id=user_id)
        return dict(row) if row else None

    async def insert_promo_use(self, promo_id, user_id, now, conn=None):
        await asyncio.sleep(0)
        if self._find("promo_code_uses", promo_id=promo_id, user_id=user_id) is not None:
            raise DuplicateRowError("promo_code_uses", "promo_code_uses_unique")
        self._insert("promo_code_uses", {"promo_id": promo_id, "user_id": user_id, "activated_at": now}, conn)

    # ---------------------------------------------------------------------
    # blocked identities
    # ---------------------------------------------------------------------

    async def list_blocked_identities(self, after_id=0, limit=500):
        await asyncio.sleep(0)
        rows = [dict(r) for i, r in sorted(self.tables["blocked_identities"].items()) if i > after_id]
        return rows[:limit]

    async def is_blocked(self, telegram_id):
        return self._find("blocked_identities", telegram_id=telegram_id) is not None

    async def add_blocked_identity(self, telegram_id, reason=None):
        row = self._find("blocked_identities", telegram_id=telegram_id)
        if row is not None:
            row["reason"] = reason
        else:
            self._insert("blocked_identities", {"telegram_id": telegram_id, "reason": reason})

    async def remove_blocked_identity(self, telegram_id):
        row = self._find("blocked_identities", telegram_id=telegram_id)
        if row is None:
            return False
        del self.tables["blocked_identities"][row["id"]]
        return True

    # ---------------------------------------------------------------------
    # test helpers
    # ---------------------------------------------------------------------

    def subscription_of(self, telegram_id: int) -> Optional[Dict[str, Any]]:
        user = self._find("users", telegram_id=telegram_id)
        if user is None:
            return None
        return self._find("subscriptions", user_id=user["id"])

    def user_of(self, telegram_id: int) -> Optional[Dict[str, Any]]:
        return self._find("users", telegram_id=telegram_id)


# ====================================================================================
# Fake panel
# ====================================================================================

class FakePanel:
    """In-memory PanelAdapter: {namespace: {ref: AccountState}}"""

    def __init__(self, default_namespace: int = 1, enforce_device_limit: bool = True):
        self.default_namespace = default_namespace
        self.enforce_device_limit = enforce_device_limit
        self.namespaces: Dict[int, Dict[str, AccountState]] = {default_namespace: {}}
        self.down = False
        self.fail_refs: set = set()
        self.calls: List[tuple] = []

    def _check(self, operation: str, *args) -> None:
        self.calls.append((operation, *args))
        if self.down:
            raise PanelConnectionError("panel is down")

    def call_count(self, operation: str) -> int:
        return sum(1 for c in self.calls if c[0] == operation)

    def add_account(
        self,
        identity: str,
        namespace: Optional[int] = None,
        expires_at: Optional[datetime] = None,
        enabled: bool = True,
        device_limit: Optional[int] = 1,
    ) -> AccountState:
        namespace = self.default_namespace if namespace is None else namespace
        account = AccountState(
            ref=str(uuid.uuid4()),
            identity=identity,
            expires_at=expires_at,
            enabled=enabled,
            device_limit=device_limit,
            sub_id=uuid.uuid4().hex,
        )
        self.namespaces.setdefault(namespace, {})[account.ref] = account
        return account

    def account(self, identity: str) -> Optional[AccountState]:
        for accounts in self.namespaces.values():
            for account in accounts.values():
                if account.identity == identity:
                    return account
        return None

    async def list_namespaces(self) -> List[int]:
        self._check("list_namespaces")
        return sorted(self.namespaces)

    async def scan_all_accounts(self):
        self._check("scan_all_accounts")
        return [(ns, copy.copy(a)) for ns, accounts in self.namespaces.items() for a in accounts.values()]

    async def list_accounts(self, namespace: int) -> List[AccountState]:
        await asyncio.sleep(0)
        self._check("list_accounts", namespace)
        if namespace not in self.namespaces:
            raise PanelNotFoundError(f"Inbound {namespace} not found", 404)
        return [copy.copy(a) for a in self.namespaces[namespace].values()]

    async def get_account(self, namespace: int, ref: str) -> Optional[AccountState]:
        self._check("get_account", namespace, ref)
        account = self.namespaces.get(namespace, {}).get(ref)
        return copy.copy(account) if account else None

    async def find_account_by_identity(self, namespace: int, identity: str) -> Optional[AccountState]:
        self._check("find_account_by_identity", namespace, identity)
        for account in self.namespaces.get(namespace, {}).values():
            if account.identity == identity:
                return copy.copy(account)
        return None

    async def create_account(self, namespace, identity, device_limit=1, expires_at=None, enabled=True):
        await asyncio.sleep(0)
        self._check("create_account", namespace, identity)
        existing = await self.find_account_by_identity(namespace, identity)
        if existing is not None:
            return existing
        return copy.copy(self.add_account(identity, namespace, expires_at, enabled, device_limit))

    async def apply_account_state(self, namespace: int, ref: str, patch: AccountPatch) -> AccountState:
        await asyncio.sleep(0)
        self._check("apply_account_state", namespace, ref, patch)
        if ref in self.fail_refs:
            raise PanelConnectionError(f"update of {ref} failed")
        account = self.namespaces.get(namespace, {}).get(ref)
        if account is None:
            raise PanelNotFoundError(f"Client {ref} not found", 404)
        if patch.expires_at is not KEEP:
            account.expires_at = patch.expires_at
        if patch.enabled is not KEEP:
            account.enabled = bool(patch.enabled)
        if patch.device_limit is not KEEP:
            account.device_limit = clamp_device_limit(patch.device_limit) if self.enforce_device_limit else None
        if patch.sub_id is not KEEP:
            account.sub_id = patch.sub_id
        return copy.copy(account)

    async def disable_account(self, namespace: int, ref: str) -> AccountState:
        return await self.apply_account_state(namespace, ref, AccountPatch(enabled=False))

    async def delete_account(self, namespace: int, ref: str) -> None:
        self._check("delete_account", namespace, ref)
        if ref not in self.namespaces.get(namespace, {}):
            raise PanelNotFoundError(f"Client {ref} not found", 404)
        del self.namespaces[namespace][ref]


# ====================================================================================
# Fixtures
# ====================================================================================

_DATABASE_USERS = (
    "app.services.subscriptions.service",
    "app.services.payments.service",
    "app.services.promo.service",
    "app.services.admin.service",
    "subscription_sweeper",
)


@pytest.fixture(autouse=True)
def _reset_process_state():
    reset_metrics()
    reset_circuit_breakers()
    yield
    reset_metrics()
    reset_circuit_breakers()


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def fake_db(monkeypatch):
    """FakeDatabase wired into every service module that imports `database`."""
    import importlib

    db = FakeDatabase()
    for module_name in _DATABASE_USERS:
        monkeypatch.setattr(importlib.import_module(module_name), "database", db)
    return db


@pytest.fixture
def panel():
    return FakePanel()


class NotificationRecorder:
    def __init__(self):
        self.sent: List[tuple] = []

    async def __call__(self, telegram_id, payment, bot=None):
        self.sent.append((telegram_id, payment["id"]))
        return Result.success()


@pytest.fixture
def notifications(monkeypatch):
    """Captures payment notifications instead of calling Telegram."""
    from app.services.notifications import service as notification_service

    recorder = NotificationRecorder()
    monkeypatch.setattr(notification_service, "notify_payment_applied", recorder)
    return recorder


