"""
Panel Adapter — account operations over the 3x-ui panel.

Architecture:
    services → PanelAdapter → panel_client.PanelApiClient (HTTP) → 3x-ui

Terminology:
    namespace — inbound id; a namespace is listed as a whole, never per account
    ref       — client uuid inside the inbound
    identity  — stable external identity, client email "tg:<telegram_id>"

Panel versions differ in which endpoints exist. Each operation that has
variants owns an ordered tuple of strategies; the next strategy is tried only
when the panel says the previous one is not supported (HTTP 4xx or
success=false). Timeouts, 5xx and auth failures propagate immediately.
"""

import json
import logging
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import config
from panel_client import (
    PanelApiClient,
    PanelInvalidResponseError,
    PanelNotFoundError,
    PanelRequestError,
    get_panel_client,
)
from app.constants.devices import MIN_DEVICE_LIMIT, clamp_device_limit
from app.utils.date_utils import from_epoch_ms, to_epoch_ms

logger = logging.getLogger(__name__)


def identity_for(telegram_id: int) -> str:
    """Stable external identity of a user's Panel account."""
    return f"tg:{telegram_id}"


# =============================================================================
# Types
# =============================================================================

class _Keep:
    """Marker: leave the Panel field as it is."""

    def __repr__(self) -> str:
        return "KEEP"


KEEP: Any = _Keep()


@dataclass
class AccountState:
    """Snapshot of one Panel client."""
    ref: str
    identity: str
    expires_at: Optional[datetime]
    enabled: bool
    device_limit: Optional[int]
    sub_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)


@dataclass
class AccountPatch:
    """Fields to change; KEEP leaves a field untouched, expires_at=None clears expiry."""
    expires_at: Any = KEEP
    enabled: Any = KEEP
    device_limit: Any = KEEP
    sub_id: Any = KEEP


@dataclass(frozen=True)
class EndpointStrategy:
    name: str
    path: str
    ref_in_body: bool = False

    def render(self, ref: str) -> str:
        return self.path.format(ref=ref)


INBOUNDS_LIST_PATH = "/panel/api/inbounds/list"
INBOUND_GET_PATH = "/panel/api/inbounds/get/{namespace}"
ADD_CLIENT_PATH = "/panel/api/inbounds/addClient"

UPDATE_CLIENT_STRATEGIES: Tuple[EndpointStrategy, ...] = (
    EndpointStrategy("update_by_path", "/panel/api/inbounds/updateClient/{ref}"),
    EndpointStrategy("update_by_body", "/panel/api/inbounds/updateClient"),
)

DELETE_CLIENT_STRATEGIES: Tuple[EndpointStrategy, ...] = (
    EndpointStrategy("del_by_path", "/panel/api/inbounds/delClient/{ref}"),
    EndpointStrategy("delete_by_path", "/panel/api/inbounds/deleteClient/{ref}"),
    EndpointStrategy("del_by_body", "/panel/api/inbounds/delClient", ref_in_body=True),
    EndpointStrategy("delete_by_body", "/panel/api/inbounds/deleteClient", ref_in_body=True),
)


# =============================================================================
# Parsing
# =============================================================================

def parse_clients(inbound: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Raw client dicts from an inbound; settings may be a JSON string or an object."""
    settings = inbound.get("settings")
    if isinstance(settings, str):
        try:
            settings = json.loads(settings) if settings.strip() else {}
        except ValueError as e:
            raise PanelInvalidResponseError(f"Inbound {inbound.get('id')}: settings is not JSON") from e
    if not isinstance(settings, dict):
        return []
    clients = settings.get("clients") or []
    return [c for c in clients if isinstance(c, dict)]


def account_from_client(client: Dict[str, Any]) -> AccountState:
    try:
        raw_limit = int(client.get("limitIp") or 0)
    except (TypeError, ValueError):
        raw_limit = 0
    return AccountState(
        ref=str(client.get("id") or client.get("password") or ""),
        identity=str(client.get("email") or ""),
        expires_at=from_epoch_ms(client.get("expiryTime")),
        enabled=client.get("enable") is not False,
        device_limit=raw_limit if raw_limit > 0 else None,
        sub_id=str(client["subId"]) if client.get("subId") else None,
        raw=dict(client),
    )


# =============================================================================
# Adapter
# =============================================================================

class PanelAdapter:
    """
    The single interface the core uses to reach the Panel.

    Args:
        client: HTTP client
        default_namespace: inbound for newly created accounts
        client_flow: VLESS flow for new clients ("" = unset)
        enforce_device_limit: False sends limitIp=0 (no per-client limit)
    """

    def __init__(
        self,
        client: PanelApiClient,
        default_namespace: int,
        client_flow: str = "",
        enforce_device_limit: bool = True,
    ):
        self.client = client
        self.default_namespace = default_namespace
        self.client_flow = client_flow
        self.enforce_device_limit = enforce_device_limit
        self.inbound_readers: Sequence[Tuple[str, Callable[[int], Awaitable[Dict[str, Any]]]]] = (
            ("get_by_id", self._read_inbound_direct),
            ("scan_list", self._read_inbound_from_list),
        )

    async def _first_supported(self, operation: str, attempts: Sequence[Tuple[str, Callable[[], Awaitable[Any]]]]) -> Any:
        last_error: Optional[PanelRequestError] = None
        for name, attempt in attempts:
            try:
                return await attempt()
            except PanelRequestError as e:
                logger.debug(f"PANEL_STRATEGY_UNSUPPORTED operation={operation} strategy={name} error={e}")
                last_error = e
        raise last_error or PanelRequestError(f"{operation}: no strategies configured")

    # ---------------------------------------------------------------------
    # Inbounds
    # ---------------------------------------------------------------------

    async def _list_inbounds(self) -> List[Dict[str, Any]]:
        obj = await self.client.get(INBOUNDS_LIST_PATH)
        if obj is None:
            return []
        if not isinstance(obj, list):
            raise PanelInvalidResponseError("inbounds/list: expected a list")
        return [i for i in obj if isinstance(i, dict)]

    async def _read_inbound_direct(self, namespace: int) -> Dict[str, Any]:
        obj = await self.client.get(INBOUND_GET_PATH.format(namespace=namespace))
        if not isinstance(obj, dict):
            raise PanelRequestError(f"inbounds/get/{namespace}: empty response")
        return obj

    async def _read_inbound_from_list(self, namespace: int) -> Dict[str, Any]:
        for inbound in await self._list_inbounds():
            if str(inbound.get("id")) == str(namespace):
                return inbound
        raise PanelNotFoundError(f"Inbound {namespace} not found", 404)

    async def _read_inbound(self, namespace: int) -> Dict[str, Any]:
        return await self._first_supported(
            "read_inbound",
            [(name, lambda reader=reader: reader(namespace)) for name, reader in self.inbound_readers],
        )

    async def list_namespaces(self) -> List[int]:
        return [int(i["id"]) for i in await self._list_inbounds() if i.get("id") is not None]

    async def scan_all_accounts(self) -> List[Tuple[int, AccountState]]:
        """Every account in every namespace, from a single list call."""
        result = []
        for inbound in await self._list_inbounds():
            namespace = int(inbound.get("id") or 0)
            result.extend((namespace, account_from_client(c)) for c in parse_clients(inbound))
        return result

    # ---------------------------------------------------------------------
    # Accounts
    # ---------------------------------------------------------------------

    async def list_accounts(self, namespace: int) -> List[AccountState]:
        inbound = await self._read_inbound(namespace)
        return [account_from_client(c) for c in parse_clients(inbound)]

    async def get_account(self, namespace: int, ref: str) -> Optional[AccountState]:
        """None when the account (or its whole namespace) no longer exists."""
        try:
            accounts = await self.list_accounts(namespace)
        except PanelNotFoundError:
            return None
        return next((a for a in accounts if a.ref == ref), None)

    async def find_account_by_identity(self, namespace: int, identity: str) -> Optional[AccountState]:
        try:
            accounts = await self.list_accounts(namespace)
        except PanelNotFoundError:
            return None
        return next((a for a in accounts if a.identity == identity), None)

    def _limit_ip(self, device_limit: Any) -> int:
        if not self.enforce_device_limit:
            return 0
        return clamp_device_limit(device_limit)

    async def create_account(
        self,
        namespace: int,
        identity: str,
        device_limit: int = MIN_DEVICE_LIMIT,
        expires_at: Optional[datetime] = None,
        enabled: bool = True,
    ) -> AccountState:
        """
        Create a client, or adopt the existing one with the same identity.

        Raises:
            PanelInvalidResponseError: panel accepted the client but it cannot be read back
        """
        existing = await self.find_account_by_identity(namespace, identity)
        if existing is not None and existing.ref and existing.sub_id:
            logger.info(f"PANEL_ACCOUNT_ADOPTED namespace={namespace} identity={identity} ref={existing.ref}")
            return existing

        ref = str(uuid.uuid4())
        sub_id = secrets.token_hex(16)
        new_client: Dict[str, Any] = {
            "id": ref,
            "email": identity,
            "enable": enabled,
            "expiryTime": to_epoch_ms(expires_at),
            "subId": sub_id,
            "limitIp": self._limit_ip(device_limit),
        }
        if self.client_flow:
            new_client["flow"] = self.client_flow

        try:
            await self.client.post(
                ADD_CLIENT_PATH,
                json={"id": namespace, "settings": json.dumps({"clients": [new_client]})},
            )
        except PanelRequestError:
            # Concurrent creator won ("duplicate email"): adopt its client
            raced = await self.find_account_by_identity(namespace, identity)
            if raced is None:
                raise
            logger.info(f"PANEL_ACCOUNT_ADOPTED_AFTER_RACE namespace={namespace} identity={identity}")
            return raced

        created = await self.find_account_by_identity(namespace, identity)
        if created is None:
            raise PanelInvalidResponseError(f"Client {identity} created but not found afterwards")
        if not created.sub_id:
            # Some panel versions drop subId on add; enforce it with an update
            created = await self.apply_account_state(
                namespace, created.ref, AccountPatch(sub_id=sub_id, device_limit=device_limit)
            )
        logger.info(f"PANEL_ACCOUNT_CREATED namespace={namespace} identity={identity} ref={created.ref}")
        return created

    async def apply_account_state(self, namespace: int, ref: str, patch: AccountPatch) -> AccountState:
        """
        Update one client. Unknown raw client fields are preserved.

        Raises:
            PanelNotFoundError: client does not exist
        """
        inbound = await self._read_inbound(namespace)
        raw = next((c for c in parse_clients(inbound) if str(c.get("id") or c.get("password")) == ref), None)
        if raw is None:
            raise PanelNotFoundError(f"Client {ref} not found in inbound {namespace}", 404)

        current = account_from_client(raw)
        updated = dict(raw)
        updated["enable"] = current.enabled if patch.enabled is KEEP else bool(patch.enabled)
        updated["expiryTime"] = (
            to_epoch_ms(current.expires_at) if patch.expires_at is KEEP else to_epoch_ms(patch.expires_at)
        )
        if patch.sub_id is not KEEP:
            updated["subId"] = patch.sub_id or ""
        if patch.device_limit is not KEEP:
            updated["limitIp"] = self._limit_ip(patch.device_limit)

        body = {"id": namespace, "settings": json.dumps({"clients": [updated]})}
        await self._first_supported(
            "update_client",
            [
                (s.name, lambda s=s: self.client.post(s.render(ref), json=body))
                for s in UPDATE_CLIENT_STRATEGIES
            ],
        )
        return account_from_client(updated)

    async def disable_account(self, namespace: int, ref: str) -> AccountState:
        return await self.apply_account_state(namespace, ref, AccountPatch(enabled=False))

    async def delete_account(self, namespace: int, ref: str) -> None:
        """
        Remove a client. If every endpoint variant is rejected the last error
        propagates and callers fall back to disable_account().
        """
        await self._first_supported(
            "delete_client",
            [
                (
                    s.name,
                    lambda s=s: self.client.post(
                        s.render(ref),
                        json={"id": namespace, "uuid": ref} if s.ref_in_body else {"id": namespace},
                    ),
                )
                for s in DELETE_CLIENT_STRATEGIES
            ],
        )
        logger.info(f"PANEL_ACCOUNT_DELETED namespace={namespace} ref={ref}")


_panel: Optional[PanelAdapter] = None


def get_panel() -> PanelAdapter:
    """Adapter singleton configured from config."""
    global _panel
    if _panel is None:
        _panel = PanelAdapter(
            get_panel_client(),
            default_namespace=config.PANEL_INBOUND_ID,
            client_flow=config.PANEL_CLIENT_FLOW,
            enforce_device_limit=config.PANEL_ENFORCE_IP_LIMIT,
        )
    return _panel


def set_panel(panel: Optional[PanelAdapter]) -> None:
    """Replace the singleton (startup wiring and tests)."""
    global _panel
    _panel = panel
