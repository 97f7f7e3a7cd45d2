"""
Admin Service Layer

Bans and user deletion. The local side (blocked_identities, user data) is
authoritative and always committed; the Panel side is best-effort and reported
as a Result, because a banned user must stay banned even while the Panel is down.
The Sweeper re-runs enforce_bans() every tick and disables whatever was missed.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Set

import database
from panel_client import PanelError
from app.core.metrics import get_metrics
from app.core.result import ErrorKind, Result
from app.core.structured_logger import log_result
from app.services.panel import PanelAdapter, get_panel, identity_for
from app.services.admin.exceptions import UserNotFoundError

logger = logging.getLogger(__name__)


# ====================================================================================
# Result Types
# ====================================================================================

@dataclass
class BanResult:
    """Ban outcome: local ban always recorded, Panel cleanup best-effort"""
    telegram_id: int
    panel: Result
    user_deleted: bool


# ====================================================================================
# Panel cleanup
# ====================================================================================

async def _remove_panel_account(telegram_id: int, panel: PanelAdapter) -> Result:
    """
    Delete the user's Panel account; disable it if deletion is rejected.

    Returns:
        Result.success("deleted" | "disabled" | "absent") or a classified failure
    """
    identity = identity_for(telegram_id)
    namespace = panel.default_namespace
    ref = None

    try:
        user = await database.get_user(telegram_id)
        subscription = await database.get_subscription_by_user(user["id"]) if user else None
        if subscription is not None:
            namespace, ref = subscription["panel_namespace"], subscription["account_ref"]
        else:
            account = await panel.find_account_by_identity(namespace, identity)
            ref = account.ref if account else None
        if ref is None:
            return Result.success("absent")

        try:
            await panel.delete_account(namespace, ref)
            return Result.success("deleted")
        except PanelError as e:
            logger.warning(f"PANEL_DELETE_FALLBACK_DISABLE identity={identity} ref={ref} error={e}")
            await panel.disable_account(namespace, ref)
            return Result.success("disabled")
    except Exception as e:
        return Result.from_exception(e)


# ====================================================================================
# Bans
# ====================================================================================

async def ban_user(
    telegram_id: int,
    reason: Optional[str] = None,
    panel: Optional[PanelAdapter] = None,
) -> BanResult:
    """
    Ban a user: record the ban, remove the Panel account, delete local data.

    The ban row survives user deletion, so a returning user is disabled again
    by enforce_bans().
    """
    panel = panel or get_panel()
    await database.add_blocked_identity(telegram_id, reason)
    logger.info(f"USER_BANNED telegram_id={telegram_id} reason={reason}")

    panel_result = log_result(
        logger,
        component="admin",
        operation="ban_panel_cleanup",
        result=await _remove_panel_account(telegram_id, panel),
    )

    user = await database.get_user(telegram_id)
    if user is not None:
        await database.delete_user_data(user["id"])
    return BanResult(telegram_id=telegram_id, panel=panel_result, user_deleted=user is not None)


async def unban_user(telegram_id: int) -> bool:
    """Lift a ban; False if the user was not banned."""
    removed = await database.remove_blocked_identity(telegram_id)
    logger.info(f"USER_UNBANNED telegram_id={telegram_id} removed={removed}")
    return removed


async def delete_user(telegram_id: int, panel: Optional[PanelAdapter] = None) -> Result:
    """
    Delete a user's Panel account (best-effort) and all local data.

    Returns:
        Result of the Panel cleanup

    Raises:
        UserNotFoundError: no such user
    """
    user = await database.get_user(telegram_id)
    if user is None:
        raise UserNotFoundError(f"User {telegram_id} not found")

    panel = panel or get_panel()
    panel_result = log_result(
        logger,
        component="admin",
        operation="delete_panel_account",
        result=await _remove_panel_account(telegram_id, panel),
    )
    await database.delete_user_data(user["id"])
    logger.info(f"USER_DELETED telegram_id={telegram_id} panel_ok={panel_result.ok}")
    return panel_result


async def _banned_identities(page_size: int) -> Set[str]:
    """Every banned identity, read page by page with an id cursor."""
    identities: Set[str] = set()
    after_id = 0
    while True:
        page = await database.list_blocked_identities(after_id, page_size)
        identities.update(identity_for(b["telegram_id"]) for b in page)
        if len(page) < page_size:
            return identities
        after_id = page[-1]["id"]


async def enforce_bans(panel: Optional[PanelAdapter] = None, limit: int = 500) -> Result:
    """
    Disable every enabled Panel account whose identity is banned.
    `limit` is the page size for reading the ban list, not a cap.

    Best-effort: never raises. Result.value is the number of accounts disabled;
    a PARTIAL failure means some accounts could not be disabled this time.
    """
    panel = panel or get_panel()
    try:
        identities = await _banned_identities(max(1, limit))
        if not identities:
            return Result.success(0)
        accounts = await panel.scan_all_accounts()
    except Exception as e:
        return log_result(logger, component="admin", operation="enforce_bans", result=Result.from_exception(e))

    disabled = 0
    failed = 0
    for namespace, account in accounts:
        if not account.enabled or account.identity not in identities:
            continue
        try:
            await panel.disable_account(namespace, account.ref)
            disabled += 1
            logger.info(f"BANNED_ACCOUNT_DISABLED namespace={namespace} identity={account.identity}")
        except Exception as e:
            failed += 1
            logger.warning(
                f"BANNED_ACCOUNT_DISABLE_FAILED namespace={namespace} identity={account.identity} error={e}"
            )

    if disabled:
        get_metrics().increment_counter("bans_enforced_total", disabled)
    if failed:
        result = Result.failure(ErrorKind.PARTIAL, f"{failed} banned accounts not disabled", value=disabled)
    else:
        result = Result.success(disabled)
    return log_result(logger, component="admin", operation="enforce_bans", result=result)
