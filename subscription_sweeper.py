"""
Subscription Sweeper — periodic reconciliation of every subscription with the Panel

Each tick:
1. Pages candidates by id (cursor, SWEEP_BATCH_SIZE per page, at most SWEEP_MAX_BATCHES pages)
2. Lists each distinct namespace of a page ONCE (bounded concurrency), so a page of
   500 subscriptions costs a handful of Panel reads instead of 500
3. Reconciles every subscription against the fetched account (bounded concurrency);
   an account missing from its namespace falls back to a full reconcile (desync repair)
4. Enforces bans (best-effort, never aborts the tick)

Safety:
- Single-flight: an overlapping tick is dropped, not queued
- Hard timeout per tick
- One subscription's failure is logged and skipped; its local snapshot stays as is
- Circuit breaker "panel": while open, ticks are skipped entirely
"""
import asyncio
import logging
import time
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional

import config
import database
from panel_client import PanelError, PanelNotFoundError
from app.core.circuit_breaker import get_circuit_breaker
from app.core.metrics import get_metrics
from app.services.admin import service as admin_service
from app.services.panel import AccountState, PanelAdapter, get_panel
from app.services.subscriptions import service as subscription_service
from app.utils.date_utils import utcnow
from app.utils.logging_helpers import (
    classify_error,
    log_worker_iteration_end,
    log_worker_iteration_start,
)

logger = logging.getLogger(__name__)

WORKER_NAME = "subscription_sweeper"
_sweep_lock = asyncio.Lock()


@dataclass
class SweepStats:
    batches: int = 0
    scanned: int = 0
    updated: int = 0
    failed: int = 0
    bans_disabled: int = 0
    skipped: bool = False


async def _fetch_namespaces(
    namespaces: List[int],
    panel: PanelAdapter,
) -> Dict[int, Optional[Dict[str, AccountState]]]:
    """
    {namespace: {ref: account}}; None for a namespace whose listing failed.
    A namespace the Panel no longer has maps to {} (every account in it is missing).
    """
    breaker = get_circuit_breaker("panel")
    semaphore = asyncio.Semaphore(config.SWEEP_NAMESPACE_CONCURRENCY)

    async def _fetch(namespace: int):
        async with semaphore:
            try:
                accounts = await panel.list_accounts(namespace)
                breaker.record_success()
                return namespace, {a.ref: a for a in accounts}
            except PanelNotFoundError:
                logger.warning(f"SWEEP_NAMESPACE_MISSING namespace={namespace}")
                return namespace, {}
            except PanelError as e:
                breaker.record_failure()
                logger.warning(f"SWEEP_NAMESPACE_FETCH_FAILED namespace={namespace} error={e}")
                return namespace, None

    return dict(await asyncio.gather(*(_fetch(ns) for ns in namespaces)))


async def _sweep_batch(
    batch: List[Dict[str, Any]],
    panel: PanelAdapter,
    now: datetime,
    stats: SweepStats,
) -> None:
    namespaces = sorted({s["panel_namespace"] for s in batch})
    listings = await _fetch_namespaces(namespaces, panel)
    semaphore = asyncio.Semaphore(config.SWEEP_SUBSCRIPTION_CONCURRENCY)

    async def _reconcile_one(subscription: Dict[str, Any]) -> None:
        listing = listings.get(subscription["panel_namespace"])
        if listing is None:
            stats.failed += 1
            return
        async with semaphore:
            try:
                account = listing.get(subscription["account_ref"])
                if account is None:
                    await subscription_service.reconcile(subscription["telegram_id"], panel, now)
                else:
                    await subscription_service.reconcile_with_account(subscription, account, panel, now)
                stats.updated += 1
            except Exception as e:
                stats.failed += 1
                logger.warning(
                    f"SWEEP_SUBSCRIPTION_FAILED subscription_id={subscription['id']} "
                    f"error_kind={classify_error(e).value} error={type(e).__name__}: {e}"
                )

    await asyncio.gather(*(_reconcile_one(s) for s in batch))


async def run_sweep_tick(panel: Optional[PanelAdapter] = None, now: Optional[datetime] = None) -> SweepStats:
    """One full pass over candidate subscriptions plus ban enforcement."""
    panel = panel or get_panel()
    now = now or utcnow()
    stats = SweepStats()

    if get_circuit_breaker("panel").should_skip():
        stats.skipped = True
        return stats

    cursor = 0
    while stats.batches < config.SWEEP_MAX_BATCHES:
        batch = await database.list_sweep_candidates(cursor, config.SWEEP_BATCH_SIZE, now)
        if not batch:
            break
        stats.batches += 1
        stats.scanned += len(batch)
        await _sweep_batch(batch, panel, now, stats)
        cursor = batch[-1]["id"]
        if len(batch) < config.SWEEP_BATCH_SIZE:
            break

    bans = await admin_service.enforce_bans(panel, limit=config.BAN_ENFORCEMENT_BATCH)
    stats.bans_disabled = bans.value or 0

    metrics = get_metrics()
    metrics.increment_counter("sweep_ticks_total")
    metrics.increment_counter("sweep_subscriptions_total", stats.scanned)
    if stats.failed:
        metrics.increment_counter("sweep_failures_total", stats.failed)
    return stats


async def sweep_once(panel: Optional[PanelAdapter] = None, now: Optional[datetime] = None) -> Optional[SweepStats]:
    """
    Single-flight wrapper with a hard timeout.

    Returns:
        SweepStats, or None when a tick is already running (this one is dropped)

    Raises:
        asyncio.TimeoutError: tick exceeded SWEEP_TICK_TIMEOUT_SECONDS
    """
    if _sweep_lock.locked():
        logger.info("SWEEP_TICK_DROPPED previous tick still running")
        return None
    async with _sweep_lock:
        return await asyncio.wait_for(run_sweep_tick(panel, now), timeout=config.SWEEP_TICK_TIMEOUT_SECONDS)


async def subscription_sweeper_task():
    """Background task: immediate first tick, then every WORKER_INTERVAL_SECONDS."""
    logger.info(
        f"Subscription sweeper started (interval={config.WORKER_INTERVAL_SECONDS}s, "
        f"batch={config.SWEEP_BATCH_SIZE}, max_batches={config.SWEEP_MAX_BATCHES}, "
        f"timeout={config.SWEEP_TICK_TIMEOUT_SECONDS}s)"
    )
    iteration = 0
    while True:
        iteration += 1
        log_worker_iteration_start(WORKER_NAME, iteration_number=iteration)
        start = time.monotonic()
        try:
            stats = await sweep_once()
            duration_ms = (time.monotonic() - start) * 1000
            if stats is None or stats.skipped:
                log_worker_iteration_end(WORKER_NAME, "skipped", duration_ms=duration_ms)
            else:
                log_worker_iteration_end(
                    WORKER_NAME,
                    "degraded" if stats.failed else "success",
                    items_processed=stats.scanned,
                    duration_ms=duration_ms,
                    **asdict(stats),
                )
        except asyncio.CancelledError:
            logger.info("Subscription sweeper task cancelled")
            raise
        except asyncio.TimeoutError:
            log_worker_iteration_end(
                WORKER_NAME,
                "failed",
                error_type="timeout",
                duration_ms=(time.monotonic() - start) * 1000,
            )
        except Exception as e:
            logger.error(f"subscription_sweeper_task: {e}", exc_info=True)
            log_worker_iteration_end(
                WORKER_NAME,
                "failed",
                error_type=classify_error(e).value,
                duration_ms=(time.monotonic() - start) * 1000,
            )
        await asyncio.sleep(config.WORKER_INTERVAL_SECONDS)
