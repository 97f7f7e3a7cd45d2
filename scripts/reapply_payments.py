#!/usr/bin/env python3
"""
Повторное применение оплаченных, но не применённых платежей.

Платёж остаётся в состоянии SUCCEEDED без applied_at, если панель была недоступна
или процесс упал между оплатой и применением. Повторный запуск безопасен:
используется ранее зафиксированный target (дни не начисляются дважды).

Использование:
    python -m scripts.reapply_payments [limit]
"""
import asyncio
import logging
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

logger = logging.getLogger(__name__)


async def reapply_payments(limit: int = 100) -> dict:
    """
    Returns:
        {"scanned", "applied", "skipped", "failed"}
    """
    import database
    from app.services.payments import reapply_unapplied_payments

    if not database.DB_READY:
        logger.error("Database not ready")
        return {"scanned": 0, "applied": 0, "skipped": 0, "failed": 0}

    stats = await reapply_unapplied_payments(limit=limit)
    logger.info(
        f"reapply_payments: done scanned={stats['scanned']} applied={stats['applied']} "
        f"skipped={stats['skipped']} failed={stats['failed']}"
    )
    return stats


async def main() -> None:
    import database
    from app.core.logging_config import setup_logging
    from panel_client import close_panel_client

    setup_logging()
    limit = int(sys.argv[1]) if len(sys.argv) > 1 else 100
    await database.init_db()
    try:
        await reapply_payments(limit)
    finally:
        await close_panel_client()
        await database.close_pool()


if __name__ == "__main__":
    asyncio.run(main())
