"""
HTTP Server: /health + payment provider webhooks

/health does NOT depend on the database: it only reads database.DB_READY.

Webhooks:
    POST /webhooks/yookassa
    POST /webhooks/cryptobot

Responses:
    401 — missing/invalid X-Webhook-Token
    400 — body is not valid JSON / not an object
    200 {"ok": true} — event handled (including ignored statuses and duplicates)
    500 — processing failed; the provider retries and the retry is safe
"""
import asyncio
import hmac
import logging
from datetime import datetime, timezone
from json import JSONDecodeError
from typing import Any, Callable, Dict, Optional

from aiohttp import web

import config
import database
from app.core.circuit_breaker import get_circuit_breaker
from app.core.metrics import get_metrics
from app.services.payments import service as payment_service
from app.services.payments.exceptions import InvalidWebhookPayloadError
from app.utils.logging_helpers import classify_error, generate_correlation_id, set_correlation_id

logger = logging.getLogger(__name__)

WEBHOOK_TOKEN_HEADER = "X-Webhook-Token"


async def health_handler(request: web.Request) -> web.Response:
    """
    Response format:
        {
            "status": "ok" | "degraded",
            "db_ready": true | false,
            "timestamp": "2024-01-01T12:00:00Z",
            "panel_circuit": {"name": "panel", "state": "closed", ...},
            "metrics": {"counters": {...}, "gauges": {...}, "timers": {...}}
        }

    HTTP 200 in both cases: monitoring distinguishes by "status".
    """
    db_ready = database.DB_READY
    response_data: Dict[str, Any] = {
        "status": "ok" if db_ready else "degraded",
        "db_ready": db_ready,
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "panel_circuit": get_circuit_breaker("panel").get_status(),
        "metrics": get_metrics().get_all_metrics(),
    }
    return web.json_response(response_data, status=200)


def _token_valid(request: web.Request) -> bool:
    expected = config.WEBHOOK_TOKEN
    received = request.headers.get(WEBHOOK_TOKEN_HEADER, "")
    if not expected:
        # Без токена вебхуки не принимаются
        return False
    return hmac.compare_digest(received.encode(), expected.encode())


def make_webhook_handler(provider: str, parser: Callable[[Any], Optional[payment_service.WebhookEvent]]):
    """Build an aiohttp handler that authenticates, parses and forwards one provider's webhooks."""

    async def webhook_handler(request: web.Request) -> web.Response:
        set_correlation_id(generate_correlation_id())

        if not _token_valid(request):
            logger.warning(f"WEBHOOK_UNAUTHORIZED provider={provider} remote={request.remote}")
            return web.json_response({"ok": False, "error": "unauthorized"}, status=401)

        try:
            body = await request.json()
            event = parser(body)
        except (JSONDecodeError, ValueError, InvalidWebhookPayloadError) as e:
            logger.warning(f"WEBHOOK_MALFORMED provider={provider} error={e}")
            return web.json_response({"ok": False, "error": "malformed"}, status=400)

        try:
            result = await payment_service.handle_webhook(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                f"WEBHOOK_PROCESSING_FAILED provider={provider} "
                f"provider_payment_id={event.provider_payment_id if event else None} "
                f"error_kind={classify_error(e).value} error={type(e).__name__}: {e}",
                exc_info=True,
            )
            return web.json_response({"ok": False, "error": "processing_failed"}, status=500)

        logger.info(
            f"WEBHOOK_HANDLED provider={provider} payment_id={result.payment_id} "
            f"handled={result.handled} reason={result.reason}"
        )
        return web.json_response({"ok": True}, status=200)

    return webhook_handler


def create_app() -> web.Application:
    """Создать aiohttp приложение с health endpoint и вебхуками провайдеров"""
    app = web.Application()
    app.router.add_get("/health", health_handler)
    app.router.add_post(
        "/webhooks/yookassa",
        make_webhook_handler(payment_service.PROVIDER_YOOKASSA, payment_service.parse_yookassa_event),
    )
    app.router.add_post(
        "/webhooks/cryptobot",
        make_webhook_handler(payment_service.PROVIDER_CRYPTOBOT, payment_service.parse_cryptobot_event),
    )
    return app


async def start_health_server(host: str = "0.0.0.0", port: int = 8080) -> web.AppRunner:
    """
    Запустить HTTP сервер

    Returns:
        AppRunner для управления сервером (runner.cleanup() при остановке)
    """
    runner = web.AppRunner(create_app())
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info(f"HTTP server started on http://{host}:{port} (/health, /webhooks/*)")
    return runner
