"""
Notification Service Layer

Sends user-facing Telegram messages through aiogram. Sends are best-effort:
the caller gets a Result and the failure is logged and counted, but nothing
is raised, so a blocked bot or a Telegram outage never rolls back a payment.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from aiogram import Bot
from aiogram.exceptions import (
    TelegramBadRequest,
    TelegramForbiddenError,
    TelegramNetworkError,
    TelegramRetryAfter,
)

import config
from app.core.result import ErrorKind, Result
from app.core.structured_logger import log_result
from app.utils.date_utils import format_date_ru

logger = logging.getLogger(__name__)

_bot: Optional[Bot] = None


def get_bot() -> Optional[Bot]:
    """Shared Bot instance; None when BOT_TOKEN is not configured."""
    global _bot
    if _bot is None and config.BOT_TOKEN:
        _bot = Bot(token=config.BOT_TOKEN)
    return _bot


def set_bot(bot: Optional[Bot]) -> None:
    global _bot
    _bot = bot


async def send_message(telegram_id: int, text: str, bot: Optional[Bot] = None) -> Result:
    """
    Send a message, classifying every failure instead of raising.

    Returns:
        Result.success(message) or Result.failure(kind, detail)
    """
    bot = bot or get_bot()
    if bot is None:
        result = Result.failure(ErrorKind.PRECONDITION, "bot token not configured")
    else:
        try:
            message = await bot.send_message(telegram_id, text)
            result = Result.success(message)
        except TelegramForbiddenError:
            result = Result.failure(ErrorKind.PRECONDITION, "bot blocked by user")
        except TelegramBadRequest as e:
            result = Result.failure(ErrorKind.PRECONDITION, f"bad request: {e}")
        except (TelegramRetryAfter, TelegramNetworkError, asyncio.TimeoutError) as e:
            result = Result.failure(ErrorKind.TRANSIENT, f"{type(e).__name__}: {e}")
        except Exception as e:
            logger.exception(f"NOTIFICATION_UNEXPECTED_ERROR telegram_id={telegram_id}")
            result = Result.from_exception(e)
    return log_result(logger, component="notifications", operation="send_message", result=result)


def format_payment_applied_text(payment: Dict[str, Any]) -> str:
    if payment.get("type") == "DEVICE_SLOT":
        return (
            "✅ Оплата получена.\n"
            f"Лимит устройств увеличен до {payment.get('target_device_limit')}."
        )
    return (
        "✅ Оплата получена.\n"
        f"Подписка активна до {format_date_ru(payment.get('target_expires_at'))}."
    )


async def notify_payment_applied(telegram_id: int, payment: Dict[str, Any], bot: Optional[Bot] = None) -> Result:
    """Tell the user their payment has been applied."""
    return await send_message(telegram_id, format_payment_applied_text(payment), bot=bot)
