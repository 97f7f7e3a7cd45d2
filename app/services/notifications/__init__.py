"""
Notification Service Package

Best-effort Telegram notifications. Every send returns a Result; a failed
send never changes the caller's control flow.
"""

from app.services.notifications.service import (
    send_message,
    notify_payment_applied,
    format_payment_applied_text,
    get_bot,
    set_bot,
)

__all__ = [
    "send_message",
    "notify_payment_applied",
    "format_payment_applied_text",
    "get_bot",
    "set_bot",
]
