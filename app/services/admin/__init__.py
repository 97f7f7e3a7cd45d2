"""
Admin Service Layer

This package provides bans, ban enforcement and user deletion.
"""

from app.services.admin.service import (
    BanResult,
    ban_user,
    unban_user,
    delete_user,
    enforce_bans,
)

from app.services.admin.exceptions import (
    AdminServiceError,
    UserNotFoundError,
)

__all__ = [
    "BanResult",
    "ban_user",
    "unban_user",
    "delete_user",
    "enforce_bans",
    "AdminServiceError",
    "UserNotFoundError",
]
