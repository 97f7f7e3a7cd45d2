"""
Admin service domain exceptions.
"""


class AdminServiceError(Exception):
    """Base exception for admin service errors"""
    pass


class UserNotFoundError(AdminServiceError):
    """Raised when user is not found"""
    pass
