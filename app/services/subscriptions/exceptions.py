"""
Subscription service domain exceptions.
"""


class SubscriptionServiceError(Exception):
    """Base exception for subscription service errors"""
    pass


class SubscriptionNotFoundError(SubscriptionServiceError):
    """Raised when the user has no subscription row and one must not be created"""
    pass


class DeviceLimitReachedError(SubscriptionServiceError):
    """Raised when the device limit is already at the maximum"""
    pass


class SubscriptionCreationError(SubscriptionServiceError):
    """Raised when the subscription row cannot be created or re-read"""
    pass


class FloorContentionError(SubscriptionServiceError):
    """Raised when the paid-until floor keeps moving under concurrent writers"""
    pass


class UserBlockedError(SubscriptionServiceError):
    """Raised when a banned user starts an interaction"""

    def __init__(self, telegram_id: int):
        self.telegram_id = telegram_id
        super().__init__(f"User {telegram_id} is blocked")
