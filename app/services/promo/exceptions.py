"""
Promo service domain exceptions.

Redemption outcomes (not_found, cooldown, ...) are PromoOutcome values,
not exceptions. These cover admin-side misuse only.
"""


class PromoServiceError(Exception):
    """Base exception for promo service errors"""
    pass


class InvalidPromoError(PromoServiceError):
    """Raised when promo parameters are invalid (empty code, non-positive days/uses)"""
    pass


class PromoAlreadyExistsError(PromoServiceError):
    """Raised when a promo with the same normalized code already exists"""
    pass
