"""
Promo Service Layer

This package redeems promo codes transactionally and manages promo creation.
"""

from app.services.promo.service import (
    PromoOutcome,
    PromoResult,
    normalize_code,
    accept_terms,
    redeem_promo,
    create_promo,
)

from app.services.promo.exceptions import (
    PromoServiceError,
    InvalidPromoError,
    PromoAlreadyExistsError,
)

__all__ = [
    "PromoOutcome",
    "PromoResult",
    "normalize_code",
    "accept_terms",
    "redeem_promo",
    "create_promo",
    "PromoServiceError",
    "InvalidPromoError",
    "PromoAlreadyExistsError",
]
