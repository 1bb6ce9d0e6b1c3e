"""
Promo code eligibility and discount arithmetic.

A code is usable while it is active, inside its validity window and below its
use limit. Uses are counted when the discounted payment completes.
"""
import logging
from datetime import datetime

from sqlalchemy import func

from models.promo_code import PromoCode, DISCOUNT_FIXED, DISCOUNT_PERCENTAGE
from utils.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


def find_usable_promo(code, now=None):
    """
    Look a code up case-insensitively and check it can be applied right now.

    Raises:
        NotFoundError: PROMO_NOT_FOUND
        ValidationError: PROMO_INACTIVE, PROMO_EXPIRED, PROMO_NOT_STARTED or PROMO_LIMIT_REACHED
    """
    now = now or datetime.utcnow()
    promo = PromoCode.query.filter(func.upper(PromoCode.code) == code.upper()).first()
    if promo is None:
        logger.debug("Promo code not found: %s", code)
        raise NotFoundError('Promo code not found', 'PROMO_NOT_FOUND')

    if not promo.is_active:
        logger.debug("Promo code inactive: %s", code)
        raise ValidationError('Promo code is inactive', 'PROMO_INACTIVE')
    if promo.valid_until is not None and promo.valid_until < now:
        logger.debug("Promo code expired: %s valid_until=%s", code, promo.valid_until.isoformat())
        raise ValidationError('Promo code expired', 'PROMO_EXPIRED')
    if promo.valid_from is not None and promo.valid_from > now:
        logger.debug("Promo code not yet valid: %s valid_from=%s", code, promo.valid_from.isoformat())
        raise ValidationError('Promo code not yet valid', 'PROMO_NOT_STARTED')
    if promo.is_exhausted:
        logger.debug("Promo code usage limit reached: %s max_uses=%s", code, promo.max_uses)
        raise ValidationError('Promo code usage limit reached', 'PROMO_LIMIT_REACHED')
    return promo


def apply_discount(amount, promo):
    """Discounted amount in minor units, never below zero."""
    if promo.discount_type == DISCOUNT_PERCENTAGE:
        percent = min(max(promo.discount_value, 0), 100)
        return amount * (100 - percent) // 100
    if promo.discount_type == DISCOUNT_FIXED:
        return max(0, amount - promo.discount_value)
    logger.warning("Unknown discount type %r on promo code %s", promo.discount_type, promo.code)
    return amount


def record_promo_use(promo_code_id):
    """Count one use inside the caller's transaction."""
    PromoCode.query.filter_by(id=promo_code_id).update(
        {PromoCode.current_uses: PromoCode.current_uses + 1}, synchronize_session=False
    )
