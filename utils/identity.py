"""
Find-or-create the User behind a verified Telegram claim.
Shared by every login path: widget, Mini App, bot sentinel and deep-link confirm.
"""
import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from models import db
from models.user import User
from utils.errors import ApiError

logger = logging.getLogger(__name__)

PROFILE_FIELDS = ('username', 'first_name', 'last_name', 'photo_url')


def _resolve_referrer_id(referral_telegram_id, telegram_id):
    if not referral_telegram_id or str(referral_telegram_id) == str(telegram_id):
        return None
    referrer = User.query.filter_by(telegram_id=str(referral_telegram_id)).first()
    return referrer.id if referrer else None


def _apply_profile(user, claim):
    """Refresh display fields the claim carries; None keeps the stored value."""
    for field in PROFILE_FIELDS:
        value = getattr(claim, field)
        if value is not None:
            setattr(user, field, value)


def resolve_user(claim, referral_telegram_id=None):
    """
    Return (user, is_new_user) for a verified claim and commit.

    Balance, referrer and the first-payment flag are never touched for existing users.
    """
    telegram_id = str(claim.telegram_id)
    user = User.query.filter_by(telegram_id=telegram_id).first()

    if user is None:
        referrer_id = _resolve_referrer_id(referral_telegram_id, telegram_id)
        user = User(
            telegram_id=telegram_id,
            username=claim.username,
            first_name=claim.first_name,
            last_name=claim.last_name,
            photo_url=claim.photo_url,
            referred_by=referrer_id,
        )
        db.session.add(user)
        try:
            db.session.commit()
        except IntegrityError:
            # A concurrent login created the same telegram_id first
            db.session.rollback()
            user = User.query.filter_by(telegram_id=telegram_id).first()
            if user is None:
                logger.error("Failed to create user telegram_id=%s", telegram_id)
                raise ApiError('Failed to create user', 'USER_CREATE_ERROR')
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Failed to create user telegram_id=%s", telegram_id)
            raise ApiError('Failed to create user', 'USER_CREATE_ERROR')
        else:
            if referrer_id:
                logger.info("User registered via referral: telegram_id=%s referrer_id=%s", telegram_id, referrer_id)
            logger.info("New user created: user_id=%s telegram_id=%s", user.id, telegram_id)
            return user, True

    _apply_profile(user, claim)
    db.session.commit()
    logger.info("User logged in: user_id=%s telegram_id=%s", user.id, telegram_id)
    return user, False
