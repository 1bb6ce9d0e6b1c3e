"""
Deep-link login sessions: create -> confirm (bot) -> poll (frontend).

The token is the only capability the polling client holds. State changes go through
conditional UPDATEs so that a session can be approved once and consumed once.
"""
import logging
import secrets
from datetime import datetime, timedelta

from models import db
from models.login_session import LoginSession, STATUS_APPROVED, STATUS_EXPIRED, STATUS_PENDING
from models.user import User
from utils.errors import NotFoundError, ValidationError
from utils.identity import resolve_user
from utils.tokens import get_token_service, token_pair_response

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32
DEFAULT_TTL_SECONDS = 5 * 60
CLEANUP_MAX_AGE = timedelta(hours=1)


def generate_login_token() -> str:
    return secrets.token_hex(TOKEN_BYTES)


def bot_deep_link(bot_username, token):
    return f"https://t.me/{bot_username}?start=login_{token}"


def create_login_session(bot_username, ttl_seconds=DEFAULT_TTL_SECONDS, now=None):
    now = now or datetime.utcnow()
    token = generate_login_token()
    expires_at = now + timedelta(seconds=ttl_seconds)
    db.session.add(LoginSession(token=token, status=STATUS_PENDING, expires_at=expires_at, created_at=now))
    db.session.commit()
    logger.info("Login token created, expires_at=%s", expires_at.isoformat())
    return {
        'token': token,
        'botDeepLinkUrl': bot_deep_link(bot_username, token),
        'expiresAt': expires_at.isoformat() + 'Z',
    }


def _mark_expired(session_id):
    LoginSession.query.filter_by(id=session_id, status=STATUS_PENDING).update(
        {'status': STATUS_EXPIRED}, synchronize_session=False
    )
    db.session.commit()


def confirm_login_session(token, claim, now=None):
    """Approve a pending session for the identity the companion bot vouches for."""
    session = LoginSession.query.filter_by(token=token, status=STATUS_PENDING).first()
    if session is None:
        logger.warning("Login session not found or already used")
        raise NotFoundError('Login session not found or already used', 'SESSION_NOT_FOUND')

    if session.is_expired(now):
        _mark_expired(session.id)
        logger.warning("Login session expired before confirmation, session_id=%s", session.id)
        raise ValidationError('Login session expired', 'SESSION_EXPIRED')

    session_id = session.id
    user, _ = resolve_user(claim)

    approved = LoginSession.query.filter_by(id=session_id, status=STATUS_PENDING).update(
        {'status': STATUS_APPROVED, 'telegram_id': str(claim.telegram_id), 'user_id': user.id},
        synchronize_session=False,
    )
    db.session.commit()
    if not approved:
        logger.warning("Login session %s was confirmed concurrently", session_id)
        raise NotFoundError('Login session not found or already used', 'SESSION_NOT_FOUND')

    logger.info("Login session approved, session_id=%s user_id=%s", session_id, user.id)
    return user


def poll_login_session(token, now=None):
    """Return (body, http_status) for the polling client."""
    now = now or datetime.utcnow()
    session = LoginSession.query.filter_by(token=token).first()
    if session is None or session.consumed_at is not None:
        return {'status': 'not_found', 'message': 'Login session not found'}, 404

    # Approved sessions also stop handing out tokens once past expires_at
    if session.status == STATUS_EXPIRED or session.is_expired(now):
        if session.status == STATUS_PENDING:
            _mark_expired(session.id)
        return {'status': 'expired', 'message': 'Login session expired'}, 200

    if session.status == STATUS_PENDING:
        return {'status': 'pending', 'message': 'Waiting for confirmation in Telegram'}, 200

    user = db.session.get(User, session.user_id) if session.user_id else None
    if user is None:
        logger.error("Approved login session %s has no user", session.id)
        return {'status': 'not_found', 'message': 'Login session not found'}, 404

    consumed = LoginSession.query.filter_by(id=session.id, consumed_at=None).update(
        {'consumed_at': now}, synchronize_session=False
    )
    db.session.commit()
    if not consumed:
        return {'status': 'not_found', 'message': 'Login session not found'}, 404

    pair = get_token_service().issue_pair(user.id, user.telegram_id)
    logger.info("Login session %s approved and consumed, user_id=%s", session.id, user.id)
    body = {'status': STATUS_APPROVED, 'message': 'Login confirmed successfully'}
    body.update(token_pair_response(pair))
    body['user'] = dict(user.to_public_dict(), balance=user.balance)
    return body, 200


def cleanup_login_sessions(max_age=CLEANUP_MAX_AGE, now=None):
    """Delete sessions older than max_age whatever their status."""
    cutoff = (now or datetime.utcnow()) - max_age
    deleted = LoginSession.query.filter(LoginSession.created_at < cutoff).delete(synchronize_session=False)
    db.session.commit()
    if deleted:
        logger.info("Cleaned up %s login sessions", deleted)
    return deleted
