"""
Authentication routes: Telegram login (widget, Mini App, bot) and token refresh
"""
from flask import Blueprint, current_app, jsonify, request

from models import db
from models.user import User
from routes.bot_auth import is_trusted_bot_request
from utils.errors import ApiError, AuthenticationError, InvalidTokenError, TokenExpiredError, ValidationError
from utils.identity import resolve_user
from utils.rate_limits import AUTH_LIMIT, limiter
from utils.telegram_auth import MOCK_AUTH_HASH, get_verifier
from utils.tokens import get_token_service, token_pair_response
from utils.validators import validate_telegram_auth

auth_bp = Blueprint('auth', __name__, url_prefix='/auth')

REJECTION_STATUS = {
    'CONFIG_ERROR': 500,
    'INVALID_FORMAT': 400,
    'INVALID_SIGNATURE': 401,
    'INVALID_INITDATA': 401,
}


def _verify(data):
    """Run the proof in the body through the matching verifier. Returns (result, referral_id)."""
    verifier = get_verifier()

    if 'initData' in data:
        referral_id = data.get('referralId')
        if referral_id is not None:
            referral_id = str(referral_id)[:50]
        return verifier.verify_init_data(data.get('initData')), referral_id

    fields, referral_id = validate_telegram_auth(data)
    if fields['hash'] == MOCK_AUTH_HASH and not is_trusted_bot_request():
        current_app.logger.warning("Sentinel auth without trusted bot key, telegram_id=%s", fields['id'])
        raise AuthenticationError('Invalid Telegram authentication data', 'INVALID_SIGNATURE')
    return verifier.verify_widget(fields), referral_id


@auth_bp.route('/telegram', methods=['POST'])
@limiter.limit(AUTH_LIMIT)
def telegram_login():
    """Exchange a Telegram identity proof for an access/refresh token pair"""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError('Invalid authentication data format', 'INVALID_FORMAT')

    result, referral_id = _verify(data)
    if not result.ok:
        current_app.logger.warning("Telegram auth rejected: %s (%s)", result.reason, result.code)
        if result.code == 'CONFIG_ERROR':
            raise ApiError('Server configuration error', 'CONFIG_ERROR', 500)
        raise ApiError(result.reason, result.code, REJECTION_STATUS.get(result.code, 401))

    user, is_new_user = resolve_user(result.claim, referral_id)
    pair = get_token_service().issue_pair(user.id, user.telegram_id)

    response = token_pair_response(pair)
    response['user'] = user.to_public_dict(is_new_user=is_new_user)
    current_app.logger.info("Telegram auth succeeded: user_id=%s mode=%s", user.id, result.mode)
    return jsonify(response)


@auth_bp.route('/refresh', methods=['POST'])
def refresh():
    """Mint a new token pair from a refresh token"""
    data = request.get_json(silent=True) or {}
    refresh_token = data.get('refreshToken') if isinstance(data, dict) else None
    telegram_id = data.get('telegramId') if isinstance(data, dict) else None

    if not refresh_token or not telegram_id:
        raise ValidationError('Refresh token and telegramId are required', 'MISSING_PARAMS')

    service = get_token_service()
    try:
        payload = service.decode_refresh(refresh_token)
    except TokenExpiredError:
        current_app.logger.info("Token refresh failed: expired, telegram_id=%s", telegram_id)
        raise AuthenticationError('Refresh token expired', 'REFRESH_FAILED')
    except InvalidTokenError:
        current_app.logger.info("Token refresh failed: invalid, telegram_id=%s", telegram_id)
        raise AuthenticationError('Invalid refresh token', 'REFRESH_FAILED')

    user = db.session.get(User, payload['user_id'])
    if user is None or user.telegram_id != str(telegram_id):
        current_app.logger.warning("Token refresh failed: user mismatch, telegram_id=%s", telegram_id)
        raise AuthenticationError('Invalid refresh token', 'REFRESH_FAILED')

    pair = service.issue_pair(user.id, user.telegram_id)
    current_app.logger.info("Token refreshed: user_id=%s", user.id)
    return jsonify(token_pair_response(pair))
