"""
Deep-link bot login routes: /start login_<TOKEN>
"""
import hmac
from functools import wraps

from flask import Blueprint, current_app, jsonify, request

from utils.errors import ApiError, AuthenticationError, ValidationError
from utils.login_sessions import confirm_login_session, create_login_session, poll_login_session
from utils.rate_limits import (
    CHECK_LOGIN_LIMIT, CONFIRM_LOGIN_LIMIT, CREATE_LOGIN_TOKEN_LIMIT, failed_responses_only, limiter,
)
from utils.telegram_auth import claim_from_fields
from utils.validators import validate_confirm_login

bot_auth_bp = Blueprint('bot_auth', __name__, url_prefix='/auth/bot')

BOT_API_KEY_HEADER = 'X-Bot-Api-Key'


def _bot_key_matches(secret):
    supplied = request.headers.get(BOT_API_KEY_HEADER, '')
    return hmac.compare_digest(supplied.encode('utf-8'), secret.encode('utf-8'))


def is_trusted_bot_request():
    """True when no bot secret is configured or the request carries the right key."""
    secret = current_app.config.get('BOT_API_SECRET')
    if not secret:
        return True
    return _bot_key_matches(secret)


def bot_api_key_required(f):
    """Decorator to restrict an endpoint to the companion bot process"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        secret = current_app.config.get('BOT_API_SECRET')
        if not secret:
            current_app.logger.error("BOT_API_SECRET is not configured; refusing bot-only endpoint %s", request.path)
            raise ApiError('Server configuration error', 'CONFIG_ERROR', 500)
        if not _bot_key_matches(secret):
            current_app.logger.warning("Bot-only endpoint %s called without a valid bot key", request.path)
            raise AuthenticationError('Invalid bot API key', 'UNAUTHORIZED')
        return f(*args, **kwargs)
    return decorated_function


@bot_auth_bp.route('/create-login-token', methods=['POST'])
@limiter.limit(CREATE_LOGIN_TOKEN_LIMIT)
def create_login_token():
    """Open a pending login session and return the bot deep link"""
    session = create_login_session(
        current_app.config.get('TELEGRAM_BOT_USERNAME', 'outlivionbot'),
        ttl_seconds=current_app.config.get('LOGIN_SESSION_TTL_SECONDS', 300),
    )
    return jsonify(session)


@bot_auth_bp.route('/confirm-login', methods=['POST'])
@limiter.limit(CONFIRM_LOGIN_LIMIT)
@bot_api_key_required
def confirm_login():
    """Called by the bot when the user opens /start login_<TOKEN>"""
    token, profile = validate_confirm_login(request.get_json(silent=True))
    current_app.logger.info("Login confirmation request, telegram_id=%s", profile['id'])
    confirm_login_session(token, claim_from_fields(profile))
    return jsonify({'ok': True, 'message': 'Login confirmed successfully'})


@bot_auth_bp.route('/check-login', methods=['GET'])
@limiter.limit(CHECK_LOGIN_LIMIT, deduct_when=failed_responses_only)
def check_login():
    """Polled by the frontend until the session is approved or expires"""
    token = request.args.get('token', '').strip()
    if not token:
        raise ValidationError('token is required')
    body, status = poll_login_session(token)
    return jsonify(body), status
