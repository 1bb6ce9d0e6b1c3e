"""
Main Flask application factory for the access backend
"""
import logging
import time
import traceback

from flask import Flask, g, jsonify, request
from flask_login import LoginManager
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from config import Config
from models import db
from models.user import User
from utils.marzban import marzban
from utils import telegram_auth, tokens
from utils.errors import ApiError, AuthenticationError
from utils.payment_gateway import gateway
from utils.rate_limits import limiter

logger = logging.getLogger(__name__)

# Initialize login manager (no DB access at import time)
login_manager = LoginManager()

AUTH_ERROR_MESSAGES = {
    'NO_TOKEN': 'No token provided',
    'TOKEN_EXPIRED': 'Token expired',
    'INVALID_TOKEN': 'Invalid token',
}


@login_manager.user_loader
def load_user(user_id):
    """Load user for Flask-Login (runs in request context)."""
    return db.session.get(User, int(user_id))


@login_manager.request_loader
def load_user_from_request(req):
    """Authenticate API requests from the Bearer access token."""
    header = req.headers.get('Authorization', '')
    if not header.startswith('Bearer ') or not header[7:].strip():
        g.auth_error = 'NO_TOKEN'
        return None
    try:
        payload = tokens.get_token_service().verify_access(header[7:].strip())
    except AuthenticationError as e:
        g.auth_error = e.code
        return None

    user = db.session.get(User, payload['user_id'])
    if user is None or user.telegram_id != str(payload['telegram_id']):
        g.auth_error = 'INVALID_TOKEN'
        return None
    return user


@login_manager.unauthorized_handler
def unauthorized():
    code = g.get('auth_error', 'NO_TOKEN')
    return jsonify({'error': AUTH_ERROR_MESSAGES.get(code, 'Unauthorized'), 'code': code}), 401


def configure_logging(app):
    logging.basicConfig(
        level=app.config.get('LOG_LEVEL', 'INFO'),
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s',
    )
    app.logger.setLevel(app.config.get('LOG_LEVEL', 'INFO'))


def register_error_handlers(app):
    @app.errorhandler(ApiError)
    def handle_api_error(e):
        if e.status_code >= 500:
            app.logger.error("%s: %s", e.code, e.message)
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(429)
    def handle_rate_limit(e):
        app.logger.warning("Rate limit exceeded: ip=%s path=%s", request.remote_addr, request.path)
        return jsonify({'error': 'Too many requests, please try again later', 'code': 'RATE_LIMIT_EXCEEDED'}), 429

    @app.errorhandler(HTTPException)
    def handle_http_exception(e):
        code = (e.name or 'error').upper().replace(' ', '_')
        return jsonify({'error': e.description or e.name, 'code': code}), e.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(e):
        db.session.rollback()
        app.logger.error("Unhandled error on %s %s: %s", request.method, request.path, e, exc_info=True)
        body = {'error': 'Internal server error', 'code': 'INTERNAL_ERROR'}
        if not app.config.get('IS_PRODUCTION'):
            body['stack'] = traceback.format_exc()
        return jsonify(body), 500


def register_request_logging(app):
    @app.before_request
    def start_timer():
        g.request_started = time.monotonic()

    @app.after_request
    def log_request(response):
        if request.path == '/health':
            return response
        started = g.get('request_started')
        duration_ms = int((time.monotonic() - started) * 1000) if started else -1
        level = logging.WARNING if response.status_code >= 400 else logging.INFO
        app.logger.log(
            level, "%s %s %s %sms", request.method, request.path, response.status_code, duration_ms,
        )
        return response


def create_app(config_class=Config):
    """Application factory. Raises ConfigurationError when the JWT secret is missing or weak."""
    app = Flask(__name__)
    app.config.from_object(config_class)
    configure_logging(app)

    if app.config.get('TRUST_PROXY'):
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=app.config['TRUST_PROXY'], x_proto=1)

    db.init_app(app)
    login_manager.init_app(app)
    limiter.init_app(app)
    tokens.init_app(app)
    telegram_auth.init_app(app)
    gateway.init_app(app)
    marzban.init_app(app)

    if not app.config.get('TELEGRAM_BOT_TOKEN'):
        logger.warning("TELEGRAM_BOT_TOKEN is not set; Telegram logins will fail with CONFIG_ERROR")

    # Create tables inside app context; do not crash if DB temporarily unavailable
    with app.app_context():
        try:
            db.create_all()
        except Exception as e:
            logger.warning("Database init skipped (non-fatal): %s", e)

    from routes import auth_bp, bot_auth_bp, payment_bp, promo_bp, public_bp, user_bp

    app.register_blueprint(public_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(bot_auth_bp)
    app.register_blueprint(payment_bp)
    app.register_blueprint(user_bp)
    app.register_blueprint(promo_bp)

    register_error_handlers(app)
    register_request_logging(app)

    if app.config.get('SCHEDULER_ENABLED'):
        from utils.scheduler import start_scheduler
        start_scheduler(app)

    return app
