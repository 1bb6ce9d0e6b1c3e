"""
Pytest configuration and shared fixtures.

Every test gets a fresh app bound to its own in-memory SQLite database.
"""
import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta
from unittest.mock import MagicMock
from urllib.parse import urlencode

import pytest

from app import create_app
from config import Config
from models import db as _db
from models.payment import Payment
from models.subscription import Subscription
from models.user import User
from utils.marzban import MarzbanClient

BOT_TOKEN = '123456789:AAH-test-bot-token'
JWT_SECRET = 'test-jwt-secret-that-is-long-enough-0123456789'
BOT_API_SECRET = 'companion-bot-shared-secret'
SIGN_KEY = 'mercuryo-webhook-sign-key'


class UnitConfig(Config):
    TESTING = True
    IS_PRODUCTION = False
    SECRET_KEY = 'unit-secret'
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_ENGINE_OPTIONS = {}
    LOG_LEVEL = 'WARNING'
    TRUST_PROXY = 0

    JWT_SECRET = JWT_SECRET
    JWT_ACCESS_EXPIRES_IN = '1h'
    JWT_REFRESH_EXPIRES_IN = '7d'

    TELEGRAM_BOT_TOKEN = BOT_TOKEN
    TELEGRAM_BOT_USERNAME = 'outlivionbot'
    TELEGRAM_INIT_DATA_MAX_AGE = 0
    ALLOW_MOCK_AUTH = False
    BOT_API_SECRET = BOT_API_SECRET
    LOGIN_SESSION_TTL_SECONDS = 300
    FRONTEND_URL = 'https://app.example.com'

    MERCURYO_WIDGET_URL = 'https://exchange.mercuryo.io/'
    MERCURYO_WIDGET_ID = 'widget-1'
    MERCURYO_SECRET = 'widget-secret'
    MERCURYO_SIGN_KEY = SIGN_KEY

    WEBHOOK_ALLOWED_IPS = []
    WEBHOOK_STRICT_IP_CHECK = False
    WEBHOOK_TIMESTAMP_CHECK = True

    MARZBAN_URL = None
    MARZBAN_USERNAME = None
    MARZBAN_PASSWORD = None
    PANEL_CALL_DELAY = 0

    REFERRAL_BONUS_AMOUNT = 5000
    SCHEDULER_ENABLED = False
    RATELIMIT_ENABLED = False
    RATELIMIT_STORAGE_URI = 'memory://'


@pytest.fixture
def app_factory():
    """Build an app with config overrides; tears every built app down afterwards."""
    contexts = []

    def build(**overrides):
        config_class = type('OverrideConfig', (UnitConfig,), overrides)
        app = create_app(config_class)
        ctx = app.app_context()
        ctx.push()
        contexts.append(ctx)
        return app

    yield build

    for ctx in reversed(contexts):
        _db.session.remove()
        _db.drop_all()
        ctx.pop()


@pytest.fixture
def app(app_factory):
    return app_factory()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def db(app):
    return _db


@pytest.fixture
def fixed_now():
    """Fixed datetime for deterministic tests"""
    return datetime(2026, 3, 1, 12, 0, 0)


@pytest.fixture
def fake_panel():
    """Provisioning panel stand-in that accepts every call"""
    panel = MagicMock()
    panel.configured = True
    panel.get_or_create_user.return_value = {'username': 'user_x'}
    panel.extend_subscription.return_value = {'status': 'active'}
    panel.update_user.return_value = {'status': 'disabled'}
    return panel


@pytest.fixture
def garbled_panel():
    """Real panel client whose admin login answers 200 without an access token"""
    session = MagicMock()
    session.post.return_value.status_code = 200
    session.post.return_value.json.return_value = {'detail': 'unexpected'}
    return MarzbanClient('https://panel.example.com', 'admin', 'secret', session=session)


# --- Telegram proof helpers ---------------------------------------------------

def sign_widget(fields, bot_token=BOT_TOKEN):
    """Return a copy of fields with a valid Login Widget hash."""
    check_string = '\n'.join(f"{key}={fields[key]}" for key in sorted(fields))
    secret = hashlib.sha256(bot_token.encode()).digest()
    signed = dict(fields)
    signed['hash'] = hmac.new(secret, check_string.encode(), hashlib.sha256).hexdigest()
    return signed


def widget_payload(telegram_id='1001', auth_date=None, **extra):
    fields = {
        'id': telegram_id,
        'first_name': 'Ivan',
        'username': 'ivan',
        'auth_date': str(int(time.time()) if auth_date is None else auth_date),
    }
    fields.update(extra)
    return sign_widget(fields)


def make_init_data(user, auth_date=None, bot_token=BOT_TOKEN, tamper=None):
    """Signed Mini App initData query string."""
    pairs = {
        'auth_date': str(int(time.time()) if auth_date is None else auth_date),
        'query_id': 'AAHdF6IQAAAAAN0XohDhrOrc',
        'user': json.dumps(user, separators=(',', ':')),
    }
    check_string = '\n'.join(sorted(f"{key}={value}" for key, value in pairs.items()))
    secret = hmac.new(b'WebAppData', bot_token.encode(), hashlib.sha256).digest()
    pairs['hash'] = hmac.new(secret, check_string.encode(), hashlib.sha256).hexdigest()
    if tamper:
        pairs.update(tamper)
    return urlencode(pairs)


def sign_webhook(body, key=SIGN_KEY):
    if isinstance(body, str):
        body = body.encode()
    return hmac.new(key.encode(), body, hashlib.sha256).hexdigest()


# --- Row factories ------------------------------------------------------------

def make_user(telegram_id='1001', **kwargs):
    user = User(telegram_id=str(telegram_id), username=kwargs.pop('username', f'user{telegram_id}'), **kwargs)
    _db.session.add(user)
    _db.session.commit()
    return user


def make_payment(user, order_id='PAY-TEST-1', plan='30days', status='pending', amount=10000):
    payment = Payment(user_id=user.id, plan=plan, status=status, amount=amount, gateway_order_id=order_id)
    _db.session.add(payment)
    _db.session.commit()
    return payment


def make_subscription(user, start, end, status='active', plan='30days', created_at=None, panel_synced=True):
    subscription = Subscription(
        user_id=user.id,
        plan=plan,
        status=status,
        start_date=start,
        end_date=end,
        created_at=created_at or start,
        panel_synced=panel_synced,
    )
    _db.session.add(subscription)
    _db.session.commit()
    return subscription


def auth_header(user):
    from utils.tokens import get_token_service
    pair = get_token_service().issue_pair(user.id, user.telegram_id)
    return {'Authorization': f"Bearer {pair['access_token']}"}


DAY = timedelta(days=1)
