"""
Telegram identity proof verification.

Three trust paths end in the same claim shape:
- Login Widget payloads, signed with SHA256(bot_token)
- Mini App initData, signed with HMAC("WebAppData", bot_token)
- claims from the companion bot carrying the sentinel hash (no signature at all)

Every check returns Verified or Rejected; nothing here touches the database.
"""
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from typing import Optional
from urllib.parse import parse_qsl

from flask import current_app

logger = logging.getLogger(__name__)
security_log = logging.getLogger('security')

MOCK_AUTH_HASH = 'mock_hash_for_development'
MAX_AUTH_AGE_SECONDS = 86400
MAX_CLOCK_SKEW_SECONDS = 300

MODE_WIDGET = 'widget'
MODE_MINIAPP = 'miniapp'
MODE_BOT = 'bot'


@dataclass(frozen=True)
class TelegramClaim:
    telegram_id: str
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    photo_url: Optional[str] = None


@dataclass(frozen=True)
class Verified:
    claim: TelegramClaim
    mode: str
    ok = True


@dataclass(frozen=True)
class Rejected:
    reason: str
    code: str
    ok = False


def build_check_string(fields):
    """Telegram data-check-string: sorted key=value lines, None values dropped."""
    return '\n'.join(
        f"{key}={fields[key]}" for key in sorted(fields) if fields[key] is not None
    )


def widget_secret_key(bot_token: str) -> bytes:
    return hashlib.sha256(bot_token.encode('utf-8')).digest()


def webapp_secret_key(bot_token: str) -> bytes:
    return hmac.new(b'WebAppData', bot_token.encode('utf-8'), hashlib.sha256).digest()


def sign_check_string(secret_key: bytes, check_string: str) -> str:
    return hmac.new(secret_key, check_string.encode('utf-8'), hashlib.sha256).hexdigest()


def hashes_match(supplied_hex, expected_hex) -> bool:
    """Constant-time comparison of two hex digests; malformed input never matches."""
    if not isinstance(supplied_hex, str):
        return False
    try:
        supplied = bytes.fromhex(supplied_hex)
    except ValueError:
        return False
    expected = bytes.fromhex(expected_hex)
    if len(supplied) != len(expected):
        return False
    return hmac.compare_digest(supplied, expected)


def check_auth_age(auth_date: int, now: int, max_age: int = MAX_AUTH_AGE_SECONDS):
    """Return a rejection reason when auth_date is stale or too far in the future."""
    age = now - auth_date
    if age > max_age:
        return 'Telegram auth data expired'
    if age < -MAX_CLOCK_SKEW_SECONDS:
        return 'Telegram auth date is in the future'
    return None


def claim_from_fields(fields) -> TelegramClaim:
    return TelegramClaim(
        telegram_id=str(fields['id']),
        username=fields.get('username') or None,
        first_name=fields.get('first_name') or None,
        last_name=fields.get('last_name') or None,
        photo_url=fields.get('photo_url') or None,
    )


class TelegramAuthVerifier:
    """
    Holds the bot token and the deployment flags for the whole process.

    The production override is resolved here, once: the sentinel bypass is on only
    when it was explicitly allowed AND the deployment is not production.
    """

    def __init__(self, bot_token, allow_mock_auth=False, is_production=False, init_data_max_age=0):
        self.bot_token = bot_token
        self.init_data_max_age = init_data_max_age or 0
        if is_production and allow_mock_auth:
            security_log.error(
                "SECURITY ALERT: ALLOW_MOCK_AUTH is set in production; sentinel auth stays disabled"
            )
        self.mock_auth_enabled = bool(allow_mock_auth) and not is_production
        self.is_production = bool(is_production)

    @property
    def configured(self):
        return bool(self.bot_token)

    def verify_widget(self, data, now=None):
        """Verify a Login Widget payload (or a sentinel claim from the companion bot)."""
        hash_value = data.get('hash')

        if hash_value == MOCK_AUTH_HASH:
            return self._verify_sentinel(data)

        if not data.get('id') or not data.get('auth_date') or not hash_value:
            logger.warning("Missing required fields in Telegram auth data")
            return Rejected('Missing required fields', 'INVALID_FORMAT')

        try:
            auth_date = int(data['auth_date'])
        except (TypeError, ValueError):
            logger.warning("Invalid auth_date format: %r", data.get('auth_date'))
            return Rejected('Invalid auth_date', 'INVALID_FORMAT')

        if not self.configured:
            return Rejected('Telegram bot token is not configured', 'CONFIG_ERROR')

        fields = {key: value for key, value in data.items() if key != 'hash'}
        expected = sign_check_string(widget_secret_key(self.bot_token), build_check_string(fields))
        if not hashes_match(hash_value, expected):
            logger.warning("Hash mismatch for Telegram auth, telegram_id=%s", data.get('id'))
            return Rejected('Invalid Telegram authentication data', 'INVALID_SIGNATURE')

        now = int(time.time()) if now is None else int(now)
        reason = check_auth_age(auth_date, now)
        if reason:
            logger.warning("%s: telegram_id=%s auth_date=%s now=%s", reason, data.get('id'), auth_date, now)
            return Rejected(reason, 'INVALID_SIGNATURE')

        return Verified(claim_from_fields(data), MODE_WIDGET)

    def _verify_sentinel(self, data):
        if self.is_production:
            security_log.error("Mock auth attempt blocked in production, telegram_id=%s", data.get('id'))
            return Rejected('Invalid Telegram authentication data', 'INVALID_SIGNATURE')
        if not self.mock_auth_enabled:
            security_log.warning("Mock hash provided but ALLOW_MOCK_AUTH is not set, telegram_id=%s", data.get('id'))
            return Rejected('Invalid Telegram authentication data', 'INVALID_SIGNATURE')
        if not data.get('id'):
            return Rejected('Missing required fields', 'INVALID_FORMAT')
        security_log.warning("Sentinel auth accepted without signature check, telegram_id=%s", data.get('id'))
        return Verified(claim_from_fields(data), MODE_BOT)

    def verify_init_data(self, init_data, now=None):
        """Verify a Mini App initData query string."""
        if not isinstance(init_data, str) or not init_data:
            return Rejected('initData is required', 'INVALID_FORMAT')
        if not self.configured:
            return Rejected('Telegram bot token is not configured', 'CONFIG_ERROR')

        pairs = parse_qsl(init_data, keep_blank_values=True)
        hash_value = None
        remaining = []
        for key, value in pairs:
            if key == 'hash':
                hash_value = value
            else:
                remaining.append((key, value))
        if not hash_value:
            return Rejected('initData has no hash', 'INVALID_INITDATA')

        fields = dict(remaining)
        try:
            user = json.loads(fields['user'])
        except (KeyError, ValueError):
            logger.warning("Failed to parse initData user field")
            return Rejected('Malformed initData', 'INVALID_INITDATA')
        if not isinstance(user, dict) or not user.get('id'):
            return Rejected('Malformed initData', 'INVALID_INITDATA')

        check_string = '\n'.join(sorted(f"{key}={value}" for key, value in remaining))
        expected = sign_check_string(webapp_secret_key(self.bot_token), check_string)
        if not hashes_match(hash_value, expected):
            logger.warning("initData hash mismatch, telegram_id=%s", user.get('id'))
            return Rejected('Invalid Telegram initData', 'INVALID_INITDATA')

        if self.init_data_max_age:
            try:
                auth_date = int(fields.get('auth_date'))
            except (TypeError, ValueError):
                return Rejected('Invalid auth_date', 'INVALID_INITDATA')
            now = int(time.time()) if now is None else int(now)
            reason = check_auth_age(auth_date, now, self.init_data_max_age)
            if reason:
                return Rejected(reason, 'INVALID_INITDATA')

        return Verified(claim_from_fields(user), MODE_MINIAPP)


def init_app(app):
    app.extensions['telegram_auth'] = TelegramAuthVerifier(
        bot_token=app.config.get('TELEGRAM_BOT_TOKEN'),
        allow_mock_auth=app.config.get('ALLOW_MOCK_AUTH', False),
        is_production=app.config.get('IS_PRODUCTION', False),
        init_data_max_age=app.config.get('TELEGRAM_INIT_DATA_MAX_AGE', 0),
    )


def get_verifier() -> TelegramAuthVerifier:
    return current_app.extensions['telegram_auth']
