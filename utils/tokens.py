"""
Access/refresh token issuance and verification (HS256, PyJWT).
"""
import re
import uuid
from datetime import datetime, timedelta, timezone

import jwt
from flask import current_app

from utils.errors import ConfigurationError, InvalidTokenError, TokenExpiredError

ALGORITHM = 'HS256'
MIN_SECRET_BYTES = 32
DEFAULT_ACCESS_TTL = timedelta(hours=1)
DEFAULT_REFRESH_TTL = timedelta(days=7)

_TTL_PATTERN = re.compile(r'^(\d+)([smhd])$')
_TTL_UNITS = {'s': 'seconds', 'm': 'minutes', 'h': 'hours', 'd': 'days'}


def parse_ttl(value, default):
    """'15m', '1h', '7d' -> timedelta; anything else -> default."""
    match = _TTL_PATTERN.match((value or '').strip())
    if not match:
        return default
    return timedelta(**{_TTL_UNITS[match.group(2)]: int(match.group(1))})


class TokenService:
    """Signs and verifies the session token pair with one process-wide secret."""

    def __init__(self, secret, access_ttl=DEFAULT_ACCESS_TTL, refresh_ttl=DEFAULT_REFRESH_TTL):
        if not secret:
            raise ConfigurationError('JWT_SECRET environment variable must be defined')
        if len(secret.encode('utf-8')) < MIN_SECRET_BYTES:
            raise ConfigurationError(f'JWT_SECRET must be at least {MIN_SECRET_BYTES} bytes long')
        self._secret = secret
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    @property
    def access_expires_in(self):
        return int(self.access_ttl.total_seconds())

    def _encode(self, claims, ttl):
        now = datetime.now(timezone.utc)
        payload = dict(claims, iat=now, exp=now + ttl)
        return jwt.encode(payload, self._secret, algorithm=ALGORITHM)

    def _decode(self, token, expected_type):
        if not token or not isinstance(token, str):
            raise InvalidTokenError('Invalid token')
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                options={'require': ['exp', 'iat']},
            )
        except jwt.ExpiredSignatureError:
            raise TokenExpiredError('Token expired')
        except jwt.InvalidTokenError:
            raise InvalidTokenError('Invalid token')
        if payload.get('type') != expected_type or not payload.get('user_id'):
            raise InvalidTokenError('Invalid token')
        return payload

    def issue_pair(self, user_id, telegram_id):
        access_token = self._encode(
            {'user_id': user_id, 'telegram_id': str(telegram_id), 'type': 'access'},
            self.access_ttl,
        )
        refresh_token = self._encode(
            {'user_id': user_id, 'jti': uuid.uuid4().hex, 'type': 'refresh'},
            self.refresh_ttl,
        )
        return {
            'access_token': access_token,
            'refresh_token': refresh_token,
            'expires_in': self.access_expires_in,
        }

    def verify_access(self, token):
        """Return {user_id, telegram_id, ...} or raise TokenExpiredError / InvalidTokenError."""
        payload = self._decode(token, 'access')
        if not payload.get('telegram_id'):
            raise InvalidTokenError('Invalid token')
        return payload

    def decode_refresh(self, token):
        return self._decode(token, 'refresh')


def init_app(app):
    app.extensions['token_service'] = TokenService(
        app.config.get('JWT_SECRET'),
        access_ttl=parse_ttl(app.config.get('JWT_ACCESS_EXPIRES_IN'), DEFAULT_ACCESS_TTL),
        refresh_ttl=parse_ttl(app.config.get('JWT_REFRESH_EXPIRES_IN'), DEFAULT_REFRESH_TTL),
    )


def get_token_service() -> TokenService:
    return current_app.extensions['token_service']


def token_pair_response(pair):
    """camelCase shape used by every endpoint that hands out tokens."""
    return {
        'accessToken': pair['access_token'],
        'refreshToken': pair['refresh_token'],
        'expiresIn': pair['expires_in'],
    }
