"""
Request body validation for JSON endpoints.
Each validator returns cleaned values or raises ValidationError.
"""
import re
from urllib.parse import urlparse

from utils.errors import ValidationError
from utils.plans import MAX_DEVICES, MIN_DEVICES, PLANS

WIDGET_FIELDS = ('id', 'first_name', 'last_name', 'username', 'photo_url', 'auth_date', 'hash')
_DIGITS = re.compile(r'^\d+$')
_PROMO_CODE = re.compile(r'^[A-Za-z0-9]{1,50}$')


def _as_text(value):
    """Telegram ids and dates arrive as numbers from some clients."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    return value


def _optional_string(data, key, max_length, code):
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or len(value) > max_length:
        raise ValidationError(f'Invalid {key}', code)
    return value


def _promo_code(value, key):
    if not isinstance(value, str) or not _PROMO_CODE.match(value.strip()):
        raise ValidationError(f'Invalid {key}', 'INVALID_PROMO_CODE')
    return value.strip().upper()


def validate_url(url):
    parsed = urlparse(url)
    return parsed.scheme in ('http', 'https') and bool(parsed.netloc)


def validate_telegram_auth(data, code='INVALID_FORMAT'):
    """
    Clean a Login Widget payload.

    Returns (fields, referral_id): fields holds only the signed widget keys, so the
    HMAC check-string is computed over exactly what Telegram signed.
    """
    if not isinstance(data, dict):
        raise ValidationError('Invalid request body', code)

    telegram_id = _as_text(data.get('id'))
    if not isinstance(telegram_id, str) or not 1 <= len(telegram_id) <= 50:
        raise ValidationError('Invalid id', code)

    auth_date = _as_text(data.get('auth_date'))
    if not isinstance(auth_date, str) or not _DIGITS.match(auth_date):
        raise ValidationError('Invalid auth_date', code)

    hash_value = data.get('hash')
    if not isinstance(hash_value, str) or not 1 <= len(hash_value) <= 128:
        raise ValidationError('Invalid hash', code)

    fields = {'id': telegram_id, 'auth_date': auth_date, 'hash': hash_value}
    for key in ('first_name', 'last_name', 'username'):
        value = _optional_string(data, key, 255, code)
        if value is not None:
            fields[key] = value

    photo_url = _optional_string(data, 'photo_url', 2048, code)
    if photo_url is not None:
        if not validate_url(photo_url):
            raise ValidationError('Invalid photo_url', code)
        fields['photo_url'] = photo_url

    referral_id = _as_text(data.get('referralId'))
    if referral_id is not None and (not isinstance(referral_id, str) or len(referral_id) > 50):
        raise ValidationError('Invalid referralId', code)

    return fields, referral_id or None


def validate_create_payment(data):
    """Returns (plan, devices, promo_code); promo_code is upper-cased or None."""
    if not isinstance(data, dict):
        raise ValidationError('Invalid request body')

    plan = data.get('plan')
    if plan not in PLANS:
        raise ValidationError(
            f"Invalid plan. Must be one of: {', '.join(PLANS)}", 'INVALID_PLAN'
        )

    devices = data.get('devices', 1)
    if isinstance(devices, bool) or not isinstance(devices, int):
        raise ValidationError('devices must be an integer')
    if devices < MIN_DEVICES:
        raise ValidationError(f'Minimum {MIN_DEVICES} device')
    if devices > MAX_DEVICES:
        raise ValidationError(f'Maximum {MAX_DEVICES} devices')

    promo_code = data.get('promoCode')
    if promo_code in (None, ''):
        return plan, devices, None
    return plan, devices, _promo_code(promo_code, 'promoCode')


def validate_apply_promo(data):
    if not isinstance(data, dict):
        raise ValidationError('Invalid request body')
    code = data.get('code')
    if code is None or code == '':
        raise ValidationError('Promo code is required')
    return _promo_code(code, 'code')


def validate_confirm_login(data):
    """Returns (token, profile) where profile uses the Telegram field names."""
    if not isinstance(data, dict):
        raise ValidationError('Invalid request data')

    token = data.get('token')
    telegram_id = _as_text(data.get('telegramId'))
    if not isinstance(token, str) or not token:
        raise ValidationError('token is required')
    if not isinstance(telegram_id, str) or not telegram_id:
        raise ValidationError('telegramId is required')

    profile = {'id': telegram_id}
    for source, target in (('username', 'username'), ('firstName', 'first_name'),
                           ('lastName', 'last_name'), ('photoUrl', 'photo_url')):
        value = data.get(source)
        if value is not None and not isinstance(value, str):
            raise ValidationError(f'Invalid {source}')
        profile[target] = value
    return token, profile
