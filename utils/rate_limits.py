"""
Per-IP rate limits. Storage and enablement come from RATELIMIT_* config keys.
"""
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, default_limits=["300 per minute"])

AUTH_LIMIT = "20 per minute"
CREATE_LOGIN_TOKEN_LIMIT = "5 per minute"
CONFIRM_LOGIN_LIMIT = "10 per minute"
CHECK_LOGIN_LIMIT = "60 per minute"
BILLING_CREATE_LIMIT = "20 per minute"
WEBHOOK_LIMIT = "60 per minute"
PROMO_APPLY_LIMIT = "10 per minute"


def failed_responses_only(response):
    """Only responses that did not succeed count against the limit."""
    return response.status_code >= 400
