"""
Transport checks for the payment webhook: source IP allow-list and replay window.
The body signature itself is verified by the gateway client.
"""
import ipaddress
import logging
import time
from functools import wraps

from flask import current_app, request

from utils.errors import AuthenticationError, ForbiddenError

logger = logging.getLogger(__name__)
security_log = logging.getLogger('security')

TIMESTAMP_TOLERANCE_SECONDS = 300


def normalize_ip(ip):
    """Strip the IPv4-mapped IPv6 prefix."""
    ip = (ip or '').strip()
    if ip.lower().startswith('::ffff:'):
        return ip[7:]
    return ip


def is_ip_allowed(client_ip, allowed, strict):
    """Every source passes unless strict mode is on and the list is non-empty."""
    if not strict or not allowed:
        return True
    try:
        address = ipaddress.ip_address(normalize_ip(client_ip))
    except ValueError:
        return False
    for entry in allowed:
        try:
            if address in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            logger.warning("Ignoring malformed webhook allow-list entry: %r", entry)
    return False


def is_timestamp_valid(timestamp, now=None, tolerance=TIMESTAMP_TOLERANCE_SECONDS):
    """Absent header passes; a non-integer header fails."""
    if timestamp is None or timestamp == '':
        return True
    try:
        request_time = int(timestamp)
    except (TypeError, ValueError):
        return False
    now = int(time.time()) if now is None else int(now)
    return abs(now - request_time) <= tolerance


def webhook_guard(f):
    """Decorator applying the IP allow-list and timestamp checks before the handler runs."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        client_ip = request.remote_addr or ''
        timestamp = request.headers.get('X-Mercuryo-Timestamp')
        request_id = request.headers.get('X-Mercuryo-Request-Id')

        logger.info(
            "Webhook request received: ip=%s timestamp=%s request_id=%s user_agent=%s",
            client_ip, timestamp, request_id, (request.user_agent.string or '')[:100],
        )

        config = current_app.config
        if not is_ip_allowed(client_ip, config.get('WEBHOOK_ALLOWED_IPS') or [], config.get('WEBHOOK_STRICT_IP_CHECK')):
            security_log.warning("Webhook blocked - unauthorized IP: %s", client_ip)
            raise ForbiddenError('Forbidden', 'UNAUTHORIZED_IP')

        if config.get('WEBHOOK_TIMESTAMP_CHECK', True) and not is_timestamp_valid(timestamp):
            security_log.warning(
                "Webhook blocked - expired timestamp: ip=%s timestamp=%s server_time=%s",
                client_ip, timestamp, int(time.time()),
            )
            raise AuthenticationError('Request expired', 'EXPIRED_REQUEST')

        return f(*args, **kwargs)
    return decorated_function
