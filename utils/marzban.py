"""
Marzban provisioning panel client.

Users on the panel are named user_<telegram_id>; the admin token is cached and
refreshed five minutes before it expires.
"""
import base64
import calendar
import io
import logging
import threading
from datetime import datetime, timedelta
from urllib.parse import urlsplit, urlunsplit

import qrcode
import requests

from utils.errors import ExternalServiceError

logger = logging.getLogger(__name__)

TOKEN_REFRESH_MARGIN = timedelta(minutes=5)
DEFAULT_TOKEN_LIFETIME = 3600


class PanelError(ExternalServiceError):
    def __init__(self, message, code='PANEL_ERROR', status_code=None):
        super().__init__(message, code, status_code)


def to_unix(moment):
    """Naive UTC datetime -> unix seconds."""
    if isinstance(moment, datetime):
        return calendar.timegm(moment.utctimetuple())
    return int(moment)


class MarzbanClient:
    def __init__(self, base_url=None, username=None, password=None, timeout=10, session=None):
        self.base_url = (base_url or '').rstrip('/')
        self.username = username
        self.password = password
        self.timeout = timeout
        self.session = session or requests.Session()
        self._token = None
        self._token_expires_at = None
        self._lock = threading.Lock()

    def init_app(self, app):
        self.base_url = (app.config.get('MARZBAN_URL') or '').rstrip('/')
        self.username = app.config.get('MARZBAN_USERNAME')
        self.password = app.config.get('MARZBAN_PASSWORD')
        self.timeout = app.config.get('MARZBAN_TIMEOUT', 10)
        self._token = None
        self._token_expires_at = None
        app.extensions['marzban'] = self

    @property
    def configured(self):
        return bool(self.base_url and self.username and self.password)

    def _login(self):
        try:
            resp = self.session.post(
                f"{self.base_url}/api/admin/token",
                data={'grant_type': 'password', 'username': self.username, 'password': self.password},
                headers={'Content-Type': 'application/x-www-form-urlencoded'},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            body = resp.json()
            token = body['access_token']
            expires_in = int(body.get('expires_in') or DEFAULT_TOKEN_LIFETIME)
            if not isinstance(token, str) or not token:
                raise ValueError('empty access_token')
        except (requests.RequestException, KeyError, TypeError, AttributeError, ValueError) as e:
            logger.error("Marzban admin login failed: %r", e)
            raise PanelError('Failed to authenticate with provisioning panel')

        self._token = token
        self._token_expires_at = datetime.utcnow() + timedelta(seconds=expires_in)
        logger.info("Marzban admin token refreshed, valid until %s", self._token_expires_at.isoformat())
        return self._token

    def _admin_token(self, force=False):
        with self._lock:
            if (
                force
                or self._token is None
                or datetime.utcnow() >= self._token_expires_at - TOKEN_REFRESH_MARGIN
            ):
                return self._login()
            return self._token

    def _request(self, method, path, **kwargs):
        if not self.configured:
            raise PanelError('Provisioning panel is not configured', 'PANEL_NOT_CONFIGURED')

        url = f"{self.base_url}{path}"
        resp = None
        for attempt in range(2):
            token = self._admin_token(force=attempt > 0)
            try:
                resp = self.session.request(
                    method, url, headers={'Authorization': f'Bearer {token}'}, timeout=self.timeout, **kwargs
                )
            except requests.RequestException as e:
                logger.error("Marzban %s %s failed: %s", method, path, e)
                raise PanelError('Provisioning panel is unreachable')
            if resp.status_code != 401:
                break
            logger.warning("Marzban rejected admin token, re-authenticating")
        return resp

    @staticmethod
    def _json(resp, action):
        if resp.status_code >= 400:
            logger.error("Marzban %s failed: %s %s", action, resp.status_code, resp.text[:500])
            raise PanelError(f'Provisioning panel error during {action}')
        try:
            body = resp.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            logger.error("Marzban %s returned a malformed body: %s", action, resp.text[:500])
            raise PanelError(f'Provisioning panel returned malformed response during {action}')
        return body

    def get_user(self, username):
        resp = self._request('GET', f'/api/user/{username}')
        if resp.status_code == 404:
            return None
        return self._json(resp, 'get_user')

    def get_or_create_user(self, username, data_limit=0, expire=None):
        existing = self.get_user(username)
        if existing is not None:
            return existing

        payload = {
            'username': username,
            'status': 'active',
            'data_limit': data_limit or 0,
            'data_limit_reset_strategy': 'no_reset',
            'expire': to_unix(expire) if expire is not None else None,
            'proxies': {'vless': {}},
            'inbounds': {},
            'note': 'Created by access backend',
        }
        resp = self._request('POST', '/api/user', json=payload)
        user = self._json(resp, 'create_user')
        logger.info("Marzban user created: %s", username)
        return user

    def update_user(self, username, patch):
        resp = self._request('PUT', f'/api/user/{username}', json=patch)
        return self._json(resp, 'update_user')

    def extend_subscription(self, username, expire):
        """Set the absolute expiry and re-enable the user."""
        user = self.update_user(username, {'status': 'active', 'expire': to_unix(expire)})
        logger.info("Marzban subscription extended: %s until %s", username, expire)
        return user

    def get_vless_config(self, username, host=None, port=None):
        """VLESS link for the user, optionally pointed at a specific server host/port."""
        user = self.get_user(username)
        if user is None:
            raise PanelError('Panel user not found', 'PANEL_USER_NOT_FOUND', 404)

        link = next((item for item in user.get('links') or [] if str(item).startswith('vless://')), None)
        if link is None:
            raise PanelError('No VLESS configuration for user', 'NO_VLESS_CONFIG', 404)
        if not host:
            return link

        parts = urlsplit(link)
        userinfo = parts.netloc.rsplit('@', 1)[0] if '@' in parts.netloc else ''
        netloc = f"{host}:{port or parts.port}"
        if userinfo:
            netloc = f"{userinfo}@{netloc}"
        return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))

    @staticmethod
    def generate_qr_code(config):
        """PNG data URL of the config string."""
        img = qrcode.make(config)
        buf = io.BytesIO()
        img.save(buf, format='PNG')
        return 'data:image/png;base64,' + base64.b64encode(buf.getvalue()).decode('ascii')


marzban = MarzbanClient()
