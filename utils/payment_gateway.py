"""
Mercuryo payment gateway client: hosted widget links and webhook parsing.
"""
import hashlib
import hmac
import json
import logging
import uuid
from datetime import datetime
from urllib.parse import urlencode

from utils.errors import AuthenticationError, ExternalServiceError

logger = logging.getLogger(__name__)

COMPLETED_STATUSES = frozenset({'paid', 'completed', 'succeeded', 'success'})
FAILED_STATUSES = frozenset({'cancelled', 'canceled', 'failed', 'declined', 'expired', 'rejected'})


class WebhookSignatureError(AuthenticationError):
    code = 'INVALID_SIGNATURE'


def generate_payment_reference():
    """Generate unique merchant order reference"""
    return f"PAY-{uuid.uuid4().hex[:12].upper()}-{datetime.utcnow().strftime('%Y%m%d')}"


def normalize_status(status):
    """Map gateway vocabulary onto completed / failed; anything else passes through lowercased."""
    value = (status or '').strip().lower()
    if value in COMPLETED_STATUSES:
        return 'completed'
    if value in FAILED_STATUSES:
        return 'failed'
    return value


def format_amount(amount):
    """Kopecks -> '123.45'."""
    return f"{amount // 100}.{amount % 100:02d}"


class MercuryoGateway:
    def __init__(self, widget_url=None, widget_id=None, secret=None, sign_key=None):
        self.widget_url = widget_url
        self.widget_id = widget_id
        self.secret = secret
        self.sign_key = sign_key

    def init_app(self, app):
        self.widget_url = app.config.get('MERCURYO_WIDGET_URL')
        self.widget_id = app.config.get('MERCURYO_WIDGET_ID')
        self.secret = app.config.get('MERCURYO_SECRET')
        self.sign_key = app.config.get('MERCURYO_SIGN_KEY')
        app.extensions['payment_gateway'] = self

    def _sign(self, key, message):
        return hmac.new(key.encode('utf-8'), message.encode('utf-8'), hashlib.sha256).hexdigest()

    def create_payment(self, amount, currency, user_id, plan, return_url):
        """
        Allocate a merchant order reference and build the signed widget URL.

        Args:
            amount: Amount in minor units
            currency: ISO currency code
            user_id: Internal user id (echoed back by the gateway)
            plan: Plan id being bought
            return_url: Where the widget sends the customer afterwards

        Returns:
            dict: {id, payment_url}
        """
        if not (self.widget_url and self.widget_id and self.secret):
            logger.error("Mercuryo is not configured; cannot create payment for user_id=%s", user_id)
            raise ExternalServiceError('Payment gateway is not configured', 'GATEWAY_NOT_CONFIGURED')

        order_id = generate_payment_reference()
        params = {
            'widget_id': self.widget_id,
            'merchant_transaction_id': order_id,
            'fiat_amount': format_amount(amount),
            'fiat_currency': currency,
            'return_url': return_url,
        }
        params['signature'] = self._sign(self.secret, f"{self.widget_id}{order_id}{params['fiat_amount']}{currency}")
        payment_url = f"{self.widget_url.rstrip('/')}/?{urlencode(params)}"
        logger.info("Mercuryo payment link created: order_id=%s user_id=%s plan=%s", order_id, user_id, plan)
        return {'id': order_id, 'payment_url': payment_url}

    def parse_webhook(self, raw_body, signature):
        """
        Verify the webhook signature over the raw body and return {id, status, payload}.
        Raises WebhookSignatureError when the signature or body is bad.
        """
        if not self.sign_key:
            logger.error("MERCURYO_SIGN_KEY is not configured; rejecting webhook")
            raise WebhookSignatureError('Invalid webhook signature')
        if isinstance(raw_body, str):
            raw_body = raw_body.encode('utf-8')

        expected = hmac.new(self.sign_key.encode('utf-8'), raw_body, hashlib.sha256).hexdigest()
        supplied = (signature or '').strip().lower().encode('utf-8')
        if not supplied or not hmac.compare_digest(supplied, expected.encode('ascii')):
            raise WebhookSignatureError('Invalid webhook signature')

        try:
            payload = json.loads(raw_body)
        except ValueError:
            raise WebhookSignatureError('Malformed webhook body')
        if not isinstance(payload, dict):
            raise WebhookSignatureError('Malformed webhook body')

        data = payload.get('data') if isinstance(payload.get('data'), dict) else payload
        order_id = data.get('merchant_transaction_id') or data.get('id')
        if not order_id:
            raise WebhookSignatureError('Webhook carries no order id')

        return {'id': str(order_id), 'status': normalize_status(data.get('status')), 'payload': payload}


gateway = MercuryoGateway()
