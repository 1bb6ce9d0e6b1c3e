"""
Billing routes: tariffs, payment creation, gateway webhook
"""
from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required

from models import db
from models.payment import Payment, STATUS_FAILED, STATUS_PENDING
from utils.errors import AuthenticationError, ExternalServiceError
from utils.payment_gateway import WebhookSignatureError, gateway
from utils.plans import CURRENCY, MAX_DEVICES, plan_amount, tariff_list
from utils.promo_codes import apply_discount, find_usable_promo
from utils.rate_limits import BILLING_CREATE_LIMIT, WEBHOOK_LIMIT, limiter
from utils.subscription_reconciler import OUTCOME_ALREADY_PROCESSED, provision_access, reconcile_payment
from utils.validators import validate_create_payment
from utils.webhook_security import webhook_guard

payment_bp = Blueprint('payment', __name__, url_prefix='/billing')


@payment_bp.route('/tariffs', methods=['GET'])
def tariffs():
    """Available tariff plans"""
    return jsonify({
        'tariffs': tariff_list(),
        'currency': CURRENCY,
        'defaultDevices': 1,
        'maxDevices': MAX_DEVICES,
    })


@payment_bp.route('/create', methods=['POST'])
@limiter.limit(BILLING_CREATE_LIMIT)
@login_required
def create_payment():
    """Create a pending payment and a gateway payment link"""
    plan, devices, promo_code = validate_create_payment(request.get_json(silent=True))
    amount = plan_amount(plan, devices)
    promo = None
    if promo_code:
        promo = find_usable_promo(promo_code)
        amount = apply_discount(amount, promo)
        current_app.logger.info(
            "Promo code applied: user_id=%s code=%s discount_type=%s discount_value=%s",
            current_user.id, promo.code, promo.discount_type, promo.discount_value,
        )

    payment = Payment(
        user_id=current_user.id,
        amount=amount,
        currency=CURRENCY,
        status=STATUS_PENDING,
        plan=plan,
        promo_code_id=promo.id if promo else None,
    )
    db.session.add(payment)
    db.session.commit()
    current_app.logger.info(
        "Payment created: payment_id=%s user_id=%s plan=%s amount=%s devices=%s",
        payment.id, current_user.id, plan, amount, devices,
    )

    frontend_url = current_app.config.get('FRONTEND_URL', 'http://localhost:3000').rstrip('/')
    return_url = f"{frontend_url}/billing/success?paymentId={payment.id}"
    try:
        link = gateway.create_payment(amount, CURRENCY, current_user.id, plan, return_url)
    except ExternalServiceError:
        payment.status = STATUS_FAILED
        db.session.commit()
        current_app.logger.error("Gateway failed to create payment link for payment_id=%s", payment.id, exc_info=True)
        raise

    payment.gateway_order_id = link['id']
    payment.gateway_data = link
    db.session.commit()

    return jsonify({
        'paymentId': payment.id,
        'paymentUrl': link['payment_url'],
        'amount': amount // 100,
        'currency': CURRENCY,
    })


@payment_bp.route('/webhook', methods=['POST'])
@limiter.limit(WEBHOOK_LIMIT)
@webhook_guard
def webhook():
    """Gateway payment status notification"""
    signature = request.headers.get('X-Mercuryo-Signature')
    if not signature:
        current_app.logger.warning("Webhook without signature from %s", request.remote_addr)
        raise AuthenticationError('No signature provided', 'MISSING_SIGNATURE')

    try:
        event = gateway.parse_webhook(request.get_data(), signature)
    except WebhookSignatureError as e:
        current_app.logger.warning("Webhook rejected from %s: %s", request.remote_addr, e.message)
        raise AuthenticationError('Invalid webhook signature', 'INVALID_SIGNATURE')

    current_app.logger.info("Webhook received: order_id=%s status=%s", event['id'], event['status'])
    result = reconcile_payment(event['id'], event['status'], event['payload'])

    if result.outcome == OUTCOME_ALREADY_PROCESSED:
        return jsonify({'success': True, 'message': 'Already processed'})

    provision_access(result)
    current_app.logger.info("Webhook processed: payment_id=%s outcome=%s", result.payment_id, result.outcome)
    return jsonify({'success': True})
