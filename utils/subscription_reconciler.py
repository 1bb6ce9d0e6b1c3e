"""
Apply payment-gateway outcomes to payments, subscriptions and referral balances.

Webhooks are delivered at least once and may race each other. All writes for one
delivery happen in a single transaction with the payment, the paying user and the
user's current subscription locked FOR UPDATE, so a redelivery or a concurrent
payment for the same user waits and then sees the committed state.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from flask import current_app

from models import db
from models.payment import Payment, STATUS_COMPLETED, STATUS_FAILED
from models.subscription import Subscription, STATUS_ACTIVE
from models.user import User
from utils.errors import NotFoundError
from utils.marzban import PanelError, marzban
from utils.plans import DEFAULT_PLAN, is_valid_plan, plan_duration
from utils.promo_codes import record_promo_use

logger = logging.getLogger(__name__)

OUTCOME_ALREADY_PROCESSED = 'already_processed'
OUTCOME_IGNORED = 'ignored'
OUTCOME_FAILED = 'failed'
OUTCOME_EXTENDED = 'extended'
OUTCOME_CREATED = 'created'


@dataclass
class ReconcileResult:
    payment_id: int
    outcome: str
    subscription_id: Optional[int] = None
    end_date: Optional[datetime] = None
    telegram_id: Optional[str] = None
    referral_credited: bool = False

    @property
    def grants_access(self):
        return self.outcome in (OUTCOME_CREATED, OUTCOME_EXTENDED)

    @property
    def panel_username(self):
        return f"user_{self.telegram_id}"


def _referral_bonus():
    return current_app.config.get('REFERRAL_BONUS_AMOUNT', 5000)


def _locked_payment(payment_id):
    return Payment.query.filter_by(id=payment_id).with_for_update().populate_existing()


def _locked_user(user_id):
    return User.query.filter_by(id=user_id).with_for_update().populate_existing()


def _locked_current_subscription(user_id):
    return Subscription.current_query(user_id).with_for_update().populate_existing()


def _apply_completed(payment, now):
    """Create or extend the user's subscription. Runs inside the locked transaction."""
    user = _locked_user(payment.user_id).one()
    current = _locked_current_subscription(user.id).first()
    duration = plan_duration(payment.plan)

    if current is not None and current.end_date > now:
        current.end_date = max(current.end_date, now) + duration
        current.status = STATUS_ACTIVE
        subscription = current
        outcome = OUTCOME_EXTENDED
    else:
        subscription = Subscription(
            user_id=user.id,
            plan=payment.plan if is_valid_plan(payment.plan) else DEFAULT_PLAN,
            status=STATUS_ACTIVE,
            start_date=now,
            end_date=now + duration,
            auto_renew=False,
            created_at=now,
        )
        db.session.add(subscription)
        outcome = OUTCOME_CREATED

    subscription.panel_synced = False
    db.session.flush()
    payment.subscription_id = subscription.id

    credited = False
    if not user.first_payment_processed:
        if user.referred_by:
            referrer = _locked_user(user.referred_by).one_or_none()
            if referrer is not None:
                bonus = _referral_bonus()
                referrer.balance = (referrer.balance or 0) + bonus
                credited = True
                logger.info(
                    "Referral bonus credited: referrer_id=%s new_user_id=%s bonus=%s",
                    referrer.id, user.id, bonus,
                )
        user.first_payment_processed = True

    if payment.promo_code_id:
        record_promo_use(payment.promo_code_id)

    return ReconcileResult(
        payment_id=payment.id,
        outcome=outcome,
        subscription_id=subscription.id,
        end_date=subscription.end_date,
        telegram_id=user.telegram_id,
        referral_credited=credited,
    )


def reconcile_payment(order_id, gateway_status, payload=None, now=None):
    """
    Apply one webhook delivery.

    Args:
        order_id: Gateway order reference stored on the payment
        gateway_status: Normalized status ('completed', 'failed' or anything else)
        payload: Raw gateway payload kept on the payment
        now: Override of the current time

    Returns:
        ReconcileResult

    Raises:
        NotFoundError: no payment carries order_id
    """
    now = now or datetime.utcnow()

    payment = Payment.query.filter_by(gateway_order_id=order_id).first()
    if payment is None:
        logger.warning("Webhook for unknown payment: order_id=%s", order_id)
        raise NotFoundError('Payment not found', 'PAYMENT_NOT_FOUND')

    if payment.is_terminal:
        logger.info("Payment already processed: payment_id=%s status=%s", payment.id, payment.status)
        return ReconcileResult(payment_id=payment.id, outcome=OUTCOME_ALREADY_PROCESSED,
                               subscription_id=payment.subscription_id)

    if gateway_status not in (STATUS_COMPLETED, STATUS_FAILED):
        logger.info("Ignoring non-final gateway status %r for payment_id=%s", gateway_status, payment.id)
        return ReconcileResult(payment_id=payment.id, outcome=OUTCOME_IGNORED)

    payment_id = payment.id
    try:
        payment = _locked_payment(payment_id).one()
        if payment.is_terminal:
            db.session.rollback()
            logger.info("Payment processed concurrently: payment_id=%s", payment_id)
            return ReconcileResult(payment_id=payment_id, outcome=OUTCOME_ALREADY_PROCESSED)

        if payload is not None:
            payment.gateway_data = payload

        if gateway_status == STATUS_FAILED:
            payment.status = STATUS_FAILED
            db.session.commit()
            logger.info("Payment failed: payment_id=%s", payment_id)
            return ReconcileResult(payment_id=payment_id, outcome=OUTCOME_FAILED)

        payment.status = STATUS_COMPLETED
        result = _apply_completed(payment, now)
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception("Failed to reconcile payment_id=%s", payment_id)
        raise

    logger.info(
        "Payment completed: payment_id=%s subscription_id=%s outcome=%s end_date=%s",
        payment_id, result.subscription_id, result.outcome, result.end_date.isoformat(),
    )
    return result


def provision_access(result, panel=None):
    """
    Best-effort push of the new end date to the provisioning panel.
    Returns True when the panel accepted it; failures stay panel_synced=False for the retry pass.
    """
    if not result.grants_access:
        return False
    panel = panel or marzban
    if not panel.configured:
        logger.warning("Provisioning panel not configured; subscription_id=%s left unsynced", result.subscription_id)
        return False

    username = result.panel_username
    try:
        if result.outcome == OUTCOME_CREATED:
            panel.get_or_create_user(username, 0, result.end_date)
        panel.extend_subscription(username, result.end_date)
    except PanelError as e:
        logger.error("Failed to provision %s for subscription_id=%s: %s", username, result.subscription_id, e)
        return False

    # A newer extension may have moved end_date meanwhile; only that one may mark it synced
    Subscription.query.filter_by(id=result.subscription_id, end_date=result.end_date).update(
        {'panel_synced': True}, synchronize_session=False
    )
    db.session.commit()
    return True
