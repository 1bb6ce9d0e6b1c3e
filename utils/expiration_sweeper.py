"""
Periodic subscription maintenance: expire lapsed rows, warn about upcoming expiry,
and retry provisioning-panel pushes that failed earlier.

Each row is committed on its own so one bad row never blocks the rest.
"""
import logging
import time
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from models import db
from models.subscription import Subscription, STATUS_ACTIVE, STATUS_EXPIRED
from models.user import User
from utils.marzban import PanelError, marzban

logger = logging.getLogger(__name__)

BATCH_SIZE = 100
WARNING_WINDOW = timedelta(hours=24)
WARNING_LIMIT = 100


def _panel_delay(delay):
    if delay is not None:
        return delay
    return current_app.config.get('PANEL_CALL_DELAY', 0.1)


def _mark_synced(subscription_id, end_date=None):
    query = Subscription.query.filter_by(id=subscription_id)
    if end_date is not None:
        query = query.filter_by(end_date=end_date)
    query.update({'panel_synced': True}, synchronize_session=False)
    db.session.commit()


def _disable_on_panel(subscription, panel, now):
    """Disable the user's panel access unless a newer subscription still grants it."""
    current = Subscription.current_for(subscription.user_id)
    if current is not None and current.id != subscription.id and current.is_live(now):
        logger.info(
            "Skipping panel disable for subscription_id=%s: newer subscription_id=%s is live",
            subscription.id, current.id,
        )
        return False

    if not panel.configured:
        logger.debug("Provisioning panel not configured; subscription_id=%s left unsynced", subscription.id)
        return False

    user = db.session.get(User, subscription.user_id)
    if user is None:
        return False
    try:
        panel.update_user(user.panel_username, {'status': 'disabled'})
    except PanelError as e:
        logger.error(
            "Failed to deactivate panel user %s for subscription_id=%s: %s",
            user.panel_username, subscription.id, e,
        )
        return False

    _mark_synced(subscription.id)
    logger.info("Panel user deactivated: subscription_id=%s username=%s", subscription.id, user.panel_username)
    _resync_newer_subscription(subscription, now)
    return True


def _resync_newer_subscription(subscription, now):
    """
    A payment may have created and provisioned a newer subscription while the
    disable was in flight. Flag it unsynced so the retry pass re-enables access.
    """
    current = Subscription.current_for(subscription.user_id)
    if current is None or current.id == subscription.id or not current.is_live(now):
        return
    Subscription.query.filter_by(id=current.id).update({'panel_synced': False}, synchronize_session=False)
    db.session.commit()
    logger.warning(
        "Newer subscription_id=%s appeared during panel disable of subscription_id=%s; queued for re-sync",
        current.id, subscription.id,
    )


def _expire_one(subscription_id, now, panel):
    """Returns False only when the status update itself failed."""
    try:
        updated = (
            Subscription.query
            .filter(Subscription.id == subscription_id,
                    Subscription.status == STATUS_ACTIVE,
                    Subscription.end_date < now)
            .update({'status': STATUS_EXPIRED, 'panel_synced': False, 'updated_at': datetime.utcnow()},
                    synchronize_session=False)
        )
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Failed to expire subscription_id=%s", subscription_id)
        return False

    if not updated:
        # Extended by a payment between the batch read and the update
        return True

    subscription = db.session.get(Subscription, subscription_id, populate_existing=True)
    _disable_on_panel(subscription, panel, now)
    return True


def expire_subscriptions(now=None, batch_size=BATCH_SIZE, delay=None, panel=None):
    """
    Flip active subscriptions past their end date to expired and disable panel access.

    Returns:
        dict: {processed, failed, duration_ms}
    """
    started = time.monotonic()
    now = now or datetime.utcnow()
    delay = _panel_delay(delay)
    panel = panel or marzban
    logger.info("Starting subscription expiration check")

    processed = 0
    failed_ids = set()
    while True:
        query = Subscription.query.filter(
            Subscription.status == STATUS_ACTIVE,
            Subscription.end_date < now,
        )
        if failed_ids:
            query = query.filter(~Subscription.id.in_(failed_ids))
        batch = [row.id for row in query.order_by(Subscription.id).limit(batch_size).all()]
        if not batch:
            break

        for subscription_id in batch:
            if _expire_one(subscription_id, now, panel):
                processed += 1
            else:
                failed_ids.add(subscription_id)
            if delay > 0:
                time.sleep(delay)

        if len(batch) < batch_size:
            break

    duration_ms = int((time.monotonic() - started) * 1000)
    logger.info(
        "Subscription expiration check completed: processed=%s failed=%s duration_ms=%s",
        processed, len(failed_ids), duration_ms,
    )
    return {'processed': processed, 'failed': len(failed_ids), 'duration_ms': duration_ms}


def warn_expiring_subscriptions(now=None, within=WARNING_WINDOW, limit=WARNING_LIMIT):
    """Log active subscriptions ending within the window. No mutation."""
    now = now or datetime.utcnow()
    expiring = (
        Subscription.query
        .filter(Subscription.status == STATUS_ACTIVE,
                Subscription.end_date > now,
                Subscription.end_date < now + within)
        .order_by(Subscription.end_date)
        .limit(limit)
        .all()
    )
    for subscription in expiring:
        logger.warning(
            "Subscription expiring soon: subscription_id=%s user_id=%s end_date=%s",
            subscription.id, subscription.user_id, subscription.end_date.isoformat(),
        )
    if expiring:
        logger.info("Expiration warnings logged: count=%s", len(expiring))
    return len(expiring)


def retry_panel_sync(now=None, batch_size=BATCH_SIZE, delay=None, panel=None):
    """
    Re-push current subscriptions the panel has not acknowledged yet.

    Walks the unsynced rows by id in batches, so rows that keep failing never
    hide newer ones. Returns the number synced.
    """
    now = now or datetime.utcnow()
    delay = _panel_delay(delay)
    panel = panel or marzban
    if not panel.configured:
        return 0

    synced = 0
    failed = 0
    last_id = 0
    while True:
        pending = (
            Subscription.query
            .filter(Subscription.panel_synced.is_(False), Subscription.id > last_id)
            .order_by(Subscription.id)
            .limit(batch_size)
            .all()
        )
        if not pending:
            break
        last_id = pending[-1].id

        for subscription in pending:
            current = Subscription.current_for(subscription.user_id)
            if current is None or current.id != subscription.id:
                # Superseded rows have nothing left to push
                _mark_synced(subscription.id)
                continue

            user = db.session.get(User, subscription.user_id)
            end_date = subscription.end_date
            try:
                if subscription.is_live(now):
                    panel.get_or_create_user(user.panel_username, 0, end_date)
                    panel.extend_subscription(user.panel_username, end_date)
                else:
                    panel.update_user(user.panel_username, {'status': 'disabled'})
            except PanelError as e:
                failed += 1
                logger.warning("Panel sync retry failed for subscription_id=%s: %s", subscription.id, e)
            else:
                _mark_synced(subscription.id, end_date)
                synced += 1
            if delay > 0:
                time.sleep(delay)

        if len(pending) < batch_size:
            break

    if synced or failed:
        logger.info("Panel sync retry completed: synced=%s failed=%s", synced, failed)
    return synced
