"""
Tests for expiry, warnings and panel re-sync jobs.
"""
from conftest import DAY, make_subscription, make_user
from models import db
from models.subscription import Subscription
from utils.expiration_sweeper import expire_subscriptions, retry_panel_sync, warn_expiring_subscriptions
from utils.marzban import PanelError


def _status(subscription_id):
    return db.session.get(Subscription, subscription_id, populate_existing=True)


class TestExpireSubscriptions:
    def test_expires_lapsed_and_disables_panel_user(self, app, fixed_now, fake_panel):
        user = make_user('1001')
        lapsed = make_subscription(user, fixed_now - 31 * DAY, fixed_now - DAY)

        result = expire_subscriptions(now=fixed_now, delay=0, panel=fake_panel)

        assert result['processed'] == 1
        assert result['failed'] == 0
        assert 'duration_ms' in result
        row = _status(lapsed.id)
        assert row.status == 'expired'
        assert row.panel_synced is True
        fake_panel.update_user.assert_called_once_with('user_1001', {'status': 'disabled'})

    def test_leaves_live_subscriptions_alone(self, app, fixed_now, fake_panel):
        user = make_user('1001')
        live = make_subscription(user, fixed_now - DAY, fixed_now + DAY)

        assert expire_subscriptions(now=fixed_now, delay=0, panel=fake_panel)['processed'] == 0
        assert _status(live.id).status == 'active'
        fake_panel.update_user.assert_not_called()

    def test_panel_failure_keeps_expiry(self, app, fixed_now, fake_panel):
        user = make_user('1001')
        lapsed = make_subscription(user, fixed_now - 31 * DAY, fixed_now - DAY)
        fake_panel.update_user.side_effect = PanelError('panel down')

        result = expire_subscriptions(now=fixed_now, delay=0, panel=fake_panel)

        assert result['processed'] == 1
        row = _status(lapsed.id)
        assert row.status == 'expired'
        assert row.panel_synced is False

    def test_malformed_panel_login_does_not_abort_run(self, app, fixed_now, garbled_panel):
        lapsed = [
            make_subscription(make_user(str(2000 + index)), fixed_now - 31 * DAY, fixed_now - DAY)
            for index in range(3)
        ]

        result = expire_subscriptions(now=fixed_now, batch_size=2, delay=0, panel=garbled_panel)

        assert result['processed'] == 3
        assert result['failed'] == 0
        for subscription in lapsed:
            row = _status(subscription.id)
            assert row.status == 'expired'
            assert row.panel_synced is False

    def test_newer_live_subscription_keeps_panel_access(self, app, fixed_now, fake_panel):
        user = make_user('1001')
        old = make_subscription(user, fixed_now - 40 * DAY, fixed_now - DAY, created_at=fixed_now - 40 * DAY)
        make_subscription(user, fixed_now - DAY, fixed_now + 29 * DAY, created_at=fixed_now - DAY)

        expire_subscriptions(now=fixed_now, delay=0, panel=fake_panel)

        assert _status(old.id).status == 'expired'
        fake_panel.update_user.assert_not_called()

    def test_processes_every_batch(self, app, fixed_now, fake_panel):
        for index in range(5):
            user = make_user(str(2000 + index))
            make_subscription(user, fixed_now - 31 * DAY, fixed_now - DAY)

        result = expire_subscriptions(now=fixed_now, batch_size=2, delay=0, panel=fake_panel)

        assert result['processed'] == 5
        assert Subscription.query.filter_by(status='active').count() == 0
        assert fake_panel.update_user.call_count == 5

    def test_unconfigured_panel(self, app, fixed_now, fake_panel):
        fake_panel.configured = False
        user = make_user('1001')
        lapsed = make_subscription(user, fixed_now - 31 * DAY, fixed_now - DAY)

        assert expire_subscriptions(now=fixed_now, delay=0, panel=fake_panel)['processed'] == 1
        assert _status(lapsed.id).panel_synced is False
        fake_panel.update_user.assert_not_called()


class TestWarnExpiring:
    def test_counts_subscriptions_ending_within_a_day(self, app, fixed_now):
        user = make_user('1001')
        make_subscription(user, fixed_now - 29 * DAY, fixed_now + DAY / 2)
        make_subscription(make_user('1002'), fixed_now, fixed_now + 10 * DAY)
        make_subscription(make_user('1003'), fixed_now - 31 * DAY, fixed_now - DAY)

        assert warn_expiring_subscriptions(now=fixed_now) == 1
        assert Subscription.query.filter_by(status='active').count() == 3


class TestRetryPanelSync:
    def test_pushes_live_unsynced_subscription(self, app, fixed_now, fake_panel):
        user = make_user('1001')
        subscription = make_subscription(user, fixed_now, fixed_now + 30 * DAY, panel_synced=False)

        assert retry_panel_sync(now=fixed_now, delay=0, panel=fake_panel) == 1

        fake_panel.get_or_create_user.assert_called_once_with('user_1001', 0, fixed_now + 30 * DAY)
        fake_panel.extend_subscription.assert_called_once_with('user_1001', fixed_now + 30 * DAY)
        assert _status(subscription.id).panel_synced is True

    def test_disables_expired_unsynced_subscription(self, app, fixed_now, fake_panel):
        user = make_user('1001')
        subscription = make_subscription(user, fixed_now - 31 * DAY, fixed_now - DAY, status='expired',
                                         panel_synced=False)

        assert retry_panel_sync(now=fixed_now, delay=0, panel=fake_panel) == 1
        fake_panel.update_user.assert_called_once_with('user_1001', {'status': 'disabled'})
        assert _status(subscription.id).panel_synced is True

    def test_superseded_rows_marked_without_panel_calls(self, app, fixed_now, fake_panel):
        user = make_user('1001')
        old = make_subscription(user, fixed_now - 40 * DAY, fixed_now - DAY, status='expired',
                                created_at=fixed_now - 40 * DAY, panel_synced=False)
        make_subscription(user, fixed_now - DAY, fixed_now + 29 * DAY, created_at=fixed_now - DAY)

        assert retry_panel_sync(now=fixed_now, delay=0, panel=fake_panel) == 0
        assert _status(old.id).panel_synced is True
        fake_panel.update_user.assert_not_called()
        fake_panel.extend_subscription.assert_not_called()

    def test_failure_leaves_row_for_next_pass(self, app, fixed_now, fake_panel):
        user = make_user('1001')
        subscription = make_subscription(user, fixed_now, fixed_now + 30 * DAY, panel_synced=False)
        fake_panel.extend_subscription.side_effect = PanelError('panel down')

        assert retry_panel_sync(now=fixed_now, delay=0, panel=fake_panel) == 0
        assert _status(subscription.id).panel_synced is False

    def test_unconfigured_panel(self, app, fixed_now, fake_panel):
        fake_panel.configured = False
        user = make_user('1001')
        make_subscription(user, fixed_now, fixed_now + 30 * DAY, panel_synced=False)
        assert retry_panel_sync(now=fixed_now, delay=0, panel=fake_panel) == 0

    def test_failing_rows_do_not_hide_newer_ones(self, app, fixed_now, fake_panel):
        stuck = [
            make_subscription(make_user(str(3000 + index)), fixed_now, fixed_now + 30 * DAY, panel_synced=False)
            for index in range(3)
        ]
        newer = make_subscription(make_user('4000'), fixed_now, fixed_now + 30 * DAY, panel_synced=False)

        def extend(username, expire):
            if username != 'user_4000':
                raise PanelError('panel rejects user')
            return {'status': 'active'}

        fake_panel.extend_subscription.side_effect = extend

        assert retry_panel_sync(now=fixed_now, batch_size=2, delay=0, panel=fake_panel) == 1

        assert _status(newer.id).panel_synced is True
        assert all(_status(row.id).panel_synced is False for row in stuck)
        assert fake_panel.extend_subscription.call_count == 4


class TestDisableRacingPayment:
    def test_subscription_created_during_disable_is_resynced(self, app, fixed_now, fake_panel):
        user = make_user('1001')
        lapsed = make_subscription(user, fixed_now - 31 * DAY, fixed_now - DAY, created_at=fixed_now - 31 * DAY)
        renewed = {}

        def payment_lands_first(username, patch):
            # A webhook creates, provisions and marks a new subscription synced before the disable lands
            renewed['row'] = make_subscription(user, fixed_now, fixed_now + 30 * DAY, created_at=fixed_now)
            return {'status': 'disabled'}

        fake_panel.update_user.side_effect = payment_lands_first

        expire_subscriptions(now=fixed_now, delay=0, panel=fake_panel)

        assert _status(lapsed.id).status == 'expired'
        assert _status(lapsed.id).panel_synced is True
        assert _status(renewed['row'].id).panel_synced is False

        assert retry_panel_sync(now=fixed_now, delay=0, panel=fake_panel) == 1
        fake_panel.extend_subscription.assert_called_once_with('user_1001', fixed_now + 30 * DAY)
        assert _status(renewed['row'].id).panel_synced is True

    def test_no_newer_subscription_leaves_nothing_to_resync(self, app, fixed_now, fake_panel):
        user = make_user('1001')
        make_subscription(user, fixed_now - 31 * DAY, fixed_now - DAY)

        expire_subscriptions(now=fixed_now, delay=0, panel=fake_panel)

        assert Subscription.query.filter_by(panel_synced=False).count() == 0
        assert retry_panel_sync(now=fixed_now, delay=0, panel=fake_panel) == 0
