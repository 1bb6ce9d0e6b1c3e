"""
Tests for promo code checks, discounts and their use at checkout.
"""
import json
from datetime import datetime

import pytest

from conftest import DAY, auth_header, make_payment, make_user, sign_webhook
from models import db
from models.payment import Payment
from models.promo_code import PromoCode
from utils.promo_codes import apply_discount, find_usable_promo
from utils.subscription_reconciler import reconcile_payment


def make_promo(code='WELCOME20', discount_type='percentage', discount_value=20, **kwargs):
    now = datetime.utcnow()
    kwargs.setdefault('valid_from', now - DAY)
    kwargs.setdefault('valid_until', now + 30 * DAY)
    promo = PromoCode(code=code, discount_type=discount_type, discount_value=discount_value, **kwargs)
    db.session.add(promo)
    db.session.commit()
    return promo


def _uses(promo_id):
    return db.session.get(PromoCode, promo_id, populate_existing=True).current_uses


class TestApplyPromo:
    def test_valid_code(self, client):
        make_promo()
        resp = client.post('/promo/apply', json={'code': 'welcome20'})
        assert resp.status_code == 200
        assert resp.get_json() == {
            'code': 'WELCOME20', 'discountType': 'percentage', 'discountValue': 20, 'valid': True,
        }

    def test_lookup_ignores_stored_case(self, client):
        make_promo(code='Spring25')
        resp = client.post('/promo/apply', json={'code': 'SPRING25'})
        assert resp.status_code == 200
        assert resp.get_json()['code'] == 'Spring25'

    def test_unknown_code(self, client):
        resp = client.post('/promo/apply', json={'code': 'NOPE'})
        assert resp.status_code == 404
        assert resp.get_json()['code'] == 'PROMO_NOT_FOUND'

    @pytest.mark.parametrize('overrides,code', [
        ({'is_active': False}, 'PROMO_INACTIVE'),
        ({'valid_until': datetime.utcnow() - DAY}, 'PROMO_EXPIRED'),
        ({'valid_from': datetime.utcnow() + DAY}, 'PROMO_NOT_STARTED'),
        ({'max_uses': 3, 'current_uses': 3}, 'PROMO_LIMIT_REACHED'),
    ])
    def test_unusable_code(self, client, overrides, code):
        make_promo(**overrides)
        resp = client.post('/promo/apply', json={'code': 'WELCOME20'})
        assert resp.status_code == 400
        assert resp.get_json()['code'] == code

    def test_open_ended_code(self, client):
        make_promo(valid_until=None, max_uses=None)
        assert client.post('/promo/apply', json={'code': 'WELCOME20'}).status_code == 200

    @pytest.mark.parametrize('payload,code', [
        ({}, 'VALIDATION_ERROR'),
        ({'code': ''}, 'VALIDATION_ERROR'),
        ({'code': 'BAD CODE!'}, 'INVALID_PROMO_CODE'),
        ({'code': 'X' * 51}, 'INVALID_PROMO_CODE'),
        ({'code': 20}, 'INVALID_PROMO_CODE'),
    ])
    def test_invalid_request(self, client, payload, code):
        resp = client.post('/promo/apply', json=payload)
        assert resp.status_code == 400
        assert resp.get_json()['code'] == code

    def test_checking_does_not_consume_a_use(self, client):
        promo = make_promo(max_uses=1)
        client.post('/promo/apply', json={'code': 'WELCOME20'})
        client.post('/promo/apply', json={'code': 'WELCOME20'})
        assert _uses(promo.id) == 0


class TestDiscount:
    @pytest.mark.parametrize('discount_type,value,expected', [
        ('percentage', 20, 8000),
        ('percentage', 33, 6700),
        ('percentage', 150, 0),
        ('fixed', 2500, 7500),
        ('fixed', 20000, 0),
        ('bogus', 50, 10000),
    ])
    def test_apply_discount(self, discount_type, value, expected):
        promo = PromoCode(code='X', discount_type=discount_type, discount_value=value)
        assert apply_discount(10000, promo) == expected

    def test_window_checked_against_given_time(self, app, fixed_now):
        make_promo(valid_from=fixed_now - DAY, valid_until=fixed_now + DAY)
        assert find_usable_promo('WELCOME20', now=fixed_now).code == 'WELCOME20'


class TestPromoAtCheckout:
    def test_discounted_payment(self, client):
        promo = make_promo()
        user = make_user('1001')

        resp = client.post('/billing/create', json={'plan': '30days', 'promoCode': 'welcome20'},
                           headers=auth_header(user))

        assert resp.status_code == 200
        assert resp.get_json()['amount'] == 80
        payment = Payment.query.one()
        assert payment.amount == 8000
        assert payment.promo_code_id == promo.id
        assert _uses(promo.id) == 0

    def test_unusable_code_blocks_payment(self, client):
        make_promo(valid_until=datetime.utcnow() - DAY)
        user = make_user('1001')

        resp = client.post('/billing/create', json={'plan': '30days', 'promoCode': 'WELCOME20'},
                           headers=auth_header(user))

        assert resp.status_code == 400
        assert resp.get_json()['code'] == 'PROMO_EXPIRED'
        assert Payment.query.count() == 0

    def test_completed_payment_counts_one_use(self, app, fixed_now):
        promo = make_promo(max_uses=2)
        user = make_user('1001')
        payment = make_payment(user, 'PAY-1', amount=8000)
        payment.promo_code_id = promo.id
        db.session.commit()

        reconcile_payment('PAY-1', 'completed', now=fixed_now)
        reconcile_payment('PAY-1', 'completed', now=fixed_now)

        assert _uses(promo.id) == 1

    def test_failed_payment_counts_nothing(self, app, fixed_now):
        promo = make_promo(max_uses=2)
        user = make_user('1001')
        payment = make_payment(user, 'PAY-1', amount=8000)
        payment.promo_code_id = promo.id
        db.session.commit()

        reconcile_payment('PAY-1', 'failed', now=fixed_now)

        assert _uses(promo.id) == 0

    def test_last_use_exhausts_code(self, client):
        promo = make_promo(max_uses=1)
        user = make_user('1001')
        client.post('/billing/create', json={'plan': '30days', 'promoCode': 'WELCOME20'}, headers=auth_header(user))
        order_id = Payment.query.one().gateway_order_id
        body = json.dumps({'data': {'merchant_transaction_id': order_id, 'status': 'paid'}})
        client.post('/billing/webhook', data=body,
                    headers={'Content-Type': 'application/json', 'X-Mercuryo-Signature': sign_webhook(body)})

        assert _uses(promo.id) == 1
        resp = client.post('/promo/apply', json={'code': 'WELCOME20'})
        assert resp.get_json()['code'] == 'PROMO_LIMIT_REACHED'
