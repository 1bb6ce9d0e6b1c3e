"""
Subscription plan catalogue. Prices are whole rubles; payments store kopecks.
"""
import logging
from datetime import timedelta

logger = logging.getLogger(__name__)

CURRENCY = 'RUB'
DEFAULT_PLAN = '30days'
MIN_DEVICES = 1
MAX_DEVICES = 4

_BASE_FEATURES = [
    'Безлимитный трафик',
    'Высокая скорость',
    'До 3 устройств одновременно',
    'Доступ ко всем серверам',
]

PLANS = {
    '30days': {
        'name': 'Базовый',
        'duration': 30,
        'price': 100,
        'discount': 0,
        'features': _BASE_FEATURES,
        'popular': True,
    },
    '90days': {
        'name': 'Выгодный',
        'duration': 90,
        'price': 270,
        'discount': 10,
        'features': _BASE_FEATURES + ['Скидка 10%'],
        'popular': False,
    },
    '180days': {
        'name': 'Оптимальный',
        'duration': 180,
        'price': 480,
        'discount': 20,
        'features': _BASE_FEATURES + ['Скидка 20%', 'Приоритетная поддержка'],
        'popular': False,
    },
    '365days': {
        'name': 'Максимальный',
        'duration': 365,
        'price': 850,
        'discount': 30,
        'features': _BASE_FEATURES + ['Скидка 30%', 'Приоритетная поддержка', 'Ранний доступ к новым функциям'],
        'popular': False,
    },
}


def is_valid_plan(plan):
    return plan in PLANS


def plan_duration(plan):
    """Access period bought by one payment for the plan; unknown plans fall back to 30 days."""
    info = PLANS.get(plan)
    if info is None:
        logger.warning("Unknown plan %r, falling back to %s", plan, DEFAULT_PLAN)
        info = PLANS[DEFAULT_PLAN]
    return timedelta(days=info['duration'])


def plan_amount(plan, devices=1):
    """Amount to charge in kopecks."""
    return PLANS[plan]['price'] * devices * 100


def tariff_list():
    tariffs = []
    for plan_id, info in PLANS.items():
        tariffs.append({
            'id': plan_id,
            'name': info['name'],
            'duration': info['duration'],
            'price': info['price'],
            'pricePerMonth': round(info['price'] / (info['duration'] / 30)),
            'discount': info['discount'],
            'features': list(info['features']),
            'popular': info['popular'],
        })
    return tariffs
