"""
Models package for the access backend
"""
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

# Import all models here to ensure they're registered
from models.user import User
from models.subscription import Subscription
from models.payment import Payment
from models.login_session import LoginSession
from models.promo_code import PromoCode

__all__ = [
    'db',
    'User',
    'Subscription',
    'Payment',
    'LoginSession',
    'PromoCode',
]
