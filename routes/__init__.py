"""
Routes package for the access backend
"""
# Export blueprints for registration in app.py
from routes.public import public_bp
from routes.auth import auth_bp
from routes.bot_auth import bot_auth_bp
from routes.payment import payment_bp
from routes.user import user_bp
from routes.promo import promo_bp

__all__ = [
    'public_bp',
    'auth_bp',
    'bot_auth_bp',
    'payment_bp',
    'user_bp',
    'promo_bp',
]
