"""
Payment model definition
"""
from models import db
from datetime import datetime

STATUS_PENDING = 'pending'
STATUS_COMPLETED = 'completed'
STATUS_FAILED = 'failed'
TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_FAILED)


class Payment(db.Model):
    """Gateway payment record"""
    __tablename__ = 'payments'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    subscription_id = db.Column(db.Integer, db.ForeignKey('subscriptions.id'), nullable=True)
    promo_code_id = db.Column(db.Integer, db.ForeignKey('promo_codes.id'), nullable=True)
    amount = db.Column(db.Integer, nullable=False)  # minor currency units
    currency = db.Column(db.String(10), default='RUB')
    status = db.Column(db.String(20), nullable=False, default=STATUS_PENDING, index=True)  # pending, completed, failed
    gateway_order_id = db.Column(db.String(255), unique=True, nullable=True)
    gateway_data = db.Column(db.JSON, nullable=True)
    plan = db.Column(db.String(50), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    def __repr__(self):
        return f'<Payment {self.id}>'
