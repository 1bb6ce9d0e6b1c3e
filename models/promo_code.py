"""
Promo code model definition
"""
from models import db
from datetime import datetime

DISCOUNT_PERCENTAGE = 'percentage'
DISCOUNT_FIXED = 'fixed'


class PromoCode(db.Model):
    """Discount code applied to a payment at creation time"""
    __tablename__ = 'promo_codes'

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(50), unique=True, nullable=False, index=True)  # stored upper-case
    discount_type = db.Column(db.String(20), nullable=False)  # percentage, fixed
    # Percent for percentage codes, minor currency units for fixed ones
    discount_value = db.Column(db.Integer, nullable=False)
    max_uses = db.Column(db.Integer, nullable=True)
    current_uses = db.Column(db.Integer, nullable=False, default=0)
    valid_from = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    valid_until = db.Column(db.DateTime, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    payments = db.relationship('Payment', backref='promo_code', lazy=True)

    @property
    def is_exhausted(self):
        return bool(self.max_uses) and (self.current_uses or 0) >= self.max_uses

    def to_dict(self):
        return {
            'code': self.code,
            'discountType': self.discount_type,
            'discountValue': self.discount_value,
            'valid': True,
        }

    def __repr__(self):
        return f'<PromoCode {self.code}>'
