"""
Subscription model definition
"""
import math
from models import db
from datetime import datetime

STATUS_ACTIVE = 'active'
STATUS_EXPIRED = 'expired'
STATUS_CANCELLED = 'cancelled'


class Subscription(db.Model):
    """Paid access period. A user keeps every row; the latest one is current."""
    __tablename__ = 'subscriptions'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    plan = db.Column(db.String(50), nullable=False)
    status = db.Column(db.String(20), nullable=False, default=STATUS_ACTIVE, index=True)  # active, expired, cancelled
    start_date = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    end_date = db.Column(db.DateTime, nullable=False)
    auto_renew = db.Column(db.Boolean, default=False)
    # False while the provisioning panel has not yet been told about the latest end date/status
    panel_synced = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationships
    payments = db.relationship('Payment', backref='subscription', lazy=True)

    @classmethod
    def current_query(cls, user_id):
        """Most recently created subscription first."""
        return cls.query.filter_by(user_id=user_id).order_by(cls.created_at.desc(), cls.id.desc())

    @classmethod
    def current_for(cls, user_id):
        return cls.current_query(user_id).first()

    def is_live(self, now=None):
        """Stored status is advisory; the end date decides."""
        now = now or datetime.utcnow()
        return self.status == STATUS_ACTIVE and self.end_date > now

    def effective_status(self, now=None):
        now = now or datetime.utcnow()
        if self.end_date < now:
            return STATUS_EXPIRED
        return self.status

    def days_remaining(self, now=None):
        now = now or datetime.utcnow()
        if self.end_date < now:
            return 0
        return math.ceil((self.end_date - now).total_seconds() / 86400)

    def to_dict(self, now=None):
        now = now or datetime.utcnow()
        is_expired = self.end_date < now
        return {
            'id': self.id,
            'plan': self.plan,
            'status': self.effective_status(now),
            'startDate': self.start_date.isoformat(),
            'endDate': self.end_date.isoformat(),
            'autoRenew': bool(self.auto_renew),
            'isExpired': is_expired,
            'daysRemaining': self.days_remaining(now),
        }

    def __repr__(self):
        return f'<Subscription {self.id}>'
