"""
User model definition
"""
from models import db
from datetime import datetime
from flask_login import UserMixin


class User(UserMixin, db.Model):
    """Telegram-identified customer account"""
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    telegram_id = db.Column(db.String(255), unique=True, nullable=False, index=True)
    username = db.Column(db.String(255))
    first_name = db.Column(db.String(255))
    last_name = db.Column(db.String(255))
    photo_url = db.Column(db.Text)
    balance = db.Column(db.Integer, nullable=False, default=0)  # kopecks; only the referral credit moves it
    referred_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True, index=True)
    first_payment_processed = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationships
    subscriptions = db.relationship('Subscription', backref='user', lazy=True)
    payments = db.relationship('Payment', backref='user', lazy=True)
    referrer = db.relationship('User', remote_side=[id], lazy=True)

    @property
    def panel_username(self):
        """Username of this user's access identity on the provisioning panel."""
        return f"user_{self.telegram_id}"

    def to_public_dict(self, is_new_user=None):
        data = {
            'id': self.id,
            'telegramId': self.telegram_id,
            'username': self.username,
            'firstName': self.first_name,
            'lastName': self.last_name,
            'photoUrl': self.photo_url,
        }
        if is_new_user is not None:
            data['isNewUser'] = is_new_user
        return data

    def __repr__(self):
        return f'<User {self.telegram_id}>'
