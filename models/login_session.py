"""
Deep-link login session model.
Bridges "open the bot" on one device with polling on another; single use.
"""
from models import db
from datetime import datetime

STATUS_PENDING = 'pending'
STATUS_APPROVED = 'approved'
STATUS_EXPIRED = 'expired'


class LoginSession(db.Model):
    __tablename__ = 'login_sessions'
    __table_args__ = (
        db.CheckConstraint(
            "status IN ('pending', 'approved', 'expired')",
            name='login_sessions_status_check',
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    token = db.Column(db.String(255), unique=True, nullable=False, index=True)
    status = db.Column(db.String(20), nullable=False, default=STATUS_PENDING, index=True)
    telegram_id = db.Column(db.String(255), nullable=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='SET NULL'), nullable=True)
    expires_at = db.Column(db.DateTime, nullable=False, index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    consumed_at = db.Column(db.DateTime, nullable=True)  # set when the approved session handed out tokens

    def is_expired(self, now=None):
        return (now or datetime.utcnow()) > self.expires_at

    def __repr__(self):
        return f'<LoginSession {self.token[:8]}... {self.status}>'
