"""
User routes: profile, current subscription and connection config
"""
from datetime import datetime
from functools import wraps

from flask import Blueprint, current_app, g, jsonify
from flask_login import current_user, login_required

from models.subscription import Subscription, STATUS_ACTIVE
from utils.errors import ForbiddenError
from utils.marzban import marzban

user_bp = Blueprint('user', __name__, url_prefix='/user')


def active_subscription_required(f):
    """Decorator to require a live current subscription; exposes it as g.subscription"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        current = Subscription.current_for(current_user.id)
        if current is None:
            raise ForbiddenError('Active subscription required', 'NO_SUBSCRIPTION')
        if current.status != STATUS_ACTIVE or current.end_date <= datetime.utcnow():
            raise ForbiddenError('Active subscription required', 'SUBSCRIPTION_INACTIVE')
        g.subscription = current
        return f(*args, **kwargs)
    return decorated_function


@user_bp.route('', methods=['GET'])
@login_required
def profile():
    data = current_user.to_public_dict()
    data['balance'] = current_user.balance
    data['createdAt'] = current_user.created_at.isoformat()
    return jsonify(data)


@user_bp.route('/subscription', methods=['GET'])
@login_required
def subscription():
    """Current subscription with status derived from the end date"""
    current = Subscription.current_for(current_user.id)
    if current is None:
        return jsonify({'status': 'none'})
    return jsonify(current.to_dict())


@user_bp.route('/config', methods=['GET'])
@login_required
@active_subscription_required
def connection_config():
    """VLESS link and QR code for the user's panel account"""
    username = current_user.panel_username
    marzban.get_or_create_user(username, 0, g.subscription.end_date)
    vless_config = marzban.get_vless_config(
        username,
        current_app.config.get('VPN_PUBLIC_HOST'),
        current_app.config.get('VPN_PUBLIC_PORT'),
    )
    current_app.logger.info("Connection config issued: user_id=%s", current_user.id)
    return jsonify({
        'vlessConfig': vless_config,
        'qrCode': marzban.generate_qr_code(vless_config),
        'expiresAt': g.subscription.end_date.isoformat(),
    })
