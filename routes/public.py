"""
Public routes: health check
"""
from datetime import datetime

from flask import Blueprint, jsonify

public_bp = Blueprint('public', __name__)


@public_bp.route('/health')
def health():
    """Liveness check for the load balancer"""
    return jsonify({'status': 'ok', 'timestamp': datetime.utcnow().isoformat() + 'Z'})
