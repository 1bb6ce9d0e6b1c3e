"""
Promo code routes
"""
from flask import Blueprint, current_app, jsonify, request

from utils.promo_codes import find_usable_promo
from utils.rate_limits import PROMO_APPLY_LIMIT, failed_responses_only, limiter
from utils.validators import validate_apply_promo

promo_bp = Blueprint('promo', __name__, url_prefix='/promo')


@promo_bp.route('/apply', methods=['POST'])
@limiter.limit(PROMO_APPLY_LIMIT, deduct_when=failed_responses_only)
def apply_promo():
    """Check a promo code and describe its discount; nothing is reserved"""
    code = validate_apply_promo(request.get_json(silent=True))
    promo = find_usable_promo(code)
    current_app.logger.info("Promo code validated: code=%s discount_type=%s", promo.code, promo.discount_type)
    return jsonify(promo.to_dict())
