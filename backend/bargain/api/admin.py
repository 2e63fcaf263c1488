from flask import Blueprint, jsonify, request, current_app
from flask_login import login_required, current_user
from bargain.models import Shop
from bargain.services.play.config import SqlConfigStore
from bargain.services.play.errors import ValidationError
from bargain.services.play.store import SqlStore
from bargain.services.play.sweeper import run_expiry_sweep


admin = Blueprint('admin', __name__)


@admin.route('/shops/<shop_domain>', methods=['GET'])
@login_required
def get_shop(shop_domain):
    shop = Shop.query.filter_by(shop_domain=shop_domain).first()
    if not shop:
        return jsonify({'error': 'Shop not found'}), 404
    payload = shop.to_dict()
    payload['settings'] = shop.document
    return jsonify(payload)


@admin.route('/shops/<shop_domain>', methods=['PUT'])
@login_required
def save_shop(shop_domain):
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError('configuration document must be a JSON object')
    document = dict(data)
    access_token = document.pop('accessToken', None)
    config = SqlConfigStore().save(shop_domain, document, access_token=access_token)
    current_app.logger.info(f"[config-save] shop={shop_domain} by={current_user.username} enabled={config.is_enabled}")
    payload = config.to_public()
    payload.update({'success': True, 'shopDomain': shop_domain, 'isEnabled': config.is_enabled})
    return jsonify(payload)


@admin.route('/shops/<shop_domain>/reset-play-limits', methods=['POST'])
@login_required
def reset_play_limits(shop_domain):
    data = request.get_json(silent=True) or {}
    store = SqlStore(retry_attempts=current_app.config.get('STORE_RETRY_ATTEMPTS', 3))
    removed = store.reset_counters(shop_domain, customer_key=data.get('customerKey'))
    current_app.logger.info(
        f"[reset-limits] shop={shop_domain} customer={data.get('customerKey') or '*'} counters={removed}"
    )
    return jsonify({'success': True, 'countersReset': removed})


@admin.route('/sessions/expire', methods=['POST'])
@login_required
def expire_sessions():
    expired = run_expiry_sweep(current_app._get_current_object())
    return jsonify({'success': True, 'expired': expired})
