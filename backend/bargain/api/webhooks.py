from flask import Blueprint, jsonify, request, current_app
from bargain import socketio
from bargain.models import utcnow
from bargain.services.commerce import verify_webhook
from bargain.services.play.store import SqlStore


webhooks = Blueprint('webhooks', __name__)


@webhooks.route('/orders/create', methods=['POST'])
def order_created():
    raw = request.get_data()
    secret = current_app.config.get('SHOPIFY_WEBHOOK_SECRET', '')
    if not verify_webhook(raw, request.headers.get('X-Shopify-Hmac-Sha256'), secret):
        current_app.logger.warning("[webhook] orders/create rejected: bad signature")
        return jsonify({'error': 'Unauthorized'}), 401

    order = request.get_json(silent=True) or {}
    shop_domain = request.headers.get('X-Shopify-Shop-Domain') or order.get('shop_domain')
    if not shop_domain:
        return jsonify({'error': 'Missing shop domain'}), 400

    prefix = current_app.config.get('CODE_PREFIX', 'BARGAIN')
    order_id = str(order['id']) if order.get('id') is not None else None
    store = SqlStore(retry_attempts=current_app.config.get('STORE_RETRY_ATTEMPTS', 3))
    redeemed = []
    for entry in order.get('discount_codes') or []:
        code = str((entry or {}).get('code') or '').strip().upper()
        if not code.startswith(prefix):
            continue
        if store.mark_discount_used(shop_domain, code, order_id, utcnow()):
            redeemed.append(code)
            current_app.logger.info(f"[redeem] shop={shop_domain} code={code} order={order_id}")
        else:
            current_app.logger.info(f"[redeem-skip] shop={shop_domain} code={code} order={order_id}")

    for code in redeemed:
        socketio.emit('discount_redeemed', {'discountCode': code, 'orderId': order_id},
                      to=f"shop:{shop_domain}", namespace='/ws')
    return jsonify({'received': True, 'redeemed': redeemed})
