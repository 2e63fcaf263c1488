from flask import Blueprint, jsonify, request, current_app
from bargain import socketio
from bargain.models import utcnow
from bargain.services.play.config import SqlConfigStore
from bargain.services.play.eligibility import VisitorContext, offer_for_shop
from bargain.services.play.errors import ConfigError, PlayError, ValidationError
from bargain.services.play.intake import GameResultIntake, ScorePolicy, validate_discount
from bargain.services.play.issuer import DiscountIssuer
from bargain.services.play.sessions import Customer, SessionController
from bargain.services.play.store import SqlStore


game = Blueprint('game', __name__)


@game.app_errorhandler(PlayError)
def handle_play_error(exc):
    return jsonify(exc.to_dict()), exc.status


def _store():
    return SqlStore(retry_attempts=current_app.config.get('STORE_RETRY_ATTEMPTS', 3))


def _controller(store=None):
    cfg = current_app.config
    return SessionController(
        store or _store(),
        SqlConfigStore(),
        ttl_seconds=int(cfg.get('SESSION_TTL_SEC', 1800)),
        identify_by_ip=bool(cfg.get('IDENTIFY_BY_IP', True)),
    )


def _intake(store):
    cfg = current_app.config
    issuer = DiscountIssuer.from_config(store, current_app.extensions['commerce'], cfg)
    return GameResultIntake(
        store,
        SqlConfigStore(),
        issuer,
        score_policy=ScorePolicy.from_config(cfg),
        late_finish_policy=cfg.get('LATE_FINISH_POLICY', 'accept'),
        ttl_seconds=int(cfg.get('SESSION_TTL_SEC', 1800)),
        settle_timeout=float(cfg.get('ISSUANCE_SETTLE_SEC', 15)),
    )


def _client_ip():
    forwarded = request.headers.get('X-Forwarded-For', '')
    if forwarded:
        return forwarded.split(',')[0].strip()
    return request.remote_addr


def _shop_room(shop_domain):
    return f"shop:{shop_domain}"


@game.route('/start-session', methods=['POST'])
def start_session():
    data = request.get_json(silent=True) or {}
    shop_domain = data.get('shopDomain')
    if not shop_domain:
        raise ValidationError('shopDomain is required')
    customer_data = data.get('customerData') or {}
    if not isinstance(customer_data, dict):
        raise ValidationError('customerData must be an object')
    customer = None
    if customer_data.get('id') or customer_data.get('email'):
        customer = Customer(
            id=str(customer_data['id']) if customer_data.get('id') else None,
            email=customer_data.get('email'),
        )

    result = _controller().start(
        shop_domain,
        customer=customer,
        source=data.get('source') or 'popup',
        referrer=data.get('referrer'),
        ip_address=_client_ip(),
        user_agent=request.headers.get('User-Agent'),
    )
    return jsonify({
        'success': True,
        'sessionId': result.session.session_id,
        'canPlay': True,
        'playsRemaining': result.plays_remaining,
        'gameConfig': result.config.to_public()['gameSettings'],
    })


@game.route('/finish-session', methods=['POST'])
def finish_session():
    data = request.get_json(silent=True) or {}
    session_id = data.get('sessionId')
    if not session_id or 'finalScore' not in data:
        raise ValidationError('sessionId and finalScore are required')

    store = _store()
    outcome = _intake(store).finish(
        session_id,
        data.get('finalScore'),
        telemetry=data.get('gameData') if isinstance(data.get('gameData'), dict) else None,
        customer_email=data.get('playerEmail'),
    )

    if not outcome.replay:
        session = store.get_session(session_id)
        room = _shop_room(session.shop_domain)
        socketio.emit('session_completed', {
            'sessionId': session_id,
            'finalScore': outcome.final_score,
            'discountPercent': outcome.discount_percent,
            'rewardPending': outcome.reward_pending,
        }, to=room, namespace='/ws')
        if outcome.code:
            socketio.emit('discount_issued', {
                'sessionId': session_id,
                'discountCode': outcome.code,
                'discountPercent': outcome.discount_percent,
                'expiresAt': outcome.to_dict()['expiresAt'],
            }, to=room, namespace='/ws')

    return jsonify(outcome.to_dict()), 202 if outcome.reward_pending else 200


@game.route('/abandon-session', methods=['POST'])
def abandon_session():
    data = request.get_json(silent=True) or {}
    session_id = data.get('sessionId')
    if not session_id:
        raise ValidationError('sessionId is required')
    session = _controller().abandon(session_id)
    return jsonify({'success': True, 'sessionId': session.session_id, 'state': session.state})


@game.route('/offer', methods=['POST'])
def offer():
    data = request.get_json(silent=True) or {}
    shop_domain = data.get('shopDomain')
    visitor_id = data.get('visitorId')
    if not shop_domain or not visitor_id:
        raise ValidationError('shopDomain and visitorId are required')
    context = VisitorContext(
        shop_domain=shop_domain,
        visitor_id=str(visitor_id),
        path=data.get('path') or '/',
        user_agent=data.get('userAgent') or request.headers.get('User-Agent', ''),
        device=data.get('device'),
        event=data.get('event'),
        now=utcnow(),
    )
    return jsonify({'offer': offer_for_shop(SqlConfigStore(), context)})


@game.route('/config/<shop_domain>', methods=['GET'])
def public_config(shop_domain):
    try:
        config = SqlConfigStore().ensure_default(shop_domain)
    except ConfigError as exc:
        current_app.logger.warning(f"[config] shop={shop_domain} rejected: {exc.message}")
        return jsonify({'success': True, 'shopDomain': shop_domain, 'isEnabled': False})
    payload = config.to_public()
    payload.update({'success': True, 'shopDomain': shop_domain, 'isEnabled': config.is_enabled})
    return jsonify(payload)


@game.route('/discounts/<code>', methods=['GET'])
def discount_status(code):
    shop_domain = request.args.get('shop')
    if not shop_domain:
        raise ValidationError('shop query parameter is required')
    return jsonify(validate_discount(_store(), shop_domain, code))
