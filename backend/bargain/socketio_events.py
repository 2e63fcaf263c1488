from flask_socketio import join_room, leave_room, emit
from flask_login import current_user
from bargain import socketio


def handle_connect():
    emit('connected', {'message': 'Connected to /ws'})


def _room_for(data):
    shop_domain = (data or {}).get('shop_domain')
    if not shop_domain:
        emit('error', {'message': 'shop_domain is required'})
        return None
    return f"shop:{shop_domain.strip()}"


def handle_join_shop(data):
    # Only signed-in admins may listen to a shop room
    if not current_user.is_authenticated:
        emit('error', {'message': 'login required'})
        return
    room = _room_for(data)
    if room is None:
        return
    join_room(room)
    emit('joined', {'room': room})


def handle_leave_shop(data):
    room = _room_for(data)
    if room is None:
        return
    leave_room(room)
    emit('left', {'room': room})


def handle_ping(data):
    emit('pong', data or {})


def register_socketio_handlers(testing: bool = False) -> None:
    """Register Socket.IO event handlers.

    Always register on namespace '/ws'. When testing is True, also mirror
    handlers on the default namespace '/' to accommodate the test harness.
    """
    socketio.on_event('connect', handle_connect, namespace='/ws')
    socketio.on_event('join_shop', handle_join_shop, namespace='/ws')
    socketio.on_event('leave_shop', handle_leave_shop, namespace='/ws')
    socketio.on_event('ping', handle_ping, namespace='/ws')

    if testing:
        socketio.on_event('connect', handle_connect, namespace='/')
        socketio.on_event('join_shop', handle_join_shop, namespace='/')
        socketio.on_event('leave_shop', handle_leave_shop, namespace='/')
        socketio.on_event('ping', handle_ping, namespace='/')
