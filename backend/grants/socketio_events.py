from flask_socketio import join_room, leave_room, emit
from grants import socketio
from grants.errors import InvalidPeriod
from grants.services.distribution.periods import parse_period_key


def handle_connect():
    emit('connected', {'message': 'Connected to /ws'})


def _period_room(data):
    period_key = (data or {}).get('period_key')
    try:
        parse_period_key(period_key)
    except InvalidPeriod:
        emit('error', {'message': 'period_key must be the YYYY-MM-DD of a Monday'})
        return None
    return f"period:{period_key}"


def handle_join_period(data):
    # Admin views subscribe here to follow a run's distribution_update events
    room = _period_room(data)
    if room:
        join_room(room)
        emit('joined', {'room': room})


def handle_leave_period(data):
    room = _period_room(data)
    if room:
        leave_room(room)
        emit('left', {'room': room})


def handle_ping(data):
    emit('pong', data or {})


def register_socketio_handlers(testing: bool = False) -> None:
    """Register Socket.IO event handlers.

    Always register on namespace '/ws'. When testing is True, also mirror
    handlers on the default namespace '/' to accommodate the test harness.
    """
    handlers = {
        'connect': handle_connect,
        'join_period': handle_join_period,
        'leave_period': handle_leave_period,
        'ping': handle_ping,
    }
    for event, handler in handlers.items():
        socketio.on_event(event, handler, namespace='/ws')
        if testing:
            socketio.on_event(event, handler, namespace='/')
