"""
MindDigit Game Server

A real-time multiplayer game where two to four players try to guess each
other's secret numbers. Built with Flask and Socket.IO; clients may either
subscribe to pushed events or poll the HTTP snapshot endpoint.
"""

import hmac
import logging
import sqlite3
import time
from collections import deque
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Callable, Deque, Dict, Optional

from flask import Blueprint, Flask, current_app, jsonify, redirect, request, url_for
from flask_socketio import SocketIO, emit, join_room, leave_room

from config import (
    ADMIN_KEY,
    ADMIN_RATE_LIMIT,
    CORS_ORIGINS,
    DATABASE_PATH,
    DEBUG,
    HOST,
    LOG_FORMAT,
    LOG_LEVEL,
    PORT,
    REAPER_INTERVAL_SECONDS,
    ROOM_INACTIVITY_TIMEOUT_SECONDS,
    SECRET_KEY,
)
from errors import GameError, InvalidPayload
from persistence import SQLiteRoomRepository
from room_store import RoomStore
from schemas import (
    CreateRoomPayload,
    DigitModePayload,
    GuessPayload,
    JoinRoomPayload,
    PlayerPayload,
    SecretPayload,
    SnapshotQuery,
    parse_payload,
)
from sync import LOBBY_CHANNEL, ROOM_LIST, ROOM_STATE, EventHub, Notification

# =============================================================================
# Logging Configuration
# =============================================================================

logging.basicConfig(level=getattr(logging, LOG_LEVEL), format=LOG_FORMAT)
logger = logging.getLogger(__name__)

VERSION = '1.0.0'

# =============================================================================
# Socket.IO Setup
# =============================================================================

socketio = SocketIO(logger=DEBUG, engineio_logger=DEBUG, async_mode='threading')

api = Blueprint('api', __name__)
admin = Blueprint('admin', __name__)


def create_app(
    store: Optional[RoomStore] = None,
    database_path: Optional[str] = None,
    start_reaper: bool = True,
) -> Flask:
    """Build the Flask application around an explicitly constructed store."""
    app = Flask(__name__)
    app.config['SECRET_KEY'] = SECRET_KEY
    app.config['ADMIN_KEY'] = ADMIN_KEY
    app.config['ADMIN_RATE_LIMIT'] = ADMIN_RATE_LIMIT

    if store is None:
        repository = SQLiteRoomRepository(database_path or DATABASE_PATH)
        repository.init_db()
        store = RoomStore(hub=EventHub(), repository=repository)
        store.restore()

    app.extensions['room_store'] = store
    app.extensions['admin_attempts'] = {}
    app.register_blueprint(api, url_prefix='/api')
    app.register_blueprint(admin, url_prefix='/admin')

    socketio.init_app(app, cors_allowed_origins=CORS_ORIGINS)
    store.hub.subscribe(forward_to_socketio)

    if start_reaper and REAPER_INTERVAL_SECONDS > 0:
        socketio.start_background_task(reaper_loop, store, REAPER_INTERVAL_SECONDS)
    return app


def get_store() -> RoomStore:
    return current_app.extensions['room_store']


def forward_to_socketio(notification: Notification) -> None:
    """Push one store notification to everyone subscribed to its channel."""
    socketio.emit(notification.event, dict(notification.payload), to=notification.channel)


def reaper_loop(store: RoomStore, interval: int) -> None:
    """Background sweep for silent players, stalled turns and idle rooms."""
    while True:
        socketio.sleep(interval)
        try:
            counts = store.sweep()
            if any(counts.values()):
                logger.info(f"Sweep: {counts}")
        except Exception:
            logger.exception("Room sweep failed")


# =============================================================================
# Request Helpers
# =============================================================================


def secrets_equal(a: str, b: str) -> bool:
    """Constant-time string comparison."""
    return hmac.compare_digest(a.encode('utf-8'), b.encode('utf-8'))


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def request_body(**extra: Any) -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise InvalidPayload('Request body must be a JSON object.')
    merged = dict(data)
    merged.update(extra)
    return merged


def authorize(payload: PlayerPayload) -> None:
    """Verify the reconnect token of the acting player."""
    token = payload.token or request.headers.get('X-Player-Token')
    get_store().authenticate(payload.room_code, payload.player_id, token)


def ok(**data: Any) -> Dict[str, Any]:
    return dict(data, ok=True)


# =============================================================================
# HTTP API
# =============================================================================


@api.errorhandler(GameError)
def handle_game_error(e: GameError):
    return jsonify({'ok': False, 'error': e.to_dict()}), e.http_status


@api.route('/health')
def health():
    """Health check endpoint for monitoring."""
    store = get_store()
    try:
        if store.repository is not None:
            store.repository.ping()
        return jsonify({
            'status': 'healthy',
            'timestamp': utc_now(),
            'version': VERSION,
            'rooms': len(store.stats()),
        }), 200
    except sqlite3.Error as e:
        logger.error(f"Health check failed: {e}")
        return jsonify({
            'status': 'unhealthy',
            'timestamp': utc_now(),
            'error': str(e),
        }), 503


@api.route('/rooms', methods=['POST'])
def create_room():
    payload = parse_payload(CreateRoomPayload, request_body())
    code = get_store().create_room(payload.digit_count, payload.max_players)
    return jsonify(ok(room_code=code, digit_mode=payload.digit_count, max_players=payload.max_players)), 201


@api.route('/rooms', methods=['GET'])
def list_rooms():
    rooms = [summary.to_dict() for summary in get_store().list_open_rooms()]
    return jsonify(ok(rooms=rooms))


@api.route('/rooms/<room_code>/join', methods=['POST'])
def join(room_code: str):
    payload = parse_payload(JoinRoomPayload, request_body(room_code=room_code))
    result = get_store().join_room(payload.room_code, payload.player_name, payload.avatar, payload.token)
    return jsonify(ok(**result.to_dict()))


@api.route('/rooms/<room_code>/digit-mode', methods=['POST'])
def select_digit_mode(room_code: str):
    payload = parse_payload(DigitModePayload, request_body(room_code=room_code))
    authorize(payload)
    return jsonify(ok(**get_store().select_digit_mode(payload.room_code, payload.player_id, payload.digit_count)))


@api.route('/rooms/<room_code>/start', methods=['POST'])
def start_game(room_code: str):
    payload = parse_payload(PlayerPayload, request_body(room_code=room_code))
    authorize(payload)
    return jsonify(ok(**get_store().start_game(payload.room_code, payload.player_id)))


@api.route('/rooms/<room_code>/secret', methods=['POST'])
def set_secret(room_code: str):
    payload = parse_payload(SecretPayload, request_body(room_code=room_code))
    authorize(payload)
    ack = get_store().submit_secret(payload.room_code, payload.player_id, payload.secret)
    return jsonify(ok(**ack))


@api.route('/rooms/<room_code>/guess', methods=['POST'])
def submit_guess(room_code: str):
    payload = parse_payload(GuessPayload, request_body(room_code=room_code))
    authorize(payload)
    outcome = get_store().submit_guess(
        payload.room_code,
        payload.player_id,
        payload.target_player_id,
        payload.guess,
        payload.expected_seq,
    )
    return jsonify(ok(**outcome.to_dict()))


@api.route('/rooms/<room_code>/skip-turn', methods=['POST'])
def skip_turn(room_code: str):
    payload = parse_payload(PlayerPayload, request_body(room_code=room_code))
    authorize(payload)
    return jsonify(ok(**get_store().skip_turn(payload.room_code, payload.player_id)))


@api.route('/rooms/<room_code>/heartbeat', methods=['POST'])
def heartbeat(room_code: str):
    payload = parse_payload(PlayerPayload, request_body(room_code=room_code))
    authorize(payload)
    return jsonify(ok(**get_store().heartbeat(payload.room_code, payload.player_id)))


@api.route('/rooms/<room_code>/leave', methods=['POST'])
def leave(room_code: str):
    payload = parse_payload(PlayerPayload, request_body(room_code=room_code))
    authorize(payload)
    return jsonify(ok(**get_store().leave_room(payload.room_code, payload.player_id)))


@api.route('/rooms/<room_code>/gameplay', methods=['GET'])
def gameplay(room_code: str):
    """Room snapshot for pollers. Honours If-None-Match."""
    query = parse_payload(SnapshotQuery, dict(request.args.to_dict(), room_code=room_code))
    snapshot = get_store().get_snapshot(query.room_code, query.player_id)
    response = jsonify(ok(**snapshot.to_dict(query.player_id)))
    response.set_etag(snapshot.etag)
    response.headers['Cache-Control'] = 'no-cache'
    return response.make_conditional(request)


@api.route('/rooms/<room_code>/opponent-secret', methods=['GET'])
def opponent_secret(room_code: str):
    payload = parse_payload(PlayerPayload, dict(request.args.to_dict(), room_code=room_code))
    authorize(payload)
    disclosure = get_store().get_opponent_secret(payload.room_code, payload.player_id)
    return jsonify(ok(**disclosure.to_dict()))


# =============================================================================
# Admin Panel
# =============================================================================


def require_admin(f: Callable) -> Callable:
    """Admin key check with a per-address limit on failed attempts."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        failures: Dict[str, Deque[float]] = current_app.extensions['admin_attempts']
        address = request.remote_addr
        attempts = failures.get(address, deque())
        now = time.time()
        while attempts and now - attempts[0] > 60:
            attempts.popleft()
        if not attempts:
            failures.pop(address, None)
        if len(attempts) >= current_app.config['ADMIN_RATE_LIMIT']:
            logger.warning(f"Admin rate limit hit from {request.remote_addr}")
            return jsonify({'ok': False, 'error': 'Too many attempts. Try again later.'}), 429

        key = request.headers.get('X-Admin-Key') or request.args.get('key')
        if not key:
            return jsonify({'ok': False, 'error': 'Admin key required.'}), 401
        if not secrets_equal(key, current_app.config['ADMIN_KEY']):
            attempts.append(now)
            failures[address] = attempts
            logger.warning(f"Rejected admin key from {request.remote_addr}")
            return jsonify({'ok': False, 'error': 'Invalid admin key.'}), 403
        return f(*args, **kwargs)

    return decorated_function


@admin.route('')
@require_admin
def dashboard():
    rooms = get_store().stats()
    return jsonify(ok(rooms=rooms, count=len(rooms)))


@admin.route('/kill/<room_code>')
@require_admin
def kill_room(room_code: str):
    try:
        get_store().destroy_room(room_code, reason='admin')
    except GameError as e:
        logger.info(f"Admin kill of {room_code} ignored: {e.message}")
    return redirect(url_for('admin.dashboard', **request.args.to_dict()))


@admin.route('/abandon/<room_code>')
@require_admin
def abandon_room(room_code: str):
    try:
        get_store().abandon_room(room_code)
    except GameError as e:
        logger.info(f"Admin abandon of {room_code} ignored: {e.message}")
    return redirect(url_for('admin.dashboard', **request.args.to_dict()))


@api.route('/rooms', methods=['DELETE'])
@require_admin
def delete_all_rooms():
    return jsonify(ok(deleted=get_store().destroy_all()))


@api.route('/rooms/<room_code>', methods=['DELETE'])
@require_admin
def delete_room(room_code: str):
    get_store().destroy_room(room_code, reason='admin')
    return jsonify(ok(room_code=room_code.upper()))


# =============================================================================
# Socket.IO Event Handlers
# =============================================================================


def socket_action(handler: Callable[[Dict[str, Any]], Optional[Dict[str, Any]]]):
    """Run a handler, turning failures into an ``error`` event and a failed ack."""
    @wraps(handler)
    def wrapper(data: Any = None):
        try:
            result = handler(data if data is not None else {})
        except GameError as e:
            logger.info(f"{handler.__name__} rejected: {e.code}")
            emit('error', e.to_dict())
            return {'ok': False, 'error': e.to_dict()}
        except Exception as e:
            logger.error(f"Error in {handler.__name__}: {e}")
            failure = {
                'kind': 'internal',
                'code': 'internal_error',
                'message': 'Something went wrong. Please try again.',
            }
            emit('error', failure)
            return {'ok': False, 'error': failure}
        return ok(**(result or {}))

    return wrapper


@socketio.on('connect')
def on_connect() -> None:
    """Handle client connection."""
    logger.info(f"Client connected: {request.sid}")


@socketio.on('disconnect')
def on_disconnect() -> None:
    """The player's turn keeps running; missed heartbeats decide what happens next."""
    logger.info(f"Client disconnected: {request.sid}")


@socketio.on('create_room')
@socket_action
def on_create_room(data: Dict[str, Any]) -> Dict[str, Any]:
    payload = parse_payload(CreateRoomPayload, data)
    code = get_store().create_room(payload.digit_count, payload.max_players)
    emit('room_created', {'room_code': code})
    return {'room_code': code}


@socketio.on('join_room')
@socket_action
def on_join_room(data: Dict[str, Any]) -> Dict[str, Any]:
    payload = parse_payload(JoinRoomPayload, data)
    result = get_store().join_room(payload.room_code, payload.player_name, payload.avatar, payload.token)
    join_room(result.room_code)
    joined = result.to_dict()
    emit('joined', joined)
    emit(ROOM_STATE, joined['snapshot'])
    return joined


@socketio.on('leave_room')
@socket_action
def on_leave_room(data: Dict[str, Any]) -> Dict[str, Any]:
    payload = parse_payload(PlayerPayload, data)
    authorize(payload)
    ack = get_store().leave_room(payload.room_code, payload.player_id)
    leave_room(payload.room_code)
    return ack


@socketio.on('select_digit_mode')
@socket_action
def on_select_digit_mode(data: Dict[str, Any]) -> Dict[str, Any]:
    payload = parse_payload(DigitModePayload, data)
    authorize(payload)
    return get_store().select_digit_mode(payload.room_code, payload.player_id, payload.digit_count)


@socketio.on('start_game')
@socket_action
def on_start_game(data: Dict[str, Any]) -> Dict[str, Any]:
    payload = parse_payload(PlayerPayload, data)
    authorize(payload)
    return get_store().start_game(payload.room_code, payload.player_id)


@socketio.on('set_secret')
@socket_action
def on_set_secret(data: Dict[str, Any]) -> Dict[str, Any]:
    payload = parse_payload(SecretPayload, data)
    authorize(payload)
    ack = get_store().submit_secret(payload.room_code, payload.player_id, payload.secret)
    emit('secret_ack', ack)
    return ack


@socketio.on('submit_guess')
@socket_action
def on_submit_guess(data: Dict[str, Any]) -> Dict[str, Any]:
    payload = parse_payload(GuessPayload, data)
    authorize(payload)
    outcome = get_store().submit_guess(
        payload.room_code,
        payload.player_id,
        payload.target_player_id,
        payload.guess,
        payload.expected_seq,
    )
    return outcome.to_dict()


@socketio.on('skip_turn')
@socket_action
def on_skip_turn(data: Dict[str, Any]) -> Dict[str, Any]:
    payload = parse_payload(PlayerPayload, data)
    authorize(payload)
    return get_store().skip_turn(payload.room_code, payload.player_id)


@socketio.on('heartbeat')
@socket_action
def on_heartbeat(data: Dict[str, Any]) -> Dict[str, Any]:
    payload = parse_payload(PlayerPayload, data)
    authorize(payload)
    return get_store().heartbeat(payload.room_code, payload.player_id)


@socketio.on('get_state')
@socket_action
def on_get_state(data: Dict[str, Any]) -> Dict[str, Any]:
    """Full current state in one call; also (re)subscribes to the room."""
    query = parse_payload(SnapshotQuery, data)
    snapshot = get_store().get_snapshot(query.room_code, query.player_id)
    join_room(snapshot.room_code)
    state = snapshot.to_dict(query.player_id)
    emit(ROOM_STATE, state)
    return state


@socketio.on('get_room_list')
@socket_action
def on_get_room_list(_data: Dict[str, Any]) -> Dict[str, Any]:
    join_room(LOBBY_CHANNEL)
    rooms = [summary.to_dict() for summary in get_store().list_open_rooms()]
    emit(ROOM_LIST, {'rooms': rooms})
    return {'rooms': rooms}


@socketio.on('get_opponent_secret')
@socket_action
def on_get_opponent_secret(data: Dict[str, Any]) -> Dict[str, Any]:
    payload = parse_payload(PlayerPayload, data)
    authorize(payload)
    disclosure = get_store().get_opponent_secret(payload.room_code, payload.player_id).to_dict()
    emit('opponent_secret', disclosure)
    return disclosure


# =============================================================================
# Application Entry Point
# =============================================================================

if __name__ == '__main__':
    logger.info("=" * 50)
    logger.info("Starting MindDigit Game Server")
    logger.info(f"Debug mode: {DEBUG}")
    logger.info(f"Host: {HOST}, Port: {PORT}")
    logger.info(f"Room timeout: {ROOM_INACTIVITY_TIMEOUT_SECONDS} seconds")
    logger.info("=" * 50)
    socketio.run(create_app(), host=HOST, port=PORT, debug=DEBUG, allow_unsafe_werkzeug=DEBUG)
