import logging

from flask import Flask, jsonify, request, session
from flask_socketio import SocketIO, emit, join_room, leave_room
from werkzeug.exceptions import HTTPException

from .broadcast import AUDIENCE_GM, AUDIENCE_PLAYERS, NullNotifier, SocketIONotifier, audience_room
from .config import Config
from .errors import BoardStateError
from .service import BoardStateService, UserContext
from .store import BoardStateStore

logger = logging.getLogger(__name__)


def current_user():
    return UserContext.from_session(session)


def create_app(config=None, store=None, notifier=None):
    """Build the Flask app and its SocketIO server.

    ``store`` and ``notifier`` may be injected (tests pass a store on a temp
    directory); otherwise they are built from ``config``. The store is opened
    here and closed when the process exits.
    """
    config = config or Config()

    app = Flask(__name__)
    app.config.update(config.flask_settings())

    socketio = SocketIO(app, cors_allowed_origins="*", async_mode='threading')

    if store is None:
        store = BoardStateStore(config.STORAGE_DIR, backup_limit=config.BACKUP_LIMIT)
    if not store.is_open:
        store.open()

    if notifier is None:
        if config.REALTIME_ENABLED:
            notifier = SocketIONotifier(socketio, channel=config.REALTIME_CHANNEL)
        else:
            notifier = NullNotifier()

    service = BoardStateService(store, notifier, config)
    app.extensions['board_state'] = service

    @app.errorhandler(BoardStateError)
    def handle_board_state_error(error):
        if error.status_code >= 500:
            logger.error('Board state request failed: %s', error.message)
        return jsonify(error.to_payload()), error.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(error):
        return jsonify({'success': False, 'error': error.description}), error.code

    @app.route('/health')
    def health():
        return jsonify({'status': 'ok', 'version': store.version()})

    @app.route('/api/vtt/state', methods=['GET'])
    @app.route('/state', methods=['GET'])
    def get_board_state():
        try:
            data = service.get_state(current_user())
        except BoardStateError:
            raise
        except Exception as e:
            logger.exception('Error loading board state: %s', e)
            raise BoardStateError('Failed to load board state.')
        return jsonify({'success': True, 'data': data})

    @app.route('/api/vtt/state', methods=['POST'])
    @app.route('/state', methods=['POST'])
    def post_board_state():
        user = current_user()
        if not user.is_logged_in:
            return jsonify({'success': False, 'error': 'Not authenticated'}), 401

        payload = request.get_json(silent=True)
        if payload is None:
            return jsonify({'success': False, 'error': 'Invalid JSON payload.'}), 422

        try:
            board_state = service.update_state(user, payload)
        except BoardStateError:
            raise
        except Exception as e:
            logger.exception('Error saving board state: %s', e)
            raise BoardStateError()
        return jsonify({'success': True, 'data': board_state})

    def user_room():
        audience = AUDIENCE_GM if current_user().is_gm else AUDIENCE_PLAYERS
        return audience_room(config.REALTIME_CHANNEL, audience)

    @socketio.on('connect')
    def on_connect():
        if 'user_id' in session:
            join_room(user_room())
            logger.info('%s connected to board channel', session.get('username') or session['user_id'])

    @socketio.on('disconnect')
    def on_disconnect():
        if 'user_id' in session:
            leave_room(user_room())

    @socketio.on('join_battlemap')
    def on_join_battlemap():
        if 'user_id' in session:
            join_room(user_room())
            emit('battlemap_state', service.snapshot_for(current_user()))

    return app, socketio
