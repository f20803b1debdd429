"""
Spades Game Server

HTTP binding for the session engine. Every browser tab or terminal client
first asks for a connection id, then sends commands with it and polls for the
events the engine addressed to it.

- Commands: create / join / start / bid / play / kick / leave
- Events are queued per connection and fetched with /api/poll
- Connections that stop polling are treated as disconnected, which keeps
  their seat for a later rejoin under the same username
"""
import os
import time
import uuid
import logging

from collections import deque
from threading import Lock

from flask import Flask, request, jsonify
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from session import EventSink, SessionManager, Timing

# Configuration
PORT = int(os.environ.get('PORT', 10000))
CORS_ORIGINS = os.environ.get('CORS_ORIGINS', '*').split(',')

TRICK_DELAY = float(os.environ.get('TRICK_DELAY', 2.5))
ROUND_DELAY = float(os.environ.get('ROUND_DELAY', 5))
CLEANUP_DELAY = float(os.environ.get('CLEANUP_DELAY', 60))

CONNECTION_TIMEOUT = float(os.environ.get('CONNECTION_TIMEOUT', 60))
MAX_EVENTS_PER_CONNECTION = int(os.environ.get('MAX_EVENTS_PER_CONNECTION', 200))

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s %(levelname)s %(name)s %(message)s'
)
logger = logging.getLogger(__name__)


class QueueSink(EventSink):
    """Per-connection event queues, drained by polling."""

    def __init__(self, maxlen: int = MAX_EVENTS_PER_CONNECTION):
        self._queues = {}
        self._seq = 0
        self._maxlen = maxlen
        self._lock = Lock()

    def open(self, connection_id: str) -> None:
        with self._lock:
            self._queues.setdefault(connection_id, deque(maxlen=self._maxlen))

    def drop(self, connection_id: str) -> None:
        with self._lock:
            self._queues.pop(connection_id, None)

    def emit(self, connection_id, event_type, data):
        with self._lock:
            queue = self._queues.get(connection_id)
            if queue is None:
                return
            self._seq += 1
            queue.append({
                'seq': self._seq,
                'type': event_type,
                'data': data,
                'timestamp': time.time(),
            })
        logger.debug(f"Event: {event_type} -> {connection_id}")

    def since(self, connection_id: str, seq: int):
        with self._lock:
            queue = self._queues.get(connection_id)
            if queue is None:
                return None
            return [e for e in list(queue) if e['seq'] > seq]


class ConnectionTracker:
    def __init__(self, timeout: float = CONNECTION_TIMEOUT):
        self.timeout = timeout
        self._last_seen = {}
        self._lock = Lock()

    def open(self) -> str:
        connection_id = uuid.uuid4().hex
        with self._lock:
            self._last_seen[connection_id] = time.time()
        return connection_id

    def touch(self, connection_id) -> bool:
        with self._lock:
            if connection_id not in self._last_seen:
                return False
            self._last_seen[connection_id] = time.time()
            return True

    def expired(self):
        cutoff = time.time() - self.timeout
        with self._lock:
            stale = [c for c, seen in self._last_seen.items() if seen < cutoff]
            for c in stale:
                del self._last_seen[c]
        return stale


def create_app(manager: SessionManager = None, sink: QueueSink = None,
               tracker: ConnectionTracker = None) -> Flask:
    app = Flask(__name__)
    CORS(app, origins=CORS_ORIGINS)

    sink = sink or QueueSink()
    tracker = tracker or ConnectionTracker()
    manager = manager or SessionManager(sink, timing=Timing(TRICK_DELAY, ROUND_DELAY, CLEANUP_DELAY))

    def sweep_stale_connections():
        for connection_id in tracker.expired():
            logger.info(f"Connection {connection_id} timed out")
            manager.disconnect(connection_id)
            sink.drop(connection_id)

    def run_command(command: str):
        data = request.get_json(force=True, silent=True)
        if not isinstance(data, dict):
            data = {}
        connection_id = data.pop('connection_id', None)
        if not tracker.touch(connection_id):
            return jsonify({'error': 'Unknown connection'}), 401

        success, message = manager.handle(connection_id, command, data)
        if not success:
            return jsonify({'error': message}), 400

        response = {'success': True}
        session = manager.session_for(connection_id)
        if session:
            response['code'] = session.code
        return jsonify(response), 200

    @app.route('/api/connect', methods=['POST'])
    def connect():
        connection_id = tracker.open()
        sink.open(connection_id)
        logger.info(f"Connection opened: {connection_id}")
        return jsonify({'connection_id': connection_id}), 200

    @app.route('/api/create', methods=['POST'])
    def create_game():
        return run_command('createGame')

    @app.route('/api/join', methods=['POST'])
    def join_game():
        return run_command('joinGame')

    @app.route('/api/start', methods=['POST'])
    def start_game():
        return run_command('startGame')

    @app.route('/api/bid', methods=['POST'])
    def submit_bid():
        return run_command('submitBid')

    @app.route('/api/play', methods=['POST'])
    def play_card():
        return run_command('playCard')

    @app.route('/api/kick', methods=['POST'])
    def kick_player():
        return run_command('kickPlayer')

    @app.route('/api/leave', methods=['POST'])
    def leave_game():
        data = request.get_json(force=True, silent=True) or {}
        connection_id = data.get('connection_id')
        if not tracker.touch(connection_id):
            return jsonify({'error': 'Unknown connection'}), 401
        manager.disconnect(connection_id)
        return jsonify({'success': True}), 200

    @app.route('/api/poll', methods=['GET'])
    def poll_events():
        connection_id = request.args.get('connection_id')
        if not tracker.touch(connection_id):
            return jsonify({'error': 'Unknown connection'}), 401
        sweep_stale_connections()

        try:
            since = int(request.args.get('since', 0) or 0)
        except ValueError:
            since = 0

        events = sink.since(connection_id, since) or []
        latest = events[-1]['seq'] if events else since
        return jsonify({'events': events, 'latest': latest}), 200

    @app.route('/api/heartbeat', methods=['POST'])
    def heartbeat():
        data = request.get_json(force=True, silent=True) or {}
        if not tracker.touch(data.get('connection_id')):
            return jsonify({'error': 'Unknown connection'}), 401
        sweep_stale_connections()
        return jsonify({'success': True}), 200

    @app.route('/api/games', methods=['GET'])
    def list_games():
        return jsonify(manager.list_sessions()), 200

    @app.route('/api/games/<code>', methods=['GET'])
    def get_game(code):
        session = manager.get(code)
        if session is None:
            return jsonify({'error': 'Game not found.'}), 404
        with session.lock:
            return jsonify(session.snapshot()), 200

    @app.route('/health')
    def health():
        return jsonify({'status': 'healthy', 'timestamp': time.time()}), 200

    @app.errorhandler(404)
    def _json_404(e):
        if request.path.startswith('/api/'):
            return jsonify({'error': 'Not found', 'path': request.path}), 404
        return e

    @app.errorhandler(405)
    def _json_405(e):
        if request.path.startswith('/api/'):
            return jsonify({'error': 'Method not allowed', 'path': request.path}), 405
        return e

    @app.errorhandler(Exception)
    def _json_500(e):
        if isinstance(e, HTTPException):
            if request.path.startswith('/api/'):
                return jsonify({'error': e.name, 'detail': str(e)}), e.code or 500
            return e
        logger.error(f"Unhandled error on {request.path}: {e}")
        if request.path.startswith('/api/'):
            return jsonify({'error': 'Server error', 'detail': str(e)}), 500
        raise e

    return app


app = create_app()

if __name__ == '__main__':
    app.run(host='0.0.0.0', port=PORT, debug=False, threaded=True)
