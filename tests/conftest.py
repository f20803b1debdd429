import random

import pytest

from session import EventSink, Scheduler, SessionManager, Timing


class RecordingSink(EventSink):
    def __init__(self):
        self.events = []

    def emit(self, connection_id, event_type, data):
        self.events.append((connection_id, event_type, data))

    def of(self, connection_id, event_type=None):
        return [data for conn, kind, data in self.events
                if conn == connection_id and (event_type is None or kind == event_type)]

    def types(self, connection_id):
        return [kind for conn, kind, _ in self.events if conn == connection_id]

    def last(self, connection_id, event_type):
        found = self.of(connection_id, event_type)
        return found[-1] if found else None

    def clear(self):
        self.events = []


class _Task:
    def __init__(self, delay, callback):
        self.delay = delay
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class ManualScheduler(Scheduler):
    """Holds continuations until the test runs them."""

    def __init__(self):
        self.pending = []

    def schedule(self, delay, callback):
        task = _Task(delay, callback)
        self.pending.append(task)
        return task

    def run_pending(self):
        tasks, self.pending = self.pending, []
        for task in tasks:
            if not task.cancelled:
                task.callback()
        return len(tasks)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def manager(sink, scheduler):
    return SessionManager(sink, scheduler=scheduler, timing=Timing(2.5, 5, 60), rng=random.Random(7))


@pytest.fixture
def lobby(manager, sink):
    """Create a game and fill it; returns (session, connections in seat order)."""
    def _lobby(max_players=4, win_score=200, fill=True):
        conns = [f'conn-{i}' for i in range(max_players)]
        ok, message = manager.handle(conns[0], 'createGame', {
            'username': 'P0', 'maxPlayers': max_players, 'winScore': win_score,
        })
        assert ok, message
        code = sink.last(conns[0], 'game_created')['code']
        if fill:
            for i, conn in enumerate(conns[1:], start=1):
                ok, message = manager.handle(conn, 'joinGame', {'code': code, 'username': f'P{i}'})
                assert ok, message
        return manager.get(code), conns
    return _lobby


@pytest.fixture
def started(manager, lobby):
    def _started(max_players=4, win_score=200):
        session, conns = lobby(max_players, win_score)
        ok, message = manager.handle(conns[0], 'startGame', {'code': session.code})
        assert ok, message
        return session, conns
    return _started
