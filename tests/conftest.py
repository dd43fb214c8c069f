"""
Pytest configuration and fixtures for the MindDigit server tests.
"""

import os
import tempfile

import pytest

# Set test environment before importing app
os.environ['DEBUG'] = 'false'

from app import create_app, socketio
from persistence import SQLiteRoomRepository
from room_store import RoomStore
from sync import EventHub

ADMIN_TEST_KEY = 'test-admin-key'


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class Recorder:
    """EventHub listener that keeps every notification it sees."""

    def __init__(self):
        self.notifications = []

    def __call__(self, notification):
        self.notifications.append(notification)

    def events(self, channel=None):
        return [n.event for n in self.notifications if channel is None or n.channel == channel]

    def payloads(self, event):
        return [n.payload for n in self.notifications if n.event == event]

    def clear(self):
        self.notifications.clear()


@pytest.fixture(scope='function')
def db_path():
    """Temporary SQLite database file."""
    db_fd, path = tempfile.mkstemp(suffix='.db')
    yield path
    os.close(db_fd)
    os.unlink(path)


@pytest.fixture(scope='function')
def repository(db_path):
    repo = SQLiteRoomRepository(db_path)
    repo.init_db()
    return repo


@pytest.fixture(scope='function')
def clock():
    return FakeClock()


@pytest.fixture(scope='function')
def recorder():
    return Recorder()


@pytest.fixture(scope='function')
def store(repository, clock, recorder):
    """Room store with persistence, a fake clock and a recording listener."""
    hub = EventHub()
    hub.subscribe(recorder)
    return RoomStore(hub=hub, repository=repository, clock=clock)


@pytest.fixture(scope='function')
def test_app(store):
    """Create a test Flask application around the test store."""
    app = create_app(store=store, start_reaper=False)
    app.config['TESTING'] = True
    app.config['SECRET_KEY'] = 'test-secret-key'
    app.config['ADMIN_KEY'] = ADMIN_TEST_KEY
    yield app


@pytest.fixture(scope='function')
def client(test_app):
    """Create a test client for HTTP requests."""
    return test_app.test_client()


@pytest.fixture(scope='function')
def socketio_client(test_app):
    """Create a Socket.IO test client."""
    sio = socketio.test_client(test_app)
    yield sio
    if sio.is_connected():
        sio.disconnect()


@pytest.fixture(scope='function')
def other_socketio_client(test_app):
    """A second Socket.IO client for the opposing player."""
    sio = socketio.test_client(test_app)
    yield sio
    if sio.is_connected():
        sio.disconnect()


@pytest.fixture(scope='function')
def admin_headers():
    return {'X-Admin-Key': ADMIN_TEST_KEY}


@pytest.fixture(scope='function')
def two_player_room(store):
    """A 4-digit room with Alice and Bob seated, no secrets yet."""
    code = store.create_room(4, 2)
    alice = store.join_room(code, 'Alice')
    bob = store.join_room(code, 'Bob')
    return code, alice, bob


@pytest.fixture(scope='function')
def active_room(store, two_player_room):
    """Alice holds 1234, Bob holds 5678, Alice to move."""
    code, alice, bob = two_player_room
    store.submit_secret(code, alice.player_id, '1234')
    store.submit_secret(code, bob.player_id, '5678')
    return code, alice, bob
