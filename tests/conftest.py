import os
import sys
import pytest

# Ensure the project root (containing the `cardguess` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from cardguess import create_app, db, socketio
from cardguess.services.games.cards import Card
from cardguess.services.games.registry import LobbyRegistry
from cardguess.services.games.scheduler import RoundScheduler
from cardguess.services.games.service import GameService
from cardguess.services.games.recorder import NullSessionRecorder


class TestConfig:
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    WTF_CSRF_ENABLED = False
    BCRYPT_LOG_ROUNDS = 4
    ROUND_DURATION_MS = 30000
    REVEAL_INTERVAL_MS = 500
    CARD_FETCH_ATTEMPTS = 2
    CARD_FETCH_BACKOFF_MS = 0
    CARD_CATALOG_PATH = os.path.join(PROJECT_ROOT, 'cardguess', 'data', 'catalog.json')
    LOBBY_CODE_LENGTH = 4
    LOBBY_RETENTION_SEC = 600
    MAX_ROUNDS = 50
    RANDOM_SEED = 1234


@pytest.fixture()
def flask_app():
    application = create_app(TestConfig)
    with application.app_context():
        # Ensure models are imported so tables are created
        import cardguess.models  # noqa: F401
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def sio_client(flask_app):
    test_client = socketio.test_client(
        flask_app,
        flask_test_client=flask_app.test_client(),
        namespace='/ws'
    )
    yield test_client
    try:
        test_client.disconnect(namespace='/ws')
    except Exception:
        pass


# ---- engine fakes ----

def make_card(card_id, name, set_name='Set de Base', rarity='Rare'):
    return Card(
        id=card_id,
        name=name,
        full_image_ref=f'https://img.example/{card_id}/high.png',
        set_name=set_name,
        rarity=rarity,
        partial_reveal=f'reveals/{card_id}.png',
    )


class FakeClock:
    def __init__(self, start=0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms
        return self.now


class RecordingBroadcaster:
    def __init__(self):
        self.room_events = []

    def to_room(self, room, event, payload):
        self.room_events.append((room, event, payload))

    def events(self, name):
        return [payload for _, event, payload in self.room_events if event == name]


class DeferredSpawn:
    """Collects background tasks instead of starting them."""

    def __init__(self):
        self.tasks = []

    def __call__(self, fn, *args, **kwargs):
        self.tasks.append((fn, args, kwargs))


class ScriptedPool:
    """Returns one scripted batch per call, then empty batches."""

    def __init__(self, *batches):
        self.batches = list(batches)
        self.calls = []

    def fetch_candidate_cards(self, set_filter, rarity_filter, count):
        self.calls.append((set_filter, rarity_filter, count))
        if not self.batches:
            return []
        return list(self.batches.pop(0))


DEFAULT_CARDS = [
    make_card('c1', 'Pikachu'),
    make_card('c2', 'Salamèche', rarity='Commune'),
    make_card('c3', 'Surfing Pikachu', set_name='Promo'),
]


class Engine:
    def __init__(self, pool=None, round_duration_ms=30000, attempts=3):
        self.clock = FakeClock(1_000_000)
        self.broadcaster = RecordingBroadcaster()
        self.timer_spawn = DeferredSpawn()
        self.sleeps = []
        self.pool = pool or ScriptedPool(DEFAULT_CARDS)
        self.recorder = NullSessionRecorder()
        self.scheduler = RoundScheduler(self.timer_spawn, round_duration_ms, 500)
        self.registry = LobbyRegistry(round_duration_ms=round_duration_ms)
        self.service = GameService(
            registry=self.registry,
            scheduler=self.scheduler,
            card_pool=self.pool,
            broadcaster=self.broadcaster,
            recorder=self.recorder,
            clock=self.clock,
            card_fetch_attempts=attempts,
            card_fetch_backoff_ms=200,
            retention_ms=60000,
            sleep=self.sleeps.append,
        )


@pytest.fixture()
def engine():
    return Engine()
