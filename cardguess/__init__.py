import random

from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from flask_bcrypt import Bcrypt
from flask_login import LoginManager
from flask_cors import CORS
from flask_migrate import Migrate
from flask_socketio import SocketIO
import click
from config import Config

db = SQLAlchemy()
bcrypt = Bcrypt()
login_manager = LoginManager()
migrate = Migrate()
allowed_origins = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:5174",
    "http://127.0.0.1:5174",
]
socketio = SocketIO(cors_allowed_origins=allowed_origins, async_mode=None)


def build_game_service(flask_app):
    """Construct the lobby engine for this app from its config."""
    from cardguess.services.games.cards import CatalogCardPool
    from cardguess.services.games.recorder import SqlSessionRecorder
    from cardguess.services.games.registry import LobbyRegistry
    from cardguess.services.games.scheduler import RoundScheduler
    from cardguess.services.games.service import GameService, SocketIOBroadcaster

    cfg = flask_app.config
    duration = int(cfg.get('ROUND_DURATION_MS', 30000))
    if cfg.get('TESTING') and not cfg.get('ENABLE_SCHEDULER_IN_TESTS'):
        # Timers are armed and cancelled as usual but never started;
        # session hand-off runs inline
        def spawn(fn, *args, **kwargs):
            return None
        handoff = None
    else:
        spawn = handoff = socketio.start_background_task

    rng = random.Random(cfg.get('RANDOM_SEED'))
    registry = LobbyRegistry(
        code_length=int(cfg.get('LOBBY_CODE_LENGTH', 4)),
        round_duration_ms=duration,
        logger=flask_app.logger,
        rng=rng,
    )
    scheduler = RoundScheduler(
        spawn=spawn,
        round_duration_ms=duration,
        reveal_interval_ms=int(cfg.get('REVEAL_INTERVAL_MS', 500)),
        logger=flask_app.logger,
    )
    return GameService(
        registry=registry,
        scheduler=scheduler,
        card_pool=CatalogCardPool.from_file(cfg['CARD_CATALOG_PATH'], rng=rng),
        broadcaster=SocketIOBroadcaster(socketio, namespace='/ws'),
        recorder=SqlSessionRecorder(flask_app),
        spawn=handoff,
        card_fetch_attempts=int(cfg.get('CARD_FETCH_ATTEMPTS', 5)),
        card_fetch_backoff_ms=int(cfg.get('CARD_FETCH_BACKOFF_MS', 200)),
        retention_ms=int(cfg.get('LOBBY_RETENTION_SEC', 600)) * 1000,
        reveal_start_fraction=float(cfg.get('REVEAL_START_FRACTION', 0.3)),
        logger=flask_app.logger,
    )


def get_game_service():
    from flask import current_app
    return current_app.extensions['cardguess']


def create_app(config_class=Config):
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_class)

    db.init_app(flask_app)
    bcrypt.init_app(flask_app)
    login_manager.init_app(flask_app)
    migrate.init_app(flask_app, db)
    CORS(flask_app, supports_credentials=True, origins=allowed_origins)

    socketio.init_app(flask_app, cors_allowed_origins=allowed_origins)

    flask_app.extensions['cardguess'] = build_game_service(flask_app)

    from cardguess.routes import main
    flask_app.register_blueprint(main)

    from cardguess.api.lobbies import lobbies
    flask_app.register_blueprint(lobbies, url_prefix='/api/lobbies')

    from cardguess.api.modes import modes
    flask_app.register_blueprint(modes, url_prefix='/api/modes')

    from cardguess.socketio_events import register_socketio_handlers
    register_socketio_handlers(testing=flask_app.config.get('TESTING', False))

    from cardguess.models import User

    @login_manager.user_loader
    def load_user(user_id):
        return db.session.get(User, int(user_id))

    @click.command('db-reset')
    def db_reset_command():
        """Drops, recreates, and seeds the database."""
        with flask_app.app_context():
            db.drop_all()
            db.create_all()

            for name in ['testuser1', 'testuser2', 'testuser3']:
                user = User(username=name)
                user.set_password('password')
                db.session.add(user)

            db.session.commit()
            print('Database has been reset and seeded!')

    flask_app.cli.add_command(db_reset_command)

    return flask_app
