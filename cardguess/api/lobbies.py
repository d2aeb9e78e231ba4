from flask import Blueprint, jsonify, request, current_app
from cardguess import get_game_service
from cardguess.identity import resolve_player
from cardguess.services.games.errors import GameError
from cardguess.services.games.lobby import GameConfig
from cardguess.services.games.modes import get_mode


lobbies = Blueprint('lobbies', __name__)


@lobbies.errorhandler(GameError)
def handle_game_error(exc):
    return jsonify(exc.to_dict()), exc.status_code


def build_config(data: dict) -> GameConfig:
    """Lobby config from request JSON, optionally layered over a preset mode."""
    base = get_mode(data['mode'])['config'] if data.get('mode') else None
    return GameConfig.from_dict(
        data.get('config') or data,
        base=base,
        max_rounds=int(current_app.config.get('MAX_ROUNDS', 50)),
    )


@lobbies.route('', methods=['POST'])
def create_lobby():
    data = request.get_json(silent=True) or {}
    config = build_config(data)
    player_id, name = resolve_player(data)
    lobby = get_game_service().create_lobby(player_id, name, config)
    return jsonify({
        'message': 'New lobby created!',
        'lobby_id': lobby.id,
        'player_id': player_id,
        'lobby': lobby.snapshot.payload,
    }), 201


@lobbies.route('/<string:code>/join', methods=['POST'])
def join_lobby(code):
    data = request.get_json(silent=True) or {}
    player_id, name = resolve_player(data)
    lobby = get_game_service().join_lobby(code, player_id, name)
    return jsonify({
        'lobby_id': lobby.id,
        'player_id': player_id,
        'lobby': lobby.snapshot.payload,
    })


@lobbies.route('/<string:code>', methods=['GET'])
def get_lobby_status(code):
    return jsonify(get_game_service().get_lobby_status(code))


@lobbies.route('/<string:code>/start', methods=['POST'])
def start_game(code):
    data = request.get_json(silent=True) or {}
    player_id, _ = resolve_player(data)
    return jsonify(get_game_service().start_game(code, player_id))


@lobbies.route('/<string:code>/guess', methods=['POST'])
def make_guess(code):
    data = request.get_json(silent=True) or {}
    player_id, _ = resolve_player(data)
    return jsonify(get_game_service().make_guess(code, player_id, data.get('guess')))


@lobbies.route('/<string:code>/give-up', methods=['POST'])
def give_up(code):
    data = request.get_json(silent=True) or {}
    player_id, _ = resolve_player(data)
    return jsonify(get_game_service().give_up(code, player_id))
