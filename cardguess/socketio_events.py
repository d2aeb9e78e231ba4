from flask import request
from flask_socketio import join_room, leave_room, emit
from cardguess import get_game_service
from cardguess.identity import resolve_player
from cardguess.services.games.errors import GameError
from cardguess.services.games.service import lobby_room
from typing import Dict, Any


# sid -> {'lobby_id'}
_sid_to_ctx: Dict[str, Dict[str, Any]] = {}


def _get_sid() -> str:
    return request.sid  # type: ignore


def _with_ctx(data) -> dict:
    """Fill lobby_id from the lobby this connection joined."""
    merged = dict(_sid_to_ctx.get(_get_sid(), {}))
    if isinstance(data, dict):
        merged.update({k: v for k, v in data.items() if v})
    return merged


def _lobby_id(data) -> str:
    lobby_id = (data.get('lobby_id') or '').strip().upper()
    if not lobby_id:
        raise GameError('lobby_id is required')
    return lobby_id


def _emit_error(exc: GameError) -> None:
    emit('error', {'message': exc.message, 'status': exc.status_code})


def handle_connect():
    emit('connected', {'message': 'Connected to /ws'})


def handle_disconnect(*_args):
    _sid_to_ctx.pop(_get_sid(), None)


def handle_join_lobby(data):
    data = _with_ctx(data)
    try:
        lobby_id = _lobby_id(data)
        player_id, name = resolve_player(data)
        service = get_game_service()
        lobby = service.registry.get(lobby_id)
        # Existing players may rejoin the room of a started game (reconnect)
        if player_id not in lobby.players:
            service.join_lobby(lobby.id, player_id, name)
        join_room(lobby_room(lobby.id))
        _sid_to_ctx[_get_sid()] = {'lobby_id': lobby.id}
    except GameError as exc:
        _emit_error(exc)
        return
    emit('gameStatus', service.get_lobby_status(lobby.id))


def handle_leave_lobby(data):
    data = _with_ctx(data)
    try:
        lobby_id = _lobby_id(data)
    except GameError as exc:
        _emit_error(exc)
        return
    leave_room(lobby_room(lobby_id))
    _sid_to_ctx.pop(_get_sid(), None)
    emit('left', {'lobby_id': lobby_id})


def handle_get_status(data):
    data = _with_ctx(data)
    try:
        emit('gameStatus', get_game_service().get_lobby_status(_lobby_id(data)))
    except GameError as exc:
        _emit_error(exc)


def handle_start_game(data):
    data = _with_ctx(data)
    try:
        player_id, _ = resolve_player(data)
        # gameStarted goes to the whole room from the service
        get_game_service().start_game(_lobby_id(data), player_id)
    except GameError as exc:
        _emit_error(exc)


def handle_make_guess(data):
    data = _with_ctx(data)
    try:
        player_id, _ = resolve_player(data)
        result = get_game_service().make_guess(_lobby_id(data), player_id, data.get('guess'))
    except GameError as exc:
        _emit_error(exc)
        return
    emit('guessResult', result)


def handle_give_up(data):
    data = _with_ctx(data)
    try:
        player_id, _ = resolve_player(data)
        result = get_game_service().give_up(_lobby_id(data), player_id)
    except GameError as exc:
        _emit_error(exc)
        return
    emit('giveUpResult', result)


def handle_ping(data):
    emit('pong', data or {})


HANDLERS = {
    'connect': handle_connect,
    'disconnect': handle_disconnect,
    'join_lobby': handle_join_lobby,
    'leave_lobby': handle_leave_lobby,
    'get_status': handle_get_status,
    'start_game': handle_start_game,
    'make_guess': handle_make_guess,
    'give_up': handle_give_up,
    'ping': handle_ping,
}


def register_socketio_handlers(testing: bool = False) -> None:
    """Register Socket.IO event handlers.

    Always register on namespace '/ws'. When testing is True, also mirror
    handlers on the default namespace '/' to accommodate the test harness.
    """
    from cardguess import socketio

    namespaces = ['/ws', '/'] if testing else ['/ws']
    for namespace in namespaces:
        for event, handler in HANDLERS.items():
            socketio.on_event(event, handler, namespace=namespace)
