from flask import Blueprint, jsonify
from sqlalchemy import func
from cardguess import db
from cardguess.models import GameSession, User
from cardguess.services.games.errors import GameError
from cardguess.services.games.modes import get_mode, list_modes

modes = Blueprint('modes', __name__)


@modes.errorhandler(GameError)
def handle_game_error(exc):
    return jsonify(exc.to_dict()), exc.status_code


@modes.route('', methods=['GET'])
def get_modes():
    return jsonify(list_modes())


@modes.route('/<string:key>/leaderboard', methods=['GET'])
def get_leaderboard(key):
    """Best recorded score per registered user for a mode (top 50)."""
    get_mode(key)
    best = (
        db.session.query(GameSession.user_id, func.max(GameSession.score).label('best'))
        .filter(GameSession.mode == key.lower())
        .group_by(GameSession.user_id)
        .subquery()
    )
    rows = (
        db.session.query(User.id, User.username, best.c.best)
        .join(best, best.c.user_id == User.id)
        .order_by(best.c.best.desc(), User.username.asc())
        .limit(50)
        .all()
    )
    return jsonify([
        {'rank': i + 1, 'userId': uid, 'username': username, 'score': score}
        for i, (uid, username, score) in enumerate(rows)
    ])
