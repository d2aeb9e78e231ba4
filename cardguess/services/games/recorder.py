"""Session recorder boundary.

``build_session_records`` is a pure projection of a finished lobby's
history and scores. ``SqlSessionRecorder`` persists the records through
Flask-SQLAlchemy; it runs as a background task and is best-effort.
"""

import json
import logging
import time
from contextlib import nullcontext
from dataclasses import dataclass, field
from typing import List, Optional, Protocol

from .lobby import Lobby

GUEST_PREFIX = 'guest-'


def is_guest(player_id: str) -> bool:
    """Registered players are identified by their numeric account id."""
    return not str(player_id).isdigit()


@dataclass(frozen=True)
class SessionRecord:
    player_id: str
    display_name: str
    lobby_code: str
    mode: Optional[str]
    final_score: int
    max_score: int
    won: bool
    cards_guessed: int
    fastest_correct_ms: Optional[int]
    distinct_sets: List[str] = field(default_factory=list)
    rarity_counts: dict = field(default_factory=dict)
    rounds: List[dict] = field(default_factory=list)

    @property
    def user_id(self) -> int:
        return int(self.player_id)


def build_session_records(lobby: Lobby) -> List[SessionRecord]:
    """One record per non-guest player, derived from history and scores only."""
    max_score = lobby.round_duration_ms * lobby.config.round_count
    top_score = max(lobby.scores.values(), default=0)
    records = []
    for player_id, name in lobby.players.items():
        if is_guest(player_id):
            continue
        rounds = []
        sets_seen = []
        rarity_counts = {}
        correct_times = []
        for number in sorted(lobby.history):
            card = lobby.card_for_round(number)
            for outcome in lobby.history[number]:
                if outcome.player_id != player_id:
                    continue
                entry = outcome.to_dict()
                entry['round'] = number
                if card is not None:
                    entry.update({'cardId': card.id, 'cardName': card.name,
                                  'set': card.set_name, 'rarity': card.rarity})
                    if card.set_name not in sets_seen:
                        sets_seen.append(card.set_name)
                    if outcome.correct:
                        rarity_counts[card.rarity] = rarity_counts.get(card.rarity, 0) + 1
                if outcome.correct:
                    correct_times.append(outcome.elapsed_ms)
                rounds.append(entry)
        score = lobby.scores.get(player_id, 0)
        records.append(SessionRecord(
            player_id=player_id,
            display_name=name,
            lobby_code=lobby.id,
            mode=lobby.config.mode,
            final_score=score,
            max_score=max_score,
            won=score > 0 and score == top_score,
            cards_guessed=len(correct_times),
            fastest_correct_ms=min(correct_times) if correct_times else None,
            distinct_sets=sets_seen,
            rarity_counts=rarity_counts,
            rounds=rounds,
        ))
    return records


class SessionRecorder(Protocol):
    def record(self, records: List[SessionRecord]) -> None:
        ...


class NullSessionRecorder:
    def __init__(self):
        self.recorded: List[SessionRecord] = []

    def record(self, records):
        self.recorded.extend(records)


class SqlSessionRecorder:
    """Writes a GameSession row per record and folds totals into the user."""

    def __init__(self, app, logger: logging.Logger = None):
        self.app = app
        self.logger = logger or app.logger

    def _app_context(self):
        from flask import current_app, has_app_context

        # Reuse the active context when called inline from a request
        if has_app_context() and current_app._get_current_object() is self.app:
            return nullcontext()
        return self.app.app_context()

    def record(self, records: List[SessionRecord]) -> None:
        if not records:
            return
        from cardguess import db
        from cardguess.models import GameSession, User

        with self._app_context():
            try:
                for rec in records:
                    user = db.session.get(User, rec.user_id)
                    if user is None:
                        self.logger.info(f"[recorder] skip player={rec.player_id} reason=unknown-user")
                        continue
                    db.session.add(GameSession(
                        user_id=user.id,
                        lobby_code=rec.lobby_code,
                        mode=rec.mode,
                        score=rec.final_score,
                        max_score=rec.max_score,
                        cards_guessed=rec.cards_guessed,
                        fastest_guess_ms=rec.fastest_correct_ms,
                        rounds_json=json.dumps(rec.rounds),
                        sets_json=json.dumps(rec.distinct_sets),
                        rarities_json=json.dumps(rec.rarity_counts),
                        played_at=time.time(),
                    ))
                    user.apply_session(rec)
                    db.session.add(user)
                db.session.commit()
                self.logger.info(f"[recorder] lobby={records[0].lobby_code} saved={len(records)}")
            except Exception:
                db.session.rollback()
                self.logger.exception(f"[recorder] lobby={records[0].lobby_code} failed")
