"""Lobby aggregate and round state machine.

A ``Lobby`` is mutated only through its own methods, and only while the
caller holds ``lobby.lock``. After every committed mutation the lobby
publishes an immutable ``LobbySnapshot``; readers (status queries, the
reveal ticker) use the snapshot without taking the lock.
"""

import threading
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Tuple

from .cards import ALL_SETS, RARE_RARITIES, Card
from .errors import (
    AlreadyFinished,
    AlreadyStarted,
    Forbidden,
    GameNotActive,
    InvalidRequest,
    NoCardsAvailable,
)
from .scoring import NO_MATCH, ROUND_DURATION_MS, evaluate_guess

WAITING = 'WAITING'
PLAYING = 'PLAYING'
FINISHED = 'FINISHED'

GIVE_UP_GUESS = '<give-up>'
TIMEOUT_GUESS = '<timeout>'


def _as_frozenset(value) -> FrozenSet[str]:
    if value is None:
        return frozenset()
    if isinstance(value, str):
        return frozenset({value})
    return frozenset(str(v) for v in value)


@dataclass(frozen=True)
class GameConfig:
    round_count: int
    set_filter: FrozenSet[str] = frozenset({ALL_SETS})
    rare_only: bool = False
    rarity_filter: Optional[FrozenSet[str]] = None
    mode: Optional[str] = None

    def __post_init__(self):
        if isinstance(self.round_count, bool) or not isinstance(self.round_count, int) or self.round_count <= 0:
            raise InvalidRequest('rounds must be a positive integer')

    @property
    def effective_rarities(self) -> Optional[FrozenSet[str]]:
        if self.rarity_filter:
            return self.rarity_filter
        if self.rare_only:
            return RARE_RARITIES
        return None

    @classmethod
    def from_dict(cls, data: dict, base: 'GameConfig' = None, max_rounds: int = None) -> 'GameConfig':
        """Build a config from request JSON, layered over an optional preset."""
        data = data or {}
        rounds = data.get('rounds', base.round_count if base else None)
        try:
            rounds = int(rounds)
        except (TypeError, ValueError):
            raise InvalidRequest('rounds must be a positive integer')
        if max_rounds and rounds > max_rounds:
            raise InvalidRequest(f'At most {max_rounds} rounds are allowed')
        sets = data.get('sets')
        set_filter = _as_frozenset(sets) if sets else (base.set_filter if base else frozenset({ALL_SETS}))
        rarities = data.get('rarities')
        if rarities:
            rarity_filter = _as_frozenset(rarities)
        else:
            rarity_filter = base.rarity_filter if base else None
        rare_only = data.get('rare_only', base.rare_only if base else False)
        return cls(
            round_count=rounds,
            set_filter=set_filter,
            rare_only=bool(rare_only),
            rarity_filter=rarity_filter,
            mode=base.mode if base else None,
        )

    def to_dict(self):
        return {
            'rounds': self.round_count,
            'sets': sorted(self.set_filter),
            'rareOnly': self.rare_only,
            'rarities': sorted(self.rarity_filter) if self.rarity_filter else None,
            'mode': self.mode,
        }


@dataclass(frozen=True)
class RoundOutcome:
    player_id: str
    correct: bool
    points: int
    elapsed_ms: int
    guess: str
    match: str = NO_MATCH

    def to_dict(self):
        return {
            'playerId': self.player_id,
            'correct': self.correct,
            'points': self.points,
            'elapsedMs': self.elapsed_ms,
            'guess': self.guess,
            'match': self.match,
        }


@dataclass(frozen=True)
class GuessOutcome:
    """What a single guess or give-up did to the lobby."""
    player_id: str
    round_number: int
    correct: bool
    match: str
    points: int
    card: Optional[Card]
    player_finished: bool
    round_finished: bool
    gave_up: bool = False


@dataclass(frozen=True)
class LobbySnapshot:
    status: str
    current_round: int
    total_rounds: int
    round_started_at_ms: Optional[int]
    round_duration_ms: int
    card: Optional[Card]
    payload: dict = field(default_factory=dict)

    def elapsed_fraction(self, now_ms: int) -> float:
        if self.round_started_at_ms is None or self.round_duration_ms <= 0:
            return 0.0
        elapsed = max(0, now_ms - self.round_started_at_ms)
        return min(1.0, elapsed / self.round_duration_ms)

    def reveal_payload(self, now_ms: int, start_fraction: float = 0.3) -> dict:
        # Linear from start_fraction at round start to the full card at the deadline
        fraction = start_fraction + (1.0 - start_fraction) * self.elapsed_fraction(now_ms)
        return {
            'round': self.current_round,
            'image': self.card.partial_reveal if self.card else None,
            'revealFraction': round(fraction, 4),
        }


class Lobby:
    def __init__(self, code: str, host_id: str, host_name: str, config: GameConfig,
                 cards: List[Card] = None, round_duration_ms: int = ROUND_DURATION_MS,
                 now_ms: int = 0):
        self.lock = threading.RLock()
        self.id = code
        self.host_id = host_id
        self.config = config
        self.round_duration_ms = round_duration_ms
        self.cards: Tuple[Card, ...] = tuple(cards or ())
        self.status = WAITING
        self.current_round = 0
        self.players: Dict[str, str] = {}
        self.scores: Dict[str, int] = {}
        self.finished_this_round = set()
        self.round_players: Tuple[str, ...] = ()
        self.history: Dict[int, List[RoundOutcome]] = {}
        self.round_started_at_ms: Optional[int] = None
        self.created_at_ms = now_ms
        self.finished_at_ms: Optional[int] = None
        self._snapshot: LobbySnapshot = None
        self._register(host_id, host_name)
        self._publish()

    # ---- roster ----

    def _register(self, player_id: str, display_name: str) -> None:
        self.players[player_id] = display_name or player_id
        self.scores.setdefault(player_id, 0)

    def add_player(self, player_id: str, display_name: str) -> bool:
        """Add a player while WAITING. Re-joining is a no-op.

        Returns True when the roster changed.
        """
        if player_id in self.players:
            return False
        if self.status != WAITING:
            raise AlreadyStarted()
        self._register(player_id, display_name)
        self._publish()
        return True

    def replace_cards(self, cards: List[Card]) -> None:
        if self.status != WAITING:
            raise AlreadyStarted()
        self.cards = tuple(cards)
        self._publish()

    # ---- state machine ----

    @property
    def total_rounds(self) -> int:
        return len(self.cards)

    @property
    def current_card(self) -> Optional[Card]:
        if self.status != PLAYING or not 1 <= self.current_round <= len(self.cards):
            return None
        return self.cards[self.current_round - 1]

    def start(self, player_id: str, now_ms: int) -> None:
        if player_id != self.host_id:
            raise Forbidden('Only the host may start the game')
        if self.status != WAITING:
            raise AlreadyStarted()
        if not self.cards:
            raise NoCardsAvailable()
        self.status = PLAYING
        self._enter_round(1, now_ms)
        self._publish()

    def _enter_round(self, number: int, now_ms: int) -> None:
        self.current_round = number
        self.round_started_at_ms = now_ms
        self.finished_this_round = set()
        # Only players present at round start count toward its completion
        self.round_players = tuple(self.players)
        self.history.setdefault(number, [])

    def _advance(self, now_ms: int) -> None:
        if self.current_round + 1 > len(self.cards):
            self.status = FINISHED
            self.finished_at_ms = now_ms
            self.finished_this_round = set()
            return
        self._enter_round(self.current_round + 1, now_ms)

    @property
    def round_complete(self) -> bool:
        return set(self.round_players) <= self.finished_this_round

    def elapsed_ms(self, now_ms: int) -> int:
        if self.round_started_at_ms is None:
            return 0
        return max(0, int(now_ms - self.round_started_at_ms))

    def _require_open_round(self, player_id: str) -> None:
        if self.status != PLAYING:
            raise GameNotActive()
        if player_id not in self.players:
            raise Forbidden('You are not in this lobby')
        if player_id not in self.round_players:
            raise Forbidden('You joined after this round started')
        if player_id in self.finished_this_round:
            raise AlreadyFinished()

    def _finish_player(self, outcome: RoundOutcome) -> None:
        # Single finish path for correct guesses, give-ups and timeouts
        self.history[self.current_round].append(outcome)
        self.scores[outcome.player_id] = self.scores.get(outcome.player_id, 0) + outcome.points
        self.finished_this_round.add(outcome.player_id)

    def submit_guess(self, player_id: str, raw_guess: str, now_ms: int) -> GuessOutcome:
        if not isinstance(raw_guess, str):
            raise InvalidRequest('guess must be a string')
        self._require_open_round(player_id)
        card = self.current_card
        round_number = self.current_round
        elapsed = self.elapsed_ms(now_ms)
        result = evaluate_guess(raw_guess, card.name, elapsed, self.round_duration_ms)
        if not result.correct:
            return GuessOutcome(
                player_id=player_id, round_number=round_number, correct=False,
                match=result.kind, points=0, card=None,
                player_finished=False, round_finished=False,
            )
        self._finish_player(RoundOutcome(
            player_id=player_id, correct=True, points=result.points,
            elapsed_ms=elapsed, guess=raw_guess, match=result.kind,
        ))
        round_finished = self._maybe_advance(now_ms)
        return GuessOutcome(
            player_id=player_id, round_number=round_number, correct=True,
            match=result.kind, points=result.points, card=card,
            player_finished=True, round_finished=round_finished,
        )

    def give_up(self, player_id: str, now_ms: int) -> GuessOutcome:
        self._require_open_round(player_id)
        card = self.current_card
        round_number = self.current_round
        self._finish_player(RoundOutcome(
            player_id=player_id, correct=False, points=0,
            elapsed_ms=self.elapsed_ms(now_ms), guess=GIVE_UP_GUESS,
        ))
        round_finished = self._maybe_advance(now_ms)
        return GuessOutcome(
            player_id=player_id, round_number=round_number, correct=False,
            match=NO_MATCH, points=0, card=card,
            player_finished=True, round_finished=round_finished, gave_up=True,
        )

    def _maybe_advance(self, now_ms: int) -> bool:
        if not self.round_complete:
            self._publish()
            return False
        self._advance(now_ms)
        self._publish()
        return True

    def force_advance(self, now_ms: int) -> List[RoundOutcome]:
        """Close the current round at its deadline.

        Every round player who has not finished gets a timeout outcome
        (incorrect, zero points, full round duration elapsed).
        """
        if self.status != PLAYING:
            raise GameNotActive()
        timed_out = []
        for player_id in self.round_players:
            if player_id in self.finished_this_round:
                continue
            outcome = RoundOutcome(
                player_id=player_id, correct=False, points=0,
                elapsed_ms=self.round_duration_ms, guess=TIMEOUT_GUESS,
            )
            self._finish_player(outcome)
            timed_out.append(outcome)
        self._advance(now_ms)
        self._publish()
        return timed_out

    # ---- read side ----

    def player_statuses(self) -> List[dict]:
        return [
            {
                'playerId': pid,
                'name': name,
                'score': self.scores.get(pid, 0),
                'finished': pid in self.finished_this_round,
            }
            for pid, name in self.players.items()
        ]

    def card_for_round(self, number: int) -> Optional[Card]:
        if 1 <= number <= len(self.cards):
            return self.cards[number - 1]
        return None

    def history_dict(self) -> dict:
        rounds = {}
        for number in sorted(self.history):
            card = self.card_for_round(number)
            rounds[str(number)] = {
                'card': card.to_dict() if card else None,
                'outcomes': [o.to_dict() for o in self.history[number]],
            }
        return rounds

    def round_payload(self) -> dict:
        """Payload for gameStarted / nextRound."""
        if self.status == FINISHED:
            return {
                'status': FINISHED,
                'scores': dict(self.scores),
                'history': self.history_dict(),
                'playerStatuses': self.player_statuses(),
            }
        card = self.current_card
        return {
            'status': self.status,
            'round': self.current_round,
            'totalRounds': self.total_rounds,
            'revealPayload': card.partial_reveal if card else None,
            'roundStartedAt': self.round_started_at_ms,
            'roundDurationMs': self.round_duration_ms,
            'playerStatuses': self.player_statuses(),
        }

    def to_dict(self) -> dict:
        data = {
            'id': self.id,
            'hostId': self.host_id,
            'status': self.status,
            'config': self.config.to_dict(),
            'currentRound': self.current_round,
            'totalRounds': self.total_rounds,
            'players': len(self.players),
            'playerStatuses': self.player_statuses(),
            'scores': dict(self.scores),
            'roundStartedAt': self.round_started_at_ms,
            'roundDurationMs': self.round_duration_ms,
        }
        card = self.current_card
        if card:
            data['revealPayload'] = card.partial_reveal
        if self.status == FINISHED:
            data['history'] = self.history_dict()
        return data

    def _publish(self) -> None:
        self._snapshot = LobbySnapshot(
            status=self.status,
            current_round=self.current_round,
            total_rounds=self.total_rounds,
            round_started_at_ms=self.round_started_at_ms,
            round_duration_ms=self.round_duration_ms,
            card=self.current_card,
            payload=self.to_dict(),
        )

    @property
    def snapshot(self) -> LobbySnapshot:
        return self._snapshot
