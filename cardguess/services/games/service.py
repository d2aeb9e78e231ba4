"""Lobby/round orchestration.

``GameService`` is the single entry point used by HTTP routes, socket
handlers and timer callbacks. Every mutation runs inside the target
lobby's lock; timers for a round are cancelled and re-armed inside the
same locked region that advances the round, before anything is
broadcast.
"""

import logging
import time
from typing import Callable, Protocol

from .cards import CardPool, gather_cards
from .lobby import FINISHED, PLAYING, WAITING, GameConfig, GuessOutcome, Lobby
from .recorder import NullSessionRecorder, SessionRecorder, build_session_records
from .registry import LobbyRegistry
from .scheduler import RoundScheduler


def lobby_room(code: str) -> str:
    return f"lobby:{code}"


def now_ms() -> int:
    return int(time.time() * 1000)


class Broadcaster(Protocol):
    def to_room(self, room: str, event: str, payload: dict) -> None:
        ...


class SocketIOBroadcaster:
    def __init__(self, socketio, namespace: str = '/ws'):
        self.socketio = socketio
        self.namespace = namespace

    def to_room(self, room, event, payload):
        self.socketio.emit(event, payload, to=room, namespace=self.namespace)


class GameService:
    def __init__(self, registry: LobbyRegistry, scheduler: RoundScheduler, card_pool: CardPool,
                 broadcaster: Broadcaster, recorder: SessionRecorder = None,
                 clock: Callable[[], int] = now_ms, spawn: Callable = None,
                 card_fetch_attempts: int = 5, card_fetch_backoff_ms: int = 200,
                 retention_ms: int = 600000, reveal_start_fraction: float = 0.3,
                 sleep: Callable[[float], None] = time.sleep, logger: logging.Logger = None):
        if registry.round_duration_ms != scheduler.round_duration_ms:
            raise ValueError('registry and scheduler must share the round duration')
        self.registry = registry
        self.scheduler = scheduler
        self.card_pool = card_pool
        self.broadcaster = broadcaster
        self.recorder = recorder or NullSessionRecorder()
        self.clock = clock
        self.spawn = spawn or (lambda fn, *args: fn(*args))
        self.card_fetch_attempts = card_fetch_attempts
        self.card_fetch_backoff_ms = card_fetch_backoff_ms
        self.retention_ms = retention_ms
        self.reveal_start_fraction = reveal_start_fraction
        self.sleep = sleep
        self.logger = logger or logging.getLogger(__name__)

    @property
    def round_duration_ms(self) -> int:
        return self.registry.round_duration_ms

    # ---- commands ----

    def create_lobby(self, host_id: str, host_name: str, config: GameConfig) -> Lobby:
        self.evict_expired()
        # No lock is held while the pool is queried
        cards = self._gather_cards(config)
        return self.registry.create(host_id, config, host_name, cards, now_ms=self.clock())

    def join_lobby(self, code: str, player_id: str, display_name: str) -> Lobby:
        lobby = self.registry.join(code, player_id, display_name)
        snapshot = lobby.snapshot
        self._broadcast(lobby.id, 'playerUpdate', {
            'count': snapshot.payload['players'],
            'playerStatuses': snapshot.payload['playerStatuses'],
        })
        return lobby

    def get_lobby_status(self, code: str) -> dict:
        return self.registry.get(code).snapshot.payload

    def start_game(self, code: str, player_id: str) -> dict:
        lobby = self.registry.get(code)
        with lobby.lock:
            if lobby.status == WAITING and player_id == lobby.host_id and not lobby.cards:
                self.logger.info(f"[card-refetch] lobby={lobby.id}")
                lobby.replace_cards(self._gather_cards(lobby.config))
            lobby.start(player_id, self.clock())
            self._arm_round(lobby)
            payload = lobby.round_payload()
            self.logger.info(f"[start] lobby={lobby.id} rounds={lobby.total_rounds} players={len(lobby.players)}")
            self._broadcast(lobby.id, 'gameStarted', payload)
        return payload

    def make_guess(self, code: str, player_id: str, guess: str) -> dict:
        lobby = self.registry.get(code)
        with lobby.lock:
            outcome = lobby.submit_guess(player_id, '' if guess is None else guess, self.clock())
            return self._after_player_action(lobby, outcome)

    def give_up(self, code: str, player_id: str) -> dict:
        lobby = self.registry.get(code)
        with lobby.lock:
            outcome = lobby.give_up(player_id, self.clock())
            return self._after_player_action(lobby, outcome)

    def evict_expired(self) -> list:
        return self.registry.evict_expired(
            self.clock(), self.retention_ms,
            on_evict=lambda lobby: self.scheduler.cancel(lobby.id),
        )

    # ---- timer callbacks ----

    def on_deadline(self, code: str, round_number: int) -> bool:
        """Force-advance ``round_number`` if it is still the open round.

        Returns False (and changes nothing) when the lobby is gone or the
        round already moved on.
        """
        lobby = self.registry.find(code)
        if lobby is None:
            return False
        with lobby.lock:
            self.logger.info(
                f"[timer-fire] lobby={code} kind=deadline expected_round={round_number} "
                f"actual_round={lobby.current_round} status={lobby.status}"
            )
            if lobby.status != PLAYING or lobby.current_round != round_number:
                self.logger.info(f"[timer-abort] lobby={code} mismatch status/round")
                return False
            timed_out = lobby.force_advance(self.clock())
            self.logger.info(f"[timeout] lobby={code} round={round_number} timed_out={len(timed_out)}")
            self._complete_round(lobby, round_number, 'timeout')
        return True

    def on_reveal_tick(self, code: str, round_number: int) -> bool:
        # Read-only: works from the published snapshot, never takes the lock
        lobby = self.registry.find(code)
        if lobby is None:
            return False
        snapshot = lobby.snapshot
        if snapshot.status != PLAYING or snapshot.current_round != round_number:
            return False
        self._broadcast(code, 'progressiveReveal', {
            'revealPayload': snapshot.reveal_payload(self.clock(), self.reveal_start_fraction),
        })
        return True

    # ---- internals (lobby lock held) ----

    def _broadcast(self, code: str, event: str, payload: dict) -> None:
        # Delivery is best-effort; state has already been committed
        try:
            self.broadcaster.to_room(lobby_room(code), event, payload)
        except Exception:
            self.logger.exception(f"[broadcast] lobby={code} event={event} failed")

    def _gather_cards(self, config: GameConfig):
        return gather_cards(
            self.card_pool, config.set_filter, config.effective_rarities, config.round_count,
            attempts=self.card_fetch_attempts, backoff_ms=self.card_fetch_backoff_ms, sleep=self.sleep,
        )

    def _arm_round(self, lobby: Lobby) -> None:
        code, number = lobby.id, lobby.current_round
        self.scheduler.arm_deadline(code, number, lambda: self.on_deadline(code, number))
        self.scheduler.arm_reveal(code, number, lambda: self.on_reveal_tick(code, number))

    def _after_player_action(self, lobby: Lobby, outcome: GuessOutcome) -> dict:
        result = self._guess_result(lobby, outcome)
        if outcome.round_finished:
            self._complete_round(lobby, outcome.round_number, 'normal')
        elif outcome.player_finished:
            self._broadcast(lobby.id, 'playerUpdate', {
                'count': len(lobby.players),
                'playerStatuses': lobby.player_statuses(),
            })
        return result

    def _guess_result(self, lobby: Lobby, outcome: GuessOutcome) -> dict:
        result = {
            'correct': outcome.correct,
            'match': outcome.match,
            'points': outcome.points,
            'round': outcome.round_number,
            'gaveUp': outcome.gave_up,
            'roundFinished': outcome.round_finished,
            'scores': dict(lobby.scores),
            'playerStatuses': lobby.player_statuses(),
        }
        # The answer is only revealed once the player is out of the round
        if outcome.player_finished and outcome.card is not None:
            result.update({
                'name': outcome.card.name,
                'fullImageRef': outcome.card.full_image_ref,
                'setName': outcome.card.set_name,
            })
        return result

    def _round_result(self, lobby: Lobby, round_number: int) -> dict:
        card = lobby.card_for_round(round_number)
        return {
            'round': round_number,
            'card': card.to_dict() if card else None,
            'outcomes': [o.to_dict() for o in lobby.history.get(round_number, [])],
            'scores': dict(lobby.scores),
            'playerStatuses': lobby.player_statuses(),
        }

    def _complete_round(self, lobby: Lobby, round_number: int, reason: str) -> None:
        """Shared tail of every round transition, normal or timeout."""
        self.scheduler.cancel(lobby.id)
        if lobby.status == PLAYING:
            self._arm_round(lobby)
            self.logger.info(f"[next_round] lobby={lobby.id} advance round {round_number} -> {lobby.current_round} reason={reason}")
        else:
            self.logger.info(f"[finish] lobby={lobby.id} finished at round={round_number} reason={reason}")
        self._broadcast(lobby.id, 'roundFinished', {
            'result': self._round_result(lobby, round_number),
            'reason': reason,
        })
        self._broadcast(lobby.id, 'nextRound', lobby.round_payload())
        if lobby.status == FINISHED:
            self.spawn(self._record_session, lobby.id, build_session_records(lobby))

    def _record_session(self, code: str, records) -> None:
        try:
            self.recorder.record(records)
        except Exception:
            self.logger.exception(f"[recorder] lobby={code} hand-off failed")
