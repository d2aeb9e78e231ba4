import logging
import threading
from typing import Callable, Dict, Optional, Tuple

DEADLINE = 'deadline'
REVEAL = 'reveal'


class TimerHandle:
    """A cancellable timer bound to one lobby round.

    ``run`` is the worker body handed to the background task spawner. A
    deadline fires once; a reveal ticker fires every ``delay_ms`` until it
    is cancelled or its callback returns False.
    """

    def __init__(self, lobby_id: str, kind: str, round_number: int, delay_ms: int,
                 callback: Callable[[], Optional[bool]], repeat: bool = False):
        self.lobby_id = lobby_id
        self.kind = kind
        self.round_number = round_number
        self.delay_ms = delay_ms
        self.callback = callback
        self.repeat = repeat
        self._cancelled = threading.Event()

    def __repr__(self):
        return f"TimerHandle(lobby={self.lobby_id}, kind={self.kind}, round={self.round_number})"

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    def fire(self) -> Optional[bool]:
        if self.cancelled:
            return False
        return self.callback()

    def run(self) -> None:
        while not self._cancelled.wait(self.delay_ms / 1000.0):
            keep_going = self.fire()
            if not self.repeat or keep_going is False:
                return


class RoundScheduler:
    """Deadline and progressive-reveal timers, at most one of each per lobby.

    Arming a timer cancels the previous one of the same kind for that
    lobby. Callers cancel and re-arm while holding the lobby lock, so a
    stale deadline can only reach its callback after the round moved on,
    where the callback's own round check turns it into a no-op.
    """

    def __init__(self, spawn: Callable, round_duration_ms: int, reveal_interval_ms: int,
                 logger: logging.Logger = None):
        self.spawn = spawn
        self.round_duration_ms = round_duration_ms
        self.reveal_interval_ms = reveal_interval_ms
        self.logger = logger or logging.getLogger(__name__)
        self._timers: Dict[Tuple[str, str], TimerHandle] = {}
        self._lock = threading.Lock()

    def _arm(self, handle: TimerHandle) -> TimerHandle:
        key = (handle.lobby_id, handle.kind)
        with self._lock:
            previous = self._timers.get(key)
            if previous is not None:
                previous.cancel()
            self._timers[key] = handle
        self.logger.info(
            f"[timer-set] lobby={handle.lobby_id} kind={handle.kind} round={handle.round_number} delay_ms={handle.delay_ms}"
        )
        self.spawn(handle.run)
        return handle

    def arm_deadline(self, lobby_id: str, round_number: int, callback: Callable[[], None]) -> TimerHandle:
        return self._arm(TimerHandle(lobby_id, DEADLINE, round_number, self.round_duration_ms, callback))

    def arm_reveal(self, lobby_id: str, round_number: int, callback: Callable[[], bool]) -> TimerHandle:
        return self._arm(TimerHandle(lobby_id, REVEAL, round_number, self.reveal_interval_ms, callback,
                                     repeat=True))

    def active(self, lobby_id: str, kind: str) -> Optional[TimerHandle]:
        handle = self._timers.get((lobby_id, kind))
        if handle is None or handle.cancelled:
            return None
        return handle

    def cancel(self, lobby_id: str) -> None:
        with self._lock:
            handles = [self._timers.pop((lobby_id, kind), None) for kind in (DEADLINE, REVEAL)]
        for handle in handles:
            if handle is not None:
                handle.cancel()
                self.logger.info(f"[timer-cancel] lobby={lobby_id} kind={handle.kind} round={handle.round_number}")
