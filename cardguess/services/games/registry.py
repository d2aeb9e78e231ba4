"""In-memory store of active lobbies.

The registry lock only guards the code -> lobby map. Lobby mutations are
serialized by each lobby's own lock, so unrelated games never wait on
each other.
"""

import logging
import random
import string
import threading
from typing import Callable, Dict, List, Optional

from .cards import Card
from .errors import NotFound
from .lobby import FINISHED, WAITING, GameConfig, Lobby
from .scoring import ROUND_DURATION_MS

CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_lobby_code(taken, length: int = 4, rng: random.Random = random) -> str:
    """Generate a short lobby code not present in ``taken``."""
    while True:
        code = ''.join(rng.choices(CODE_ALPHABET, k=length))
        if code not in taken:
            return code


def _expired(lobby: Lobby, now_ms: int, retention_ms: int) -> bool:
    if lobby.status == FINISHED and lobby.finished_at_ms is not None:
        return now_ms - lobby.finished_at_ms >= retention_ms
    if lobby.status == WAITING:
        return now_ms - lobby.created_at_ms >= retention_ms
    return False


class LobbyRegistry:
    def __init__(self, code_length: int = 4, round_duration_ms: int = ROUND_DURATION_MS,
                 logger: logging.Logger = None, rng: random.Random = None):
        self._lobbies: Dict[str, Lobby] = {}
        self._lock = threading.Lock()
        self.code_length = code_length
        self.round_duration_ms = round_duration_ms
        self.logger = logger or logging.getLogger(__name__)
        self.rng = rng or random.Random()

    def __len__(self):
        return len(self._lobbies)

    def __contains__(self, code):
        return self.normalize_code(code) in self._lobbies

    @staticmethod
    def normalize_code(code) -> str:
        return (code or '').strip().upper()

    def create(self, host_id: str, config: GameConfig, host_name: str,
               cards: List[Card], now_ms: int = 0) -> Lobby:
        """Insert a fully prepared lobby under a fresh code.

        Cards are fetched by the caller beforehand, so a lobby is never
        visible to joiners without its cards.
        """
        with self._lock:
            code = generate_lobby_code(self._lobbies, self.code_length, self.rng)
            lobby = Lobby(code, host_id, host_name, config, cards,
                          round_duration_ms=self.round_duration_ms, now_ms=now_ms)
            self._lobbies[code] = lobby
        self.logger.info(f"[lobby-create] lobby={code} host={host_id} cards={len(cards)} rounds={config.round_count}")
        return lobby

    def find(self, code) -> Optional[Lobby]:
        return self._lobbies.get(self.normalize_code(code))

    def get(self, code) -> Lobby:
        lobby = self.find(code)
        if lobby is None:
            raise NotFound(f'Lobby {self.normalize_code(code)} not found')
        return lobby

    def join(self, code, player_id: str, display_name: str) -> Lobby:
        lobby = self.get(code)
        with lobby.lock:
            added = lobby.add_player(player_id, display_name)
        if added:
            self.logger.info(f"[lobby-join] lobby={lobby.id} player={player_id}")
        return lobby

    def evict_expired(self, now_ms: int, retention_ms: int,
                      on_evict: Callable[[Lobby], None] = None) -> List[str]:
        """Drop lobbies that have sat idle past the retention window.

        A finished lobby expires ``retention_ms`` after it finished; a lobby
        that never started expires the same interval after it was created.
        """
        with self._lock:
            expired = [code for code, lobby in self._lobbies.items() if _expired(lobby, now_ms, retention_ms)]
            evicted = [self._lobbies.pop(code) for code in expired]
        for lobby in evicted:
            self.logger.info(f"[lobby-evict] lobby={lobby.id} status={lobby.status}")
            if on_evict:
                on_evict(lobby)
        return expired
