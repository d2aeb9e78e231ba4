"""Game domain services: lobbies, rounds, scoring and timers.

This package contains the lobby/round engine that HTTP routes and socket
handlers call into, keeping transport concerns separated from core game
mechanics.
"""

from .errors import GameError  # noqa: F401
from .lobby import FINISHED, PLAYING, WAITING, GameConfig, Lobby  # noqa: F401
from .service import GameService  # noqa: F401
