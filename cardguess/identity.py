"""Player identity at the transport boundary.

Signed-in users play as their account id. Everyone else is a guest whose
``guest-`` id is issued here and kept in the Flask session, so a client
can only ever act as the guest its own session was given.
"""

import uuid

from flask import session
from flask_login import current_user

from cardguess.services.games.recorder import GUEST_PREFIX

GUEST_SESSION_KEY = 'guest_id'


def new_guest_id() -> str:
    return f"{GUEST_PREFIX}{uuid.uuid4().hex[:8]}"


def session_guest_id() -> str:
    guest_id = session.get(GUEST_SESSION_KEY)
    if not guest_id:
        guest_id = new_guest_id()
        session[GUEST_SESSION_KEY] = guest_id
    return guest_id


def resolve_player(data: dict):
    """Return ``(player_id, display_name)`` for the caller."""
    data = data or {}
    if current_user and current_user.is_authenticated:
        return current_user.player_id, current_user.username
    player_id = session_guest_id()
    name = str(data.get('name') or '').strip() or player_id
    return player_id, name[:64]
