"""Errors raised by lobby and round operations.

Every error is reported synchronously to the caller of the triggering
operation. Transport layers render them as ``{'error': message}`` with
``status_code``.
"""


class GameError(Exception):
    status_code = 400
    default_message = 'Invalid game operation'

    def __init__(self, message: str = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message

    def to_dict(self):
        return {'error': self.message}


class InvalidRequest(GameError):
    status_code = 400
    default_message = 'Invalid request'


class NotFound(GameError):
    status_code = 404
    default_message = 'Lobby not found'


class Forbidden(GameError):
    status_code = 403
    default_message = 'Only the host may do that'


class AlreadyStarted(GameError):
    status_code = 409
    default_message = 'This lobby has already started'


class GameNotActive(GameError):
    status_code = 409
    default_message = 'Game is not in progress'


class AlreadyFinished(GameError):
    status_code = 409
    default_message = 'You already finished this round'


class NoCardsAvailable(GameError):
    status_code = 503
    default_message = 'No cards available for this configuration'
