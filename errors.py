"""
Error taxonomy for room operations.

Every failure raised by the room store carries a machine-checkable ``kind``
(one of the five categories below), a ``code`` naming the exact reason, and
a human-readable message that can be shown to players as-is.
"""

from typing import Dict

NOT_FOUND = 'not_found'
INVALID_STATE = 'invalid_state'
INVALID_INPUT = 'invalid_input'
FORBIDDEN = 'forbidden'
CONFLICT = 'conflict'

HTTP_STATUS: Dict[str, int] = {
    NOT_FOUND: 404,
    INVALID_STATE: 409,
    INVALID_INPUT: 400,
    FORBIDDEN: 403,
    CONFLICT: 409,
}


class GameError(Exception):
    """Base class for every rejected room operation."""

    kind: str = INVALID_STATE
    code: str = 'game_error'
    default_message: str = 'The request could not be completed.'

    def __init__(self, message: str = '') -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    @property
    def http_status(self) -> int:
        return HTTP_STATUS[self.kind]

    def to_dict(self) -> Dict[str, str]:
        return {'kind': self.kind, 'code': self.code, 'message': self.message}


# =============================================================================
# Not Found
# =============================================================================


class NotFound(GameError):
    kind = NOT_FOUND
    code = 'not_found'


class RoomNotFound(NotFound):
    code = 'room_not_found'
    default_message = 'Room not found.'


class PlayerNotFound(NotFound):
    code = 'player_not_found'
    default_message = 'Player not found in this room.'


# =============================================================================
# Invalid State
# =============================================================================


class InvalidState(GameError):
    kind = INVALID_STATE
    code = 'invalid_state'


class GameAlreadyStarted(InvalidState):
    code = 'game_already_started'
    default_message = 'The game has already started.'


class GameNotActive(InvalidState):
    code = 'game_not_active'
    default_message = 'The game is not in progress.'


class GameNotFinished(InvalidState):
    code = 'game_not_finished'
    default_message = 'The game has not finished yet.'


class NoWinnerToDisclose(InvalidState):
    code = 'no_winner'
    default_message = 'The game ended without a winner.'


class PlayersNotReady(InvalidState):
    code = 'players_not_ready'
    default_message = 'Every player must be present and have chosen a number.'


class SecretsAlreadyChosen(InvalidState):
    code = 'secrets_already_chosen'
    default_message = 'The digit mode is locked once a number has been chosen.'


# =============================================================================
# Invalid Input
# =============================================================================


class InvalidInput(GameError):
    kind = INVALID_INPUT
    code = 'invalid_input'


class InvalidSecretFormat(InvalidInput):
    code = 'invalid_secret_format'
    default_message = 'Number has the wrong format.'


class InvalidTargetPlayer(InvalidInput):
    code = 'invalid_target_player'
    default_message = 'Choose an opponent that is still in play.'


class InvalidPayload(InvalidInput):
    code = 'invalid_payload'
    default_message = 'Malformed request.'


# =============================================================================
# Forbidden
# =============================================================================


class Forbidden(GameError):
    kind = FORBIDDEN
    code = 'forbidden'


class NotYourTurn(Forbidden):
    code = 'not_your_turn'
    default_message = 'Not your turn.'


class RequesterIsWinner(Forbidden):
    code = 'requester_is_winner'
    default_message = 'The winner cannot view the opponent secret.'


class InvalidToken(Forbidden):
    code = 'invalid_token'
    default_message = 'Unauthorized player.'


class NotHost(Forbidden):
    code = 'not_host'
    default_message = 'Only the host can do that.'


# =============================================================================
# Conflict
# =============================================================================


class Conflict(GameError):
    kind = CONFLICT
    code = 'conflict'


class RoomFull(Conflict):
    code = 'room_full'
    default_message = 'Room is full.'


class SecretAlreadySet(Conflict):
    code = 'secret_already_set'
    default_message = 'Your secret number is already set.'


class DuplicateSubmission(Conflict):
    code = 'duplicate_submission'
    default_message = 'This move was already applied.'
