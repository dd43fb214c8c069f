"""
Post-game secret disclosure.

Once a room is finished, a player who lost may look at the winning secret.
Nobody else may see any secret, ever.
"""

from dataclasses import dataclass
from typing import Dict

from errors import GameNotFinished, NoWinnerToDisclose, RequesterIsWinner
from models import Phase, Room


@dataclass(frozen=True)
class SecretDisclosure:
    opponent_secret: str
    opponent_id: str
    opponent_name: str

    def to_dict(self) -> Dict[str, str]:
        return {
            'opponent_secret': self.opponent_secret,
            'opponent_id': self.opponent_id,
            'opponent_name': self.opponent_name,
        }


def disclose_opponent_secret(room: Room, requester_id: str) -> SecretDisclosure:
    """Return the winner's secret to a non-winning player of a finished room.

    Raises:
        GameNotFinished: the room is still being played.
        PlayerNotFound: the requester never sat in this room.
        RequesterIsWinner: the winner asked.
        NoWinnerToDisclose: the room was abandoned without a winner.
    """
    if room.phase != Phase.FINISHED:
        raise GameNotFinished()
    room.player(requester_id)
    if requester_id == room.winner_id:
        raise RequesterIsWinner()
    if room.winner_id is None:
        raise NoWinnerToDisclose()
    winner = room.player(room.winner_id)
    return SecretDisclosure(
        opponent_secret=winner.secret or '',
        opponent_id=winner.player_id,
        opponent_name=winner.name,
    )
