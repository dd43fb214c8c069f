"""
Session synchronization.

Push: the room store publishes typed notifications on an EventHub; the
Socket.IO layer subscribes and forwards them to the room's channel.

Pull: every snapshot carries its sequence number and a suggested
``next_poll_in``; ``diff_snapshots`` lets a polling client derive the same
notifications locally from two consecutive snapshots.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

from config import (
    POLL_INTERVAL_ACTIVE,
    POLL_INTERVAL_FINISHED,
    POLL_INTERVAL_WAITING,
    TURN_TIMEOUT_SECONDS,
)
from models import Phase, Room, RoomSnapshot, iso

logger = logging.getLogger(__name__)

LOBBY_CHANNEL = 'lobby'

ROOM_STATE = 'room_state'
MOVE_RESULT = 'move_result'
GAME_START = 'game_start'
GAME_END = 'game_end'
ROOM_LIST = 'room_list'
ROOM_EXPIRED = 'room_expired'
ERROR = 'error'


@dataclass(frozen=True)
class Notification:
    event: str
    channel: str
    payload: Mapping[str, Any] = field(default_factory=dict)


Listener = Callable[[Notification], None]


class EventHub:
    """Explicit fan-out of notifications to subscribed listeners."""

    def __init__(self) -> None:
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def publish(self, notification: Notification) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(notification)
            except Exception:
                # Listener errors never reach the store
                logger.exception(f"Listener failed for {notification.event} on {notification.channel}")


def poll_interval_for(phase: Phase) -> int:
    """Suggested seconds between polls: tight while playing, loose otherwise."""
    if phase == Phase.ACTIVE:
        return POLL_INTERVAL_ACTIVE
    if phase == Phase.FINISHED:
        return POLL_INTERVAL_FINISHED
    return POLL_INTERVAL_WAITING


def snapshot_of(room: Room, turn_timeout: int = TURN_TIMEOUT_SECONDS) -> RoomSnapshot:
    """Build the public snapshot. Caller holds the room lock."""
    winner = room.players.get(room.winner_id) if room.winner_id else None
    deadline = None
    if turn_timeout > 0 and room.turn_started_at is not None:
        deadline = iso(room.turn_started_at + turn_timeout)
    last = room.events[-1].timestamp if room.events else room.created_at
    return RoomSnapshot(
        room_code=room.code,
        phase=room.phase,
        digit_mode=room.digit_count,
        max_players=room.max_players,
        seq=room.seq,
        players=tuple(p.public_dict() for p in room.seated()),
        turn_player_id=room.turn_player_id,
        turn_deadline=deadline,
        winner_id=room.winner_id,
        winner_name=winner.name if winner else None,
        finish_reason=room.finish_reason.value if room.finish_reason else None,
        history=tuple(g.to_dict() for g in room.history),
        last_modified=iso(last),
        next_poll_in=poll_interval_for(room.phase),
    )


def game_end_payload(snapshot: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        'room_code': snapshot['room_code'],
        'winner_id': snapshot.get('winner_id'),
        'winner_name': snapshot.get('winner_name'),
        'reason': snapshot.get('finish_reason'),
    }


def diff_snapshots(previous: Optional[Mapping[str, Any]], current: Mapping[str, Any]) -> List[Notification]:
    """Notifications implied by moving from ``previous`` to ``current``.

    ``previous`` may be None (first poll, or after a reconnect); the result
    then reports the room state and any phase the room is already in.
    """
    channel = current['room_code']
    if previous is not None and previous.get('seq') == current.get('seq'):
        return []

    found: List[Notification] = [Notification(ROOM_STATE, channel, current)]
    old_phase = previous.get('phase') if previous else None
    new_phase = current.get('phase')

    if new_phase == Phase.ACTIVE.value and old_phase != Phase.ACTIVE.value:
        found.append(Notification(GAME_START, channel, {
            'room_code': channel,
            'turn_player_id': current.get('turn_player_id'),
        }))

    seen = previous.get('seq', 0) if previous else 0
    for move in current.get('history', []):
        if move['seq'] > seen:
            found.append(Notification(MOVE_RESULT, channel, move))

    if new_phase == Phase.FINISHED.value and old_phase != Phase.FINISHED.value:
        found.append(Notification(GAME_END, channel, game_end_payload(current)))
    return found
