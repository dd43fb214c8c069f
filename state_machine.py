"""
Turn and phase state machine.

Rooms change only through ``apply_event``. The store validates a request,
builds the matching RoomEvent and hands it here; ``replay`` feeds a stored
event log through the same reducer to rebuild a room from nothing.
"""

import logging
from typing import Callable, Dict, Iterable, List, Optional

from errors import InvalidState
from models import EventKind, FinishReason, GuessEvent, Phase, Player, Room, RoomEvent

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[Phase, frozenset] = {
    Phase.WAITING: frozenset({Phase.SETTING_SECRET, Phase.FINISHED}),
    Phase.SETTING_SECRET: frozenset({Phase.WAITING, Phase.ACTIVE, Phase.FINISHED}),
    Phase.ACTIVE: frozenset({Phase.FINISHED}),
    Phase.FINISHED: frozenset(),
}

LOBBY_PHASES = (Phase.WAITING, Phase.SETTING_SECRET)


# =============================================================================
# Phase Transitions
# =============================================================================


def transition(room: Room, target: Phase) -> None:
    """Move ``room`` to ``target``, rejecting anything off the table."""
    if room.phase == target:
        return
    if target not in ALLOWED_TRANSITIONS[room.phase]:
        raise InvalidState(f'Cannot move room from {room.phase.value} to {target.value}.')
    logger.debug(f"Room {room.code}: {room.phase.value} -> {target.value}")
    room.phase = target


def lobby_ready(room: Room) -> bool:
    """Enough seated players, all of them present."""
    seated = room.seated()
    return len(seated) >= room.min_players and all(p.connected for p in seated)


def ready_to_start(room: Room) -> bool:
    """Lobby ready and every seated player has chosen a number."""
    return (
        room.phase in LOBBY_PHASES
        and lobby_ready(room)
        and all(p.has_secret for p in room.seated())
    )


def settle_lobby(room: Room, ts: float) -> None:
    """Re-derive the pre-game phase after someone joins, leaves or sets a secret.

    A full room starts by itself once it is ready; a room with free seats
    waits for the host's start.
    """
    if room.phase not in LOBBY_PHASES:
        return
    if not lobby_ready(room):
        transition(room, Phase.WAITING)
        return
    transition(room, Phase.SETTING_SECRET)
    if ready_to_start(room) and room.open_slot() is None:
        _begin(room, ts)


def _begin(room: Room, ts: float) -> None:
    transition(room, Phase.ACTIVE)
    _set_turn(room, room.seated()[0].player_id, ts)
    logger.info(f"Room {room.code}: game started with {len(room.players)} players")


def finish(room: Room, winner_id: Optional[str], reason: FinishReason) -> None:
    transition(room, Phase.FINISHED)
    room.winner_id = winner_id
    room.finish_reason = reason
    room.turn_player_id = None
    room.turn_started_at = None
    logger.info(f"Room {room.code}: finished ({reason.value}), winner={winner_id}")


def check_forfeit(room: Room) -> bool:
    """End an active game once at most one player can still take turns."""
    if room.phase != Phase.ACTIVE:
        return False
    live = [p for p in room.seated() if p.live]
    if len(live) > 1:
        return False
    if live:
        finish(room, live[0].player_id, FinishReason.FORFEIT)
    else:
        finish(room, None, FinishReason.ABANDONED)
    return True


# =============================================================================
# Turn Rotation
# =============================================================================


def remaining_targets(room: Room, player_id: str) -> List[Player]:
    """Opponents whose secret has not been cracked yet."""
    return [p for p in room.seated() if p.player_id != player_id and not p.eliminated]


def can_take_turn(room: Room, player: Player) -> bool:
    return player.live and bool(remaining_targets(room, player.player_id))


def next_turn(room: Room, after_id: Optional[str]) -> Optional[str]:
    """First eligible player after ``after_id`` in slot order, wrapping around."""
    seated = room.seated()
    if not seated:
        return None
    ids = [p.player_id for p in seated]
    start = ids.index(after_id) + 1 if after_id in ids else 0
    for offset in range(len(seated)):
        candidate = seated[(start + offset) % len(seated)]
        if can_take_turn(room, candidate):
            return candidate.player_id
    return None


def _set_turn(room: Room, player_id: Optional[str], ts: float) -> None:
    room.turn_player_id = player_id
    room.turn_started_at = ts if player_id else None


def _advance_turn(room: Room, ts: float) -> None:
    _set_turn(room, next_turn(room, room.turn_player_id), ts)


def _player_gone(room: Room, player: Player, ts: float) -> None:
    if room.phase == Phase.ACTIVE:
        if check_forfeit(room):
            return
        if room.turn_player_id == player.player_id:
            _advance_turn(room, ts)
    elif room.phase in LOBBY_PHASES:
        settle_lobby(room, ts)


# =============================================================================
# Event Reducer
# =============================================================================


def _on_join(room: Room, event: RoomEvent) -> None:
    data = event.data
    room.players[event.player_id] = Player(
        player_id=event.player_id,
        name=data['name'],
        avatar=data['avatar'],
        slot=int(data['slot']),
        token=data['token'],
        last_heartbeat=event.timestamp,
    )
    settle_lobby(room, event.timestamp)


def _on_leave(room: Room, event: RoomEvent) -> None:
    player = room.player(event.player_id)
    if room.phase in LOBBY_PHASES:
        del room.players[player.player_id]
        settle_lobby(room, event.timestamp)
        return
    player.connected = False
    player.left = True
    _player_gone(room, player, event.timestamp)


def _on_secret(room: Room, event: RoomEvent) -> None:
    room.player(event.player_id).secret = event.data['secret']
    settle_lobby(room, event.timestamp)


def _on_guess(room: Room, event: RoomEvent) -> None:
    guesser = room.player(event.player_id)
    target = room.player(event.data['target_id'])
    hits = int(event.data['hits'])
    room.history.append(GuessEvent(
        seq=event.seq,
        player_id=guesser.player_id,
        target_id=target.player_id,
        guess=event.data['guess'],
        hits=hits,
        timestamp=event.timestamp,
    ))
    guesser.guesses_made += 1
    if hits == room.digit_count:
        target.eliminated = True
        guesser.correct_guesses += 1
        if not remaining_targets(room, guesser.player_id):
            finish(room, guesser.player_id, FinishReason.SOLVED)
            return
        if check_forfeit(room):
            return
    _advance_turn(room, event.timestamp)


def _on_skip(room: Room, event: RoomEvent) -> None:
    _advance_turn(room, event.timestamp)


def _on_drop(room: Room, event: RoomEvent) -> None:
    player = room.player(event.player_id)
    player.connected = False
    _player_gone(room, player, event.timestamp)


def _on_return(room: Room, event: RoomEvent) -> None:
    player = room.player(event.player_id)
    player.connected = True
    player.last_heartbeat = event.timestamp
    settle_lobby(room, event.timestamp)


def _on_abandon(room: Room, event: RoomEvent) -> None:
    finish(room, None, FinishReason.ABANDONED)


def _on_start(room: Room, event: RoomEvent) -> None:
    if not ready_to_start(room):
        raise InvalidState(f'Room {room.code} is not ready to start.')
    _begin(room, event.timestamp)


def _on_digit_mode(room: Room, event: RoomEvent) -> None:
    if room.phase not in LOBBY_PHASES or any(p.has_secret for p in room.players.values()):
        raise InvalidState(f'Room {room.code} can no longer change digit mode.')
    room.digit_count = int(event.data['digit_count'])


_HANDLERS: Dict[EventKind, Callable[[Room, RoomEvent], None]] = {
    EventKind.JOIN: _on_join,
    EventKind.LEAVE: _on_leave,
    EventKind.SECRET: _on_secret,
    EventKind.GUESS: _on_guess,
    EventKind.SKIP: _on_skip,
    EventKind.DROP: _on_drop,
    EventKind.RETURN: _on_return,
    EventKind.ABANDON: _on_abandon,
    EventKind.START: _on_start,
    EventKind.DIGIT_MODE: _on_digit_mode,
}


def apply_event(room: Room, event: RoomEvent) -> None:
    """Apply one event to ``room``. Events must arrive in sequence order."""
    if event.seq != room.seq + 1:
        raise ValueError(f'Room {room.code}: expected event {room.seq + 1}, got {event.seq}')
    _HANDLERS[event.kind](room, event)
    room.events.append(event)
    room.last_activity = event.timestamp


def replay(
    code: str,
    digit_count: int,
    max_players: int,
    min_players: int,
    created_at: float,
    events: Iterable[RoomEvent],
) -> Room:
    """Rebuild a room by folding its event log over an empty room."""
    room = Room(
        code=code,
        digit_count=digit_count,
        max_players=max_players,
        min_players=min_players,
        created_at=created_at,
        last_activity=created_at,
    )
    for event in events:
        apply_event(room, event)
    return room
