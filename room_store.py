"""
Authoritative room store.

Holds every live room in memory, serializes mutations per room, persists each
accepted event before applying it, and publishes the resulting notifications
on the EventHub. Rooms never share a lock; the room table has its own lock
that is only held for lookup, insert and removal (never while waiting on a
room lock).
"""

import hmac
import logging
import random
import secrets
import string
import threading
import time
import uuid
from contextlib import contextmanager
from typing import Any, Callable, Dict, Generator, List, Optional

from config import (
    DEFAULT_AVATAR,
    DEFAULT_DIGIT_COUNT,
    HEARTBEAT_GRACE_SECONDS,
    HEARTBEAT_REMOVAL_SECONDS,
    MAX_DIGIT_COUNT,
    MAX_NAME_LENGTH,
    MAX_PLAYERS,
    MIN_DIGIT_COUNT,
    MIN_PLAYERS,
    PLAYER_LIMIT,
    ROOM_ID_LENGTH,
    ROOM_INACTIVITY_TIMEOUT_SECONDS,
    TOKEN_LENGTH,
    TURN_TIMEOUT_SECONDS,
)
from disclosure import SecretDisclosure, disclose_opponent_secret
from errors import (
    DuplicateSubmission,
    GameAlreadyStarted,
    GameError,
    GameNotActive,
    InvalidInput,
    InvalidState,
    InvalidTargetPlayer,
    InvalidToken,
    NotHost,
    NotYourTurn,
    PlayersNotReady,
    RoomFull,
    RoomNotFound,
    SecretAlreadySet,
    SecretsAlreadyChosen,
)
from evaluator import check_number, evaluate
from models import (
    EventKind,
    GuessOutcome,
    JoinResult,
    Phase,
    Player,
    Room,
    RoomEvent,
    RoomSummary,
    RoomSnapshot,
)
from persistence import SQLiteRoomRepository
from state_machine import LOBBY_PHASES, apply_event, ready_to_start, remaining_targets, replay
from sync import (
    GAME_END,
    GAME_START,
    LOBBY_CHANNEL,
    MOVE_RESULT,
    ROOM_EXPIRED,
    ROOM_LIST,
    ROOM_STATE,
    EventHub,
    Notification,
    game_end_payload,
    snapshot_of,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Identifiers
# =============================================================================


def gen_room_code(length: int = ROOM_ID_LENGTH) -> str:
    """Generate a random room code."""
    chars = string.ascii_uppercase + string.digits
    return ''.join(random.choice(chars) for _ in range(length))


def gen_token(length: int = TOKEN_LENGTH) -> str:
    """Generate a secure random token for player authentication."""
    chars = string.ascii_letters + string.digits
    return ''.join(secrets.choice(chars) for _ in range(length))


def gen_player_id() -> str:
    return uuid.uuid4().hex[:12]


def normalize_code(room_code: Optional[str]) -> str:
    return (room_code or '').strip().upper()


# =============================================================================
# Room Store
# =============================================================================


class RoomStore:
    """All rooms of one server process."""

    def __init__(
        self,
        hub: Optional[EventHub] = None,
        repository: Optional[SQLiteRoomRepository] = None,
        clock: Callable[[], float] = time.time,
        min_players: int = MIN_PLAYERS,
        turn_timeout: int = TURN_TIMEOUT_SECONDS,
        heartbeat_grace: int = HEARTBEAT_GRACE_SECONDS,
        removal_after: int = HEARTBEAT_REMOVAL_SECONDS,
        inactivity_timeout: int = ROOM_INACTIVITY_TIMEOUT_SECONDS,
    ) -> None:
        self.hub = hub or EventHub()
        self.repository = repository
        self.clock = clock
        self.min_players = min_players
        self.turn_timeout = turn_timeout
        self.heartbeat_grace = heartbeat_grace
        self.removal_after = removal_after
        self.inactivity_timeout = inactivity_timeout
        self._rooms: Dict[str, Room] = {}
        self._rooms_lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _get(self, room_code: Optional[str]) -> Room:
        with self._rooms_lock:
            room = self._rooms.get(normalize_code(room_code))
        if room is None:
            raise RoomNotFound()
        return room

    @contextmanager
    def _locked(self, room_code: Optional[str]) -> Generator[Room, None, None]:
        """Hold the room's lock for one mutation."""
        room = self._get(room_code)
        with room.lock:
            if room.destroyed:
                raise RoomNotFound()
            yield room

    def _record(
        self,
        room: Room,
        kind: EventKind,
        player_id: Optional[str] = None,
        ts: Optional[float] = None,
        **data: Any,
    ) -> RoomEvent:
        """Persist, apply and announce one event. Caller holds the room lock."""
        before = room.phase
        event = RoomEvent(
            seq=room.seq + 1,
            kind=kind,
            timestamp=self.clock() if ts is None else ts,
            player_id=player_id,
            data=data,
        )
        if self.repository is not None:
            self.repository.append_event(room.code, event)
        apply_event(room, event)
        room.snapshot = snapshot_of(room, self.turn_timeout)
        self._announce(room, event, before)
        return event

    def _announce(self, room: Room, event: RoomEvent, before: Phase) -> None:
        snapshot = room.snapshot.to_dict()
        self.hub.publish(Notification(ROOM_STATE, room.code, snapshot))
        if event.kind == EventKind.GUESS:
            self.hub.publish(Notification(MOVE_RESULT, room.code, room.history[-1].to_dict()))
        if room.phase != before:
            if room.phase == Phase.ACTIVE:
                self.hub.publish(Notification(GAME_START, room.code, {
                    'room_code': room.code,
                    'turn_player_id': room.turn_player_id,
                    'turn_order': snapshot['turn_order'],
                }))
            elif room.phase == Phase.FINISHED:
                self.hub.publish(Notification(GAME_END, room.code, game_end_payload(snapshot)))
        if event.kind in (EventKind.JOIN, EventKind.LEAVE) or room.phase != before:
            self._publish_room_list()

    def _publish_room_list(self) -> None:
        rooms = [s.to_dict() for s in self.list_open_rooms()]
        self.hub.publish(Notification(ROOM_LIST, LOBBY_CHANNEL, {'rooms': rooms}))

    def _join_result(self, room: Room, player: Player, rejoined: bool) -> JoinResult:
        return JoinResult(
            room_code=room.code,
            player_id=player.player_id,
            slot_position=player.slot,
            phase=room.phase,
            token=player.token,
            player_name=player.name,
            rejoined=rejoined,
            snapshot=room.snapshot,
        )

    # -------------------------------------------------------------------------
    # Lobby
    # -------------------------------------------------------------------------

    def create_room(self, digit_count: int = DEFAULT_DIGIT_COUNT, max_players: int = MAX_PLAYERS) -> str:
        """Open a new room and return its code."""
        if not MIN_DIGIT_COUNT <= digit_count <= MAX_DIGIT_COUNT:
            raise InvalidInput(f'Digit mode must be between {MIN_DIGIT_COUNT} and {MAX_DIGIT_COUNT}.')
        if not 2 <= max_players <= PLAYER_LIMIT:
            raise InvalidInput(f'Rooms seat between 2 and {PLAYER_LIMIT} players.')

        now = self.clock()
        with self._rooms_lock:
            code = gen_room_code()
            while code in self._rooms:
                code = gen_room_code()
            room = Room(
                code=code,
                digit_count=digit_count,
                max_players=max_players,
                min_players=min(self.min_players, max_players),
                created_at=now,
                last_activity=now,
            )
            room.snapshot = snapshot_of(room, self.turn_timeout)
            self._rooms[code] = room

        if self.repository is not None:
            self.repository.save_room(room)
        logger.info(f"Room created: {code} ({digit_count} digits, {max_players} seats)")
        self._publish_room_list()
        return code

    def join_room(
        self,
        room_code: str,
        player_name: str = '',
        avatar: str = DEFAULT_AVATAR,
        token: Optional[str] = None,
    ) -> JoinResult:
        """Seat a new player, or reattach the player owning ``token``."""
        with self._locked(room_code) as room:
            now = self.clock()
            if token:
                existing = room.player_by_token(token)
                if existing is not None and not existing.left:
                    if not existing.connected:
                        self._record(room, EventKind.RETURN, existing.player_id, ts=now)
                    existing.last_heartbeat = now
                    logger.info(f"{existing.name} rejoined room {room.code}")
                    return self._join_result(room, existing, rejoined=True)

            if room.started:
                raise GameAlreadyStarted()
            slot = room.open_slot()
            if slot is None:
                raise RoomFull()

            name = (player_name or '').strip()[:MAX_NAME_LENGTH] or f'Player {slot + 1}'
            player_id = gen_player_id()
            self._record(
                room,
                EventKind.JOIN,
                player_id,
                ts=now,
                name=name,
                avatar=(avatar or '').strip() or DEFAULT_AVATAR,
                slot=slot,
                token=gen_token(),
            )
            logger.info(f"{name} joined room {room.code} in slot {slot}")
            return self._join_result(room, room.players[player_id], rejoined=False)

    def leave_room(self, room_code: str, player_id: str) -> Dict[str, Any]:
        with self._locked(room_code) as room:
            player = room.player(player_id)
            if not player.left:
                self._record(room, EventKind.LEAVE, player.player_id, reason='explicit')
                logger.info(f"{player.name} left room {room.code}")
            return {'room_code': room.code, 'player_id': player_id, 'phase': room.phase.value}

    def _require_host(self, room: Room, player_id: str) -> Player:
        player = room.player(player_id)
        if room.host is None or room.host.player_id != player.player_id:
            raise NotHost()
        return player

    def select_digit_mode(self, room_code: str, player_id: str, digit_count: int) -> Dict[str, Any]:
        """Host changes the number length before anyone has chosen a number."""
        with self._locked(room_code) as room:
            player = self._require_host(room, player_id)
            if room.started:
                raise GameAlreadyStarted()
            if not MIN_DIGIT_COUNT <= digit_count <= MAX_DIGIT_COUNT:
                raise InvalidInput(f'Digit mode must be between {MIN_DIGIT_COUNT} and {MAX_DIGIT_COUNT}.')
            if digit_count != room.digit_count:
                if any(p.has_secret for p in room.players.values()):
                    raise SecretsAlreadyChosen()
                player.last_heartbeat = self.clock()
                self._record(room, EventKind.DIGIT_MODE, player.player_id, digit_count=digit_count)
                logger.info(f"Room {room.code} switched to {digit_count} digits")
            return {'room_code': room.code, 'digit_mode': room.digit_count, 'phase': room.phase.value}

    def start_game(self, room_code: str, player_id: str) -> Dict[str, Any]:
        """Host starts a room that still has free seats."""
        with self._locked(room_code) as room:
            player = self._require_host(room, player_id)
            if room.started:
                raise GameAlreadyStarted()
            if not ready_to_start(room):
                raise PlayersNotReady()
            player.last_heartbeat = self.clock()
            self._record(room, EventKind.START, player.player_id)
            logger.info(f"{player.name} started room {room.code}")
            return {
                'room_code': room.code,
                'phase': room.phase.value,
                'turn_player_id': room.turn_player_id,
            }

    def list_open_rooms(self) -> List[RoomSummary]:
        """Rooms that have not finished, oldest first."""
        with self._rooms_lock:
            snapshots = [room.snapshot for room in self._rooms.values() if room.snapshot is not None]
        summaries = []
        for snap in snapshots:
            if snap.phase == Phase.FINISHED:
                continue
            host = snap.players[0] if snap.players else None
            summaries.append(RoomSummary(
                room_code=snap.room_code,
                host_name=host['name'] if host else None,
                host_avatar=host['avatar'] if host else None,
                digit_mode=snap.digit_mode,
                player_count=len(snap.players),
                max_players=snap.max_players,
                is_started=snap.phase == Phase.ACTIVE,
            ))
        return summaries

    # -------------------------------------------------------------------------
    # Play
    # -------------------------------------------------------------------------

    def submit_secret(self, room_code: str, player_id: str, secret: Any) -> Dict[str, Any]:
        with self._locked(room_code) as room:
            player = room.player(player_id)
            if room.started:
                raise GameAlreadyStarted('Cannot set secret after game has started.')
            value = check_number(secret, room.digit_count, 'Secret')
            if player.has_secret:
                raise SecretAlreadySet()
            player.last_heartbeat = self.clock()
            self._record(room, EventKind.SECRET, player.player_id, secret=value)
            logger.info(f"{player.name} set their number in room {room.code}")
            return {'room_code': room.code, 'player_id': player_id, 'phase': room.phase.value}

    def submit_guess(
        self,
        room_code: str,
        player_id: str,
        target_player_id: Optional[str],
        guess: Any,
        expected_seq: Optional[int] = None,
    ) -> GuessOutcome:
        """Score ``guess`` against the target's secret and pass the turn.

        ``expected_seq`` is the room sequence number the client last saw; a
        retried submission that was already applied no longer matches and
        is rejected instead of being scored twice.
        """
        with self._locked(room_code) as room:
            guesser = room.player(player_id)
            if room.phase != Phase.ACTIVE:
                if room.phase == Phase.FINISHED:
                    raise GameNotActive('The game is over.')
                raise GameNotActive('Game has not started.')
            if expected_seq is not None and expected_seq != room.seq:
                raise DuplicateSubmission(
                    f'Move based on event {expected_seq} is stale; the room is at event {room.seq}.'
                )
            if room.turn_player_id != guesser.player_id:
                raise NotYourTurn()

            if not target_player_id:
                targets = remaining_targets(room, guesser.player_id)
                if len(targets) != 1:
                    raise InvalidTargetPlayer('Choose which opponent to guess.')
                target_player_id = targets[0].player_id
            target = room.players.get(target_player_id)
            if target is None or target.player_id == guesser.player_id:
                raise InvalidTargetPlayer()
            if target.eliminated:
                raise InvalidTargetPlayer(f"{target.name}'s number has already been cracked.")

            value = check_number(guess, room.digit_count, 'Guess')
            hits = evaluate(target.secret or '', value)
            guesser.last_heartbeat = self.clock()
            event = self._record(
                room,
                EventKind.GUESS,
                guesser.player_id,
                target_id=target.player_id,
                guess=value,
                hits=hits,
            )
            logger.debug(f"Room {room.code}: {guesser.name} -> {target.name} scored {hits}")
            return GuessOutcome(
                seq=event.seq,
                player_id=guesser.player_id,
                target_player_id=target.player_id,
                guess=value,
                hit_count=hits,
                phase=room.phase,
                winner_id=room.winner_id,
                next_turn_player_id=room.turn_player_id,
            )

    def skip_turn(self, room_code: str, player_id: str) -> Dict[str, Any]:
        with self._locked(room_code) as room:
            player = room.player(player_id)
            if room.phase != Phase.ACTIVE:
                raise GameNotActive()
            if room.turn_player_id != player.player_id:
                raise NotYourTurn()
            player.last_heartbeat = self.clock()
            self._record(room, EventKind.SKIP, player.player_id, reason='voluntary')
            logger.info(f"{player.name} skipped their turn in room {room.code}")
            return {'room_code': room.code, 'turn_player_id': room.turn_player_id}

    def heartbeat(self, room_code: str, player_id: str) -> Dict[str, Any]:
        """Record a sign of life; a dropped player comes back on the next beat."""
        with self._locked(room_code) as room:
            player = room.player(player_id)
            now = self.clock()
            if not player.connected and not player.left:
                self._record(room, EventKind.RETURN, player.player_id, ts=now)
                logger.info(f"{player.name} reconnected to room {room.code}")
            player.last_heartbeat = now
            return {
                'room_code': room.code,
                'phase': room.phase.value,
                'seq': room.seq,
                'next_poll_in': room.snapshot.next_poll_in,
            }

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_snapshot(self, room_code: str, player_id: Optional[str] = None) -> RoomSnapshot:
        """Latest published snapshot; never waits on an in-flight mutation."""
        room = self._get(room_code)
        if player_id is not None:
            room.player(player_id)
        return room.snapshot

    def get_opponent_secret(self, room_code: str, requester_id: str) -> SecretDisclosure:
        with self._locked(room_code) as room:
            disclosure = disclose_opponent_secret(room, requester_id)
            logger.info(f"Disclosed winning number of room {room.code} to {requester_id}")
            return disclosure

    def authenticate(self, room_code: str, player_id: str, token: Optional[str]) -> None:
        """Check that ``token`` belongs to ``player_id``."""
        player = self._get(room_code).player(player_id)
        if not token or not hmac.compare_digest(player.token.encode(), token.encode()):
            raise InvalidToken()

    def stats(self) -> List[Dict[str, Any]]:
        with self._rooms_lock:
            rooms = list(self._rooms.values())
        return [
            {
                'room_code': room.code,
                'phase': room.phase.value,
                'player_count': len(room.players),
                'max_players': room.max_players,
                'digit_mode': room.digit_count,
                'seq': room.seq,
                'last_activity': room.last_activity,
            }
            for room in rooms
        ]

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def abandon_room(self, room_code: str) -> None:
        with self._locked(room_code) as room:
            if room.phase == Phase.FINISHED:
                raise InvalidState('Room is already finished.')
            self._record(room, EventKind.ABANDON)
            logger.info(f"Room {room.code} abandoned")

    def destroy_room(self, room_code: str, reason: str = 'deleted') -> None:
        code = normalize_code(room_code)
        with self._rooms_lock:
            room = self._rooms.pop(code, None)
        if room is None:
            raise RoomNotFound()
        with room.lock:
            room.destroyed = True
        if self.repository is not None:
            self.repository.delete_room(code)
        logger.info(f"Room {code} destroyed ({reason})")
        self.hub.publish(Notification(ROOM_EXPIRED, code, {'room_code': code, 'reason': reason}))
        self._publish_room_list()

    def destroy_all(self) -> int:
        with self._rooms_lock:
            codes = list(self._rooms)
        removed = 0
        for code in codes:
            try:
                self.destroy_room(code)
                removed += 1
            except RoomNotFound:
                continue
        if self.repository is not None:
            self.repository.delete_all()
        return removed

    def sweep(self, now: Optional[float] = None) -> Dict[str, int]:
        """Apply heartbeat grace, seat removal, turn timeouts and room expiry."""
        now = self.clock() if now is None else now
        counts = {'dropped': 0, 'removed': 0, 'timeouts': 0, 'expired': 0}
        with self._rooms_lock:
            rooms = list(self._rooms.values())

        for room in rooms:
            expired = False
            with room.lock:
                if room.destroyed:
                    continue
                if self.inactivity_timeout > 0 and now - room.last_heard() > self.inactivity_timeout:
                    expired = True
                else:
                    self._sweep_room(room, now, counts)
            if expired:
                try:
                    self.destroy_room(room.code, reason='inactivity')
                    counts['expired'] += 1
                except RoomNotFound:
                    pass
        return counts

    def _sweep_room(self, room: Room, now: float, counts: Dict[str, int]) -> None:
        lapsed = {
            p.player_id for p in room.seated()
            if p.connected and now - p.last_heartbeat > self.heartbeat_grace
        }
        if room.phase == Phase.ACTIVE and lapsed:
            # Nobody able to play is still heartbeating: no one wins by forfeit
            if not any(p.live and p.player_id not in lapsed for p in room.seated()):
                self._record(room, EventKind.ABANDON, ts=now, reason='heartbeat')
                logger.info(f"Room {room.code} abandoned: every player went silent")
        for player in room.seated():
            silent = now - player.last_heartbeat
            if player.player_id in lapsed:
                self._record(room, EventKind.DROP, player.player_id, ts=now, reason='heartbeat')
                counts['dropped'] += 1
                logger.info(f"{player.name} missed heartbeats in room {room.code}")
            if room.phase in LOBBY_PHASES and not player.connected and silent > self.removal_after:
                self._record(room, EventKind.LEAVE, player.player_id, ts=now, reason='timeout')
                counts['removed'] += 1
                logger.info(f"{player.name} removed from room {room.code}")
        if (
            room.phase == Phase.ACTIVE
            and self.turn_timeout > 0
            and room.turn_started_at is not None
            and now - room.turn_started_at > self.turn_timeout
        ):
            self._record(room, EventKind.SKIP, room.turn_player_id, ts=now, reason='timeout')
            counts['timeouts'] += 1
            logger.info(f"Turn timeout in room {room.code}")

    def restore(self) -> int:
        """Rebuild rooms from the persisted event logs."""
        if self.repository is None:
            return 0
        now = self.clock()
        restored = 0
        for meta, events in self.repository.load_rooms():
            code = meta['room_code']
            try:
                room = replay(
                    code=code,
                    digit_count=meta['digit_count'],
                    max_players=meta['max_players'],
                    min_players=meta['min_players'],
                    created_at=meta['created_at'],
                    events=events,
                )
            except (KeyError, ValueError, GameError) as e:
                logger.error(f"Could not replay room {code}: {e}")
                continue
            # Restarted servers give everyone a fresh grace period
            for player in room.players.values():
                player.last_heartbeat = max(player.last_heartbeat, now)
            room.snapshot = snapshot_of(room, self.turn_timeout)
            with self._rooms_lock:
                self._rooms[code] = room
            restored += 1
        logger.info(f"Restored {restored} room(s) from storage")
        return restored
