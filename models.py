"""
Room data model.

A Room is owned by the room store and only changes through events applied by
the state machine. Snapshots and summaries are immutable views handed to
transports and pollers.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from errors import PlayerNotFound


class Phase(str, Enum):
    WAITING = 'waiting'
    SETTING_SECRET = 'setting_secret'
    ACTIVE = 'active'
    FINISHED = 'finished'


class EventKind(str, Enum):
    JOIN = 'join'
    LEAVE = 'leave'
    SECRET = 'secret'
    GUESS = 'guess'
    SKIP = 'skip'
    DROP = 'drop'
    RETURN = 'return'
    ABANDON = 'abandon'
    START = 'start'
    DIGIT_MODE = 'digit_mode'


class FinishReason(str, Enum):
    SOLVED = 'solved'
    FORFEIT = 'forfeit'
    ABANDONED = 'abandoned'


def iso(ts: Optional[float]) -> Optional[str]:
    """Render an epoch timestamp as an ISO-8601 UTC string."""
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, timezone.utc).isoformat()


@dataclass(frozen=True)
class RoomEvent:
    """One entry of a room's append-only event log."""

    seq: int
    kind: EventKind
    timestamp: float
    player_id: Optional[str] = None
    data: Mapping[str, Any] = field(default_factory=dict)

    def to_record(self) -> Dict[str, Any]:
        return {
            'seq': self.seq,
            'kind': self.kind.value,
            'timestamp': self.timestamp,
            'player_id': self.player_id,
            'data': dict(self.data),
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> 'RoomEvent':
        return cls(
            seq=int(record['seq']),
            kind=EventKind(record['kind']),
            timestamp=float(record['timestamp']),
            player_id=record.get('player_id'),
            data=dict(record.get('data') or {}),
        )


@dataclass(frozen=True)
class GuessEvent:
    seq: int
    player_id: str
    target_id: str
    guess: str
    hits: int
    timestamp: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            'seq': self.seq,
            'player_id': self.player_id,
            'target_id': self.target_id,
            'guess': self.guess,
            'hits': self.hits,
            'timestamp': iso(self.timestamp),
        }


@dataclass
class Player:
    player_id: str
    name: str
    avatar: str
    slot: int
    token: str
    secret: Optional[str] = field(default=None, repr=False)
    connected: bool = True
    eliminated: bool = False
    left: bool = False
    last_heartbeat: float = 0.0
    guesses_made: int = 0
    correct_guesses: int = 0

    @property
    def has_secret(self) -> bool:
        return self.secret is not None

    @property
    def live(self) -> bool:
        """Able to take turns: connected and not yet cracked."""
        return self.connected and not self.eliminated

    def public_dict(self) -> Dict[str, Any]:
        return {
            'player_id': self.player_id,
            'name': self.name,
            'avatar': self.avatar,
            'slot': self.slot,
            'is_ready': self.has_secret,
            'is_connected': self.connected,
            'is_alive': not self.eliminated,
            'has_left': self.left,
            'stats': {
                'guesses_made': self.guesses_made,
                'correct_guesses': self.correct_guesses,
            },
        }


@dataclass
class Room:
    code: str
    digit_count: int
    max_players: int
    min_players: int
    created_at: float
    phase: Phase = Phase.WAITING
    players: Dict[str, Player] = field(default_factory=dict)
    turn_player_id: Optional[str] = None
    turn_started_at: Optional[float] = None
    winner_id: Optional[str] = None
    finish_reason: Optional[FinishReason] = None
    events: List[RoomEvent] = field(default_factory=list)
    history: List[GuessEvent] = field(default_factory=list)
    last_activity: float = 0.0
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)
    snapshot: Optional['RoomSnapshot'] = field(default=None, repr=False, compare=False)
    destroyed: bool = field(default=False, repr=False, compare=False)

    @property
    def seq(self) -> int:
        return self.events[-1].seq if self.events else 0

    @property
    def started(self) -> bool:
        return self.phase in (Phase.ACTIVE, Phase.FINISHED)

    def seated(self) -> List[Player]:
        return sorted(self.players.values(), key=lambda p: p.slot)

    def player(self, player_id: Optional[str]) -> Player:
        found = self.players.get(player_id or '')
        if found is None:
            raise PlayerNotFound()
        return found

    def player_by_token(self, token: str) -> Optional[Player]:
        for p in self.players.values():
            if p.token == token:
                return p
        return None

    def open_slot(self) -> Optional[int]:
        taken = {p.slot for p in self.players.values()}
        for slot in range(self.max_players):
            if slot not in taken:
                return slot
        return None

    @property
    def host(self) -> Optional[Player]:
        seated = self.seated()
        return seated[0] if seated else None

    def last_heard(self) -> float:
        """Most recent heartbeat from anyone in the room, or its creation time when empty."""
        beats = [p.last_heartbeat for p in self.players.values()]
        return max(beats) if beats else self.created_at


@dataclass(frozen=True)
class RoomSnapshot:
    """Point-in-time public view of a room. Never contains secrets."""

    room_code: str
    phase: Phase
    digit_mode: int
    max_players: int
    seq: int
    players: Tuple[Dict[str, Any], ...]
    turn_player_id: Optional[str]
    turn_deadline: Optional[str]
    winner_id: Optional[str]
    winner_name: Optional[str]
    finish_reason: Optional[str]
    history: Tuple[Dict[str, Any], ...]
    last_modified: Optional[str]
    next_poll_in: int

    @property
    def etag(self) -> str:
        return f'{self.room_code}-{self.seq}'

    def to_dict(self, viewer_id: Optional[str] = None) -> Dict[str, Any]:
        data = {
            'room_code': self.room_code,
            'phase': self.phase.value,
            'digit_mode': self.digit_mode,
            'max_players': self.max_players,
            'seq': self.seq,
            'players': [dict(p) for p in self.players],
            'turn_order': [p['player_id'] for p in self.players],
            'turn_player_id': self.turn_player_id,
            'turn_deadline': self.turn_deadline,
            'winner_id': self.winner_id,
            'winner_name': self.winner_name,
            'finish_reason': self.finish_reason,
            'history': [dict(h) for h in self.history],
            'last_modified': self.last_modified,
            'next_poll_in': self.next_poll_in,
        }
        if viewer_id is not None:
            data['viewer_id'] = viewer_id
            data['is_your_turn'] = viewer_id == self.turn_player_id
        return data


@dataclass(frozen=True)
class RoomSummary:
    room_code: str
    host_name: Optional[str]
    host_avatar: Optional[str]
    digit_mode: int
    player_count: int
    max_players: int
    is_started: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            'room_code': self.room_code,
            'host_name': self.host_name,
            'host_avatar': self.host_avatar,
            'digit_mode': self.digit_mode,
            'player_count': self.player_count,
            'max_players': self.max_players,
            'is_started': self.is_started,
        }


@dataclass(frozen=True)
class JoinResult:
    room_code: str
    player_id: str
    slot_position: int
    phase: Phase
    token: str
    player_name: str
    rejoined: bool
    snapshot: RoomSnapshot

    def to_dict(self) -> Dict[str, Any]:
        return {
            'room_code': self.room_code,
            'player_id': self.player_id,
            'slot_position': self.slot_position,
            'phase': self.phase.value,
            'token': self.token,
            'player_name': self.player_name,
            'rejoined': self.rejoined,
            'snapshot': self.snapshot.to_dict(self.player_id),
        }


@dataclass(frozen=True)
class GuessOutcome:
    seq: int
    player_id: str
    target_player_id: str
    guess: str
    hit_count: int
    phase: Phase
    winner_id: Optional[str]
    next_turn_player_id: Optional[str]

    @property
    def solved(self) -> bool:
        return self.hit_count == len(self.guess)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'seq': self.seq,
            'player_id': self.player_id,
            'target_player_id': self.target_player_id,
            'guess': self.guess,
            'hit_count': self.hit_count,
            'solved': self.solved,
            'phase': self.phase.value,
            'winner_id': self.winner_id,
            'next_turn_player_id': self.next_turn_player_id,
        }
