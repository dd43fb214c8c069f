"""
SQLite storage for room event logs.

Only room metadata and the append-only event log are stored; everything else
is rebuilt by replaying the log through the state machine.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from typing import Any, Dict, Generator, List, Tuple

from models import Room, RoomEvent

logger = logging.getLogger(__name__)

RoomMeta = Dict[str, Any]


class SQLiteRoomRepository:
    """Event-log persistence backed by a single SQLite file."""

    def __init__(self, path: str) -> None:
        self.path = path

    @contextmanager
    def get_db_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connections."""
        conn = None
        try:
            conn = sqlite3.connect(self.path, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            yield conn
        except sqlite3.Error as e:
            logger.error(f"Database error: {e}")
            raise
        finally:
            if conn:
                conn.close()

    def init_db(self) -> None:
        """Initialize the database schema."""
        logger.info(f"Initializing database at {self.path}...")
        try:
            with self.get_db_connection() as conn:
                cur = conn.cursor()
                cur.execute('''
                    CREATE TABLE IF NOT EXISTS rooms (
                        room_code TEXT PRIMARY KEY,
                        digit_count INTEGER NOT NULL,
                        max_players INTEGER NOT NULL,
                        min_players INTEGER NOT NULL,
                        created_at REAL NOT NULL
                    )
                ''')
                cur.execute('''
                    CREATE TABLE IF NOT EXISTS room_events (
                        room_code TEXT,
                        seq INTEGER,
                        kind TEXT,
                        player_id TEXT,
                        ts REAL,
                        data TEXT,
                        PRIMARY KEY (room_code, seq)
                    )
                ''')
                cur.execute('CREATE INDEX IF NOT EXISTS idx_events_room ON room_events(room_code)')
                conn.commit()
            logger.info("Database initialized successfully")
        except sqlite3.Error as e:
            logger.critical(f"Failed to initialize database: {e}")
            raise

    def ping(self) -> None:
        with self.get_db_connection() as conn:
            conn.execute('SELECT 1')

    def save_room(self, room: Room) -> None:
        with self.get_db_connection() as conn:
            conn.execute(
                '''INSERT OR REPLACE INTO rooms
                   (room_code, digit_count, max_players, min_players, created_at)
                   VALUES(?,?,?,?,?)''',
                (room.code, room.digit_count, room.max_players, room.min_players, room.created_at)
            )
            conn.commit()

    def append_event(self, room_code: str, event: RoomEvent) -> None:
        # The primary key rejects a second event with the same sequence number
        with self.get_db_connection() as conn:
            conn.execute(
                'INSERT INTO room_events(room_code, seq, kind, player_id, ts, data) VALUES(?,?,?,?,?,?)',
                (room_code, event.seq, event.kind.value, event.player_id, event.timestamp,
                 json.dumps(dict(event.data)))
            )
            conn.commit()

    def delete_room(self, room_code: str) -> None:
        with self.get_db_connection() as conn:
            conn.execute('DELETE FROM room_events WHERE room_code=?', (room_code,))
            conn.execute('DELETE FROM rooms WHERE room_code=?', (room_code,))
            conn.commit()

    def delete_all(self) -> None:
        with self.get_db_connection() as conn:
            conn.execute('DELETE FROM room_events')
            conn.execute('DELETE FROM rooms')
            conn.commit()

    def load_rooms(self) -> List[Tuple[RoomMeta, List[RoomEvent]]]:
        """Every stored room with its events in sequence order."""
        with self.get_db_connection() as conn:
            cur = conn.cursor()
            cur.execute('SELECT * FROM rooms ORDER BY created_at')
            metas = [dict(row) for row in cur.fetchall()]
            loaded = []
            for meta in metas:
                cur.execute(
                    'SELECT seq, kind, player_id, ts, data FROM room_events WHERE room_code=? ORDER BY seq',
                    (meta['room_code'],)
                )
                events = [
                    RoomEvent.from_record({
                        'seq': row['seq'],
                        'kind': row['kind'],
                        'timestamp': row['ts'],
                        'player_id': row['player_id'],
                        'data': json.loads(row['data'] or '{}'),
                    })
                    for row in cur.fetchall()
                ]
                loaded.append((meta, events))
        return loaded
