"""
Polling session client.

Talks to the HTTP API for players that cannot hold a Socket.IO connection.
The client keeps the seat it joined (room code, player id, token), replays
the server's ETag on every poll and turns consecutive snapshots into the
same notifications a pushed client would receive.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from config import CLIENT_MAX_RETRIES, SERVER_URL
from sync import Notification, diff_snapshots

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT: Tuple[float, float] = (3.0, 10.0)  # connect, read


class ServiceError(RuntimeError):
    """The server could not be reached or answered with garbage."""


class RequestRejected(RuntimeError):
    """The server understood the request and refused it."""

    def __init__(self, status: int, error: Dict[str, Any]) -> None:
        self.status = status
        self.kind = error.get('kind')
        self.code = error.get('code')
        self.message = error.get('message') or 'Request rejected.'
        super().__init__(self.message)


class SessionClient:
    """One player's view of one room over HTTP."""

    def __init__(
        self,
        base_url: str = SERVER_URL,
        *,
        session: Optional[requests.Session] = None,
        timeout: Tuple[float, float] = DEFAULT_TIMEOUT,
        max_retries: int = CLIENT_MAX_RETRIES,
    ) -> None:
        self.base_url = base_url.rstrip('/')
        self.session = session or self._build_session(max_retries)
        self.timeout = timeout
        self.room_code: Optional[str] = None
        self.player_id: Optional[str] = None
        self.token: Optional[str] = None
        self.last_snapshot: Optional[Dict[str, Any]] = None
        self._etag: Optional[str] = None

    @staticmethod
    def _build_session(max_retries: int) -> requests.Session:
        session = requests.Session()
        # POSTs are retried only when the connection never got through
        retry = Retry(
            total=max_retries,
            backoff_factor=0.5,
            status_forcelist=(502, 503, 504),
            allowed_methods=frozenset({'GET', 'HEAD'}),
            respect_retry_after_header=True,
        )
        adapter = HTTPAdapter(max_retries=retry)
        session.mount('http://', adapter)
        session.mount('https://', adapter)
        return session

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> requests.Response:
        url = f'{self.base_url}{path}'
        try:
            response = self.session.request(
                method, url, json=json, params=params, headers=headers, timeout=self.timeout
            )
        except requests.Timeout as exc:
            logger.warning(f"{method} {path} timed out")
            raise ServiceError(f'{method} {path} timed out') from exc
        except requests.RequestException as exc:
            logger.error(f"{method} {path} failed: {exc}")
            raise ServiceError(f'{method} {path} failed') from exc
        return response

    @staticmethod
    def _decode(response: requests.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError as exc:
            raise ServiceError(f'Invalid JSON in response ({response.status_code})') from exc
        if not isinstance(body, dict):
            raise ServiceError(f'Unexpected response body ({response.status_code})')
        if response.status_code >= 400 or not body.get('ok', False):
            error = body.get('error')
            if not isinstance(error, dict):
                error = {'message': error}
            raise RequestRejected(response.status_code, error)
        return body

    def _call(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        return self._decode(self._request(method, path, **kwargs))

    def _seat(self) -> Dict[str, Any]:
        if not self.room_code or not self.player_id:
            raise RuntimeError('Join a room first.')
        return {'player_id': self.player_id, 'token': self.token}

    def _room_path(self, suffix: str = '') -> str:
        return f'/api/rooms/{self.room_code}{suffix}'

    # -------------------------------------------------------------------------
    # Lobby
    # -------------------------------------------------------------------------

    def health(self) -> Dict[str, Any]:
        response = self._request('GET', '/api/health')
        try:
            return response.json()
        except ValueError as exc:
            raise ServiceError('Invalid JSON from health check') from exc

    def create_room(self, digit_count: Optional[int] = None, max_players: Optional[int] = None) -> str:
        body: Dict[str, Any] = {}
        if digit_count is not None:
            body['digit_count'] = digit_count
        if max_players is not None:
            body['max_players'] = max_players
        return self._call('POST', '/api/rooms', json=body)['room_code']

    def list_rooms(self) -> List[Dict[str, Any]]:
        return self._call('GET', '/api/rooms')['rooms']

    def join(self, room_code: str, player_name: str = '', avatar: Optional[str] = None,
             token: Optional[str] = None) -> Dict[str, Any]:
        """Take a seat (or reclaim one with ``token``) and remember it."""
        body: Dict[str, Any] = {'player_name': player_name}
        if avatar:
            body['avatar'] = avatar
        if token or self.token:
            body['token'] = token or self.token
        joined = self._call('POST', f'/api/rooms/{room_code.upper()}/join', json=body)
        self.room_code = joined['room_code']
        self.player_id = joined['player_id']
        self.token = joined['token']
        self.last_snapshot = joined['snapshot']
        self._etag = None
        logger.info(f"Joined room {self.room_code} as {joined['player_name']}")
        return joined

    def leave(self) -> Dict[str, Any]:
        return self._call('POST', self._room_path('/leave'), json=self._seat())

    # -------------------------------------------------------------------------
    # Play
    # -------------------------------------------------------------------------

    def select_digit_mode(self, digit_count: int) -> Dict[str, Any]:
        return self._call('POST', self._room_path('/digit-mode'), json=dict(self._seat(), digit_count=digit_count))

    def start_game(self) -> Dict[str, Any]:
        """Host only: start a room that still has free seats."""
        return self._call('POST', self._room_path('/start'), json=self._seat())

    def submit_secret(self, secret: str) -> Dict[str, Any]:
        return self._call('POST', self._room_path('/secret'), json=dict(self._seat(), secret=secret))

    def submit_guess(self, guess: str, target_player_id: Optional[str] = None,
                     expected_seq: Optional[int] = None) -> Dict[str, Any]:
        body = dict(self._seat(), guess=guess)
        if target_player_id:
            body['target_player_id'] = target_player_id
        if expected_seq is not None:
            body['expected_seq'] = expected_seq
        return self._call('POST', self._room_path('/guess'), json=body)

    def skip_turn(self) -> Dict[str, Any]:
        return self._call('POST', self._room_path('/skip-turn'), json=self._seat())

    def heartbeat(self) -> Dict[str, Any]:
        return self._call('POST', self._room_path('/heartbeat'), json=self._seat())

    def get_opponent_secret(self) -> Dict[str, Any]:
        return self._call('GET', self._room_path('/opponent-secret'), params=self._seat())

    # -------------------------------------------------------------------------
    # Polling
    # -------------------------------------------------------------------------

    def fetch_snapshot(self) -> Tuple[Dict[str, Any], bool]:
        """Current snapshot and whether it changed since the last fetch."""
        self._seat()
        headers = {'If-None-Match': self._etag} if self._etag else None
        response = self._request(
            'GET', self._room_path('/gameplay'), params={'player_id': self.player_id}, headers=headers
        )
        if response.status_code == 304 and self.last_snapshot is not None:
            return self.last_snapshot, False
        snapshot = self._decode(response)
        snapshot.pop('ok', None)
        changed = self.last_snapshot is None or snapshot['seq'] != self.last_snapshot['seq']
        self._etag = response.headers.get('ETag')
        self.last_snapshot = snapshot
        return snapshot, changed

    def poll(self) -> List[Notification]:
        """Fetch the snapshot and return what happened since the previous poll."""
        previous = self.last_snapshot
        snapshot, changed = self.fetch_snapshot()
        if not changed and previous is not None:
            return []
        return diff_snapshots(previous, snapshot)

    @property
    def next_poll_in(self) -> Optional[int]:
        """Seconds the server suggests waiting before the next poll."""
        if self.last_snapshot is None:
            return None
        return self.last_snapshot.get('next_poll_in')
