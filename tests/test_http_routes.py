"""
Tests for HTTP routes.
"""

import time
from collections import deque

import pytest


def create_room(client, **body):
    response = client.post('/api/rooms', json=body)
    assert response.status_code == 201
    return response.get_json()['room_code']


def join(client, code, name):
    response = client.post(f'/api/rooms/{code}/join', json={'playerName': name})
    assert response.status_code == 200
    return response.get_json()


@pytest.fixture
def seated(client):
    """A room with Alice and Bob joined over HTTP."""
    code = create_room(client, digitCount=4)
    return code, join(client, code, 'Alice'), join(client, code, 'Bob')


@pytest.fixture
def playing(client, seated):
    """Alice holds 1234 and Bob 5678."""
    code, alice, bob = seated
    for player, secret in ((alice, '1234'), (bob, '5678')):
        response = client.post(f'/api/rooms/{code}/secret', json={
            'playerId': player['player_id'],
            'token': player['token'],
            'secret': secret,
        })
        assert response.status_code == 200
    return code, alice, bob


def guess(client, code, player, value, **extra):
    body = {'player_id': player['player_id'], 'token': player['token'], 'guess': value}
    body.update(extra)
    return client.post(f'/api/rooms/{code}/guess', json=body)


class TestHealthEndpoint:
    """Tests for the /api/health endpoint."""

    def test_health_returns_200(self, client):
        """Health check should return 200 OK."""
        response = client.get('/api/health')
        assert response.status_code == 200

    def test_health_contains_status(self, client):
        """Health response should contain status and timestamp."""
        data = client.get('/api/health').get_json()
        assert data['status'] == 'healthy'
        assert 'timestamp' in data


class TestRooms:
    """Tests for creating, listing and joining rooms."""

    def test_create_room_defaults(self, client):
        """A room created without options uses 4 digits and 2 seats."""
        data = client.post('/api/rooms', json={}).get_json()
        assert data['ok'] is True
        assert len(data['room_code']) == 6
        assert data['digit_mode'] == 4
        assert data['max_players'] == 2

    def test_create_room_rejects_bad_digit_mode(self, client):
        """Digit modes outside 1-4 are invalid input."""
        response = client.post('/api/rooms', json={'digit_count': 7})
        assert response.status_code == 400
        assert response.get_json()['error']['kind'] == 'invalid_input'

    def test_create_room_rejects_non_object(self, client):
        """The body must be a JSON object."""
        response = client.post('/api/rooms', json=[1, 2])
        assert response.status_code == 400

    def test_list_rooms(self, client, seated):
        """Open rooms are listed with their host."""
        code, _, _ = seated
        rooms = client.get('/api/rooms').get_json()['rooms']
        listed = {r['room_code']: r for r in rooms}
        assert listed[code]['host_name'] == 'Alice'
        assert listed[code]['player_count'] == 2
        assert listed[code]['is_started'] is False

    def test_join_returns_seat(self, seated):
        """Joining returns the seat, token and a snapshot."""
        _, alice, bob = seated
        assert alice['slot_position'] == 0
        assert bob['slot_position'] == 1
        assert bob['phase'] == 'setting_secret'
        assert bob['snapshot']['viewer_id'] == bob['player_id']

    def test_join_unknown_room(self, client):
        """Unknown rooms are 404."""
        response = client.post('/api/rooms/NOPE00/join', json={})
        assert response.status_code == 404
        assert response.get_json()['error']['code'] == 'room_not_found'

    def test_join_full_room(self, client, seated):
        """A full room is a conflict."""
        code, _, _ = seated
        response = client.post(f'/api/rooms/{code}/join', json={'playerName': 'Carol'})
        assert response.status_code == 409
        assert response.get_json()['error']['code'] == 'room_full'


class TestGameplay:
    """Tests for secrets, guesses and the disclosure endpoint."""

    def test_worked_example(self, client, playing):
        """The 1234 / 5678 game plays out over HTTP."""
        code, alice, bob = playing
        first = guess(client, code, alice, '5679').get_json()
        assert first['hit_count'] == 3
        second = guess(client, code, bob, '1235').get_json()
        assert second['hit_count'] == 3
        third = guess(client, code, alice, '5678').get_json()
        assert third['solved'] is True
        assert third['winner_id'] == alice['player_id']

        reveal = client.get(f'/api/rooms/{code}/opponent-secret',
                            query_string={'player_id': bob['player_id'], 'token': bob['token']})
        assert reveal.status_code == 200
        assert reveal.get_json()['opponent_secret'] == '1234'

        refused = client.get(f'/api/rooms/{code}/opponent-secret',
                             query_string={'player_id': alice['player_id']},
                             headers={'X-Player-Token': alice['token']})
        assert refused.status_code == 403
        assert refused.get_json()['error']['code'] == 'requester_is_winner'

    def test_repeated_digit_secret(self, client, seated):
        """1123 is rejected as invalid input."""
        code, alice, _ = seated
        response = client.post(f'/api/rooms/{code}/secret', json={
            'player_id': alice['player_id'], 'token': alice['token'], 'secret': '1123',
        })
        assert response.status_code == 400
        assert response.get_json()['error']['code'] == 'invalid_secret_format'

    def test_numeric_secret_rejected(self, client, seated):
        """Numbers must be sent as strings."""
        code, alice, _ = seated
        response = client.post(f'/api/rooms/{code}/secret', json={
            'player_id': alice['player_id'], 'token': alice['token'], 'secret': 1234,
        })
        assert response.status_code == 400

    def test_wrong_token(self, client, playing):
        """Acting for another player is forbidden."""
        code, alice, bob = playing
        response = client.post(f'/api/rooms/{code}/guess', json={
            'player_id': alice['player_id'], 'token': bob['token'], 'guess': '5679',
        })
        assert response.status_code == 403
        assert response.get_json()['error']['code'] == 'invalid_token'

    def test_not_your_turn(self, client, playing):
        """Bob cannot move first."""
        code, _, bob = playing
        response = guess(client, code, bob, '1234')
        assert response.status_code == 403
        assert response.get_json()['error']['message'] == 'Not your turn.'

    def test_stale_move(self, client, playing):
        """A replayed move with an old sequence number is a conflict."""
        code, alice, _ = playing
        seq = client.get(f'/api/rooms/{code}/gameplay').get_json()['seq']
        assert guess(client, code, alice, '5679', expected_seq=seq).status_code == 200
        response = guess(client, code, alice, '5679', expected_seq=seq)
        assert response.status_code == 409
        assert response.get_json()['error']['code'] == 'duplicate_submission'

    def test_skip_heartbeat_and_leave(self, client, playing):
        """Skip passes the turn, heartbeat reports cadence, leave forfeits."""
        code, alice, bob = playing
        seat = {'player_id': alice['player_id'], 'token': alice['token']}
        skipped = client.post(f'/api/rooms/{code}/skip-turn', json=seat).get_json()
        assert skipped['turn_player_id'] == bob['player_id']
        beat = client.post(f'/api/rooms/{code}/heartbeat', json=seat).get_json()
        assert beat['next_poll_in'] == 15
        left = client.post(f'/api/rooms/{code}/leave', json=seat).get_json()
        assert left['phase'] == 'finished'

    def test_secret_before_reveal(self, client, playing):
        """No disclosure while the game runs."""
        code, _, bob = playing
        response = client.get(f'/api/rooms/{code}/opponent-secret',
                              query_string={'player_id': bob['player_id'], 'token': bob['token']})
        assert response.status_code == 409
        assert response.get_json()['error']['code'] == 'game_not_finished'


class TestSnapshotPolling:
    """Tests for the gameplay snapshot endpoint."""

    def test_snapshot_for_viewer(self, client, playing):
        """A viewer's snapshot says whose turn it is."""
        code, alice, _ = playing
        data = client.get(f'/api/rooms/{code}/gameplay',
                          query_string={'player_id': alice['player_id']}).get_json()
        assert data['phase'] == 'active'
        assert data['is_your_turn'] is True
        assert data['next_poll_in'] == 15
        assert all('secret' not in p for p in data['players'])

    def test_etag_not_modified(self, client, playing):
        """Polling with the current ETag returns 304."""
        code, _, _ = playing
        first = client.get(f'/api/rooms/{code}/gameplay')
        etag = first.headers['ETag']
        second = client.get(f'/api/rooms/{code}/gameplay', headers={'If-None-Match': etag})
        assert second.status_code == 304

    def test_etag_changes_after_move(self, client, playing):
        """A move invalidates the previous ETag."""
        code, alice, _ = playing
        etag = client.get(f'/api/rooms/{code}/gameplay').headers['ETag']
        guess(client, code, alice, '5679')
        response = client.get(f'/api/rooms/{code}/gameplay', headers={'If-None-Match': etag})
        assert response.status_code == 200
        assert response.get_json()['history'][0]['hits'] == 3

    def test_unknown_viewer(self, client, playing):
        """Viewer ids must belong to the room."""
        code, _, _ = playing
        response = client.get(f'/api/rooms/{code}/gameplay', query_string={'player_id': 'ghost'})
        assert response.status_code == 404


class TestAdminRoutes:
    """Tests for admin panel routes."""

    def test_admin_without_key_returns_401(self, client):
        """Admin without key should return 401."""
        assert client.get('/admin').status_code == 401

    def test_admin_with_wrong_key_returns_403(self, client):
        """Admin with wrong key should return 403."""
        response = client.get('/admin', headers={'X-Admin-Key': 'wrong-key'})
        assert response.status_code == 403

    def test_admin_with_correct_key_returns_200(self, client, admin_headers, seated):
        """Admin with correct key lists rooms."""
        response = client.get('/admin', headers=admin_headers)
        assert response.status_code == 200
        assert response.get_json()['count'] == 1

    def test_admin_with_key_in_query(self, client):
        """Admin with key in query string should work."""
        response = client.get('/admin?key=test-admin-key')
        assert response.status_code == 200

    def test_admin_kill_nonexistent_room(self, client, admin_headers):
        """Killing a non-existent room should redirect to admin."""
        response = client.get('/admin/kill/NONEXISTENT', headers=admin_headers)
        assert response.status_code in (200, 302)

    def test_admin_kill_room(self, client, admin_headers, seated):
        """A killed room is gone."""
        code, _, _ = seated
        client.get(f'/admin/kill/{code}', headers=admin_headers)
        assert client.get(f'/api/rooms/{code}/gameplay').status_code == 404

    def test_admin_abandon_room(self, client, admin_headers, playing):
        """An abandoned room finishes without a winner."""
        code, _, _ = playing
        response = client.get(f'/admin/abandon/{code}', headers=admin_headers)
        assert response.status_code in (200, 302)
        data = client.get(f'/api/rooms/{code}/gameplay').get_json()
        assert data['finish_reason'] == 'abandoned'

    def test_delete_room_requires_key(self, client, seated):
        """Deleting rooms is an admin action."""
        code, _, _ = seated
        assert client.delete(f'/api/rooms/{code}').status_code == 401

    def test_delete_room_and_all(self, client, admin_headers, seated):
        """Admins may delete one room or every room."""
        code, _, _ = seated
        create_room(client)
        assert client.delete(f'/api/rooms/{code}', headers=admin_headers).status_code == 200
        assert client.delete(f'/api/rooms/{code}', headers=admin_headers).status_code == 404
        data = client.delete('/api/rooms', headers=admin_headers).get_json()
        assert data['deleted'] == 1


class TestAdminRateLimiting:
    """Tests for admin rate limiting."""

    def test_rate_limit_not_triggered_within_limit(self, client):
        """Should allow requests within rate limit."""
        for _ in range(5):
            response = client.get('/admin', headers={'X-Admin-Key': 'wrong-key'})
            assert response.status_code == 403

    def test_rate_limit_triggered_after_limit(self, client):
        """Should return 429 after exceeding rate limit."""
        for _ in range(6):
            response = client.get('/admin', headers={'X-Admin-Key': 'wrong-key'})
        assert response.status_code == 429

    def test_expired_attempts_are_forgotten(self, client, test_app, admin_headers):
        """Addresses whose failures have aged out are dropped from the table."""
        attempts = test_app.extensions['admin_attempts']
        client.get('/admin', headers={'X-Admin-Key': 'wrong-key'})
        assert list(attempts) == ['127.0.0.1']
        attempts['127.0.0.1'] = deque([time.time() - 120])
        assert client.get('/admin', headers=admin_headers).status_code == 200
        assert attempts == {}

    def test_successful_login_leaves_no_entry(self, client, test_app, admin_headers):
        """Good keys never create a rate limit entry."""
        client.get('/admin', headers=admin_headers)
        assert test_app.extensions['admin_attempts'] == {}


class TestLobbyControls:
    """Tests for the host start and digit mode routes."""

    @pytest.fixture
    def open_room(self, client):
        code = create_room(client, digitCount=4, maxPlayers=4)
        return code, join(client, code, 'Alice'), join(client, code, 'Bob')

    def test_digit_mode_route(self, client, open_room):
        """The host switches the room to two digits."""
        code, alice, _ = open_room
        response = client.post(f'/api/rooms/{code}/digit-mode', json={
            'playerId': alice['player_id'], 'token': alice['token'], 'digitMode': 2,
        })
        assert response.status_code == 200
        assert response.get_json()['digit_mode'] == 2
        assert client.get(f'/api/rooms/{code}/gameplay').get_json()['digit_mode'] == 2

    def test_digit_mode_not_host(self, client, open_room):
        """Other players get 403."""
        code, _, bob = open_room
        response = client.post(f'/api/rooms/{code}/digit-mode', json={
            'playerId': bob['player_id'], 'token': bob['token'], 'digitMode': 2,
        })
        assert response.status_code == 403
        assert response.get_json()['error']['code'] == 'not_host'

    def test_start_route(self, client, open_room):
        """The host starts once both numbers are in; early starts are 409."""
        code, alice, bob = open_room
        start = {'playerId': alice['player_id'], 'token': alice['token']}
        early = client.post(f'/api/rooms/{code}/start', json=start)
        assert early.status_code == 409
        assert early.get_json()['error']['code'] == 'players_not_ready'
        for player, secret in ((alice, '1234'), (bob, '5678')):
            client.post(f'/api/rooms/{code}/secret', json={
                'playerId': player['player_id'], 'token': player['token'], 'secret': secret,
            })
        response = client.post(f'/api/rooms/{code}/start', json=start)
        assert response.status_code == 200
        assert response.get_json()['turn_player_id'] == alice['player_id']
