"""
Configuration settings for the MindDigit game server.

This module centralizes all configuration constants and environment variables
to make the application easier to configure and maintain.
"""

import os
from typing import List

# =============================================================================
# Game Settings
# =============================================================================

MIN_DIGIT_COUNT: int = 1
"""Smallest selectable digit mode."""

MAX_DIGIT_COUNT: int = 4
"""Largest selectable digit mode."""

DEFAULT_DIGIT_COUNT: int = int(os.environ.get('DEFAULT_DIGIT_COUNT', '4'))
"""Digit mode used when a room is created without one."""

MIN_PLAYERS: int = int(os.environ.get('MIN_PLAYERS', '2'))
"""Seated players needed before secrets can be collected."""

MAX_PLAYERS: int = int(os.environ.get('MAX_PLAYERS', '2'))
"""Default seat count for new rooms (rooms may ask for up to 4)."""

PLAYER_LIMIT: int = 4
"""Hard upper bound on seats in any room."""

ROOM_ID_LENGTH: int = 6
"""Length of generated room codes."""

TOKEN_LENGTH: int = 32
"""Length of player reconnect tokens."""

DEFAULT_AVATAR: str = '🎯'
"""Avatar shown for players who did not pick one."""

MAX_NAME_LENGTH: int = 24
"""Longest accepted display name."""

# =============================================================================
# Timing Settings
# =============================================================================

TURN_TIMEOUT_SECONDS: int = int(os.environ.get('TURN_TIMEOUT_SECONDS', '60'))
"""Time limit for each turn in seconds (0 = disabled)."""

HEARTBEAT_GRACE_SECONDS: int = int(os.environ.get('HEARTBEAT_GRACE_SECONDS', '30'))
"""Silence after which a player is treated as disconnected."""

HEARTBEAT_REMOVAL_SECONDS: int = int(os.environ.get('HEARTBEAT_REMOVAL_SECONDS', '120'))
"""Silence after which a player is removed from a room that has not started."""

ROOM_INACTIVITY_TIMEOUT_SECONDS: int = int(os.environ.get('ROOM_INACTIVITY_TIMEOUT_SECONDS', '1200'))
"""Silence across all players after which a room is destroyed (0 = disabled)."""

REAPER_INTERVAL_SECONDS: int = int(os.environ.get('REAPER_INTERVAL_SECONDS', '5'))
"""How often the background reaper sweeps rooms (0 = disabled)."""

# =============================================================================
# Poll Cadence
# =============================================================================

POLL_INTERVAL_ACTIVE: int = int(os.environ.get('POLL_INTERVAL_ACTIVE', '15'))
"""Suggested poll interval while a game is running."""

POLL_INTERVAL_WAITING: int = int(os.environ.get('POLL_INTERVAL_WAITING', '20'))
"""Suggested poll interval while players gather and pick secrets."""

POLL_INTERVAL_FINISHED: int = int(os.environ.get('POLL_INTERVAL_FINISHED', '30'))
"""Suggested poll interval once a game is over."""

# =============================================================================
# Server Settings
# =============================================================================

DEBUG: bool = os.environ.get('DEBUG', 'false').lower() == 'true'
"""Enable debug mode. Set DEBUG=true in environment for development."""

HOST: str = os.environ.get('HOST', '0.0.0.0')
"""Host address to bind the server."""

PORT: int = int(os.environ.get('PORT', '5000'))
"""Port number for the server."""

SECRET_KEY: str = os.environ.get('SECRET_KEY', 'dev-secret-key-change-in-production')
"""Flask secret key for session management."""

# =============================================================================
# Database Settings
# =============================================================================

DATABASE_PATH: str = os.environ.get('DB_PATH', 'game.db')
"""Path to the SQLite database file."""

# =============================================================================
# Admin Settings
# =============================================================================

ADMIN_KEY: str = os.environ.get('ADMIN_KEY', 'changeme')
"""Admin panel access key. Change this in production!"""

ADMIN_RATE_LIMIT: int = int(os.environ.get('ADMIN_RATE_LIMIT', '5'))
"""Maximum failed admin login attempts per minute."""

# =============================================================================
# CORS Settings
# =============================================================================

def get_cors_origins() -> List[str]:
    """
    Get allowed CORS origins from environment.

    Returns:
        List of allowed origin URLs, or ['*'] if not configured.
    """
    origins = os.environ.get('CORS_ORIGINS', '')
    if not origins:
        # Default to restrictive in production, permissive in debug
        if DEBUG:
            return ['*']
        return ['http://localhost:5000', 'http://127.0.0.1:5000']
    return [o.strip() for o in origins.split(',') if o.strip()]

CORS_ORIGINS: List[str] = get_cors_origins()
"""List of allowed CORS origins for Socket.IO connections."""

# =============================================================================
# Logging Settings
# =============================================================================

LOG_LEVEL: str = os.environ.get('LOG_LEVEL', 'DEBUG' if DEBUG else 'INFO')
"""Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)."""

LOG_FORMAT: str = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
"""Format string for log messages."""

# =============================================================================
# Client Settings
# =============================================================================

SERVER_URL: str = os.environ.get('MINDDIGIT_SERVER_URL', 'http://localhost:5000')
"""Base URL used by the polling client."""

CLIENT_MAX_RETRIES: int = int(os.environ.get('CLIENT_MAX_RETRIES', '3'))
"""Transport retries the polling client attempts before giving up."""
