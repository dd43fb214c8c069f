"""
Boundary message schemas.

Incoming HTTP bodies and Socket.IO payloads are parsed into these models
before anything reaches the room store. Keys may be sent in snake_case or
camelCase. Numbers must arrive as strings so leading zeros survive.
"""

from typing import Any, Mapping, Optional, Type, TypeVar

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from config import (
    DEFAULT_AVATAR,
    DEFAULT_DIGIT_COUNT,
    MAX_DIGIT_COUNT,
    MAX_NAME_LENGTH,
    MAX_PLAYERS,
    MIN_DIGIT_COUNT,
    PLAYER_LIMIT,
)
from errors import InvalidPayload

PayloadT = TypeVar('PayloadT', bound=BaseModel)


class Payload(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
        extra='ignore',
    )


class CreateRoomPayload(Payload):
    digit_count: int = Field(
        DEFAULT_DIGIT_COUNT,
        ge=MIN_DIGIT_COUNT,
        le=MAX_DIGIT_COUNT,
        validation_alias=AliasChoices('digit_count', 'digitCount', 'digitMode', 'digits'),
    )
    max_players: int = Field(MAX_PLAYERS, ge=2, le=PLAYER_LIMIT)


class RoomPayload(Payload):
    room_code: str = Field(
        min_length=1,
        max_length=16,
        validation_alias=AliasChoices('room_code', 'roomCode', 'code'),
    )

    @field_validator('room_code')
    @classmethod
    def upper_code(cls, value: str) -> str:
        return value.upper()


class JoinRoomPayload(RoomPayload):
    player_name: str = Field('', max_length=MAX_NAME_LENGTH)
    avatar: str = Field(DEFAULT_AVATAR, max_length=16)
    token: Optional[str] = None


class PlayerPayload(RoomPayload):
    player_id: str = Field(min_length=1, max_length=64)
    token: Optional[str] = None


class SecretPayload(PlayerPayload):
    secret: str


class GuessPayload(PlayerPayload):
    guess: str
    target_player_id: Optional[str] = Field(
        None,
        validation_alias=AliasChoices('target_player_id', 'targetPlayerId', 'targetPlayer'),
    )
    expected_seq: Optional[int] = Field(None, ge=0)


class DigitModePayload(PlayerPayload):
    digit_count: int = Field(
        ge=MIN_DIGIT_COUNT,
        le=MAX_DIGIT_COUNT,
        validation_alias=AliasChoices('digit_count', 'digitCount', 'digitMode', 'digit'),
    )


class SnapshotQuery(RoomPayload):
    player_id: Optional[str] = None


def parse_payload(model: Type[PayloadT], data: Optional[Mapping[str, Any]]) -> PayloadT:
    """Validate ``data`` against ``model``.

    Raises:
        InvalidPayload: with the first validation problem as its message.
    """
    if data is not None and not isinstance(data, Mapping):
        raise InvalidPayload('Request body must be a JSON object.')
    try:
        return model.model_validate(dict(data or {}))
    except ValidationError as e:
        first = e.errors()[0]
        where = '.'.join(str(part) for part in first.get('loc', ())) or 'payload'
        raise InvalidPayload(f"Invalid {where}: {first.get('msg', 'invalid value')}") from e
