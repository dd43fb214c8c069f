"""
Digit overlap scoring.

A guess scores one hit for every digit value it shares with the secret.
Position does not matter, so ``1234`` against ``4321`` is a full match.
"""

from typing import Any

from errors import InvalidSecretFormat

DIGITS = frozenset('0123456789')


def check_number(value: Any, digit_count: int, label: str = 'Secret') -> str:
    """Validate a secret or guess and return it unchanged.

    Raises:
        InvalidSecretFormat: wrong type, wrong length, a non-digit character
            or a repeated digit.
    """
    if not isinstance(value, str) or not value:
        raise InvalidSecretFormat(f'{label} is required.')
    if len(value) != digit_count:
        raise InvalidSecretFormat(f'{label} must be exactly {digit_count} digit(s).')
    if any(ch not in DIGITS for ch in value):
        raise InvalidSecretFormat(f'{label} may only contain the digits 0-9.')
    seen = set()
    for ch in value:
        if ch in seen:
            raise InvalidSecretFormat(f'{label} must not repeat a digit ({ch} appears twice).')
        seen.add(ch)
    return value


def validate_number(value: Any, digit_count: int) -> bool:
    """Return True if ``value`` is a valid secret/guess for the digit mode."""
    try:
        check_number(value, digit_count)
    except InvalidSecretFormat:
        return False
    return True


def evaluate(secret: str, guess: str) -> int:
    """Count the distinct digit values present in both strings."""
    if len(secret) != len(guess):
        raise InvalidSecretFormat('Guess length does not match the secret.')
    if any(ch not in DIGITS for ch in guess) or any(ch not in DIGITS for ch in secret):
        raise InvalidSecretFormat('Guess may only contain the digits 0-9.')
    return len(set(secret) & set(guess))
