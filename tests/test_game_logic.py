"""
Unit tests for scoring, validation and identifier helpers.
"""

from itertools import permutations

import pytest

from app import secrets_equal
from config import ROOM_ID_LENGTH, TOKEN_LENGTH
from errors import InvalidSecretFormat
from evaluator import check_number, evaluate, validate_number
from room_store import gen_player_id, gen_room_code, gen_token, normalize_code


def all_numbers(digit_count):
    return [''.join(p) for p in permutations('0123456789', digit_count)]


class TestEvaluate:
    """Tests for digit overlap scoring."""

    def test_all_match(self):
        """Identical numbers score the full digit count."""
        assert evaluate("1234", "1234") == 4

    def test_no_match(self):
        """Disjoint digit sets score zero."""
        assert evaluate("1234", "5678") == 0

    def test_position_does_not_matter(self):
        """A permutation of the secret is a full match."""
        assert evaluate("1234", "4321") == 4
        assert evaluate("1234", "2143") == 4

    def test_partial_match(self):
        """Shared digit values are counted wherever they sit."""
        assert evaluate("5678", "5679") == 3
        assert evaluate("1234", "1235") == 3
        assert evaluate("1234", "9815") == 1

    def test_leading_zero(self):
        """Zero is an ordinary digit, including in front."""
        assert evaluate("0123", "3210") == 4
        assert evaluate("0", "0") == 1
        assert evaluate("0", "1") == 0

    @pytest.mark.parametrize('digit_count', [1, 2, 3, 4])
    def test_identity_and_range(self, digit_count):
        """Every valid number matches itself fully and scores within range."""
        numbers = all_numbers(digit_count)
        probes = numbers[:: max(1, len(numbers) // 7)]
        for number in numbers:
            assert evaluate(number, number) == digit_count
            for probe in probes:
                assert 0 <= evaluate(probe, number) <= digit_count

    def test_symmetric(self):
        """Scoring does not depend on which side is the secret."""
        for a, b in [("1234", "3456"), ("0912", "2190"), ("57", "75"), ("8", "3")]:
            assert evaluate(a, b) == evaluate(b, a)

    def test_length_mismatch_rejected(self):
        """Guess and secret must have the same length."""
        with pytest.raises(InvalidSecretFormat):
            evaluate("1234", "123")

    def test_non_digits_rejected(self):
        """Only the digits 0-9 are scored."""
        with pytest.raises(InvalidSecretFormat):
            evaluate("1234", "12a4")


class TestValidateNumber:
    """Tests for secret and guess validation."""

    @pytest.mark.parametrize('digit_count', [1, 2, 3, 4])
    def test_every_distinct_number_is_valid(self, digit_count):
        """All numbers with pairwise distinct digits pass."""
        assert all(validate_number(n, digit_count) for n in all_numbers(digit_count))

    def test_repeated_digit_rejected(self):
        """Duplicate digits never pass."""
        assert validate_number("1123", 4) is False
        assert validate_number("11", 2) is False
        assert validate_number("9099", 4) is False

    def test_wrong_length_rejected(self):
        """Length must equal the digit mode."""
        assert validate_number("123", 4) is False
        assert validate_number("12345", 4) is False
        assert validate_number("12", 1) is False

    def test_non_numeric_rejected(self):
        """Letters, signs and whitespace are rejected."""
        assert validate_number("12a4", 4) is False
        assert validate_number("-123", 4) is False
        assert validate_number("12 4", 4) is False
        assert validate_number("１２３４", 4) is False

    def test_invalid_none(self):
        """None and non-strings are rejected."""
        assert validate_number(None, 4) is False
        assert validate_number(1234, 4) is False
        assert validate_number("", 4) is False

    def test_check_number_messages(self):
        """Rejections explain what is wrong."""
        with pytest.raises(InvalidSecretFormat, match="exactly 4 digit"):
            check_number("123", 4)
        with pytest.raises(InvalidSecretFormat, match="repeat a digit"):
            check_number("1123", 4)
        with pytest.raises(InvalidSecretFormat, match="Guess is required"):
            check_number("", 4, 'Guess')

    def test_check_number_returns_value(self):
        """Valid input comes back unchanged."""
        assert check_number("0427", 4) == "0427"


class TestGenRoomCode:
    """Tests for room code generation."""

    def test_default_length(self):
        """Generated code should have default length."""
        assert len(gen_room_code()) == ROOM_ID_LENGTH

    def test_custom_length(self):
        """Generated code should respect custom length."""
        assert len(gen_room_code(length=10)) == 10

    def test_uppercase_alphanumeric(self):
        """Generated code should be uppercase alphanumeric."""
        code = gen_room_code()
        assert code.isalnum()
        assert code == code.upper()

    def test_normalize_code(self):
        """Codes are matched case-insensitively and without padding."""
        assert normalize_code(" ab12cd ") == "AB12CD"
        assert normalize_code(None) == ""


class TestGenToken:
    """Tests for token and player id generation."""

    def test_default_length(self):
        """Generated token should have default length."""
        assert len(gen_token()) == TOKEN_LENGTH

    def test_alphanumeric(self):
        """Generated token should be alphanumeric."""
        assert gen_token().isalnum()

    def test_uniqueness(self):
        """Generated tokens should be unique."""
        tokens = [gen_token() for _ in range(100)]
        assert len(set(tokens)) == 100

    def test_player_ids_are_hex(self):
        """Player ids are short opaque hex strings."""
        pid = gen_player_id()
        assert len(pid) == 12
        int(pid, 16)


class TestSecretsEqual:
    """Tests for constant-time string comparison."""

    def test_equal_strings(self):
        """Equal strings should return True."""
        assert secrets_equal("password", "password") is True
        assert secrets_equal("", "") is True

    def test_unequal_strings(self):
        """Unequal strings should return False."""
        assert secrets_equal("password", "passw0rd") is False
        assert secrets_equal("short", "longer") is False

    def test_case_sensitive(self):
        """Comparison should be case-sensitive."""
        assert secrets_equal("ABC", "abc") is False

    def test_non_ascii(self):
        """Non-ASCII keys compare without raising."""
        assert secrets_equal("clé", "clé") is True
        assert secrets_equal("clé", "cle") is False
