"""Short code codec tests."""

import pytest

from app.codec import (
    ALPHABET,
    BASE,
    FALLBACK_STRATEGIES,
    collision_probability,
    decode,
    encode,
    generate_unique_code,
    is_valid_code,
    recommend_code_length,
    timestamp_code,
    validate_custom_code,
)
from app.exceptions import InvalidArgumentError, InvalidCharacterError


class TestAlphabet:
    def test_excludes_ambiguous_characters(self) -> None:
        for char in "0OIl1o":
            assert char not in ALPHABET

    def test_characters_are_unique(self) -> None:
        assert len(set(ALPHABET)) == len(ALPHABET) == BASE == 56


class TestEncodeDecode:
    def test_zero_is_padded_first_character(self) -> None:
        assert encode(0, 6) == "aaaaaa"
        assert decode("aaaaaa") == 0

    def test_small_numbers(self) -> None:
        assert encode(1, 1) == "b"
        assert encode(BASE, 1) == "ba"
        assert encode(1, 7) == "aaaaaab"

    @pytest.mark.parametrize("number", [1, 55, 56, 12345, 987_654_321, 2**63 - 1])
    def test_round_trip(self, number: int) -> None:
        assert decode(encode(number, 6)) == number

    def test_is_deterministic(self) -> None:
        assert encode(12345, 6) == encode(12345, 6)

    def test_min_length_is_a_floor(self) -> None:
        assert len(encode(12345, 2)) == 3
        assert len(encode(12345, 10)) == 10

    def test_negative_number_rejected(self) -> None:
        with pytest.raises(InvalidArgumentError):
            encode(-1)

    def test_decode_empty_rejected(self) -> None:
        with pytest.raises(InvalidArgumentError):
            decode("")

    def test_decode_foreign_character(self) -> None:
        with pytest.raises(InvalidCharacterError) as exc_info:
            decode("ab0c")
        assert exc_info.value.character == "0"

    def test_invalid_character_is_an_argument_error(self) -> None:
        with pytest.raises(InvalidArgumentError):
            decode("abc!")

    def test_is_valid_code(self) -> None:
        assert is_valid_code("Ab3xQ9")
        assert not is_valid_code("")
        assert not is_valid_code(None)
        assert not is_valid_code("hello")  # 'l' and 'o' are excluded


class TestGenerateUniqueCode:
    @pytest.mark.asyncio
    async def test_uses_encoded_id_when_free(self) -> None:
        async def exists(code: str) -> bool:
            return False

        assert await generate_unique_code(1, exists, min_length=7) == "aaaaaab"

    @pytest.mark.asyncio
    async def test_falls_back_on_collision(self) -> None:
        taken = {encode(1, 7)}
        checked: list[str] = []

        async def exists(code: str) -> bool:
            checked.append(code)
            return code in taken

        code = await generate_unique_code(1, exists, min_length=7)
        assert code not in taken
        assert is_valid_code(code)
        assert len(code) >= 7
        assert len(checked) == 2

    @pytest.mark.asyncio
    async def test_timestamp_code_after_all_attempts(self) -> None:
        async def exists(code: str) -> bool:
            return True

        code = await generate_unique_code(1, exists, min_length=7, max_attempts=3)
        assert is_valid_code(code)
        assert len(code) >= 7

    @pytest.mark.parametrize("strategy", FALLBACK_STRATEGIES)
    def test_every_strategy_respects_alphabet_and_length(self, strategy) -> None:
        code = strategy(42, 6)
        assert is_valid_code(code)
        assert len(code) >= 6

    def test_timestamp_code(self) -> None:
        assert is_valid_code(timestamp_code(6))


class TestCapacityPlanning:
    def test_probability_grows_with_volume(self) -> None:
        assert collision_probability(1_000, 6) < collision_probability(1_000_000, 6)

    def test_probability_of_nothing_is_zero(self) -> None:
        assert collision_probability(0, 6) == 0.0

    def test_default_volume_needs_seven_characters(self) -> None:
        assert recommend_code_length(100_000, 0.01) == 7

    def test_recommendation_is_monotonic_in_volume(self) -> None:
        lengths = [recommend_code_length(n, 0.01) for n in (10, 1_000, 100_000, 10_000_000, 10**9)]
        assert lengths == sorted(lengths)

    @pytest.mark.parametrize("volume", [10, 100_000, 10_000_000, 10**12])
    def test_recommendation_grows_as_tolerance_shrinks(self, volume: int) -> None:
        lengths = [recommend_code_length(volume, p) for p in (0.5, 0.1, 0.01, 1e-6, 1e-9)]
        assert lengths == sorted(lengths)
        assert all(4 <= length <= 12 for length in lengths)

    def test_recommendation_is_bounded(self) -> None:
        assert recommend_code_length(1, 0.5) == 4
        assert recommend_code_length(10**15, 1e-9) == 12

    @pytest.mark.parametrize("probability", [0, 1, -0.1, 1.5])
    def test_probability_out_of_range(self, probability: float) -> None:
        with pytest.raises(InvalidArgumentError):
            recommend_code_length(1000, probability)


class TestCustomCodes:
    def test_valid_code_returned_unchanged(self) -> None:
        assert validate_custom_code("ghub") == "ghub"

    @pytest.mark.parametrize(
        "code",
        ["", "   ", "ab", "a" * 51, "my-code", "c0de", "myApi", "WWWsite"],
    )
    def test_rejected(self, code: str) -> None:
        with pytest.raises(InvalidArgumentError):
            validate_custom_code(code)
