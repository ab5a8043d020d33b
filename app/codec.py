"""Short code codec: integer ids to compact, unambiguous codes and back.

The alphabet leaves out characters that are easy to confuse when a code is
read aloud or typed from print (``0 O I l 1``). Encoding is positional in
base ``len(ALPHABET)`` and left-pads with the first alphabet character.

Flow Diagram — generate_unique_code()
=====================================
::
    ┌──────────────┐
    │ encode(id,   │
    │ min_length)  │
    └──────┬───────┘
           ▼
    ┌──────────────┐   free
    │  exists()?   │ ────────▶ return code
    └──────┬───────┘
           │ taken
           ▼
    ┌──────────────────────────────────┐
    │ for attempt in range(max):       │
    │   time → hash → random →         │
    │   hybrid → secure random         │──── free ──▶ return code
    └──────┬───────────────────────────┘
           │ all taken
           ▼
    ┌──────────────┐
    │ timestamp +  │
    │ ticks code   │
    └──────────────┘

How to Use
===========
**Encode / decode**::
    from app.codec import encode, decode
    code = encode(12345, min_length=6)
    assert decode(code) == 12345

**Collision-aware generation**::
    code = await generate_unique_code(link.id, store.code_exists, min_length=7)

**Capacity planning**::
    length = recommend_code_length(1_000_000, 0.001)

Key Behaviours
===============
- ``encode(0, n)`` is ``n`` copies of the first alphabet character.
- ``decode`` raises :class:`InvalidCharacterError` for foreign characters.
- Random strategies draw from OS entropy and are safe to call concurrently.
- Lookup tables are built once at import and never mutated.

Functions:
    encode / decode / is_valid_code:  The reversible codec.
    generate_unique_code:  Primary code plus ordered fallback strategies.
    collision_probability / recommend_code_length:  Birthday-bound sizing.
    validate_custom_code:  User supplied alias checks.
"""

import hashlib
import math
import secrets
import time
from collections.abc import Awaitable, Callable
from types import MappingProxyType

from nanoid import generate

from app.exceptions import InvalidArgumentError, InvalidCharacterError

__all__ = [
    "ALPHABET",
    "BASE",
    "RESERVED_WORDS",
    "FALLBACK_STRATEGIES",
    "encode",
    "decode",
    "is_valid_code",
    "time_based_code",
    "hash_based_code",
    "random_code",
    "hybrid_code",
    "secure_random_code",
    "timestamp_code",
    "generate_unique_code",
    "collision_probability",
    "recommend_code_length",
    "validate_custom_code",
]


# ============================================================================
# CONSTANTS
# ============================================================================

ALPHABET = "abcdefghijkmnpqrstuvwxyzABCDEFGHJKLMNPQRSTUVWXYZ23456789"
BASE = len(ALPHABET)

_CHAR_TO_INDEX = MappingProxyType({char: index for index, char in enumerate(ALPHABET)})

DEFAULT_MIN_LENGTH = 6
MIN_RECOMMENDED_LENGTH = 4
MAX_RECOMMENDED_LENGTH = 12
DEFAULT_MAX_ATTEMPTS = 5

RESERVED_WORDS = ("api", "admin", "www", "mail", "help", "support", "about")


# ============================================================================
# CODEC
# ============================================================================


def encode(number: int, min_length: int = DEFAULT_MIN_LENGTH) -> str:
    if number < 0:
        raise InvalidArgumentError(f"Number must be non-negative, got {number}")
    if min_length < 0:
        raise InvalidArgumentError(f"min_length must be non-negative, got {min_length}")

    if number == 0:
        return ALPHABET[0] * min_length

    chars: list[str] = []
    while number > 0:
        number, remainder = divmod(number, BASE)
        chars.append(ALPHABET[remainder])

    return "".join(reversed(chars)).rjust(min_length, ALPHABET[0])


def decode(code: str) -> int:
    if not code:
        raise InvalidArgumentError("Code must be a non-empty string")

    result = 0
    for char in code:
        index = _CHAR_TO_INDEX.get(char)
        if index is None:
            raise InvalidCharacterError(char)
        result = result * BASE + index
    return result


def is_valid_code(code: str | None) -> bool:
    return bool(code) and all(char in _CHAR_TO_INDEX for char in code)


# ============================================================================
# FALLBACK STRATEGIES
# ============================================================================


def _unix_ms() -> int:
    return time.time_ns() // 1_000_000


def _ticks() -> int:
    # 100ns resolution
    return time.time_ns() // 100


def time_based_code(number: int, min_length: int) -> str:
    return encode((_unix_ms() << 20) | (number & 0xFFFFF), min_length)


def hash_based_code(number: int, min_length: int) -> str:
    digest = hashlib.sha256(f"{number}{_ticks()}".encode("utf-8")).digest()
    value = int.from_bytes(digest[:8], "little", signed=True)
    return encode(abs(value), min_length)


def random_code(number: int, min_length: int) -> str:
    return generate(ALPHABET, min_length + 1)


def hybrid_code(number: int, min_length: int) -> str:
    length = min_length + 1
    prefix = encode(number, length // 2)
    if len(prefix) >= length:
        return prefix
    return prefix + generate(ALPHABET, length - len(prefix))


def secure_random_code(number: int, min_length: int) -> str:
    length = min_length + 2
    raw = secrets.token_bytes(length * 2)
    return "".join(
        ALPHABET[int.from_bytes(raw[i : i + 2], "little") % BASE] for i in range(0, len(raw), 2)
    )


def timestamp_code(min_length: int) -> str:
    """Last resort once every strategy collided."""
    return encode((_unix_ms() << 16) | (_ticks() % 10_000), min_length)


FALLBACK_STRATEGIES: tuple[Callable[[int, int], str], ...] = (
    time_based_code,
    hash_based_code,
    random_code,
    hybrid_code,
    secure_random_code,
)


async def generate_unique_code(
    number: int,
    exists: Callable[[str], Awaitable[bool]],
    min_length: int = DEFAULT_MIN_LENGTH,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> str:
    """Return the deterministic code for ``number``, or a non-colliding fallback.

    Args:
        number: Surrogate id of the link.
        exists: Awaitable existence check, usually ``ShortLinkStore.code_exists``.
        min_length: Minimum code length.
        max_attempts: Fallback attempts before the timestamp code is used.
    """
    code = encode(number, min_length)
    if not await exists(code):
        return code

    for attempt in range(max_attempts):
        strategy = FALLBACK_STRATEGIES[min(attempt, len(FALLBACK_STRATEGIES) - 1)]
        candidate = strategy(number, min_length)
        if not await exists(candidate):
            return candidate

    return timestamp_code(min_length)


# ============================================================================
# CAPACITY PLANNING
# ============================================================================


def collision_probability(expected: int, length: int) -> float:
    """Birthday bound: ``1 - exp(-n² / (2 · B^L))``."""
    if expected <= 0:
        return 0.0
    return -math.expm1(-(expected * expected) / (2 * BASE**length))


def recommend_code_length(expected_urls: int, max_collision_probability: float) -> int:
    if expected_urls < 0:
        raise InvalidArgumentError(f"expected_urls must be non-negative, got {expected_urls}")
    if not 0 < max_collision_probability < 1:
        raise InvalidArgumentError(
            f"max_collision_probability must be in (0, 1), got {max_collision_probability}"
        )

    for length in range(MIN_RECOMMENDED_LENGTH, MAX_RECOMMENDED_LENGTH + 1):
        if collision_probability(expected_urls, length) <= max_collision_probability:
            return length
    return MAX_RECOMMENDED_LENGTH


# ============================================================================
# CUSTOM CODES
# ============================================================================


def validate_custom_code(code: str | None, min_length: int = 3, max_length: int = 50) -> str:
    """Check a user supplied alias and return it unchanged.

    Raises:
        InvalidArgumentError: On bad length, foreign characters or a reserved word.
    """
    if not code or not code.strip():
        raise InvalidArgumentError("Custom code cannot be empty")
    if len(code) < min_length:
        raise InvalidArgumentError(f"Custom code must be at least {min_length} characters long")
    if len(code) > max_length:
        raise InvalidArgumentError(f"Custom code cannot exceed {max_length} characters")
    if not is_valid_code(code):
        raise InvalidArgumentError("Custom code contains invalid characters")

    lowered = code.lower()
    for word in RESERVED_WORDS:
        if word in lowered:
            raise InvalidArgumentError(f"Custom code cannot contain reserved word '{word}'")
    return code
