"""
Identifier generation.

Executions and runtimes are keyed by ULIDs (Universally Unique
Lexicographically Sortable Identifiers): 26 characters of Crockford base32,
encoding 48 bits of millisecond timestamp followed by 80 bits of randomness.

Plain string comparison of two ULIDs orders them by creation time, which the
ledger relies on for history ordering and the association index relies on for
its recency check. Within a single millisecond the generator increments the
random component instead of drawing a new one, so ids from one generator are
strictly increasing.
"""

import random
import threading
import time
from typing import Callable, Optional

# Crockford's Base32 alphabet (excludes I, L, O, U)
ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"

ULID_LENGTH = 26
_TIME_CHARS = 10
_RANDOM_CHARS = 16
_RANDOM_BITS = 80
_RANDOM_MAX = (1 << _RANDOM_BITS) - 1

ULID = str


def _encode(value: int, length: int) -> str:
    chars = []
    for _ in range(length):
        chars.append(ALPHABET[value & 0x1F])
        value >>= 5
    return "".join(reversed(chars))


def is_ulid(value: str) -> bool:
    """Check whether a string is shaped like a ULID."""
    if not isinstance(value, str) or len(value) != ULID_LENGTH:
        return False
    return all(c in ALPHABET for c in value)


def ulid_timestamp_ms(value: str) -> int:
    """Extract the millisecond timestamp encoded in a ULID."""
    if not is_ulid(value):
        raise ValueError(f"Not a ULID: {value!r}")
    result = 0
    for c in value[:_TIME_CHARS]:
        result = (result << 5) | ALPHABET.index(c)
    return result


class IdGenerator:
    """
    Monotonic ULID generator.

    Thread-safe. One generator is shared by everything that mints ids inside a
    daemon so that executions and runtimes created in sequence always compare
    in creation order.

    Usage:
        ids = IdGenerator()
        first = ids.new_id()
        second = ids.new_id()
        assert first < second
    """

    def __init__(
        self,
        clock: Optional[Callable[[], float]] = None,
        rng: Optional[random.Random] = None,
    ):
        """
        Args:
            clock: Returns seconds since the epoch (defaults to time.time)
            rng: Source of randomness (defaults to a SystemRandom instance)
        """
        self._clock = clock or time.time
        self._rng = rng or random.SystemRandom()
        self._lock = threading.Lock()
        self._last_ms = -1
        self._last_random = 0

    def new_id(self) -> ULID:
        """Mint a new identifier, strictly greater than the previous one."""
        with self._lock:
            timestamp_ms = int(self._clock() * 1000)
            if timestamp_ms <= self._last_ms:
                # Same millisecond, or the clock stepped backwards
                timestamp_ms = self._last_ms
                randomness = self._last_random + 1
                if randomness > _RANDOM_MAX:
                    timestamp_ms += 1
                    randomness = self._rng.getrandbits(_RANDOM_BITS - 1)
            else:
                # Leave headroom so increments within the millisecond cannot overflow
                randomness = self._rng.getrandbits(_RANDOM_BITS - 1)

            self._last_ms = timestamp_ms
            self._last_random = randomness

        return _encode(timestamp_ms, _TIME_CHARS) + _encode(randomness, _RANDOM_CHARS)

    __call__ = new_id

