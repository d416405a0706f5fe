"""Time-ordered string identifiers for documents."""

import random
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime

# Identifiers count milliseconds from this instant
ID_EPOCH_MS = int(datetime(2016, 1, 1, tzinfo=UTC).timestamp() * 1000)

TIMESTAMP_LENGTH = 8
SUFFIX_LENGTH = 3
_SUFFIX_RANGE = 36**SUFFIX_LENGTH

_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"


def to_base36(value: int, width: int) -> str:
    """Encode a non-negative integer as zero-padded base 36.

    Only the lowest ``width`` digits are kept, so the result always has
    exactly ``width`` characters.

    Args:
        value: The integer to encode.
        width: Number of digits in the result.

    Returns:
        The base-36 string.
    """
    digits = []
    for _ in range(width):
        value, rem = divmod(value, 36)
        digits.append(_DIGITS[rem])
    return "".join(reversed(digits))


def _now_ms() -> int:
    return int(time.time() * 1000)


class IdGenerator:
    """Generate strictly ascending, collision-resistant identifiers.

    An identifier is the number of milliseconds since 2016-01-01, encoded
    as 8 base-36 digits (enough to collate correctly for decades), followed
    by 3 random base-36 digits in case another device creates a document in
    the same millisecond.

    The generator remembers the last timestamp it issued. When the clock
    stalls or goes backwards, the timestamp is incremented from that value
    instead, so ordering by identifier equals ordering by creation within
    one process.

    Example:
        ids = IdGenerator()
        first, second = ids.generate(), ids.generate()
        assert first < second
    """

    def __init__(
        self,
        clock: Callable[[], int] = _now_ms,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the generator.

        Args:
            clock: Returns the current time in epoch milliseconds.
            rng: Random source for the collision suffix.
        """
        self._clock = clock
        self._rng = rng or random.Random()
        self._last_timestamp = 0
        self._lock = threading.Lock()

    def _next_timestamp(self) -> int:
        with self._lock:
            timestamp = self._clock() - ID_EPOCH_MS
            if timestamp <= self._last_timestamp:
                timestamp = self._last_timestamp + 1
            self._last_timestamp = timestamp
            return timestamp

    def generate(self) -> str:
        """Generate a new identifier.

        Returns:
            An 11-character string greater than any previously generated
            by this instance.
        """
        timestamp = self._next_timestamp()
        suffix = self._rng.randrange(_SUFFIX_RANGE)
        return to_base36(timestamp, TIMESTAMP_LENGTH) + to_base36(suffix, SUFFIX_LENGTH)

    def timestamp_id(self) -> str:
        """Encode the current time only, without suffix or ascent guarantee.

        Used where collisions are acceptable and simply overwrite each
        other, such as review session documents.
        """
        return to_base36(max(self._clock() - ID_EPOCH_MS, 0), TIMESTAMP_LENGTH)


_default_generator = IdGenerator()


def generate_id() -> str:
    """Generate an identifier from the process-wide generator."""
    return _default_generator.generate()
