"""
Deterministic ID Generation

Chat and message IDs are pure functions of their inputs so that the same
message always maps to the same ID (reproducible in tests, idempotent when
a message is re-inserted).

IDs use a 48-bit non-cryptographic hash rendered as 12 hex characters:
two independent 32-bit mixing lanes over the UTF-8 bytes of the input,
the low 32 bits from lane 1 and the high 16 bits from lane 2.
"""

from datetime import datetime, timezone
from typing import Union

_MASK32 = 0xFFFFFFFF


def hash48hex(text: str) -> str:
    """Return a 12-character hex digest of ``text``."""
    h1 = 0x9E3779B9
    h2 = 0x85EBCA6B

    for b in text.encode("utf-8"):
        # Lane 1
        h1 ^= b
        h1 = (h1 * 0x85EBCA6B) & _MASK32
        h1 ^= h1 >> 13
        h1 = (h1 * 0xC2B2AE35) & _MASK32
        h1 ^= h1 >> 16

        # Lane 2 (different constants and shifts)
        x = h2 ^ ((b + 0x9E3779B9) & _MASK32)
        x = (x * 0x27D4EB2D) & _MASK32
        x ^= x >> 15
        x = (x * 0x165667B1) & _MASK32
        x ^= x >> 17
        h2 = x

    value48 = ((h2 & 0xFFFF) << 32) | h1
    return f"{value48:012x}"


def to_iso_millis(moment: Union[datetime, int]) -> str:
    """
    Format a datetime (or epoch milliseconds) as a UTC ISO string with
    millisecond precision, e.g. ``2025-01-27T10:00:00.000Z``.

    Naive datetimes are treated as UTC.
    """
    if isinstance(moment, int):
        seconds, millis = divmod(moment, 1000)
        moment = datetime.fromtimestamp(seconds, tz=timezone.utc).replace(microsecond=millis * 1000)
    elif moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    else:
        moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


class IDGenerator:
    """Builds chat and message identifiers."""

    def unique_id(self, text: str) -> str:
        return hash48hex(text)

    def chat_id(self, user_id: str, course_name: str, date: datetime) -> str:
        """``<user>-<course>-<hash of the chat start time>``."""
        return f"{user_id}-{course_name}-{self.unique_id(to_iso_millis(date))}"

    def message_id(self, text: str, chat_id: str, timestamp: Union[datetime, int]) -> str:
        """Hash of the first ten words of the message, the chat ID and the timestamp."""
        first_ten_words = " ".join(text.split(" ")[:10])
        return self.unique_id(f"{first_ten_words}-{chat_id}-{to_iso_millis(timestamp)}")
