"""
Thread key generation for followup deduplication.

A thread key identifies "the same conversation" regardless of the order in
which participants were listed: thread_<base36 of a 64-bit BLAKE2b digest>.
"""

import hashlib
from typing import Iterable

THREAD_KEY_PREFIX = "thread_"
PARTICIPANT_DELIMITER = ","
MESSAGE_SEPARATOR = ":"

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def to_base36(value: int) -> str:
    if value < 0:
        raise ValueError("base36 encoding expects a non-negative integer")
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def generate_thread_key(message_id: str, participants: Iterable[str]) -> str:
    """Derive a stable dedup key from a message id and its participant addresses."""
    normalized = PARTICIPANT_DELIMITER.join(sorted(participants))
    raw = f"{message_id}{MESSAGE_SEPARATOR}{normalized}"
    digest = hashlib.blake2b(raw.encode("utf-8"), digest_size=8).digest()
    return THREAD_KEY_PREFIX + to_base36(int.from_bytes(digest, "big"))
