from __future__ import annotations

import secrets
from typing import Iterator

ID_PREFIX = "sk-"
MIN_LENGTH = 4
MAX_LENGTH = 6
DEFAULT_ATTEMPTS_PER_LENGTH = 10

_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"


def generate_id(length: int = MIN_LENGTH) -> str:
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(length))
    return f"{ID_PREFIX}{suffix}"


def candidate_ids(attempts_per_length: int = DEFAULT_ATTEMPTS_PER_LENGTH) -> Iterator[str]:
    """Yield fresh id candidates, growing the suffix after repeated collisions.

    The caller inserts each candidate until the store accepts one; running
    out of candidates means the id space is saturated.
    """
    for length in range(MIN_LENGTH, MAX_LENGTH + 1):
        for _ in range(attempts_per_length):
            yield generate_id(length)


def normalize_prefix(prefix: str) -> str:
    p = prefix.strip().lower()
    return p if p.startswith(ID_PREFIX) else f"{ID_PREFIX}{p}"
