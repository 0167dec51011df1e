"""
Client-generated order identifiers.

Orders get a 6-character id from A-Z0-9 the moment they are created, long
before the remote service assigns its own numeric id. 36**6 (~2.2 billion)
combinations keep collisions rare; each candidate is still checked against
the local store.
"""

import secrets
from typing import Awaitable, Callable

from .errors import IdentifierExhausted

CHARSET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
ID_LENGTH = 6
DEFAULT_MAX_ATTEMPTS = 10


def generate() -> str:
    # byte % 36 carries a small bias toward the first 4 characters; acceptable here.
    raw = secrets.token_bytes(ID_LENGTH)
    return "".join(CHARSET[b % len(CHARSET)] for b in raw)


async def generate_unique(
    exists: Callable[[str], Awaitable[bool]],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> str:
    for _ in range(int(max_attempts)):
        candidate = generate()
        if not await exists(candidate):
            return candidate
    raise IdentifierExhausted(max_attempts)


def validate_format(value) -> bool:
    if not isinstance(value, str) or len(value) != ID_LENGTH:
        return False
    return all(ch in CHARSET for ch in value)
