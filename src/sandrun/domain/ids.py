"""Session ID generation and validation."""

from __future__ import annotations

import re
import secrets
import time
from collections.abc import Callable
from typing import Final

from sandrun.domain.errors import InvalidSessionIdError

CROCKFORD_BASE32_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
ULID_RANDOM_BYTES: Final[int] = 10
ULID_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1
SESSION_ID_PREFIX: Final[str] = "sess"
SESSION_ID_MAX_LEN: Final[int] = 128

# A session ID doubles as a directory name, so it must be one safe path component.
_SESSION_ID_RE: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")

_RandBytes = Callable[[int], bytes]

__all__ = [
    "CROCKFORD_BASE32_ALPHABET",
    "SESSION_ID_MAX_LEN",
    "SESSION_ID_PREFIX",
    "ULID_LENGTH",
    "generate_session_id",
    "generate_ulid",
    "is_valid_session_id",
    "validate_session_id",
]


def generate_ulid(
    *,
    timestamp_ms: int | None = None,
    randbytes: _RandBytes | None = None,
) -> str:
    """Generate a ULID as a 26-character uppercase Crockford Base32 string."""
    ts_ms = time.time_ns() // 1_000_000 if timestamp_ms is None else timestamp_ms
    if not 0 <= ts_ms <= ULID_MAX_TIMESTAMP_MS:
        raise ValueError(
            f"timestamp_ms out of range: expected 0..{ULID_MAX_TIMESTAMP_MS}, got {ts_ms}"
        )
    provider = secrets.token_bytes if randbytes is None else randbytes
    random_bytes = bytes(provider(ULID_RANDOM_BYTES))
    if len(random_bytes) != ULID_RANDOM_BYTES:
        raise ValueError(f"randbytes must return exactly {ULID_RANDOM_BYTES} bytes")
    value = (ts_ms << 80) | int.from_bytes(random_bytes, "big")
    return _encode_crockford_base32(value, ULID_LENGTH)


def generate_session_id(
    *, timestamp_ms: int | None = None, randbytes: _RandBytes | None = None
) -> str:
    """Generate a session ID in the form ``sess-<ulid>``."""
    return f"{SESSION_ID_PREFIX}-{generate_ulid(timestamp_ms=timestamp_ms, randbytes=randbytes)}"


def validate_session_id(session_id: str) -> str:
    """Return ``session_id`` unchanged or raise if it is not a safe path component."""
    if not isinstance(session_id, str):
        raise InvalidSessionIdError(f"session_id must be a string, got {type(session_id).__name__}")
    if _SESSION_ID_RE.fullmatch(session_id) is None:
        raise InvalidSessionIdError(
            "session_id must be 1-128 characters of [A-Za-z0-9_.-] "
            f"starting with an alphanumeric (got {session_id!r})"
        )
    if ".." in session_id:
        raise InvalidSessionIdError("session_id must not contain '..'")
    return session_id


def is_valid_session_id(session_id: object) -> bool:
    if not isinstance(session_id, str):
        return False
    try:
        validate_session_id(session_id)
    except ValueError:
        return False
    return True


def _encode_crockford_base32(value: int, length: int) -> str:
    mask = 0b11111
    chars = ["0"] * length
    working = value
    for index in range(length - 1, -1, -1):
        chars[index] = CROCKFORD_BASE32_ALPHABET[working & mask]
        working >>= 5

    if working != 0:
        raise ValueError(f"value does not fit into {length} Crockford Base32 characters")
    return "".join(chars)
