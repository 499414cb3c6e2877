"""Prefixed ULID identifiers for runs, artifacts, promotions and events."""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from typing import Final

CROCKFORD_BASE32_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
ULID_RANDOM_BYTES: Final[int] = 10
ULID_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1
_SEPARATOR: Final[str] = "-"

RUN_ID_PREFIX: Final[str] = "run"
ARTIFACT_ID_PREFIX: Final[str] = "art"
PROMOTION_ID_PREFIX: Final[str] = "prm"
EVENT_ID_PREFIX: Final[str] = "evt"

_DECODE: Final[dict[str, int]] = {char: value for value, char in enumerate(CROCKFORD_BASE32_ALPHABET)}

_RandBytes = Callable[[int], bytes]

__all__ = [
    "ARTIFACT_ID_PREFIX",
    "EVENT_ID_PREFIX",
    "PROMOTION_ID_PREFIX",
    "RUN_ID_PREFIX",
    "ULID_LENGTH",
    "generate_artifact_id",
    "generate_event_id",
    "generate_prefixed_id",
    "generate_promotion_id",
    "generate_run_id",
    "generate_ulid",
    "short_id",
    "validate_prefixed_id",
    "validate_run_id",
    "validate_ulid",
]


def generate_ulid(*, timestamp_ms: int | None = None, randbytes: _RandBytes | None = None) -> str:
    """Return a 26-character Crockford Base32 ULID (48-bit ms time + 80 random bits)."""
    millis = time.time_ns() // 1_000_000 if timestamp_ms is None else timestamp_ms
    if not isinstance(millis, int) or not 0 <= millis <= ULID_MAX_TIMESTAMP_MS:
        raise ValueError(f"timestamp_ms out of range: {millis!r}")
    entropy = bytes((randbytes or secrets.token_bytes)(ULID_RANDOM_BYTES))
    if len(entropy) != ULID_RANDOM_BYTES:
        raise ValueError(f"randbytes must return exactly {ULID_RANDOM_BYTES} bytes")

    value = (millis << 80) | int.from_bytes(entropy, "big")
    chars: list[str] = []
    for _ in range(ULID_LENGTH):
        chars.append(CROCKFORD_BASE32_ALPHABET[value & 0b11111])
        value >>= 5
    return "".join(reversed(chars))


def validate_ulid(value: str) -> None:
    """Raise ``ValueError`` unless ``value`` is a well-formed ULID."""
    if not isinstance(value, str):
        raise ValueError(f"ulid must be a string, got {type(value).__name__}")
    if len(value) != ULID_LENGTH:
        raise ValueError(f"ulid length must be {ULID_LENGTH}, got {len(value)}")
    if value[0] not in "01234567":
        raise ValueError("ulid overflow: value exceeds 128 bits")
    for index, char in enumerate(value):
        if char.upper() not in _DECODE:
            raise ValueError(f"invalid ULID character {char!r} at index {index}")


def generate_prefixed_id(
    prefix: str,
    *,
    timestamp_ms: int | None = None,
    randbytes: _RandBytes | None = None,
) -> str:
    _check_prefix(prefix)
    return f"{prefix}{_SEPARATOR}{generate_ulid(timestamp_ms=timestamp_ms, randbytes=randbytes)}"


def validate_prefixed_id(id_str: str, expected_prefix: str) -> None:
    """Validate ``<prefix>-<ulid>`` and enforce ``expected_prefix``."""
    _check_prefix(expected_prefix)
    if not isinstance(id_str, str):
        raise ValueError(f"prefixed id must be a string, got {type(id_str).__name__}")
    lead = f"{expected_prefix}{_SEPARATOR}"
    if not id_str.startswith(lead):
        raise ValueError(f"expected prefix '{lead}' in {id_str!r}")
    try:
        validate_ulid(id_str[len(lead) :])
    except ValueError as exc:
        raise ValueError(f"invalid ULID part for prefix '{expected_prefix}': {exc}") from exc


def short_id(id_str: str) -> str:
    """Last 8 characters of an id, for compact display."""
    return id_str[-8:] if len(id_str) > 8 else id_str


def generate_run_id(*, timestamp_ms: int | None = None, randbytes: _RandBytes | None = None) -> str:
    return generate_prefixed_id(RUN_ID_PREFIX, timestamp_ms=timestamp_ms, randbytes=randbytes)


def validate_run_id(id_str: str) -> None:
    validate_prefixed_id(id_str, RUN_ID_PREFIX)


def generate_artifact_id() -> str:
    return generate_prefixed_id(ARTIFACT_ID_PREFIX)


def generate_promotion_id() -> str:
    return generate_prefixed_id(PROMOTION_ID_PREFIX)


def generate_event_id() -> str:
    return generate_prefixed_id(EVENT_ID_PREFIX)


def _check_prefix(prefix: str) -> None:
    if not isinstance(prefix, str) or not prefix:
        raise ValueError("prefix must be a non-empty string")
    if _SEPARATOR in prefix:
        raise ValueError(f"prefix must not contain '{_SEPARATOR}'")
