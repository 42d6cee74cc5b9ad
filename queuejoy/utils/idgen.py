"""ID Generation Utilities"""
import secrets
import time
import uuid
from datetime import datetime, timezone
from typing import List, Optional


PUSH_CHARS = "-0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ_abcdefghijklmnopqrstuvwxyz"
TOKEN_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz_-"

_last_push_ms = 0
_last_rand_chars: List[int] = [0] * 12


def generate_id(prefix: Optional[str] = None) -> str:
    """
    Generate a unique ID with optional prefix

    Examples:
        >>> generate_id('CNT')
        'CNT-a1b2c3d4e5f6'
    """
    unique_part = uuid.uuid4().hex[:12]

    if prefix:
        return f"{prefix}-{unique_part}"
    return unique_part


def generate_push_id(now_ms: Optional[int] = None) -> str:
    """
    Generate a realtime-database push key.

    20 characters: 8 encode the timestamp so keys sort chronologically,
    12 are random and are incremented when two keys share a millisecond.
    """
    global _last_push_ms, _last_rand_chars
    ts = int(now_ms if now_ms is not None else time.time() * 1000)
    duplicate = ts == _last_push_ms
    _last_push_ms = ts

    time_chars = []
    for _ in range(8):
        time_chars.append(PUSH_CHARS[ts % 64])
        ts //= 64
    prefix = "".join(reversed(time_chars))

    if not duplicate:
        _last_rand_chars = [secrets.randbelow(64) for _ in range(12)]
    else:
        i = 11
        while i >= 0 and _last_rand_chars[i] == 63:
            _last_rand_chars[i] = 0
            i -= 1
        if i >= 0:
            _last_rand_chars[i] += 1

    return prefix + "".join(PUSH_CHARS[c] for c in _last_rand_chars)


def generate_start_token(length: int = 12) -> str:
    """Generate an unguessable URL-safe start token"""
    return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(length))


def generate_counter_id() -> str:
    """Generate counter ID"""
    return generate_id("CNT")


def generate_correlation_id() -> str:
    """
    Generate a correlation ID for request tracing

    Returns:
        Correlation ID string with timestamp prefix
    """
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    unique_part = uuid.uuid4().hex[:8]
    return f"COR-{timestamp}-{unique_part}"
