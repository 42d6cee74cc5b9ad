"""Ticket number and slug normalisation

A ticket number is a series prefix followed by a numeric tail
(``VANILLA002``, ``A-17``). Recipient selection and ordering only ever
compare normalised values.
"""
import re
from typing import Any, Optional


_SEPARATOR_RUN = re.compile(r"[\s/\\]+")
_ILLEGAL = re.compile(r"[^A-Za-z0-9\-_.]")
_REPEATED_SEPARATORS = re.compile(r"([-_.])[-_.]+")
_SERIES = re.compile(r"^([A-Z\-_.]+)(\d.*)?$")
_SPLIT = re.compile(r"(\d+)")
_NUMERIC_SUFFIX = re.compile(r"(\d+)$")
_SLUG_ILLEGAL = re.compile(r"[^a-z0-9-]")
_SLUG_DASHES = re.compile(r"-{2,}")


def normalize_number(value: Any) -> str:
    """
    Canonical form of a ticket number

    >>> normalize_number(" vanilla / 002 ")
    'VANILLA-002'
    """
    if value is None:
        return ""
    text = str(value).strip()
    text = _SEPARATOR_RUN.sub("-", text)
    text = _ILLEGAL.sub("", text)
    text = _REPEATED_SEPARATORS.sub(r"\1", text)
    return text.upper()


def series_of(value: Any) -> str:
    """Leading letter group of a normalised number, "" when there is none"""
    n = normalize_number(value)
    if not n:
        return ""
    m = _SERIES.match(n)
    if m:
        return m.group(1)
    for part in _SPLIT.split(n):
        if part:
            return part
    return ""


def numeric_suffix(value: Any) -> Optional[int]:
    m = _NUMERIC_SUFFIX.search(normalize_number(value))
    return int(m.group(1)) if m else None


def _tail(n: str, series: str) -> str:
    return n[len(series):] or n


def is_behind(their: Any, called: Any) -> bool:
    """
    True when ``their`` is later in the same series than ``called``.

    Compares trailing integers; falls back to a lexicographic comparison
    of the tails when either side has no trailing integer.
    """
    t, c = normalize_number(their), normalize_number(called)
    if not t or not c:
        return False
    ts, cs = series_of(t), series_of(c)
    if ts != cs:
        return False
    tn, cn = numeric_suffix(t), numeric_suffix(c)
    if tn is not None and cn is not None:
        return tn > cn
    return _tail(t, ts) > _tail(c, cs)


def format_ticket_number(prefix: str, n: int, padding: int = 3) -> str:
    """format_ticket_number("A", 7) -> "A007\""""
    return f"{normalize_number(prefix)}{int(n):0{padding}d}"


def normalize_slug(raw: Any) -> str:
    """Lowercase URL-safe tenant slug; "" when nothing usable remains"""
    text = str(raw or "").strip().lower()
    text = re.sub(r"\s+", "-", text)
    text = _SLUG_ILLEGAL.sub("-", text)
    text = _SLUG_DASHES.sub("-", text)
    return text.strip("-")
