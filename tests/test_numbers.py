"""Ticket number normalisation and ordering"""
import pytest

from queuejoy.utils.numbers import (
    format_ticket_number,
    is_behind,
    normalize_number,
    normalize_slug,
    numeric_suffix,
    series_of,
)


@pytest.mark.parametrize("raw,expected", [
    (" vanilla / 002 ", "VANILLA-002"),
    ("a001", "A001"),
    ("A--17", "A-17"),
    ("A#1!7", "A17"),
    (None, ""),
    ("   ", ""),
])
def test_normalize_number(raw, expected):
    assert normalize_number(raw) == expected


def test_series_of_takes_leading_letters():
    assert series_of("VANILLA002") == "VANILLA"
    assert series_of("a-17") == "A-"
    assert series_of("123") == "123"
    assert series_of("") == ""


def test_numeric_suffix():
    assert numeric_suffix("A010") == 10
    assert numeric_suffix("A") is None


def test_is_behind_compares_numeric_tails():
    assert is_behind("A010", "A002")
    assert not is_behind("A002", "A010")
    assert not is_behind("A002", "A002")


def test_is_behind_never_crosses_series():
    assert not is_behind("B010", "A002")


def test_is_behind_falls_back_to_lexicographic_tails():
    assert is_behind("A1X", "A1B")
    assert not is_behind("A1B", "A1X")


def test_format_ticket_number_pads():
    assert format_ticket_number("a", 7) == "A007"
    assert format_ticket_number("CAF", 1234, padding=3) == "CAF1234"


def test_normalize_slug():
    assert normalize_slug("  My Cafe!! ") == "my-cafe"
    assert normalize_slug("---") == ""
