import pytest

from utils.validators import (
    parse_bool_param,
    parse_int_param,
    validate_generation,
    validate_limit,
    validate_region,
)


@pytest.mark.parametrize("limit, ok", [(0, True), (20, True), (1025, True), (1026, False), (-1, False), (True, False), (2.5, False)])
def test_validate_limit(limit, ok):
    assert validate_limit(limit)[0] is ok


def test_validate_generation_allows_none():
    assert validate_generation(None) == (True, None)
    assert validate_generation(9)[0] is True
    assert validate_generation(10)[0] is False


@pytest.mark.parametrize("region, ok", [("kanto", True), ("updated-kanto", True), ("", False), ("  ", False), ("kanto; drop", False), ("two words", False)])
def test_validate_region(region, ok):
    assert validate_region(region)[0] is ok


def test_parse_int_param():
    assert parse_int_param(None, "limit") == (True, None, None)
    assert parse_int_param(" ", "limit") == (True, None, None)
    assert parse_int_param("40", "limit") == (True, None, 40)

    is_valid, error_msg, value = parse_int_param("forty", "limit")
    assert not is_valid and value is None
    assert "limit" in error_msg


def test_parse_bool_param():
    assert parse_bool_param("true") is True
    assert parse_bool_param("YES") is True
    assert parse_bool_param("0") is False
    assert parse_bool_param(None) is False
