import pytest

from jwtpizza.storage.pagination import get_offset, matches_name, name_pattern


@pytest.mark.parametrize(
    "page, limit, expected",
    [(1, 10, 0), (2, 10, 10), (3, 10, 20), (0, 10, 0), (-4, 10, 0)],
)
def test_get_offset(page, limit, expected):
    offset = get_offset(page, limit)

    assert offset == expected
    assert isinstance(offset, int)


def test_name_pattern_translates_wildcards_and_escapes_like():
    assert name_pattern("*") == "%"
    assert name_pattern(None) == "%"
    assert name_pattern("pizza*") == "pizza%"
    assert name_pattern("50%_off") == "50\\%\\_off"


@pytest.mark.parametrize(
    "name, pattern, expected",
    [
        ("pizzaPocket", "*", True),
        ("pizzaPocket", "pizza*", True),
        ("pizzaPocket", "*Pocket", True),
        ("pizzaPocket", "p*z*t", True),
        ("pizzaPocket", "pizza", False),
        ("pizzaPocket", "pizzaPocket", True),
        ("ab", "ab*b", False),
    ],
)
def test_matches_name(name, pattern, expected):
    assert matches_name(name, pattern) is expected
