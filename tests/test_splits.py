from decimal import Decimal

import pytest

from splits import (
    SplitMode,
    ValidationError,
    amounts_close,
    compute_shares,
    detect_split_mode,
    parse_amount,
    shares_match_total,
    shares_to_floats,
)


def test_equal_split_divides_total_between_members():
    shares = compute_shares(["a", "b", "c"], Decimal("30.00"), SplitMode.EQUAL)

    assert shares == {"a": Decimal("10"), "b": Decimal("10"), "c": Decimal("10")}


def test_equal_split_keeps_the_exact_quotient():
    shares = compute_shares(["a", "b", "c"], Decimal("10"), SplitMode.EQUAL)

    assert len(set(shares.values())) == 1
    assert shares_match_total(shares, Decimal("10"))


def test_custom_split_treats_blank_and_invalid_input_as_zero():
    shares = compute_shares(
        ["a", "b", "c", "d"],
        Decimal("50"),
        SplitMode.CUSTOM,
        {"a": "20.50", "b": "", "c": "abc"},
    )

    assert shares == {"a": Decimal("20.50"), "b": Decimal("0"), "c": Decimal("0"), "d": Decimal("0")}


def test_no_members_is_rejected():
    with pytest.raises(ValidationError):
        compute_shares([], Decimal("10"), SplitMode.EQUAL)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("12.5", Decimal("12.5")),
        (" 7 ", Decimal("7")),
        (3, Decimal("3")),
        (0.1, Decimal("0.1")),
        ("", None),
        ("   ", None),
        (None, None),
        ("ten", None),
        ("NaN", None),
        ("Infinity", None),
    ],
)
def test_parse_amount(raw, expected):
    assert parse_amount(raw) == expected


def test_tolerance_is_strictly_below_one_cent():
    assert amounts_close(Decimal("30.009"), Decimal("30"))
    assert not amounts_close(Decimal("30.01"), Decimal("30"))
    assert not amounts_close(Decimal("30.02"), Decimal("30"))


def test_float_amounts_compare_without_binary_noise():
    assert amounts_close(0.1 + 0.2, 0.3)


def test_custom_shares_matching_total():
    shares = {"a": Decimal("10.00"), "b": Decimal("20.009")}

    assert shares_match_total(shares, Decimal("30"))
    assert not shares_match_total({"a": Decimal("10"), "b": Decimal("19.98")}, Decimal("30"))


def test_detect_split_mode_equal():
    assert detect_split_mode(["a", "b", "c"], 30.0, {"a": 10.0, "b": 10.0, "c": 10.0}) == SplitMode.EQUAL


def test_detect_split_mode_equal_thirds_stored_as_floats():
    third = 10 / 3
    assert detect_split_mode(["a", "b", "c"], 10.0, {"a": third, "b": third, "c": third}) == SplitMode.EQUAL


def test_detect_split_mode_custom_when_uneven_or_member_missing():
    assert detect_split_mode(["a", "b"], 30.0, {"a": 20.0, "b": 10.0}) == SplitMode.CUSTOM
    assert detect_split_mode(["a", "b", "c"], 30.0, {"a": 15.0, "b": 15.0}) == SplitMode.CUSTOM


def test_shares_to_floats():
    assert shares_to_floats({"a": Decimal("12.25")}) == {"a": 12.25}
