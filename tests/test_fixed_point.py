from __future__ import annotations

import pytest

from basketbatch.ledger.constants import SCALE
from basketbatch.ledger.fixed_point import div_scaled, format_units, mul_div, mul_scaled, parse_units, require_int


def test_parse_units_decimal_strings() -> None:
    assert parse_units("9.95") == 9_950_000_000_000_000_000
    assert parse_units("1000") == 1000 * SCALE
    assert parse_units(3) == 3 * SCALE
    assert parse_units("0.000000000000000001") == 1


def test_parse_units_truncates_extra_precision() -> None:
    # 19th decimal is dropped, never rounded up
    assert parse_units("1.0000000000000000019") == SCALE + 1


def test_parse_units_large_amount_is_exact() -> None:
    assert parse_units("123456789012345.123456789012345678") == 123456789012345123456789012345678


@pytest.mark.parametrize("bad", ["", "abc", "NaN", "inf", True])
def test_parse_units_rejects_garbage(bad) -> None:
    with pytest.raises(ValueError):
        parse_units(bad)


def test_format_units() -> None:
    assert format_units(2_492_500_000_000_000_000) == "2.4925"
    assert format_units(10 * SCALE) == "10.0"
    assert format_units(1) == "0.000000000000000001"


def test_mul_div_floors() -> None:
    assert mul_div(10, 1, 3) == 3
    assert mul_scaled(3 * SCALE, SCALE // 2) == (3 * SCALE) // 2
    assert div_scaled(1, 3) == SCALE // 3
    with pytest.raises(ZeroDivisionError):
        mul_div(1, 1, 0)


def test_require_int_rejects_bool_and_float() -> None:
    assert require_int(5, field="x") == 5
    with pytest.raises(TypeError):
        require_int(True, field="x")
    with pytest.raises(TypeError):
        require_int(1.5, field="x")
