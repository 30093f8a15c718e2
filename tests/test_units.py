"""Tests for _units module."""

from __future__ import annotations

import pytest

from nvdiag._errors import NotAvailableError, UnitFormatError
from nvdiag._units import (
    SUFFIX_CELSIUS,
    SUFFIX_WATTS,
    humanize_bytes,
    is_not_available,
    parse_bytes,
    parse_celsius,
    parse_suffixed_scalar,
    parse_watts,
)


class TestParseSuffixedScalar:
    def test_celsius(self) -> None:
        assert parse_suffixed_scalar("75 C", SUFFIX_CELSIUS) == 75.0

    def test_watts_with_decimals(self) -> None:
        assert parse_suffixed_scalar("42.31 W", SUFFIX_WATTS) == pytest.approx(42.31)

    def test_negative_value(self) -> None:
        assert parse_celsius("-8 C", "shutdown_limit") == -8.0

    def test_not_available_is_absence(self) -> None:
        with pytest.raises(NotAvailableError) as ei:
            parse_celsius("N/A", "limit")
        assert not isinstance(ei.value, UnitFormatError)
        assert ei.value.field == "limit"

    def test_wrong_suffix_is_format_error(self) -> None:
        with pytest.raises(UnitFormatError) as ei:
            parse_watts("42.31 C", "power_draw")
        assert "power_draw" in str(ei.value)
        assert "42.31 C" in str(ei.value)

    def test_missing_value_is_format_error(self) -> None:
        with pytest.raises(UnitFormatError):
            parse_celsius("", "current")

    def test_bad_number_propagates_value_error(self) -> None:
        with pytest.raises(ValueError) as ei:
            parse_celsius("hot C", "current")
        assert not isinstance(ei.value, UnitFormatError)

    @pytest.mark.parametrize("value", ["1_000 C", " 75 C", "nan C", "inf C", "75.0.1 C", "0x1F C"])
    def test_only_plain_decimals(self, value: str) -> None:
        with pytest.raises(ValueError) as ei:
            parse_celsius(value, "current")
        assert not isinstance(ei.value, UnitFormatError)

    def test_exponent_and_sign(self) -> None:
        assert parse_watts("+1.5e2 W", "power_draw") == 150.0
        assert parse_celsius(".5 C", "current") == 0.5

    def test_is_not_available(self) -> None:
        assert is_not_available("N/A")
        assert not is_not_available("0 C")
        assert not is_not_available(None)


class TestParseBytes:
    def test_mib_is_binary(self) -> None:
        assert parse_bytes("80536 MiB") == 80536 * 1024**2

    def test_gb_is_decimal(self) -> None:
        assert parse_bytes("84 GB") == 84_000_000_000

    def test_fractional(self) -> None:
        assert parse_bytes("8.4 GB") == 8_400_000_000

    def test_plain_bytes(self) -> None:
        assert parse_bytes("0 B") == 0
        assert parse_bytes("512") == 512

    def test_not_available(self) -> None:
        with pytest.raises(NotAvailableError):
            parse_bytes("N/A")

    def test_unknown_unit(self) -> None:
        with pytest.raises(ValueError):
            parse_bytes("12 parsecs")

    def test_garbage(self) -> None:
        with pytest.raises(ValueError):
            parse_bytes("lots")


class TestHumanizeBytes:
    def test_mib_renders_as_si(self) -> None:
        assert humanize_bytes(parse_bytes("80536 MiB")) == "84 GB"

    def test_small_values(self) -> None:
        assert humanize_bytes(0) == "0 B"
        assert humanize_bytes(9) == "9 B"

    def test_one_decimal_below_ten(self) -> None:
        assert humanize_bytes(8_400_000_000) == "8.4 GB"

    def test_rounds_up_into_next_unit(self) -> None:
        assert humanize_bytes(999_960) == "1.0 MB"

    @pytest.mark.parametrize("canonical", ["84 GB", "8.4 GB", "551 MB", "1.0 kB", "999 B", "0 B"])
    def test_canonical_form_is_stable(self, canonical: str) -> None:
        assert humanize_bytes(parse_bytes(canonical)) == canonical
