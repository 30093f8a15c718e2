"""Unit-suffixed scalar parsing ("75 C", "42.31 W", "80536 MiB", "N/A")."""

from __future__ import annotations

import re

from nvdiag._errors import NotAvailableError, UnitFormatError

NOT_AVAILABLE = "N/A"

SUFFIX_CELSIUS = " C"
SUFFIX_WATTS = " W"

# Lower-cased unit -> multiplier. SI symbols are decimal, IEC symbols binary.
_BYTE_UNITS: dict[str, int] = {
    "": 1,
    "b": 1,
    "byte": 1,
    "bytes": 1,
    "k": 1000,
    "kb": 1000,
    "ki": 1024,
    "kib": 1024,
    "m": 1000**2,
    "mb": 1000**2,
    "mi": 1024**2,
    "mib": 1024**2,
    "g": 1000**3,
    "gb": 1000**3,
    "gi": 1024**3,
    "gib": 1024**3,
    "t": 1000**4,
    "tb": 1000**4,
    "ti": 1024**4,
    "tib": 1024**4,
    "p": 1000**5,
    "pb": 1000**5,
    "pi": 1024**5,
    "pib": 1024**5,
    "e": 1000**6,
    "eb": 1000**6,
    "ei": 1024**6,
    "eib": 1024**6,
}

_SI_SIZES = ("B", "kB", "MB", "GB", "TB", "PB", "EB")

_BYTES_RE = re.compile(r"^\s*([0-9][0-9,]*(?:\.[0-9]*)?|\.[0-9]+)\s*([A-Za-z]*)\s*$")

# plain decimal only: no "nan", "inf", underscores or surrounding spaces
_SCALAR_RE = re.compile(r"^[+-]?(?:[0-9]+(?:\.[0-9]*)?|\.[0-9]+)(?:[eE][+-]?[0-9]+)?$")


def is_not_available(value: str | None) -> bool:
    return value == NOT_AVAILABLE


def parse_suffixed_scalar(value: str, suffix: str, field: str = "value") -> float:
    """Parse ``"<number><suffix>"`` into a float.

    Raises :class:`NotAvailableError` for the ``"N/A"`` sentinel and
    :class:`UnitFormatError` when the suffix does not match. A remainder that
    is not a plain decimal number raises ``ValueError``.
    """
    if value == NOT_AVAILABLE:
        raise NotAvailableError(field)
    if not value.endswith(suffix):
        raise UnitFormatError(field, value, _describe_suffix(suffix))
    number = value[: -len(suffix)] if suffix else value
    if not _SCALAR_RE.fullmatch(number):
        raise ValueError(f"invalid number for {field}: {number!r}")
    return float(number)


def parse_celsius(value: str, field: str) -> float:
    return parse_suffixed_scalar(value, SUFFIX_CELSIUS, field)


def parse_watts(value: str, field: str) -> float:
    return parse_suffixed_scalar(value, SUFFIX_WATTS, field)


def parse_bytes(value: str) -> int:
    """Parse a human-readable byte size such as ``"80536 MiB"`` or ``"84 GB"``.

    Raises :class:`NotAvailableError` for ``"N/A"`` and ``ValueError`` for
    anything else that is not ``<number> <unit>``.
    """
    if value == NOT_AVAILABLE:
        raise NotAvailableError("bytes")
    m = _BYTES_RE.match(value)
    if m is None:
        raise ValueError(f"invalid byte size: {value!r}")
    number, unit = m.group(1).replace(",", ""), m.group(2).lower()
    multiplier = _BYTE_UNITS.get(unit)
    if multiplier is None:
        raise ValueError(f"unhandled size name: {m.group(2)!r}")
    return int(round(float(number) * multiplier))


def humanize_bytes(n: int) -> str:
    """Render a byte count in canonical SI form, e.g. ``84448608256 -> "84 GB"``.

    Values below ten keep one decimal place (``"8.4 GB"``), so
    ``humanize_bytes(parse_bytes(s)) == s`` for any string this function emits.
    """
    if n < 10:
        return f"{n} B"
    exp = 0
    while exp < len(_SI_SIZES) - 1 and n >= 1000 ** (exp + 1):
        exp += 1
    val = int(n / 1000**exp * 10 + 0.5) / 10
    if val >= 1000 and exp < len(_SI_SIZES) - 1:
        exp += 1
        val = int(n / 1000**exp * 10 + 0.5) / 10
    if val >= 10:
        return f"{val:.0f} {_SI_SIZES[exp]}"
    return f"{val:.1f} {_SI_SIZES[exp]}"


def _describe_suffix(suffix: str) -> str:
    if suffix == SUFFIX_CELSIUS:
        return "celsius"
    if suffix == SUFFIX_WATTS:
        return "watts"
    return f"suffix {suffix.strip()!r}"
