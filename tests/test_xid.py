"""Tests for _xid module."""

from __future__ import annotations

from nvdiag._xid import get_xid_detail


def test_known_xid() -> None:
    detail = get_xid_detail(79)
    assert detail is not None
    assert detail.xid == 79
    assert detail.name == "GPU has fallen off the bus"
    assert detail.critical is True


def test_application_fault_is_not_critical() -> None:
    detail = get_xid_detail(13)
    assert detail is not None
    assert detail.critical is False


def test_double_bit_ecc_is_critical() -> None:
    detail = get_xid_detail(48)
    assert detail is not None
    assert detail.critical is True


def test_unknown_xid() -> None:
    assert get_xid_detail(0) is None
    assert get_xid_detail(12345) is None


def test_catalog_covers_common_codes() -> None:
    for xid in (13, 31, 32, 38, 43, 45, 48, 56, 57, 61, 62, 63, 64, 68, 69, 74, 79, 92, 94, 95, 119, 120):
        assert get_xid_detail(xid) is not None, xid


def test_to_dict() -> None:
    detail = get_xid_detail(31)
    assert detail is not None
    assert set(detail.to_dict()) == {"xid", "name", "description", "critical", "suggested_action"}
