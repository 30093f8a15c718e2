"""Exception hierarchy shared by the decoder, normalizer and device monitor."""

from __future__ import annotations


class NvdiagError(Exception):
    """Base class for every error raised by nvdiag."""


class ConfigurationError(NvdiagError):
    """Invalid configuration value."""


# --- Absence: expected, never logged as an error ---


class NotAvailableError(NvdiagError):
    """A field carries the tool's "N/A" sentinel."""

    def __init__(self, field: str = "") -> None:
        self.field = field
        super().__init__(f"{field}: N/A" if field else "N/A")


class SMINotFoundError(NvdiagError):
    """The nvidia-smi binary is not on the search path."""


class NVMLNotFoundError(NvdiagError):
    """The NVML library is not installed or cannot be used on this host."""


# --- Format drift ---


class UnitFormatError(NvdiagError, ValueError):
    """A field exists but does not carry the expected unit suffix."""

    def __init__(self, field: str, value: str, expected: str) -> None:
        self.field = field
        self.value = value
        self.expected = expected
        super().__init__(f"invalid {field}: {value} (expected {expected})")


class DecodeError(NvdiagError):
    """Neither the full nor the header-only decode could be completed."""


# --- Device monitor ---


class NVMLCallError(NvdiagError):
    """A call into the vendor library returned a failure code."""


class NotInitializedError(NvdiagError):
    """The monitor has no live library handle (never initialized or shut down)."""

    def __init__(self, message: str = "nvml not initialized") -> None:
        super().__init__(message)


class AlreadyStartedError(NvdiagError):
    """Start was called on a monitor that is already running."""
