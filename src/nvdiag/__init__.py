"""nvdiag: GPU health telemetry from nvidia-smi and NVML."""

from __future__ import annotations

from nvdiag._anomaly import (
    find_addressing_mode_err,
    find_device_errs,
    find_document_errs,
    find_document_hw_slowdown_errs,
    find_hw_slowdown_errs,
    find_summary_errs,
    find_volatile_uncorrectable_errs,
)
from nvdiag._config import NvdiagConfig
from nvdiag._errors import (
    AlreadyStartedError,
    ConfigurationError,
    DecodeError,
    NotAvailableError,
    NotInitializedError,
    NvdiagError,
    NVMLCallError,
    NVMLNotFoundError,
    SMINotFoundError,
    UnitFormatError,
)
from nvdiag._monitor import (
    DeviceInfo,
    DeviceMonitor,
    FaultEvent,
    FaultEventStream,
    MonitorSnapshot,
    MonitorState,
    create_device_monitor,
)
from nvdiag._normalize import (
    NormalizedReadings,
    ParsedMemoryUsage,
    ParsedPowerReading,
    ParsedTemperature,
    normalize_document,
    parse_memory,
    parse_power,
    parse_temperature,
)
from nvdiag._smi import get_smi_output, run_smi, smi_exists
from nvdiag._smi_decode import decode_smi_query, rewrite_lines
from nvdiag._smi_types import (
    ClockEventReasons,
    DeviceRecord,
    Document,
    ECCErrorAggregate,
    ECCErrors,
    ECCErrorSRAMSources,
    ECCErrorVolatile,
    FBMemoryUsage,
    PowerReadings,
    ProcessInfo,
    ResetStatus,
    TemperatureReadings,
)
from nvdiag._units import (
    humanize_bytes,
    is_not_available,
    parse_bytes,
    parse_celsius,
    parse_suffixed_scalar,
    parse_watts,
)
from nvdiag._xid import XidDetail, get_xid_detail

__version__ = "0.1.0"

__all__ = [
    "AlreadyStartedError",
    "ClockEventReasons",
    "ConfigurationError",
    "DecodeError",
    "DeviceInfo",
    "DeviceMonitor",
    "DeviceRecord",
    "Document",
    "ECCErrorAggregate",
    "ECCErrorSRAMSources",
    "ECCErrorVolatile",
    "ECCErrors",
    "FBMemoryUsage",
    "FaultEvent",
    "FaultEventStream",
    "MonitorSnapshot",
    "MonitorState",
    "NVMLCallError",
    "NVMLNotFoundError",
    "NormalizedReadings",
    "NotAvailableError",
    "NotInitializedError",
    "NvdiagConfig",
    "NvdiagError",
    "ParsedMemoryUsage",
    "ParsedPowerReading",
    "ParsedTemperature",
    "PowerReadings",
    "ProcessInfo",
    "ResetStatus",
    "SMINotFoundError",
    "TemperatureReadings",
    "UnitFormatError",
    "XidDetail",
    "__version__",
    "create_device_monitor",
    "decode_smi_query",
    "find_addressing_mode_err",
    "find_device_errs",
    "find_document_errs",
    "find_document_hw_slowdown_errs",
    "find_hw_slowdown_errs",
    "find_summary_errs",
    "find_volatile_uncorrectable_errs",
    "get_smi_output",
    "get_xid_detail",
    "humanize_bytes",
    "is_not_available",
    "normalize_document",
    "parse_bytes",
    "parse_celsius",
    "parse_memory",
    "parse_power",
    "parse_suffixed_scalar",
    "parse_temperature",
    "parse_watts",
    "rewrite_lines",
    "run_smi",
    "scan_document",
    "smi_exists",
]


def scan_document(doc: Document) -> list[str] | None:
    """Run every anomaly scan over a decoded document.

    Usage::

        doc = nvdiag.get_smi_output()
        if (errs := nvdiag.scan_document(doc)) is not None:
            for e in errs:
                print(e)
    """
    errs: list[str] = []
    errs.extend(find_document_errs(doc) or ())
    errs.extend(find_document_hw_slowdown_errs(doc) or ())
    for gpu in doc.gpus:
        if gpu.ecc_errors is not None:
            errs.extend(find_volatile_uncorrectable_errs(gpu.ecc_errors) or ())
    return errs or None
