"""Hardware anomaly scans over a decoded query document.

Every scan returns None, not an empty list, when nothing is found so callers
can use presence as the health signal directly.
"""

from __future__ import annotations

from nvdiag._smi_types import DeviceRecord, Document, ECCErrors

UNKNOWN_ERROR = "Unknown Error"
SUMMARY_ERROR_MARKER = "ERR!"

CLOCK_EVENTS_ACTIVE = "Active"
CLOCK_EVENTS_NOT_ACTIVE = "Not Active"

# (attribute, reported name)
_TEMPERATURE_FIELDS = (
    ("current", "Current"),
    ("limit", "Limit"),
    ("shutdown_limit", "ShutdownLimit"),
    ("slowdown_limit", "SlowdownLimit"),
    ("max_operating_limit", "MaxOperatingLimit"),
    ("target", "Target"),
    ("memory_current", "MemoryCurrent"),
    ("memory_max_operating_limit", "MemoryMaxOperatingLimit"),
)

_VOLATILE_FIELDS = (
    ("dram_uncorrectable", "DRAMUncorrectable"),
    ("sram_uncorrectable", "SRAMUncorrectable"),
    ("sram_uncorrectable_parity", "SRAMUncorrectableParity"),
    ("sram_uncorrectable_secded", "SRAMUncorrectableSECDED"),
)


def _or_none(errs: list[str]) -> list[str] | None:
    return errs or None


def find_addressing_mode_err(gpu: DeviceRecord) -> str | None:
    """Report an "Unknown Error" addressing mode.

    This usually accompanies Xid 31 (GPU memory page fault), where CUDA
    applications crash with "CUDA unknown error".
    """
    if UNKNOWN_ERROR in gpu.addressing_mode:
        return f"{gpu.id}: AddressingMode {gpu.addressing_mode}"
    return None


def find_device_errs(gpu: DeviceRecord) -> list[str] | None:
    """Report fields that read "Unknown Error".

    ref. https://forums.developer.nvidia.com/t/nvidia-smi-q-shows-several-unknown-error-gpu-ignored-by-pytorch/263881
    """
    errs: list[str] = []
    if gpu.temperature is not None:
        for attr, name in _TEMPERATURE_FIELDS:
            if UNKNOWN_ERROR in getattr(gpu.temperature, attr):
                errs.append(f"{gpu.id}: Temperature.{name} Unknown Error")
    addressing = find_addressing_mode_err(gpu)
    if addressing is not None:
        errs.append(addressing)
    if UNKNOWN_ERROR in gpu.fan_speed:
        errs.append(f"{gpu.id}: FanSpeed Unknown Error")
    return _or_none(errs)


def find_hw_slowdown_errs(gpu: DeviceRecord) -> list[str] | None:
    """Report active thermal / power-brake slowdown, only while HW Slowdown is active."""
    reasons = gpu.clock_event_reasons
    if reasons is None or reasons.hw_slowdown != CLOCK_EVENTS_ACTIVE:
        return None
    errs: list[str] = []
    if reasons.hw_thermal_slowdown == CLOCK_EVENTS_ACTIVE:
        errs.append(f"{gpu.id}: ClockEventReasons.HWSlowdown.ThermalSlowdown {CLOCK_EVENTS_ACTIVE}")
    if reasons.hw_power_brake_slowdown == CLOCK_EVENTS_ACTIVE:
        errs.append(f"{gpu.id}: ClockEventReasons.HWSlowdown.PowerBrakeSlowdown {CLOCK_EVENTS_ACTIVE}")
    return _or_none(errs)


def find_volatile_uncorrectable_errs(ecc: ECCErrors) -> list[str] | None:
    """Report non-zero volatile uncorrectable ECC counters."""
    if ecc.volatile is None:
        return None
    errs: list[str] = []
    for attr, name in _VOLATILE_FIELDS:
        count = getattr(ecc.volatile, attr)
        if count and count != "0":
            errs.append(f"GPU {ecc.id}: Volatile {name}: {count}")
    return _or_none(errs)


def find_summary_errs(summary: str) -> list[str] | None:
    """Report every plain-output line with "ERR!", together with the line above it.

    ref. https://forums.developer.nvidia.com/t/nvidia-smi-q-shows-several-unknown-error-gpu-ignored-by-pytorch/263881/2
    """
    errs: list[str] = []
    lines = summary.split("\n")
    for i, line in enumerate(lines):
        if SUMMARY_ERROR_MARKER not in line:
            continue
        errs.append(f"{lines[i - 1]}\n{line}" if i > 0 else line)
    return _or_none(errs)


def find_document_errs(doc: Document) -> list[str] | None:
    """Combine per-device errors, summary errors and the device count check."""
    errs: list[str] = []
    for gpu in doc.gpus:
        errs.extend(find_device_errs(gpu) or ())

    if doc.summary_failure is not None:
        errs.append(doc.summary_failure)
    else:
        errs.extend(find_summary_errs(doc.summary) or ())

    if doc.attached_gpus != len(doc.gpus):
        errs.append(f"AttachedGPUs {doc.attached_gpus} != GPUs {len(doc.gpus)}")
    return _or_none(errs)


def find_document_hw_slowdown_errs(doc: Document) -> list[str] | None:
    errs: list[str] = []
    for gpu in doc.gpus:
        errs.extend(find_hw_slowdown_errs(gpu) or ())
    return _or_none(errs)
