"""Typed document produced from ``nvidia-smi --query`` output.

Field values stay as the tool prints them ("75 C", "N/A", "Not Active");
numeric interpretation happens in :mod:`nvdiag._normalize`. Each field carries
the tool's own label in its metadata, which is used both to read the decoded
mapping and to render ``to_dict()``.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from typing import Any

from nvdiag._encoding import Encodable
from nvdiag._errors import DecodeError


def _label(key: str, default: Any = "", *, record: type | None = None, assigned: bool = False) -> Any:
    return field(default=default, metadata={"key": key, "record": record, "assigned": assigned})


def _text(key: str, raw: Any) -> str:
    if raw is None:
        return ""
    if isinstance(raw, str):
        return raw
    raise DecodeError(f"{key!r}: expected a scalar value, got {type(raw).__name__}")


class _Record(Encodable):
    """Generic label-driven decode/encode for the dataclasses below."""

    @classmethod
    def from_mapping(cls, m: Mapping[str, Any]) -> Any:
        kwargs: dict[str, Any] = {}
        for f in fields(cls):  # type: ignore[arg-type]
            key = f.metadata.get("key")
            if key is None or f.metadata.get("assigned"):
                continue
            raw = m.get(key)
            record = f.metadata.get("record")
            if record is None:
                kwargs[f.name] = _text(key, raw)
            elif raw is None:
                kwargs[f.name] = None
            elif isinstance(raw, Mapping):
                kwargs[f.name] = record.from_mapping(raw)
            else:
                raise DecodeError(f"{key!r}: expected a nested block, got {type(raw).__name__}")
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for f in fields(self):  # type: ignore[arg-type]
            key = f.metadata.get("key")
            if key is None:
                continue
            value = getattr(self, f.name)
            if isinstance(value, _Record):
                out[key] = value.to_dict()
            elif isinstance(value, list):
                out[key] = [v.to_dict() for v in value]
            elif value is None:
                continue
            else:
                out[key] = value
        return out


@dataclass
class ResetStatus(_Record):
    reset_required: str = _label("Reset Required")
    drain_and_reset_recommended: str = _label("Drain and Reset Recommended")


@dataclass
class ClockEventReasons(_Record):
    sw_power_cap: str = _label("SW Power Cap")
    sw_thermal_slowdown: str = _label("SW Thermal Slowdown")
    hw_slowdown: str = _label("HW Slowdown")
    hw_thermal_slowdown: str = _label("HW Thermal Slowdown")
    hw_power_brake_slowdown: str = _label("HW Power Brake Slowdown")


@dataclass
class ECCErrorAggregate(_Record):
    dram_correctable: str = _label("DRAM Correctable")
    dram_uncorrectable: str = _label("DRAM Uncorrectable")
    sram_correctable: str = _label("SRAM Correctable")
    sram_threshold_exceeded: str = _label("SRAM Threshold Exceeded")
    sram_uncorrectable: str = _label("SRAM Uncorrectable")
    # newer drivers split SRAM uncorrectable into parity / SEC-DED
    sram_uncorrectable_parity: str = _label("SRAM Uncorrectable Parity")
    sram_uncorrectable_secded: str = _label("SRAM Uncorrectable SEC-DED")


@dataclass
class ECCErrorSRAMSources(_Record):
    sram_l2: str = _label("SRAM L2")
    sram_microcontroller: str = _label("SRAM Microcontroller")
    sram_other: str = _label("SRAM Other")
    sram_pcie: str = _label("SRAM PCIE")
    sram_sm: str = _label("SRAM SM")


@dataclass
class ECCErrorVolatile(_Record):
    dram_correctable: str = _label("DRAM Correctable")
    dram_uncorrectable: str = _label("DRAM Uncorrectable")
    sram_correctable: str = _label("SRAM Correctable")
    sram_uncorrectable: str = _label("SRAM Uncorrectable")
    sram_uncorrectable_parity: str = _label("SRAM Uncorrectable Parity")
    sram_uncorrectable_secded: str = _label("SRAM Uncorrectable SEC-DED")


@dataclass
class ECCErrors(_Record):
    id: str = _label("id", assigned=True)
    aggregate: ECCErrorAggregate | None = _label("Aggregate", None, record=ECCErrorAggregate)
    aggregate_uncorrectable_sram_sources: ECCErrorSRAMSources | None = _label(
        "Aggregate Uncorrectable SRAM Sources", None, record=ECCErrorSRAMSources
    )
    volatile: ECCErrorVolatile | None = _label("Volatile", None, record=ECCErrorVolatile)


@dataclass
class TemperatureReadings(_Record):
    """Temperature block. Any field reading "Unknown Error" indicates a GPU issue."""

    id: str = _label("id", assigned=True)
    current: str = _label("GPU Current Temp")
    limit: str = _label("GPU T.Limit Temp")
    # older drivers (e.g. 535.129.03) report shutdown/slowdown without T.Limit
    shutdown: str = _label("GPU Shutdown Temp")
    shutdown_limit: str = _label("GPU Shutdown T.Limit Temp")
    slowdown: str = _label("GPU Slowdown Temp")
    slowdown_limit: str = _label("GPU Slowdown T.Limit Temp")
    max_operating_limit: str = _label("GPU Max Operating T.Limit Temp")
    # often N/A, not reliable to monitor
    target: str = _label("GPU Target Temperature")
    memory_current: str = _label("Memory Current Temp")
    memory_max_operating_limit: str = _label("Memory Max Operating T.Limit Temp")


@dataclass
class PowerReadings(_Record):
    id: str = _label("id", assigned=True)
    power_draw: str = _label("Power Draw")
    current_power_limit: str = _label("Current Power Limit")
    requested_power_limit: str = _label("Requested Power Limit")
    default_power_limit: str = _label("Default Power Limit")
    min_power_limit: str = _label("Min Power Limit")
    max_power_limit: str = _label("Max Power Limit")


@dataclass
class ProcessInfo(_Record):
    gpu_instance_id: str = _label("GPU instance ID")
    compute_instance_id: str = _label("Compute instance ID")
    process_id: int = field(default=0, metadata={"key": "Process ID", "assigned": True})
    process_type: str = _label("Process Type")
    process_name: str = _label("Process Name")
    process_used_gpu_memory: str = _label("Process Used GPU Memory")

    @classmethod
    def from_mapping(cls, m: Mapping[str, Any]) -> ProcessInfo:
        proc: ProcessInfo = super().from_mapping(m)
        pid_raw = m.get("Process ID")
        if pid_raw is not None:
            try:
                proc.process_id = int(_text("Process ID", pid_raw))
            except ValueError as exc:
                raise DecodeError(f"'Process ID': {exc}") from exc
        return proc

    @classmethod
    def list_from_block(cls, block: Mapping[str, Any]) -> list[ProcessInfo]:
        """Split a flattened ``Processes`` block into one record per process.

        A new process starts whenever a key repeats, so the duplicated
        per-process keys the tool prints are preserved in emission order.
        """
        pairs = getattr(block, "pairs", None) or list(block.items())
        groups: list[dict[str, Any]] = []
        current: dict[str, Any] = {}
        for key, value in pairs:
            if key in current:
                groups.append(current)
                current = {}
            current[key] = value
        if current:
            groups.append(current)
        return [cls.from_mapping(g) for g in groups]


@dataclass
class FBMemoryUsage(_Record):
    id: str = _label("id", assigned=True)
    total: str = _label("Total")
    reserved: str = _label("Reserved")
    used: str = _label("Used")
    free: str = _label("Free")


@dataclass
class DeviceRecord(_Record):
    """One GPU block of the query output."""

    # the original block header, e.g. "GPU 00000000:53:00.0"
    id: str = _label("ID")

    product_name: str = _label("Product Name")
    product_brand: str = _label("Product Brand")
    product_architecture: str = _label("Product Architecture")

    persistence_mode: str = _label("Persistence Mode")
    addressing_mode: str = _label("Addressing Mode")

    reset_status: ResetStatus | None = _label("GPU Reset Status", None, record=ResetStatus)
    clock_event_reasons: ClockEventReasons | None = _label(
        "Clocks Event Reasons", None, record=ClockEventReasons
    )
    ecc_errors: ECCErrors | None = _label("ECC Errors", None, record=ECCErrors)
    temperature: TemperatureReadings | None = _label("Temperature", None, record=TemperatureReadings)
    power_readings: PowerReadings | None = _label("GPU Power Readings", None, record=PowerReadings)
    processes: list[ProcessInfo] | None = field(default=None, metadata={"key": "Processes", "assigned": True})
    fb_memory_usage: FBMemoryUsage | None = _label("FB Memory Usage", None, record=FBMemoryUsage)

    fan_speed: str = _label("Fan Speed")

    @classmethod
    def from_mapping(cls, m: Mapping[str, Any]) -> DeviceRecord:
        dev: DeviceRecord = super().from_mapping(m)
        procs = m.get("Processes")
        if procs is None:
            dev.processes = [] if "Processes" in m else None
        elif isinstance(procs, Mapping):
            dev.processes = ProcessInfo.list_from_block(procs)
        else:
            raise DecodeError(f"'Processes': expected a nested block, got {type(procs).__name__}")
        return dev

    def propagate_id(self) -> None:
        """Copy the device identifier into every sub-record that reports it."""
        for sub in (self.ecc_errors, self.temperature, self.power_readings, self.fb_memory_usage):
            if sub is not None:
                sub.id = self.id


@dataclass
class Document(Encodable):
    """Decoded result of one ``nvidia-smi --query`` invocation.

    ``decode_error`` is set when only the header could be salvaged; callers
    should treat that as partial success.
    """

    timestamp: str = ""
    driver_version: str = ""
    cuda_version: str = ""
    attached_gpus: int = 0
    gpus: list[DeviceRecord] = field(default_factory=list)

    # raw "nvidia-smi --query" output, useful for debugging
    raw: str = ""
    # plain "nvidia-smi" output, scanned for errors in case the query format drifts
    summary: str = ""
    # set only when the plain invocation itself failed
    summary_failure: str | None = None

    decode_error: Exception | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "timestamp": self.timestamp,
            "driver_version": self.driver_version,
            "cuda_version": self.cuda_version,
            "attached_gpus": self.attached_gpus,
        }
        if self.gpus:
            out["gpus"] = [g.to_dict() for g in self.gpus]
        if self.raw:
            out["raw"] = self.raw
        if self.summary:
            out["summary"] = self.summary
        if self.summary_failure is not None:
            out["summary_failure"] = self.summary_failure
        return out
