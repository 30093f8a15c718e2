"""Per-device NVML metric queries used by the monitor snapshot.

Each query takes the NVML binding (``pynvml`` or a stand-in with the same
surface), the device UUID and the device handle. A query the device does not
support yields a record with ``supported=False``; any other NVML failure is
raised as :class:`NVMLCallError`.

ref. https://docs.nvidia.com/deploy/nvml-api/group__nvmlDeviceQueries.html
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from typing import Any

import psutil

from nvdiag._encoding import Encodable
from nvdiag._errors import NVMLCallError
from nvdiag._units import humanize_bytes

logger = logging.getLogger("nvdiag.monitor.metrics")

# ref. https://docs.nvidia.com/deploy/nvml-api/group__nvmlClocksEventReasons.html
CLOCK_EVENT_REASONS: tuple[tuple[int, str], ...] = (
    (0x1, "gpu_idle"),
    (0x2, "applications_clocks_setting"),
    (0x4, "sw_power_cap"),
    (0x8, "hw_slowdown"),
    (0x10, "sync_boost"),
    (0x20, "sw_thermal_slowdown"),
    (0x40, "hw_thermal_slowdown"),
    (0x80, "hw_power_brake_slowdown"),
    (0x100, "display_clock_setting"),
)
_REASON_HW_SLOWDOWN = 0x8
_REASON_HW_THERMAL_SLOWDOWN = 0x40
_REASON_HW_POWER_BRAKE_SLOWDOWN = 0x80


class _Metric(Encodable):
    def to_dict(self) -> dict[str, Any]:
        return asdict(self)  # type: ignore[call-overload,no-any-return]


def _percent(part: float, whole: float) -> str:
    return f"{part / whole * 100:.2f}" if whole > 0 else "0.0"


def is_not_supported(lib: Any, exc: BaseException) -> bool:
    return isinstance(exc, lib.NVMLError) and getattr(exc, "value", None) == lib.NVML_ERROR_NOT_SUPPORTED


def _call(lib: Any, what: str, uuid: str, fn: Callable[..., Any], *args: Any) -> Any:
    try:
        return fn(*args)
    except lib.NVMLError as exc:
        if is_not_supported(lib, exc):
            raise
        raise NVMLCallError(f"failed to get device {what} ({uuid}): {exc}") from exc


@dataclass
class ClockEvents(_Metric):
    uuid: str
    supported: bool = True
    reasons_bitmask: int = 0
    reasons: list[str] = field(default_factory=list)
    hw_slowdown: bool = False
    hw_slowdown_thermal: bool = False
    hw_slowdown_power_brake: bool = False


def get_clock_events(lib: Any, uuid: str, handle: Any) -> ClockEvents:
    try:
        mask = _call(lib, "clock event reasons", uuid, lib.nvmlDeviceGetCurrentClocksEventReasons, handle)
    except lib.NVMLError:
        return ClockEvents(uuid=uuid, supported=False)
    return ClockEvents(
        uuid=uuid,
        reasons_bitmask=mask,
        reasons=[name for bit, name in CLOCK_EVENT_REASONS if mask & bit],
        hw_slowdown=bool(mask & _REASON_HW_SLOWDOWN),
        hw_slowdown_thermal=bool(mask & _REASON_HW_THERMAL_SLOWDOWN),
        hw_slowdown_power_brake=bool(mask & _REASON_HW_POWER_BRAKE_SLOWDOWN),
    )


@dataclass
class ClockSpeed(_Metric):
    uuid: str
    supported: bool = True
    graphics_mhz: int = 0
    memory_mhz: int = 0


def get_clock_speed(lib: Any, uuid: str, handle: Any) -> ClockSpeed:
    try:
        graphics = _call(lib, "graphics clock", uuid, lib.nvmlDeviceGetClockInfo, handle, lib.NVML_CLOCK_GRAPHICS)
        memory = _call(lib, "memory clock", uuid, lib.nvmlDeviceGetClockInfo, handle, lib.NVML_CLOCK_MEM)
    except lib.NVMLError:
        return ClockSpeed(uuid=uuid, supported=False)
    return ClockSpeed(uuid=uuid, graphics_mhz=graphics, memory_mhz=memory)


@dataclass
class Memory(_Metric):
    uuid: str
    supported: bool = True
    total_bytes: int = 0
    total_humanized: str = ""
    used_bytes: int = 0
    used_humanized: str = ""
    free_bytes: int = 0
    free_humanized: str = ""
    used_percent: str = "0.0"


def get_memory(lib: Any, uuid: str, handle: Any) -> Memory:
    try:
        info = _call(lib, "memory info", uuid, lib.nvmlDeviceGetMemoryInfo, handle)
    except lib.NVMLError:
        return Memory(uuid=uuid, supported=False)
    return Memory(
        uuid=uuid,
        total_bytes=info.total,
        total_humanized=humanize_bytes(info.total),
        used_bytes=info.used,
        used_humanized=humanize_bytes(info.used),
        free_bytes=info.free,
        free_humanized=humanize_bytes(info.free),
        used_percent=_percent(info.used, info.total),
    )


@dataclass
class NVLinkState(_Metric):
    link: int
    active: bool
    replay_errors: int = 0
    recovery_errors: int = 0
    crc_errors: int = 0


@dataclass
class NVLink(_Metric):
    uuid: str
    supported: bool = True
    states: list[NVLinkState] = field(default_factory=list)


def get_nvlink(lib: Any, uuid: str, handle: Any) -> NVLink:
    out = NVLink(uuid=uuid)
    for link in range(lib.NVML_NVLINK_MAX_LINKS):
        try:
            state = lib.nvmlDeviceGetNvLinkState(handle, link)
        except lib.NVMLError as exc:
            # devices with fewer links reject the first index past their count
            if not is_not_supported(lib, exc) and exc.value != lib.NVML_ERROR_INVALID_ARGUMENT:
                raise NVMLCallError(f"failed to get device nvlink state ({uuid}): {exc}") from exc
            out.supported = bool(out.states)
            break
        st = NVLinkState(link=link, active=state == lib.NVML_FEATURE_ENABLED)
        if st.active:
            st.replay_errors = _nvlink_counter(lib, uuid, handle, link, lib.NVML_NVLINK_ERROR_DL_REPLAY)
            st.recovery_errors = _nvlink_counter(lib, uuid, handle, link, lib.NVML_NVLINK_ERROR_DL_RECOVERY)
            st.crc_errors = _nvlink_counter(lib, uuid, handle, link, lib.NVML_NVLINK_ERROR_DL_CRC_FLIT)
        out.states.append(st)
    return out


def _nvlink_counter(lib: Any, uuid: str, handle: Any, link: int, counter: int) -> int:
    try:
        return int(_call(lib, "nvlink error counter", uuid, lib.nvmlDeviceGetNvLinkErrorCounter, handle, link, counter))
    except lib.NVMLError:
        return 0


@dataclass
class Power(_Metric):
    uuid: str
    supported: bool = True
    usage_milliwatts: int = 0
    enforced_limit_milliwatts: int = 0
    used_percent: str = "0.0"


def get_power(lib: Any, uuid: str, handle: Any) -> Power:
    try:
        usage = _call(lib, "power usage", uuid, lib.nvmlDeviceGetPowerUsage, handle)
        limit = _call(lib, "power limit", uuid, lib.nvmlDeviceGetEnforcedPowerLimit, handle)
    except lib.NVMLError:
        return Power(uuid=uuid, supported=False)
    return Power(
        uuid=uuid,
        usage_milliwatts=usage,
        enforced_limit_milliwatts=limit,
        used_percent=_percent(usage, limit),
    )


@dataclass
class Temperature(_Metric):
    uuid: str
    supported: bool = True
    current_celsius_gpu_core: int = 0
    # zero when the device does not report the threshold
    threshold_celsius_shutdown: int = 0
    threshold_celsius_slowdown: int = 0
    threshold_celsius_gpu_max: int = 0
    used_percent_shutdown: str = "0.0"
    used_percent_slowdown: str = "0.0"
    used_percent_gpu_max: str = "0.0"


def get_temperature(lib: Any, uuid: str, handle: Any) -> Temperature:
    try:
        current = _call(lib, "temperature", uuid, lib.nvmlDeviceGetTemperature, handle, lib.NVML_TEMPERATURE_GPU)
    except lib.NVMLError:
        return Temperature(uuid=uuid, supported=False)

    shutdown = _threshold(lib, uuid, handle, lib.NVML_TEMPERATURE_THRESHOLD_SHUTDOWN)
    slowdown = _threshold(lib, uuid, handle, lib.NVML_TEMPERATURE_THRESHOLD_SLOWDOWN)
    gpu_max = _threshold(lib, uuid, handle, lib.NVML_TEMPERATURE_THRESHOLD_GPU_MAX)
    return Temperature(
        uuid=uuid,
        current_celsius_gpu_core=current,
        threshold_celsius_shutdown=shutdown,
        threshold_celsius_slowdown=slowdown,
        threshold_celsius_gpu_max=gpu_max,
        used_percent_shutdown=_percent(current, shutdown),
        used_percent_slowdown=_percent(current, slowdown),
        used_percent_gpu_max=_percent(current, gpu_max),
    )


def _threshold(lib: Any, uuid: str, handle: Any, kind: int) -> int:
    try:
        return int(_call(lib, "temperature threshold", uuid, lib.nvmlDeviceGetTemperatureThreshold, handle, kind))
    except lib.NVMLError:
        return 0


@dataclass
class Utilization(_Metric):
    uuid: str
    supported: bool = True
    gpu_used_percent: int = 0
    memory_used_percent: int = 0


def get_utilization(lib: Any, uuid: str, handle: Any) -> Utilization:
    try:
        rates = _call(lib, "utilization", uuid, lib.nvmlDeviceGetUtilizationRates, handle)
    except lib.NVMLError:
        return Utilization(uuid=uuid, supported=False)
    return Utilization(uuid=uuid, gpu_used_percent=rates.gpu, memory_used_percent=rates.memory)


@dataclass
class Process(_Metric):
    pid: int
    status: str = ""
    cmd_args: list[str] = field(default_factory=list)
    create_time: float = 0.0
    gpu_used_percent: int = 0
    gpu_used_memory_bytes: int = 0
    gpu_used_memory_bytes_humanized: str = ""


@dataclass
class Processes(_Metric):
    uuid: str
    supported: bool = True
    running_processes: list[Process] = field(default_factory=list)


def get_processes(lib: Any, uuid: str, handle: Any) -> Processes:
    """List compute processes on the device, enriched with host process info.

    Processes that exit between the NVML call and the host lookup are skipped.
    """
    try:
        running = _call(lib, "compute processes", uuid, lib.nvmlDeviceGetComputeRunningProcesses, handle)
    except lib.NVMLError:
        return Processes(uuid=uuid, supported=False)

    mem_util = _process_mem_util(lib, uuid, handle)

    out = Processes(uuid=uuid)
    for proc in running:
        try:
            p = psutil.Process(proc.pid)
            with p.oneshot():
                cmd_args = p.cmdline()
                status = p.status()
                create_time = p.create_time()
        except psutil.NoSuchProcess:
            logger.debug("process %d not running -- skipping", proc.pid)
            continue
        except psutil.Error as exc:
            raise NVMLCallError(f"failed to get process {proc.pid}: {exc}") from exc

        used = proc.usedGpuMemory or 0
        out.running_processes.append(
            Process(
                pid=proc.pid,
                status=status,
                cmd_args=cmd_args,
                create_time=create_time,
                gpu_used_percent=mem_util.get(proc.pid, 0),
                gpu_used_memory_bytes=used,
                gpu_used_memory_bytes_humanized=humanize_bytes(used),
            )
        )
    return out


def _process_mem_util(lib: Any, uuid: str, handle: Any) -> dict[int, int]:
    """Latest memory utilization sample per pid; empty when NVML has none."""
    try:
        samples = lib.nvmlDeviceGetProcessUtilization(handle, 0)
    except lib.NVMLError as exc:
        if is_not_supported(lib, exc) or exc.value == lib.NVML_ERROR_NOT_FOUND:
            return {}
        raise NVMLCallError(f"failed to get process utilization ({uuid}): {exc}") from exc

    latest: dict[int, tuple[int, int]] = {}
    for s in samples:
        seen = latest.get(s.pid)
        if seen is None or s.timeStamp > seen[0]:
            latest[s.pid] = (s.timeStamp, s.memUtil)
    return {pid: util for pid, (_, util) in latest.items()}


@dataclass
class ECCErrorCounts(_Metric):
    uuid: str
    supported: bool = True
    ecc_mode_enabled: bool = False
    volatile_corrected: int = 0
    volatile_uncorrected: int = 0
    aggregate_corrected: int = 0
    aggregate_uncorrected: int = 0


def get_ecc_errors(lib: Any, uuid: str, handle: Any) -> ECCErrorCounts:
    try:
        current, _pending = _call(lib, "ecc mode", uuid, lib.nvmlDeviceGetEccMode, handle)
    except lib.NVMLError:
        return ECCErrorCounts(uuid=uuid, supported=False)

    out = ECCErrorCounts(uuid=uuid, ecc_mode_enabled=current == lib.NVML_FEATURE_ENABLED)
    if not out.ecc_mode_enabled:
        return out

    def total(error_type: int, counter_type: int) -> int:
        return int(
            _call(lib, "ecc errors", uuid, lib.nvmlDeviceGetTotalEccErrors, handle, error_type, counter_type)
        )

    try:
        out.volatile_corrected = total(lib.NVML_MEMORY_ERROR_TYPE_CORRECTED, lib.NVML_VOLATILE_ECC)
        out.volatile_uncorrected = total(lib.NVML_MEMORY_ERROR_TYPE_UNCORRECTED, lib.NVML_VOLATILE_ECC)
        out.aggregate_corrected = total(lib.NVML_MEMORY_ERROR_TYPE_CORRECTED, lib.NVML_AGGREGATE_ECC)
        out.aggregate_uncorrected = total(lib.NVML_MEMORY_ERROR_TYPE_UNCORRECTED, lib.NVML_AGGREGATE_ECC)
    except lib.NVMLError:
        out.supported = False
    return out
