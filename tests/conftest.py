"""Shared fixtures: an in-memory stand-in for the pynvml module."""

from __future__ import annotations

import threading
import time
from collections import deque
from types import SimpleNamespace
from typing import Any

import pytest

NVML_ERROR_INVALID_ARGUMENT = 2
NVML_ERROR_NOT_SUPPORTED = 3
NVML_ERROR_NOT_FOUND = 6
NVML_ERROR_TIMEOUT = 10
NVML_ERROR_UNKNOWN = 999


class FakeNVMLError(Exception):
    def __init__(self, value: int) -> None:
        self.value = value
        super().__init__(f"NVML error {value}")


class FakeNVML:
    """Module-like object exposing the subset of pynvml the monitor calls.

    ``fail`` maps a function name to the NVML error code it should raise.
    ``wait_script`` feeds ``nvmlEventSetWait``: each item is returned (event
    data) or raised (exception); an empty script behaves like a timeout.
    """

    NVMLError = FakeNVMLError

    NVML_ERROR_INVALID_ARGUMENT = NVML_ERROR_INVALID_ARGUMENT
    NVML_ERROR_NOT_SUPPORTED = NVML_ERROR_NOT_SUPPORTED
    NVML_ERROR_NOT_FOUND = NVML_ERROR_NOT_FOUND
    NVML_ERROR_TIMEOUT = NVML_ERROR_TIMEOUT

    NVML_FEATURE_ENABLED = 1

    NVML_CLOCK_GRAPHICS = 0
    NVML_CLOCK_MEM = 2

    NVML_TEMPERATURE_GPU = 0
    NVML_TEMPERATURE_THRESHOLD_SHUTDOWN = 0
    NVML_TEMPERATURE_THRESHOLD_SLOWDOWN = 1
    NVML_TEMPERATURE_THRESHOLD_GPU_MAX = 3

    NVML_MEMORY_ERROR_TYPE_CORRECTED = 0
    NVML_MEMORY_ERROR_TYPE_UNCORRECTED = 1
    NVML_VOLATILE_ECC = 0
    NVML_AGGREGATE_ECC = 1

    NVML_NVLINK_MAX_LINKS = 18
    NVML_NVLINK_ERROR_DL_REPLAY = 0
    NVML_NVLINK_ERROR_DL_RECOVERY = 1
    NVML_NVLINK_ERROR_DL_CRC_FLIT = 2

    nvmlEventTypeSingleBitEccError = 0x1
    nvmlEventTypeDoubleBitEccError = 0x2
    nvmlEventTypeXidCriticalError = 0x8

    def __init__(self, uuids: list[str] | None = None) -> None:
        self.uuids = uuids if uuids is not None else ["GPU-0000"]
        self.fail: dict[str, int] = {}
        self.wait_script: deque[Any] = deque()
        self.registered: dict[int, int] = {}
        self.init_calls = 0
        self.shutdown_calls = 0
        self.freed_event_sets = 0
        self.nvlink_links = 0
        self.compute_processes: list[Any] = []
        self._lock = threading.Lock()

    def _check(self, name: str) -> None:
        code = self.fail.get(name)
        if code is not None:
            raise FakeNVMLError(code)

    # --- library lifecycle ---

    def nvmlInit(self) -> None:
        self._check("nvmlInit")
        self.init_calls += 1

    def nvmlShutdown(self) -> None:
        self._check("nvmlShutdown")
        self.shutdown_calls += 1

    def nvmlSystemGetDriverVersion(self) -> str:
        self._check("nvmlSystemGetDriverVersion")
        return "535.161.08"

    # --- events ---

    def nvmlEventSetCreate(self) -> object:
        self._check("nvmlEventSetCreate")
        return object()

    def nvmlEventSetFree(self, event_set: object) -> None:
        self._check("nvmlEventSetFree")
        self.freed_event_sets += 1

    def nvmlEventSetWait(self, event_set: object, timeout_ms: int) -> Any:
        with self._lock:
            item = self.wait_script.popleft() if self.wait_script else None
        if item is None:
            time.sleep(min(timeout_ms / 1000, 0.01))
            raise FakeNVMLError(NVML_ERROR_TIMEOUT)
        if isinstance(item, BaseException):
            raise item
        return item

    def push_event(self, item: Any) -> None:
        with self._lock:
            self.wait_script.append(item)

    def nvmlDeviceRegisterEvents(self, handle: int, mask: int, event_set: object) -> None:
        self._check("nvmlDeviceRegisterEvents")
        self.registered[handle] = mask

    # --- device enumeration ---

    def nvmlDeviceGetCount(self) -> int:
        self._check("nvmlDeviceGetCount")
        return len(self.uuids)

    def nvmlDeviceGetHandleByIndex(self, index: int) -> int:
        return index

    def nvmlDeviceGetUUID(self, handle: int) -> str:
        return self.uuids[handle]

    def nvmlDeviceGetMinorNumber(self, handle: int) -> int:
        return handle

    def nvmlDeviceGetPciInfo(self, handle: int) -> Any:
        return SimpleNamespace(bus=0x53 + handle, device=0)

    def nvmlDeviceGetName(self, handle: int) -> str:
        return "NVIDIA H100 80GB HBM3"

    def nvmlDeviceGetNumGpuCores(self, handle: int) -> int:
        return 16896

    def nvmlDeviceGetSupportedEventTypes(self, handle: int) -> int:
        return 0xF

    # --- metrics ---

    def nvmlDeviceGetCurrentClocksEventReasons(self, handle: int) -> int:
        self._check("nvmlDeviceGetCurrentClocksEventReasons")
        return 0x1 | 0x8 | 0x40

    def nvmlDeviceGetClockInfo(self, handle: int, clock: int) -> int:
        self._check("nvmlDeviceGetClockInfo")
        return 1980 if clock == self.NVML_CLOCK_GRAPHICS else 2619

    def nvmlDeviceGetMemoryInfo(self, handle: int) -> Any:
        self._check("nvmlDeviceGetMemoryInfo")
        total = 80536 * 1024**2
        used = 40268 * 1024**2
        return SimpleNamespace(total=total, used=used, free=total - used)

    def nvmlDeviceGetNvLinkState(self, handle: int, link: int) -> int:
        self._check("nvmlDeviceGetNvLinkState")
        if link >= self.nvlink_links:
            raise FakeNVMLError(NVML_ERROR_NOT_SUPPORTED if link == 0 else NVML_ERROR_INVALID_ARGUMENT)
        return self.NVML_FEATURE_ENABLED

    def nvmlDeviceGetNvLinkErrorCounter(self, handle: int, link: int, counter: int) -> int:
        return counter

    def nvmlDeviceGetPowerUsage(self, handle: int) -> int:
        self._check("nvmlDeviceGetPowerUsage")
        return 350_000

    def nvmlDeviceGetEnforcedPowerLimit(self, handle: int) -> int:
        self._check("nvmlDeviceGetEnforcedPowerLimit")
        return 700_000

    def nvmlDeviceGetTemperature(self, handle: int, sensor: int) -> int:
        self._check("nvmlDeviceGetTemperature")
        return 45

    def nvmlDeviceGetTemperatureThreshold(self, handle: int, kind: int) -> int:
        self._check("nvmlDeviceGetTemperatureThreshold")
        return {0: 90, 1: 87, 3: 0}[kind]

    def nvmlDeviceGetUtilizationRates(self, handle: int) -> Any:
        self._check("nvmlDeviceGetUtilizationRates")
        return SimpleNamespace(gpu=85, memory=40)

    def nvmlDeviceGetComputeRunningProcesses(self, handle: int) -> list[Any]:
        self._check("nvmlDeviceGetComputeRunningProcesses")
        return list(self.compute_processes)

    def nvmlDeviceGetProcessUtilization(self, handle: int, last_seen: int) -> list[Any]:
        self._check("nvmlDeviceGetProcessUtilization")
        return [
            SimpleNamespace(pid=p.pid, timeStamp=1, memUtil=10) for p in self.compute_processes
        ] + [SimpleNamespace(pid=p.pid, timeStamp=2, memUtil=25) for p in self.compute_processes]

    def nvmlDeviceGetEccMode(self, handle: int) -> tuple[int, int]:
        self._check("nvmlDeviceGetEccMode")
        return self.NVML_FEATURE_ENABLED, self.NVML_FEATURE_ENABLED

    def nvmlDeviceGetTotalEccErrors(self, handle: int, error_type: int, counter_type: int) -> int:
        self._check("nvmlDeviceGetTotalEccErrors")
        return 0 if error_type == self.NVML_MEMORY_ERROR_TYPE_UNCORRECTED else 3


@pytest.fixture
def fake_nvml() -> FakeNVML:
    return FakeNVML()
