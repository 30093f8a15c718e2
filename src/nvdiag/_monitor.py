"""NVML device monitor: fault-event polling loop plus on-demand metric snapshots.

ref. https://docs.nvidia.com/deploy/nvml-api/group__nvmlEvents.html
ref. https://github.com/NVIDIA/k8s-device-plugin/blob/main/internal/rm/health.go
"""

from __future__ import annotations

import logging
import queue
import threading
import warnings
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from nvdiag._config import NvdiagConfig
from nvdiag._encoding import Encodable
from nvdiag._errors import (
    AlreadyStartedError,
    NotInitializedError,
    NvdiagError,
    NVMLCallError,
    NVMLNotFoundError,
)
from nvdiag._nvml_metrics import (
    ClockEvents,
    ClockSpeed,
    ECCErrorCounts,
    Memory,
    NVLink,
    Power,
    Processes,
    Temperature,
    Utilization,
    get_clock_events,
    get_clock_speed,
    get_ecc_errors,
    get_memory,
    get_nvlink,
    get_power,
    get_processes,
    get_temperature,
    get_utilization,
    is_not_supported,
)
from nvdiag._xid import XidDetail, get_xid_detail

logger = logging.getLogger("nvdiag.monitor")

# pynvml is optional; without it no monitor can be created.
warnings.filterwarnings("ignore", category=FutureWarning, message=".*pynvml.*deprecated.*")
try:
    import pynvml

    _HAS_PYNVML = True
except ImportError:
    pynvml = None  # type: ignore[assignment,unused-ignore]
    _HAS_PYNVML = False

MSG_KNOWN_XID = "received event with a known xid"
MSG_UNKNOWN_XID = "received event but xid unknown"
MSG_WAIT_FAILED = "event set wait returned non-success"

_PUBLISH_POLL_S = 0.1


class MonitorState(Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    SHUTDOWN = "shutdown"


@dataclass
class FaultEvent(Encodable):
    """One event from the NVML event set, or a failure of the wait itself."""

    event_type: int = 0
    xid: int = 0
    xid_critical_error: bool = False
    detail: XidDetail | None = None
    message: str = ""
    # set when the monitor failed to wait on the event set; xid is 0 then
    error: Exception | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "event_type": self.event_type,
            "xid": self.xid,
            "xid_critical_error": self.xid_critical_error,
        }
        if self.detail is not None:
            out["detail"] = self.detail.to_dict()
        if self.message:
            out["message"] = self.message
        if self.error is not None:
            out["error"] = str(self.error)
        return out


class FaultEventStream:
    """Receive-only view of the monitor's bounded event queue."""

    def __init__(self, events: queue.Queue[FaultEvent]) -> None:
        self._events = events

    def get(self, timeout: float | None = None) -> FaultEvent:
        """Block for the next event. Raises ``queue.Empty`` on timeout."""
        return self._events.get(timeout=timeout)

    def get_nowait(self) -> FaultEvent:
        return self._events.get_nowait()

    def qsize(self) -> int:
        return self._events.qsize()


@dataclass
class DeviceInfo(Encodable):
    uuid: str
    minor_number: int = 0
    # from the PCI info
    bus: int = 0
    device: int = 0
    name: str = ""
    gpu_cores: int = 0
    supported_events: int = 0
    # false if the device cannot register for fault events
    error_supported: bool = True

    clock_events: ClockEvents | None = None
    clock_speed: ClockSpeed | None = None
    memory: Memory | None = None
    nvlink: NVLink | None = None
    power: Power | None = None
    temperature: Temperature | None = None
    utilization: Utilization | None = None
    processes: Processes | None = None
    ecc_errors: ECCErrorCounts | None = None

    handle: Any = field(default=None, repr=False, compare=False)

    def static_copy(self) -> DeviceInfo:
        return DeviceInfo(
            uuid=self.uuid,
            minor_number=self.minor_number,
            bus=self.bus,
            device=self.device,
            name=self.name,
            gpu_cores=self.gpu_cores,
            supported_events=self.supported_events,
            error_supported=self.error_supported,
            handle=self.handle,
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "uuid": self.uuid,
            "minor_number": self.minor_number,
            "bus": self.bus,
            "device": self.device,
            "name": self.name,
            "gpu_cores": self.gpu_cores,
            "supported_events": self.supported_events,
            "error_supported": self.error_supported,
        }
        for key, _ in _METRIC_QUERIES:
            metric = getattr(self, key)
            out[key] = metric.to_dict() if metric is not None else None
        return out


@dataclass
class MonitorSnapshot(Encodable):
    """Result of :meth:`DeviceMonitor.get`.

    ``error`` holds the first failed query; devices queried up to that point
    are still reported.
    """

    exists: bool = False
    message: str = ""
    device_infos: list[DeviceInfo] = field(default_factory=list)
    error: Exception | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "exists": self.exists,
            "message": self.message,
            "device_infos": [d.to_dict() for d in self.device_infos],
        }
        if self.error is not None:
            out["error"] = str(self.error)
        return out


# queried in this order; the first failure ends the snapshot
_METRIC_QUERIES = (
    ("clock_events", get_clock_events),
    ("clock_speed", get_clock_speed),
    ("memory", get_memory),
    ("nvlink", get_nvlink),
    ("power", get_power),
    ("temperature", get_temperature),
    ("utilization", get_utilization),
    ("processes", get_processes),
    ("ecc_errors", get_ecc_errors),
)


class DeviceMonitor:
    """Owns the NVML handle, the fault-event set and the polling thread.

    Lifecycle: ``initialize()`` → ``start()`` → ``shutdown()``. Shutdown is
    one-shot: later calls return without doing anything, and every query after
    it raises :class:`NotInitializedError`.
    """

    def __init__(self, config: NvdiagConfig | None = None, *, lib: Any = None) -> None:
        self._config = config or NvdiagConfig()
        self._lib: Any = lib if lib is not None else pynvml
        self._lock = threading.RLock()
        self._state = MonitorState.UNINITIALIZED

        self._nvml_exists = False
        self._nvml_exists_msg = ""

        # uuid -> device info with static attributes and handle
        self._devices: dict[str, DeviceInfo] = {}
        self._event_set: Any = None
        self._event_mask = 0

        self._events: queue.Queue[FaultEvent] = queue.Queue(maxsize=self._config.event_queue_size)
        self._stream = FaultEventStream(self._events)
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def state(self) -> MonitorState:
        return self._state

    def initialize(self) -> None:
        """Initialize NVML and create the shared event set."""
        with self._lock:
            if self._state in (MonitorState.SHUTTING_DOWN, MonitorState.SHUTDOWN):
                raise NotInitializedError("monitor has been shut down")
            if self._state is not MonitorState.UNINITIALIZED:
                return
            lib = self._lib
            if lib is None:
                raise NVMLNotFoundError("pynvml is not installed")

            try:
                lib.nvmlInit()
            except lib.NVMLError as exc:
                raise NVMLNotFoundError(f"failed to initialize NVML: {exc}") from exc
            logger.debug("successfully initialized NVML")

            self._nvml_exists = True
            try:
                self._nvml_exists_msg = f"found NVML, driver version {lib.nvmlSystemGetDriverVersion()}"
            except lib.NVMLError:
                self._nvml_exists_msg = "found NVML"

            try:
                self._event_set = lib.nvmlEventSetCreate()
            except lib.NVMLError as exc:
                lib.nvmlShutdown()
                raise NVMLCallError(f"failed to create event set: {exc}") from exc

            self._event_mask = (
                lib.nvmlEventTypeXidCriticalError
                | lib.nvmlEventTypeDoubleBitEccError
                | lib.nvmlEventTypeSingleBitEccError
            )
            self._state = MonitorState.INITIALIZED

    def nvml_exists(self) -> bool:
        return self._nvml_exists

    def start(self) -> None:
        """Enumerate devices, register them for fault events and start polling.

        If any device fails discovery or registration the monitor is shut down
        and the error is re-raised.
        """
        with self._lock:
            if self._state is MonitorState.RUNNING:
                raise AlreadyStartedError("monitor already started")
            if self._state is not MonitorState.INITIALIZED:
                raise NotInitializedError()

            lib = self._lib
            devices: dict[str, DeviceInfo] = {}
            try:
                for i in range(self._nvml(lib.nvmlDeviceGetCount, "device count")):
                    info = self._discover(i)
                    devices[info.uuid] = info
            except NvdiagError:
                # NVML cannot unregister events; release the event set instead
                logger.debug("device discovery failed, shutting down", exc_info=True)
                try:
                    self.shutdown()
                except NvdiagError:
                    logger.debug("cleanup after failed start also failed", exc_info=True)
                raise
            self._devices = devices
            logger.debug("registered %d device(s) for fault events", len(devices))

            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._poll_fault_events,
                args=(lib, self._event_set),
                name="nvdiag-fault-events",
                daemon=True,
            )
            self._state = MonitorState.RUNNING
            self._thread.start()

    def _nvml(self, fn: Any, what: str, *args: Any) -> Any:
        try:
            return fn(*args)
        except self._lib.NVMLError as exc:
            raise NVMLCallError(f"failed to get {what}: {exc}") from exc

    def _discover(self, index: int) -> DeviceInfo:
        lib = self._lib
        handle = self._nvml(lib.nvmlDeviceGetHandleByIndex, "device handle", index)
        uuid = self._nvml(lib.nvmlDeviceGetUUID, "device uuid", handle)
        if not uuid:
            raise NVMLCallError("device uuid is empty")
        pci = self._nvml(lib.nvmlDeviceGetPciInfo, "device PCI info", handle)
        supported = self._nvml(lib.nvmlDeviceGetSupportedEventTypes, "supported event types", handle)

        info = DeviceInfo(
            uuid=uuid,
            minor_number=self._nvml(lib.nvmlDeviceGetMinorNumber, "device minor number", handle),
            bus=pci.bus,
            device=pci.device,
            name=self._nvml(lib.nvmlDeviceGetName, "device name", handle),
            gpu_cores=self._nvml(lib.nvmlDeviceGetNumGpuCores, "device cores", handle),
            supported_events=supported,
            handle=handle,
        )

        try:
            lib.nvmlDeviceRegisterEvents(handle, self._event_mask & supported, self._event_set)
        except lib.NVMLError as exc:
            if not is_not_supported(lib, exc):
                raise NVMLCallError(f"failed to register events: {exc}") from exc
            logger.debug("device %s does not support fault event registration", uuid)
            info.error_supported = False
        return info

    def _poll_fault_events(self, lib: Any, event_set: Any) -> None:
        logger.debug("polling fault events")
        timeout_ms = self._config.event_wait_timeout_ms
        while not self._stop_event.is_set():
            try:
                data = lib.nvmlEventSetWait(event_set, timeout_ms)
            except lib.NVMLError as exc:
                if getattr(exc, "value", None) == lib.NVML_ERROR_TIMEOUT:
                    logger.debug("no event found in wait (timeout) -- retrying")
                    continue
                err = NVMLCallError(f"event set wait failed: {exc}")
                err.__cause__ = exc
                if self._publish(FaultEvent(message=MSG_WAIT_FAILED, error=err)):
                    logger.debug("event set wait failure notified: %s", exc)
                continue

            xid = int(data.eventData)
            detail = get_xid_detail(xid) if xid > 0 else None
            self._publish(
                FaultEvent(
                    event_type=data.eventType,
                    xid=xid,
                    xid_critical_error=data.eventType == lib.nvmlEventTypeXidCriticalError,
                    detail=detail,
                    message=MSG_KNOWN_XID if detail is not None else MSG_UNKNOWN_XID,
                )
            )

    def _publish(self, event: FaultEvent) -> bool:
        """Block until the event is queued; give up once shutdown begins."""
        while not self._stop_event.is_set():
            try:
                self._events.put(event, timeout=_PUBLISH_POLL_S)
                return True
            except queue.Full:
                continue
        return False

    def recv_fault_events(self) -> FaultEventStream:
        with self._lock:
            if self._state in (MonitorState.SHUTTING_DOWN, MonitorState.SHUTDOWN):
                raise NotInitializedError()
            return self._stream

    def exists(self) -> bool:
        with self._lock:
            return self._lib is not None and self._state in (
                MonitorState.INITIALIZED,
                MonitorState.RUNNING,
            ) and self._nvml_exists

    def get(self) -> MonitorSnapshot:
        """Query the latest metrics of every device, sorted by UUID.

        A failed query stops the snapshot; the partial result is returned with
        ``error`` set.
        """
        with self._lock:
            if self._lib is None or self._state not in (MonitorState.INITIALIZED, MonitorState.RUNNING):
                raise NotInitializedError()

            snap = MonitorSnapshot(exists=self._nvml_exists, message=self._nvml_exists_msg)
            for dev in self._devices.values():
                latest = dev.static_copy()
                snap.device_infos.append(latest)
                try:
                    for key, query in _METRIC_QUERIES:
                        setattr(latest, key, query(self._lib, dev.uuid, dev.handle))
                except NvdiagError as exc:
                    snap.error = exc
                    break

            snap.device_infos.sort(key=lambda d: d.uuid)
            return snap

    def shutdown(self) -> None:
        """Stop the polling thread and release the event set and NVML.

        Safe to call more than once. If releasing a native handle fails the
        monitor still ends up shut down and the first failure is raised. If the
        polling thread does not stop within ``shutdown_join_timeout_s`` the
        handles are left open rather than freed under a running wait.
        """
        with self._lock:
            if self._state in (MonitorState.SHUTTING_DOWN, MonitorState.SHUTDOWN):
                return
            if self._state is MonitorState.UNINITIALIZED:
                self._state = MonitorState.SHUTDOWN
                self._lib = None
                return

            logger.debug("shutting down NVML")
            self._state = MonitorState.SHUTTING_DOWN
            self._stop_event.set()
            if self._thread is not None:
                self._thread.join(timeout=self._config.shutdown_join_timeout_s)
                alive = self._thread.is_alive()
                self._thread = None
                if alive:
                    # the loop may still be inside nvmlEventSetWait; leak the handles
                    logger.warning(
                        "fault event loop did not stop within %.1fs, leaving NVML handles open",
                        self._config.shutdown_join_timeout_s,
                    )
                    self._event_set = None
                    self._lib = None
                    self._devices = {}
                    self._state = MonitorState.SHUTDOWN
                    return

            lib = self._lib
            first_error: NVMLCallError | None = None
            if self._event_set is not None:
                try:
                    lib.nvmlEventSetFree(self._event_set)
                except lib.NVMLError as exc:
                    logger.warning("failed to free event set: %s", exc)
                    first_error = NVMLCallError(f"failed to free event set: {exc}")
                    first_error.__cause__ = exc
                self._event_set = None
            try:
                lib.nvmlShutdown()
            except lib.NVMLError as exc:
                logger.warning("failed to shutdown NVML: %s", exc)
                if first_error is None:
                    first_error = NVMLCallError(f"failed to shutdown NVML: {exc}")
                    first_error.__cause__ = exc

            self._lib = None
            self._devices = {}
            self._state = MonitorState.SHUTDOWN
            if first_error is not None:
                raise first_error

    def __enter__(self) -> DeviceMonitor:
        return self

    def __exit__(self, *exc: object) -> None:
        self.shutdown()


def create_device_monitor(
    config: NvdiagConfig | None = None, *, start: bool = True
) -> DeviceMonitor | None:
    """Factory: returns an initialized (and by default started) monitor, else None."""
    if not _HAS_PYNVML:
        logger.info("pynvml not available, device monitoring disabled")
        return None
    monitor = DeviceMonitor(config)
    try:
        monitor.initialize()
        if start:
            monitor.start()
    except NvdiagError:
        logger.info("NVML setup failed, device monitoring disabled", exc_info=True)
        try:
            monitor.shutdown()
        except NvdiagError:
            logger.debug("cleanup after failed setup also failed", exc_info=True)
        return None
    return monitor
