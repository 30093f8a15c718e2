"""Numeric views of the unit-suffixed fields in a decoded query document."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from nvdiag._encoding import Encodable
from nvdiag._errors import NvdiagError
from nvdiag._smi_types import Document, FBMemoryUsage, PowerReadings, TemperatureReadings
from nvdiag._units import humanize_bytes, parse_bytes, parse_celsius, parse_watts

logger = logging.getLogger("nvdiag.normalize")


def _fmt(value: float | None) -> str:
    return "" if value is None else f"{value:.2f}"


def _fmt_percent(value: float | None) -> str:
    return "0.0" if value is None else f"{value:.2f}"


def _percent(part: float, whole: float | None) -> float | None:
    if whole is None or whole <= 0:
        return None
    return part / whole * 100


@dataclass(frozen=True)
class ParsedTemperature(Encodable):
    """Parsed temperature block.

    ``used_percent`` is None when no limit could be resolved; it renders as
    ``"0.0"``.
    """

    id: str = ""

    current_humanized: str = ""
    current_celsius: float = 0.0

    limit_humanized: str = ""
    limit_celsius: float | None = None

    used_percent: float | None = None

    shutdown_humanized: str = ""
    shutdown_limit: str = ""
    shutdown_celsius: float | None = None

    slowdown_humanized: str = ""
    slowdown_limit: str = ""
    slowdown_celsius: float | None = None

    max_operating_limit: str = ""

    target: str = ""
    memory_current: str = ""
    memory_max_operating_limit: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "current_humanized": self.current_humanized,
            "current_celsius": _fmt(self.current_celsius),
            "limit_humanized": self.limit_humanized,
            "limit_celsius": _fmt(self.limit_celsius),
            "used_percent": _fmt_percent(self.used_percent),
            "shutdown_humanized": self.shutdown_humanized,
            "shutdown_limit": self.shutdown_limit,
            "shutdown_celsius": _fmt(self.shutdown_celsius),
            "slowdown_humanized": self.slowdown_humanized,
            "slowdown_limit": self.slowdown_limit,
            "slowdown_celsius": _fmt(self.slowdown_celsius),
            "max_operating_limit": self.max_operating_limit,
            "target": self.target,
            "memory_current": self.memory_current,
            "memory_max_operating_limit": self.memory_max_operating_limit,
        }


@dataclass(frozen=True)
class ParsedPowerReading(Encodable):
    id: str = ""

    power_draw_w: float = 0.0
    power_draw_humanized: str = ""

    current_power_limit_w: float = 0.0
    current_power_limit_humanized: str = ""

    used_percent: float | None = None

    requested_power_limit_w: float = 0.0
    requested_power_limit_humanized: str = ""

    default_power_limit_w: float = 0.0
    default_power_limit_humanized: str = ""

    min_power_limit_w: float = 0.0
    min_power_limit_humanized: str = ""

    max_power_limit_w: float = 0.0
    max_power_limit_humanized: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "power_draw_w": _fmt(self.power_draw_w),
            "power_draw_humanized": self.power_draw_humanized,
            "current_power_limit_w": _fmt(self.current_power_limit_w),
            "current_power_limit_humanized": self.current_power_limit_humanized,
            "used_percent": _fmt_percent(self.used_percent),
            "requested_power_limit_w": _fmt(self.requested_power_limit_w),
            "requested_power_limit_humanized": self.requested_power_limit_humanized,
            "default_power_limit_w": _fmt(self.default_power_limit_w),
            "default_power_limit_humanized": self.default_power_limit_humanized,
            "min_power_limit_w": _fmt(self.min_power_limit_w),
            "min_power_limit_humanized": self.min_power_limit_humanized,
            "max_power_limit_w": _fmt(self.max_power_limit_w),
            "max_power_limit_humanized": self.max_power_limit_humanized,
        }


@dataclass(frozen=True)
class ParsedMemoryUsage(Encodable):
    """Parsed framebuffer memory usage; humanized values are re-rendered."""

    id: str = ""

    total_bytes: int = 0
    total_humanized: str = ""

    reserved_bytes: int = 0
    reserved_humanized: str = ""

    used_bytes: int = 0
    used_humanized: str = ""

    used_percent: float | None = None

    free_bytes: int = 0
    free_humanized: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "total_bytes": self.total_bytes,
            "total_humanized": self.total_humanized,
            "reserved_bytes": self.reserved_bytes,
            "reserved_humanized": self.reserved_humanized,
            "used_bytes": self.used_bytes,
            "used_humanized": self.used_humanized,
            "used_percent": _fmt_percent(self.used_percent),
            "free_bytes": self.free_bytes,
            "free_humanized": self.free_humanized,
        }


def _first_celsius(tm: TemperatureReadings, *attrs: str) -> float | None:
    """Parse the first of ``attrs`` that carries a valid celsius value."""
    for attr in attrs:
        try:
            return parse_celsius(getattr(tm, attr), attr)
        except (NvdiagError, ValueError) as exc:
            logger.debug("temperature %s: %s", tm.id, exc)
    return None


def parse_temperature(tm: TemperatureReadings) -> ParsedTemperature:
    """Parse a temperature block.

    The current temperature is mandatory and its parse error propagates; every
    other field is best-effort. The limit falls back to the shutdown and then
    the slowdown temperature when the tool does not report one.
    """
    current = parse_celsius(tm.current, "current")

    shutdown = _first_celsius(tm, "shutdown", "shutdown_limit")
    slowdown = _first_celsius(tm, "slowdown", "slowdown_limit")
    limit_celsius = _first_celsius(tm, "limit")

    limit = limit_celsius
    if limit is None:
        if shutdown is not None and shutdown > 0:
            limit = shutdown
        elif slowdown is not None and slowdown > 0:
            limit = slowdown

    return ParsedTemperature(
        id=tm.id,
        current_humanized=tm.current,
        current_celsius=current,
        limit_humanized=tm.limit,
        limit_celsius=limit_celsius,
        used_percent=_percent(current, limit),
        shutdown_humanized=tm.shutdown,
        shutdown_limit=tm.shutdown_limit,
        shutdown_celsius=shutdown,
        slowdown_humanized=tm.slowdown,
        slowdown_limit=tm.slowdown_limit,
        slowdown_celsius=slowdown,
        max_operating_limit=tm.max_operating_limit,
        target=tm.target,
        memory_current=tm.memory_current,
        memory_max_operating_limit=tm.memory_max_operating_limit,
    )


def parse_power(pr: PowerReadings) -> ParsedPowerReading:
    """Parse a power block. Every field is mandatory; the first failure propagates."""
    draw = parse_watts(pr.power_draw, "power_draw")
    limit = parse_watts(pr.current_power_limit, "current_power_limit")
    return ParsedPowerReading(
        id=pr.id,
        power_draw_w=draw,
        power_draw_humanized=pr.power_draw,
        current_power_limit_w=limit,
        current_power_limit_humanized=pr.current_power_limit,
        used_percent=_percent(draw, limit),
        requested_power_limit_w=parse_watts(pr.requested_power_limit, "requested_power_limit"),
        requested_power_limit_humanized=pr.requested_power_limit,
        default_power_limit_w=parse_watts(pr.default_power_limit, "default_power_limit"),
        default_power_limit_humanized=pr.default_power_limit,
        min_power_limit_w=parse_watts(pr.min_power_limit, "min_power_limit"),
        min_power_limit_humanized=pr.min_power_limit,
        max_power_limit_w=parse_watts(pr.max_power_limit, "max_power_limit"),
        max_power_limit_humanized=pr.max_power_limit,
    )


def parse_memory(fb: FBMemoryUsage) -> ParsedMemoryUsage:
    """Parse a framebuffer memory block. Every field is mandatory."""
    total = parse_bytes(fb.total)
    reserved = parse_bytes(fb.reserved)
    used = parse_bytes(fb.used)
    free = parse_bytes(fb.free)
    return ParsedMemoryUsage(
        id=fb.id,
        total_bytes=total,
        total_humanized=humanize_bytes(total),
        reserved_bytes=reserved,
        reserved_humanized=humanize_bytes(reserved),
        used_bytes=used,
        used_humanized=humanize_bytes(used),
        used_percent=_percent(used, total),
        free_bytes=free,
        free_humanized=humanize_bytes(free),
    )


@dataclass
class NormalizedReadings(Encodable):
    temperatures: list[ParsedTemperature] = field(default_factory=list)
    power: list[ParsedPowerReading] = field(default_factory=list)
    memory: list[ParsedMemoryUsage] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "temperatures": [t.to_dict() for t in self.temperatures],
            "power": [p.to_dict() for p in self.power],
            "memory": [m.to_dict() for m in self.memory],
        }


def normalize_document(doc: Document) -> NormalizedReadings:
    """Parse every device's temperature, power and memory blocks.

    A block whose mandatory field fails to parse is logged and skipped.
    """
    out = NormalizedReadings()
    for gpu in doc.gpus:
        if gpu.temperature is not None:
            try:
                out.temperatures.append(parse_temperature(gpu.temperature))
            except (NvdiagError, ValueError) as exc:
                logger.warning("failed to parse temperature of %s: %s", gpu.id, exc)
        if gpu.power_readings is not None:
            try:
                out.power.append(parse_power(gpu.power_readings))
            except (NvdiagError, ValueError) as exc:
                logger.warning("failed to parse power readings of %s: %s", gpu.id, exc)
        if gpu.fb_memory_usage is not None:
            try:
                out.memory.append(parse_memory(gpu.fb_memory_usage))
            except (NvdiagError, ValueError) as exc:
                logger.warning("failed to parse memory usage of %s: %s", gpu.id, exc)
    return out
