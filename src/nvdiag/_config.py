"""Agent configuration."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields

from nvdiag._errors import ConfigurationError

_ENV_PREFIX = "NVDIAG_"


@dataclass(frozen=True)
class NvdiagConfig:
    """Immutable configuration for the query decoder and the device monitor."""

    smi_command: str = "nvidia-smi"
    smi_timeout_s: float = 30.0
    event_wait_timeout_ms: int = 5000
    event_queue_size: int = 100
    shutdown_join_timeout_s: float = 7.0

    def __post_init__(self) -> None:
        if not self.smi_command:
            raise ConfigurationError("smi_command must not be empty")
        for name in ("smi_timeout_s", "event_wait_timeout_ms", "event_queue_size", "shutdown_join_timeout_s"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive, got {getattr(self, name)!r}")
        # the poll thread must leave nvmlEventSetWait before shutdown frees the event set
        if self.shutdown_join_timeout_s * 1000 <= self.event_wait_timeout_ms:
            raise ConfigurationError(
                f"shutdown_join_timeout_s ({self.shutdown_join_timeout_s}s) must exceed "
                f"event_wait_timeout_ms ({self.event_wait_timeout_ms}ms)"
            )

    @classmethod
    def from_env(cls) -> NvdiagConfig:
        """Build a config from ``NVDIAG_*`` environment variables over the defaults.

        e.g. ``NVDIAG_EVENT_QUEUE_SIZE=256`` overrides ``event_queue_size``.
        """
        overrides: dict[str, str | int | float] = {}
        for f in fields(cls):
            raw = os.getenv(_ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            default = f.default
            try:
                if isinstance(default, str):
                    overrides[f.name] = raw
                elif isinstance(default, int):
                    overrides[f.name] = int(raw)
                else:
                    overrides[f.name] = float(raw)
            except ValueError as exc:
                raise ConfigurationError(f"{_ENV_PREFIX}{f.name.upper()}={raw!r}: {exc}") from exc
        return cls(**overrides)  # type: ignore[arg-type]
