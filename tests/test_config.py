"""Tests for _config module."""

from __future__ import annotations

import dataclasses

import pytest

from nvdiag._config import NvdiagConfig
from nvdiag._errors import ConfigurationError


def test_config_defaults() -> None:
    cfg = NvdiagConfig()
    assert cfg.smi_command == "nvidia-smi"
    assert cfg.smi_timeout_s == 30.0
    assert cfg.event_wait_timeout_ms == 5000
    assert cfg.event_queue_size == 100
    assert cfg.shutdown_join_timeout_s == 7.0


def test_config_is_frozen() -> None:
    cfg = NvdiagConfig()
    with pytest.raises(dataclasses.FrozenInstanceError):
        cfg.event_queue_size = 1  # type: ignore[misc]


@pytest.mark.parametrize(
    "kwargs",
    [
        {"smi_command": ""},
        {"smi_timeout_s": 0},
        {"event_wait_timeout_ms": -1},
        {"event_queue_size": 0},
        {"shutdown_join_timeout_s": 0.0},
    ],
)
def test_config_rejects_invalid_values(kwargs: dict[str, object]) -> None:
    with pytest.raises(ConfigurationError):
        NvdiagConfig(**kwargs)  # type: ignore[arg-type]


def test_from_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("NVDIAG_SMI_COMMAND", "/opt/nvidia/bin/nvidia-smi")
    monkeypatch.setenv("NVDIAG_EVENT_QUEUE_SIZE", "256")
    monkeypatch.setenv("NVDIAG_SMI_TIMEOUT_S", "12.5")
    cfg = NvdiagConfig.from_env()
    assert cfg.smi_command == "/opt/nvidia/bin/nvidia-smi"
    assert cfg.event_queue_size == 256
    assert cfg.smi_timeout_s == 12.5
    assert cfg.event_wait_timeout_ms == 5000


def test_from_env_without_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("SMI_COMMAND", "SMI_TIMEOUT_S", "EVENT_WAIT_TIMEOUT_MS", "EVENT_QUEUE_SIZE", "SHUTDOWN_JOIN_TIMEOUT_S"):
        monkeypatch.delenv(f"NVDIAG_{name}", raising=False)
    assert NvdiagConfig.from_env() == NvdiagConfig()


def test_from_env_bad_number(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("NVDIAG_EVENT_QUEUE_SIZE", "lots")
    with pytest.raises(ConfigurationError, match="NVDIAG_EVENT_QUEUE_SIZE"):
        NvdiagConfig.from_env()


def test_from_env_non_positive(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("NVDIAG_EVENT_WAIT_TIMEOUT_MS", "0")
    with pytest.raises(ConfigurationError):
        NvdiagConfig.from_env()


@pytest.mark.parametrize(
    ("wait_ms", "join_s"),
    [(3000, 0.5), (5000, 5.0), (10000, 7.0)],
)
def test_join_timeout_must_outlast_event_wait(wait_ms: int, join_s: float) -> None:
    with pytest.raises(ConfigurationError, match="must exceed"):
        NvdiagConfig(event_wait_timeout_ms=wait_ms, shutdown_join_timeout_s=join_s)


def test_from_env_wait_longer_than_default_join(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("NVDIAG_EVENT_WAIT_TIMEOUT_MS", "10000")
    monkeypatch.delenv("NVDIAG_SHUTDOWN_JOIN_TIMEOUT_S", raising=False)
    with pytest.raises(ConfigurationError):
        NvdiagConfig.from_env()
    monkeypatch.setenv("NVDIAG_SHUTDOWN_JOIN_TIMEOUT_S", "12")
    assert NvdiagConfig.from_env().shutdown_join_timeout_s == 12.0
