"""Tests for nvidia-smi invocation; subprocess is faked, no GPU required."""

from __future__ import annotations

import subprocess
from typing import Any

import pytest

from nvdiag._config import NvdiagConfig
from nvdiag._errors import SMINotFoundError
from nvdiag._smi import get_smi_output, run_smi, smi_exists

QUERY = b"""
==============NVSMI LOG==============

Timestamp                                 : Mon Aug 12 10:00:00 2024
Driver Version                            : 535.161.08
CUDA Version                              : 12.2

Attached GPUs                             : 1
GPU 00000000:53:00.0
    Product Name                          : NVIDIA H100 80GB HBM3
"""

SUMMARY = b"| NVIDIA-SMI 535.161.08   Driver Version: 535.161.08   CUDA Version: 12.2 |\n"


class _FakeRun:
    """Records invocations and answers by argument list."""

    def __init__(self, summary: bytes = SUMMARY, summary_error: bytes | None = None) -> None:
        self.calls: list[list[str]] = []
        self.summary = summary
        self.summary_error = summary_error

    def __call__(self, args: list[str], **kwargs: Any) -> subprocess.CompletedProcess[bytes]:
        self.calls.append(args)
        assert kwargs["capture_output"] is True
        if args[1:] == ["--query"]:
            return subprocess.CompletedProcess(args, 0, stdout=QUERY, stderr=b"")
        if self.summary_error is not None:
            raise subprocess.CalledProcessError(255, args, output=b"", stderr=self.summary_error)
        return subprocess.CompletedProcess(args, 0, stdout=self.summary, stderr=b"")


@pytest.fixture
def with_smi(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("nvdiag._smi.shutil.which", lambda cmd: f"/usr/bin/{cmd}")


class TestSMIExists:
    def test_present(self, with_smi: None) -> None:
        assert smi_exists()

    def test_absent(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("nvdiag._smi.shutil.which", lambda cmd: None)
        assert not smi_exists()


class TestRunSMI:
    def test_absent_binary(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("nvdiag._smi.shutil.which", lambda cmd: None)
        with pytest.raises(SMINotFoundError):
            run_smi("--query")

    def test_passes_args_and_timeout(self, with_smi: None, monkeypatch: pytest.MonkeyPatch) -> None:
        seen: dict[str, Any] = {}

        def fake_run(args: list[str], **kwargs: Any) -> subprocess.CompletedProcess[bytes]:
            seen["args"] = args
            seen.update(kwargs)
            return subprocess.CompletedProcess(args, 0, stdout=b"ok", stderr=b"")

        monkeypatch.setattr("nvdiag._smi.subprocess.run", fake_run)
        assert run_smi("-L", timeout=3.0) == b"ok"
        assert seen["args"] == ["/usr/bin/nvidia-smi", "-L"]
        assert seen["timeout"] == 3.0
        assert seen["check"] is True


class TestGetSMIOutput:
    def test_combines_query_and_summary(self, with_smi: None, monkeypatch: pytest.MonkeyPatch) -> None:
        fake = _FakeRun()
        monkeypatch.setattr("nvdiag._smi.subprocess.run", fake)
        doc = get_smi_output()
        assert [c[1:] for c in fake.calls] == [["--query"], []]
        assert doc.driver_version == "535.161.08"
        assert len(doc.gpus) == 1
        assert doc.summary == SUMMARY.decode()
        assert doc.summary_failure is None

    def test_unknown_error_in_output(self, with_smi: None, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("nvdiag._smi.subprocess.run", _FakeRun(summary=b"GPU access blocked: Unknown Error\n"))
        doc = get_smi_output()
        assert doc.summary == ""
        assert doc.summary_failure == "GPU access blocked: Unknown Error\n"

    def test_unknown_error_on_failure(self, with_smi: None, monkeypatch: pytest.MonkeyPatch) -> None:
        err = b"Unable to determine the device handle for GPU0000:CB:00.0: Unknown Error"
        monkeypatch.setattr("nvdiag._smi.subprocess.run", _FakeRun(summary_error=err))
        doc = get_smi_output()
        assert doc.summary_failure is not None
        assert "Unknown Error" in doc.summary_failure

    def test_other_failure_propagates(self, with_smi: None, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("nvdiag._smi.subprocess.run", _FakeRun(summary_error=b"segfault"))
        with pytest.raises(subprocess.CalledProcessError):
            get_smi_output()

    def test_uses_configured_command(self, with_smi: None, monkeypatch: pytest.MonkeyPatch) -> None:
        fake = _FakeRun()
        monkeypatch.setattr("nvdiag._smi.subprocess.run", fake)
        get_smi_output(NvdiagConfig(smi_command="nvidia-smi-custom"))
        assert fake.calls[0][0] == "/usr/bin/nvidia-smi-custom"
