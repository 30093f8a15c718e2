"""nvidia-smi invocation helpers."""

from __future__ import annotations

import logging
import shutil
import subprocess

from nvdiag._config import NvdiagConfig
from nvdiag._errors import SMINotFoundError
from nvdiag._smi_decode import decode_smi_query
from nvdiag._smi_types import Document

logger = logging.getLogger("nvdiag.smi")

_UNKNOWN_ERROR = "Unknown Error"


def smi_exists(command: str = "nvidia-smi") -> bool:
    """Return True if the host has nvidia-smi on its search path."""
    return shutil.which(command) is not None


def run_smi(*args: str, command: str = "nvidia-smi", timeout: float = 30.0) -> bytes:
    """Run nvidia-smi and return its stdout.

    Raises :class:`SMINotFoundError` when the binary is absent, and
    ``subprocess.CalledProcessError`` / ``subprocess.TimeoutExpired`` when the
    tool fails or hangs.
    """
    path = shutil.which(command)
    if path is None:
        raise SMINotFoundError(f"{command} not found")
    result = subprocess.run(
        [path, *args],  # noqa: S603
        capture_output=True,
        check=True,
        timeout=timeout,
    )
    return result.stdout


def get_smi_output(config: NvdiagConfig | None = None) -> Document:
    """Run ``nvidia-smi --query`` and plain ``nvidia-smi`` and combine them.

    The plain output is kept as ``summary`` for error scanning in case the
    query format changes. If the plain invocation reports "Unknown Error"
    (e.g. "Unable to determine the device handle for GPU0000:CB:00.0: Unknown
    Error") it is recorded as ``summary_failure`` instead; any other failure
    propagates.
    """
    cfg = config or NvdiagConfig()

    query = run_smi("--query", command=cfg.smi_command, timeout=cfg.smi_timeout_s)
    doc = decode_smi_query(query)

    try:
        summary = run_smi(command=cfg.smi_command, timeout=cfg.smi_timeout_s).decode("utf-8", errors="replace")
    except subprocess.CalledProcessError as exc:
        detail = _process_output(exc)
        if _UNKNOWN_ERROR not in detail:
            raise
        logger.debug("nvidia-smi summary failed: %s", detail)
        doc.summary_failure = detail
        return doc

    if _UNKNOWN_ERROR in summary:
        doc.summary_failure = summary
    else:
        doc.summary = summary
    return doc


def _process_output(exc: subprocess.CalledProcessError) -> str:
    parts = [str(exc)]
    for stream in (exc.stdout, exc.stderr):
        if stream:
            parts.append(stream.decode("utf-8", errors="replace").strip())
    return "\n".join(parts)
