"""Static catalog of NVIDIA Xid fault codes.

ref. https://docs.nvidia.com/deploy/xid-errors/index.html
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from nvdiag._encoding import Encodable

ACTION_NONE = "none"
ACTION_CHECK_APPLICATION = "check user application"
ACTION_RESET_GPU = "reset GPU"
ACTION_REBOOT = "reboot system"
ACTION_HW_INSPECTION = "hardware inspection"


@dataclass(frozen=True)
class XidDetail(Encodable):
    xid: int
    name: str
    description: str
    # true if the fault usually requires remediation of the device
    critical: bool
    suggested_action: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


_XIDS: dict[int, XidDetail] = {
    d.xid: d
    for d in (
        XidDetail(
            13,
            "Graphics Engine Exception",
            "Usually an out-of-bounds access or illegal instruction in a user application.",
            False,
            ACTION_CHECK_APPLICATION,
        ),
        XidDetail(
            31,
            "GPU memory page fault",
            "Illegal memory access by an application; CUDA reports an unknown error.",
            False,
            ACTION_CHECK_APPLICATION,
        ),
        XidDetail(
            32,
            "Invalid or corrupted push buffer stream",
            "The driver received corrupted commands, often over a faulty PCIe link.",
            True,
            ACTION_HW_INSPECTION,
        ),
        XidDetail(
            38,
            "Driver firmware error",
            "The driver detected a firmware failure.",
            True,
            ACTION_REBOOT,
        ),
        XidDetail(
            43,
            "GPU stopped processing",
            "A user application hit a fault and the GPU stopped its channel.",
            False,
            ACTION_CHECK_APPLICATION,
        ),
        XidDetail(
            45,
            "Preemptive cleanup, due to previous errors",
            "Channels were torn down because of an earlier error or process exit.",
            False,
            ACTION_NONE,
        ),
        XidDetail(
            48,
            "Double Bit ECC Error",
            "An uncorrectable double-bit error was detected in device memory.",
            True,
            ACTION_RESET_GPU,
        ),
        XidDetail(
            56,
            "Display Engine error",
            "The display engine reported an error.",
            False,
            ACTION_NONE,
        ),
        XidDetail(
            57,
            "Error programming video memory interface",
            "The driver failed to program the video memory interface.",
            True,
            ACTION_HW_INSPECTION,
        ),
        XidDetail(
            61,
            "Internal micro-controller breakpoint/warning",
            "An internal micro-controller hit a breakpoint.",
            True,
            ACTION_RESET_GPU,
        ),
        XidDetail(
            62,
            "Internal micro-controller halt",
            "An internal micro-controller halted.",
            True,
            ACTION_RESET_GPU,
        ),
        XidDetail(
            63,
            "ECC page retirement or row remapping recording event",
            "A memory page was retired or a row remapped after ECC errors.",
            False,
            ACTION_NONE,
        ),
        XidDetail(
            64,
            "ECC page retirement or row remapper recording failure",
            "Recording a page retirement or row remapping failed.",
            True,
            ACTION_RESET_GPU,
        ),
        XidDetail(
            68,
            "NVDEC0 Exception",
            "The video decoder engine reported an exception.",
            False,
            ACTION_CHECK_APPLICATION,
        ),
        XidDetail(
            69,
            "Graphics Engine class error",
            "The graphics engine reported an illegal class or method.",
            False,
            ACTION_CHECK_APPLICATION,
        ),
        XidDetail(
            74,
            "NVLink Error",
            "An NVLink connection reported an error.",
            True,
            ACTION_HW_INSPECTION,
        ),
        XidDetail(
            79,
            "GPU has fallen off the bus",
            "The GPU is no longer reachable over PCIe.",
            True,
            ACTION_REBOOT,
        ),
        XidDetail(
            92,
            "High single-bit ECC error rate",
            "Single-bit ECC errors are being corrected at a high rate.",
            False,
            ACTION_NONE,
        ),
        XidDetail(
            94,
            "Contained ECC error",
            "An uncorrectable ECC error was contained to the affected applications.",
            False,
            ACTION_CHECK_APPLICATION,
        ),
        XidDetail(
            95,
            "Uncontained ECC error",
            "An uncorrectable ECC error could not be contained; all applications on the GPU are affected.",
            True,
            ACTION_RESET_GPU,
        ),
        XidDetail(
            119,
            "GSP RPC Timeout",
            "The GPU System Processor did not answer a driver request in time.",
            True,
            ACTION_RESET_GPU,
        ),
        XidDetail(
            120,
            "GSP Error",
            "The GPU System Processor reported an error.",
            True,
            ACTION_RESET_GPU,
        ),
    )
}


def get_xid_detail(xid: int) -> XidDetail | None:
    """Look up a fault code; None if the code is not catalogued."""
    return _XIDS.get(xid)
