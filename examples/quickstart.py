"""nvdiag Quick Start: one health check from nvidia-smi, then a few seconds of NVML fault events."""

import queue
import time

import nvdiag

# 1. Decode nvidia-smi --query output and scan it
if nvdiag.smi_exists():
    doc = nvdiag.get_smi_output()
    print(f"driver {doc.driver_version}, CUDA {doc.cuda_version}, {len(doc.gpus)} GPU(s)")
    for t in nvdiag.normalize_document(doc).temperatures:
        print(f"  {t.id}: {t.current_humanized} ({t.to_dict()['used_percent']}% of limit)")

    errs = nvdiag.scan_document(doc)
    for e in errs or ():
        print("  anomaly:", e)

# 2. Watch for Xid events and take a metric snapshot
monitor = nvdiag.create_device_monitor()
if monitor is not None:
    with monitor:
        snap = monitor.get()
        for dev in snap.device_infos:
            print(f"{dev.uuid} {dev.name}: memory {dev.memory.used_percent if dev.memory else '?'}% used")

        events = monitor.recv_fault_events()
        deadline = time.monotonic() + 10
        while time.monotonic() < deadline:
            try:
                ev = events.get(timeout=1)
            except queue.Empty:
                continue
            print(ev.to_json())

print("Done!")
