from __future__ import annotations

import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class RequestSample:
    ts: float
    path: str
    status_code: int
    latency_ms: float


@dataclass(frozen=True)
class VendorCallSample:
    ts: float
    operation: str
    latency_ms: float
    success: bool


_request_samples: Deque[RequestSample] = deque(maxlen=20000)
_vendor_samples: Deque[VendorCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    # Track inbound request latency and status in-process.
    _request_samples.append(
        RequestSample(ts=time.time(), path=path, status_code=status_code, latency_ms=latency_ms)
    )


def record_vendor_call(*, operation: str, latency_ms: float, success: bool) -> None:
    # Capture outbound vendor call latency and outcomes.
    _vendor_samples.append(
        VendorCallSample(ts=time.time(), operation=operation, latency_ms=latency_ms, success=success)
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def vendor_success_rate(window_s: int) -> float | None:
    # Share of successful vendor calls over the window, as a percentage.
    cutoff = time.time() - window_s
    samples = [sample for sample in _vendor_samples if sample.ts >= cutoff]
    if not samples:
        return None
    successes = sum(1 for sample in samples if sample.success)
    return (successes / len(samples)) * 100.0


def request_summary(window_s: int) -> dict[str, float | int | None]:
    cutoff = time.time() - window_s
    samples = [sample for sample in _request_samples if sample.ts >= cutoff]
    if not samples:
        return {"count": 0, "error_rate": None, "avg_latency_ms": None}
    errors = sum(1 for sample in samples if sample.status_code >= 500)
    return {
        "count": len(samples),
        "error_rate": (errors / len(samples)) * 100.0,
        "avg_latency_ms": sum(sample.latency_ms for sample in samples) / len(samples),
    }


def reset_telemetry() -> None:
    # Tests start from empty buffers.
    _request_samples.clear()
    _vendor_samples.clear()
    _counters.clear()
