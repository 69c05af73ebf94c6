from __future__ import annotations

import math
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
class ExternalCallSample:
    ts: float
    integration: str
    latency_ms: float
    success: bool


_request_samples: Deque[RequestSample] = deque(maxlen=20000)
_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    # Track request latency and status for the ops snapshot.
    _request_samples.append(
        RequestSample(ts=time.time(), path=path, status_code=status_code, latency_ms=latency_ms)
    )


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Capture external call latency and outcomes.
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            latency_ms=latency_ms,
            success=success,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    # Store counters for lifecycle transitions and ops dashboards.
    _counters[name] += value


def _p95(latencies: list[float]) -> float:
    idx = max(0, math.ceil(0.95 * len(latencies)) - 1)
    return latencies[idx]


def availability(window_s: int) -> float | None:
    # Calculate availability as % of non-5xx requests over the window.
    cutoff = time.time() - window_s
    samples = [sample for sample in _request_samples if sample.ts >= cutoff]
    if not samples:
        return None
    failures = sum(1 for sample in samples if sample.status_code >= 500)
    return ((len(samples) - failures) / len(samples)) * 100.0


def external_stats_by_integration(window_s: int) -> dict[str, dict[str, float | int | None]]:
    # Aggregate external call latency and failures per integration in the window.
    cutoff = time.time() - window_s
    grouped: dict[str, list[ExternalCallSample]] = defaultdict(list)
    for sample in _external_samples:
        if sample.ts >= cutoff:
            grouped[sample.integration].append(sample)
    result: dict[str, dict[str, float | int | None]] = {}
    for integration, samples in grouped.items():
        latencies = sorted(sample.latency_ms for sample in samples)
        result[integration] = {
            "calls": len(samples),
            "failures": sum(1 for sample in samples if not sample.success),
            "p95": _p95(latencies),
            "max": latencies[-1],
        }
    return result


def counters_snapshot() -> dict[str, int]:
    # Return a copy of all counters for metrics reporting.
    return dict(_counters)


def metrics_snapshot(window_s: int = 300) -> dict[str, object]:
    return {
        "window_s": window_s,
        "availability": availability(window_s),
        "integrations": external_stats_by_integration(window_s),
        "counters": counters_snapshot(),
    }


def reset_telemetry() -> None:
    # Tests start from empty samples and counters.
    _request_samples.clear()
    _external_samples.clear()
    _counters.clear()
