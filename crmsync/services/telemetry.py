from __future__ import annotations

import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class ExternalCallSample:
    ts: float
    integration: str
    latency_ms: float
    success: bool


_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)


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
    # Store counters for sync dashboards and alerts.
    _counters[name] += value


def get_counters() -> dict[str, int]:
    # Return a copy of all counters for metrics reporting.
    return dict(_counters)


def external_call_samples(integration: str | None = None) -> list[ExternalCallSample]:
    if integration is None:
        return list(_external_samples)
    return [sample for sample in _external_samples if sample.integration == integration]


def reset_telemetry() -> None:
    # Tests reset process-wide telemetry between cases.
    _external_samples.clear()
    _counters.clear()
