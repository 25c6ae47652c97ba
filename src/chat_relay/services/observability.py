"""In-process SLO counters and audit trail for relay outcomes."""
from __future__ import annotations

import time
from collections import defaultdict, deque
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator

# Metric names
UPSTREAM_OPEN = "relay.upstream_open"
STREAM = "relay.stream"
STORE_APPEND = "message_store.append"

AUDIT_BUFFER_SIZE = 1000


@dataclass
class SLOMetric:
    count: int = 0
    failures: int = 0
    total_latency_ms: float = 0.0


_metrics: dict[str, SLOMetric] = defaultdict(SLOMetric)
_audit_events: deque[dict[str, Any]] = deque(maxlen=AUDIT_BUFFER_SIZE)


def record_metric(name: str, latency_ms: float, success: bool) -> None:
    m = _metrics[name]
    m.count += 1
    if not success:
        m.failures += 1
    m.total_latency_ms += latency_ms


class _Outcome:
    success = True

    def fail(self) -> None:
        self.success = False


@contextmanager
def timed(name: str) -> Iterator[_Outcome]:
    """Record latency for ``name``; an exception or ``outcome.fail()`` counts as failure."""
    outcome = _Outcome()
    start = time.perf_counter()
    try:
        yield outcome
    except BaseException:
        outcome.fail()
        raise
    finally:
        record_metric(name, (time.perf_counter() - start) * 1000, outcome.success)


def get_metric_snapshot() -> dict[str, dict[str, float]]:
    out: dict[str, dict[str, float]] = {}
    for key, m in _metrics.items():
        avg = (m.total_latency_ms / m.count) if m.count else 0.0
        out[key] = {
            "count": float(m.count),
            "failures": float(m.failures),
            "avg_latency_ms": avg,
            "error_rate": (m.failures / m.count) if m.count else 0.0,
        }
    return out


def emit_audit_event(event_type: str, **payload: Any) -> None:
    _audit_events.append({"ts": time.time(), "event": event_type, **payload})


def get_audit_events(limit: int = 100) -> list[dict[str, Any]]:
    return list(_audit_events)[-limit:]


def reset_observability() -> None:
    """Clear counters and audit events."""
    _metrics.clear()
    _audit_events.clear()
