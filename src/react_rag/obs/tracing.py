"""Per-turn timing and aggregate chat metrics."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Literal

TurnOutcome = Literal["answered", "aborted", "cancelled"]


@dataclass(slots=True)
class TurnMetrics:
    outcome: TurnOutcome
    latency_ms: float
    iterations: int
    searches: int
    source_count: int


class MetricsRecorder:
    """In-memory turn metrics for the `/metrics` endpoint."""

    def __init__(self, max_records: int = 1000) -> None:
        self._records: list[TurnMetrics] = []
        self._max_records = max_records

    def record(self, metrics: TurnMetrics) -> None:
        self._records.append(metrics)
        if len(self._records) > self._max_records:
            del self._records[: len(self._records) - self._max_records]

    def summary(self) -> dict[str, float | int]:
        """Aggregate core observability metrics for dashboard display."""
        records = list(self._records)
        total = len(records)
        if total == 0:
            return {
                "total_turns": 0,
                "answered_turns": 0,
                "aborted_turns": 0,
                "cancelled_turns": 0,
                "avg_latency_ms": 0.0,
                "p95_latency_ms": 0.0,
                "avg_iterations": 0.0,
                "total_searches": 0,
            }

        latencies = sorted(record.latency_ms for record in records)
        p95_index = max(0, int((len(latencies) * 0.95) - 1))
        return {
            "total_turns": total,
            "answered_turns": sum(1 for r in records if r.outcome == "answered"),
            "aborted_turns": sum(1 for r in records if r.outcome == "aborted"),
            "cancelled_turns": sum(1 for r in records if r.outcome == "cancelled"),
            "avg_latency_ms": sum(latencies) / total,
            "p95_latency_ms": latencies[p95_index],
            "avg_iterations": sum(r.iterations for r in records) / total,
            "total_searches": sum(r.searches for r in records),
        }


class Timer:
    """Simple context timer used by the chat controller."""

    def __init__(self) -> None:
        self._start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0
