# Copyright 2025 John Brosnihan
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Optional metrics collection for observability.

This module provides simple in-memory metrics collection:
- Decision counters by outcome (executed, ended, rejected, ...)
- Error counts by type
- Latency tracking (min, max, avg, count by operation)
- Decode conformance of oracle responses
"""

import time
from typing import Dict, Optional
from dataclasses import dataclass
from threading import Lock
from collections import defaultdict


@dataclass
class LatencyStats:
    """Running statistics for a numeric sample stream."""
    count: int = 0
    total: float = 0.0
    min: float = float('inf')
    max: float = 0.0

    @property
    def avg(self) -> float:
        """Calculate average value."""
        return self.total / self.count if self.count > 0 else 0.0

    def record(self, value: float) -> None:
        """Record a new sample.

        Args:
            value: The value to record (e.g., duration in ms)
        """
        self.count += 1
        self.total += value
        self.min = min(self.min, value)
        self.max = max(self.max, value)

    def to_dict(self, unit: str = "ms") -> Dict[str, float]:
        """Convert to dictionary for serialization.

        Args:
            unit: Unit suffix for keys (e.g., "ms" for milliseconds, "" for dimensionless)

        Returns:
            Dictionary with count, avg, min, max with appropriate unit suffix
        """
        suffix = f"_{unit}" if unit else ""
        return {
            "count": self.count,
            f"avg{suffix}": round(self.avg, 2),
            f"min{suffix}": round(self.min, 2) if self.min != float('inf') else 0.0,
            f"max{suffix}": round(self.max, 2)
        }


class MetricsCollector:
    """In-memory metrics collector with thread-safe operations.

    Collects:
    - Decision outcomes (how each oracle decision ended up)
    - Operation latencies (snapshot, oracle call, execution)
    - Error counts by type
    - Decode successes and failures for the conformance rate
    """

    def __init__(self):
        """Initialize metrics collector."""
        self._lock = Lock()
        self._decision_counts: Dict[str, int] = defaultdict(int)
        self._error_counts: Dict[str, int] = defaultdict(int)
        self._latencies: Dict[str, LatencyStats] = defaultdict(LatencyStats)
        self._decode_success = 0
        self._decode_failure = 0
        self._start_time = time.time()

    def record_decision(self, outcome: str) -> None:
        """Record the outcome of one oracle decision.

        Args:
            outcome: Outcome label (e.g., "executed", "rejected", "timeout")
        """
        with self._lock:
            self._decision_counts[outcome] += 1

    def record_error(self, error_type: str) -> None:
        """Record an error by type.

        Args:
            error_type: Error type/category
        """
        with self._lock:
            self._error_counts[error_type] += 1

    def record_latency(self, operation: str, duration_ms: float) -> None:
        """Record operation latency.

        Args:
            operation: Operation name (e.g., "snapshot", "oracle_call")
            duration_ms: Duration in milliseconds
        """
        with self._lock:
            self._latencies[operation].record(duration_ms)

    def record_decode(self, success: bool) -> None:
        """Record whether an oracle response decoded into an action."""
        with self._lock:
            if success:
                self._decode_success += 1
            else:
                self._decode_failure += 1

    def get_metrics(self) -> Dict:
        """Get all collected metrics.

        Returns:
            Dictionary with all metrics
        """
        with self._lock:
            total_decisions = sum(self._decision_counts.values())
            total_decodes = self._decode_success + self._decode_failure
            conformance_rate = (
                self._decode_success / total_decodes if total_decodes > 0 else 0.0
            )

            return {
                "uptime_seconds": round(time.time() - self._start_time, 2),
                "decisions": {
                    "total": total_decisions,
                    "by_outcome": dict(self._decision_counts)
                },
                "errors": {
                    "by_type": dict(self._error_counts)
                },
                "latencies": {
                    operation: stats.to_dict(unit="ms")
                    for operation, stats in self._latencies.items()
                },
                "schema_conformance": {
                    "total_decodes": total_decodes,
                    "successful_decodes": self._decode_success,
                    "failed_decodes": self._decode_failure,
                    "conformance_rate": round(conformance_rate, 4)
                }
            }

    def reset(self) -> None:
        """Reset all metrics. Useful for testing."""
        with self._lock:
            self._decision_counts.clear()
            self._error_counts.clear()
            self._latencies.clear()
            self._decode_success = 0
            self._decode_failure = 0
            self._start_time = time.time()


# Global metrics collector instance (singleton)
_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector() -> Optional[MetricsCollector]:
    """Get the global metrics collector instance.

    Returns:
        MetricsCollector instance if metrics are enabled, None otherwise
    """
    return _metrics_collector


def init_metrics_collector() -> MetricsCollector:
    """Initialize the global metrics collector.

    Returns:
        Initialized MetricsCollector instance
    """
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector()
    return _metrics_collector


def disable_metrics_collector() -> None:
    """Disable metrics collection by clearing the global instance."""
    global _metrics_collector
    _metrics_collector = None


class MetricsTimer:
    """Context manager for timing operations and recording metrics.

    Usage:
        with MetricsTimer("snapshot"):
            state = builder.build()
    """

    def __init__(self, operation: str):
        self.operation = operation
        self.start_time = 0.0
        self.collector = get_metrics_collector()

    def __enter__(self):
        """Start the timer."""
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """End the timer and record metrics."""
        if self.collector:
            duration_ms = (time.time() - self.start_time) * 1000
            self.collector.record_latency(self.operation, duration_ms)
