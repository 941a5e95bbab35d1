"""
Metrics collection for observability.

Tracks request latency, error rates, in-flight requests, subscription
delivery and reconnects.
"""

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass
class MetricsSnapshot:
    """Point-in-time snapshot of all metrics."""

    # Requests
    requests_total: int = 0
    requests_success: int = 0
    requests_failed: int = 0
    requests_timed_out: int = 0

    # Latency (milliseconds)
    latency_avg_ms: float = 0.0
    latency_p50_ms: float = 0.0
    latency_p95_ms: float = 0.0
    latency_p99_ms: float = 0.0
    latency_min_ms: float = 0.0
    latency_max_ms: float = 0.0

    # In-flight requests
    inflight: int = 0
    inflight_max: int = 0

    # Subscriptions
    subscriptions_active: int = 0
    notifications_delivered: int = 0
    notifications_dropped: int = 0
    queue_overflows: int = 0

    # Connection
    decode_errors: int = 0
    connections_lost: int = 0
    reconnect_attempts: int = 0
    reconnect_successes: int = 0

    timestamp: float = field(default_factory=time.time)


class Metrics:
    """
    Thread-safe metrics collector for Client.

    Usage:
        metrics = Metrics()

        start = metrics.start_request()
        # ... do work ...
        metrics.end_request(start, success=True)

        snapshot = metrics.snapshot()
        print(f"Avg latency: {snapshot.latency_avg_ms}ms")
    """

    def __init__(self, max_latency_samples: int = 1000):
        self.max_latency_samples = max_latency_samples

        self._lock = threading.Lock()
        self._latencies: deque = deque(maxlen=max_latency_samples)
        self._reset_counters()

    def _reset_counters(self):
        self._requests_total = 0
        self._requests_success = 0
        self._requests_failed = 0
        self._requests_timed_out = 0
        self._inflight = 0
        self._inflight_max = 0
        self._subscriptions_active = 0
        self._notifications_delivered = 0
        self._notifications_dropped = 0
        self._queue_overflows = 0
        self._decode_errors = 0
        self._connections_lost = 0
        self._reconnect_attempts = 0
        self._reconnect_successes = 0

    def start_request(self) -> float:
        """
        Start tracking a request.

        Returns start timestamp for later end_request() call.
        """
        with self._lock:
            self._requests_total += 1
            self._inflight += 1
            self._inflight_max = max(self._inflight_max, self._inflight)

        return time.perf_counter()

    def end_request(
        self, start_time: float, success: bool = True, timed_out: bool = False
    ) -> float:
        """
        End tracking a request.

        Returns latency in milliseconds.
        """
        latency_ms = (time.perf_counter() - start_time) * 1000

        with self._lock:
            self._inflight -= 1
            if success:
                self._requests_success += 1
            else:
                self._requests_failed += 1
                if timed_out:
                    self._requests_timed_out += 1
            self._latencies.append(latency_ms)

        return latency_ms

    def record_subscribed(self):
        with self._lock:
            self._subscriptions_active += 1

    def record_unsubscribed(self):
        with self._lock:
            self._subscriptions_active = max(0, self._subscriptions_active - 1)

    def record_delivered(self):
        with self._lock:
            self._notifications_delivered += 1

    def record_dropped(self, overflow: bool = False):
        """Record a notification that never reached its consumer."""
        with self._lock:
            self._notifications_dropped += 1
            if overflow:
                self._queue_overflows += 1

    def record_decode_error(self):
        with self._lock:
            self._decode_errors += 1

    def record_connection_lost(self):
        with self._lock:
            self._connections_lost += 1

    def record_reconnect_attempt(self, success: bool):
        with self._lock:
            self._reconnect_attempts += 1
            if success:
                self._reconnect_successes += 1

    def snapshot(self) -> MetricsSnapshot:
        """Get a point-in-time snapshot of all metrics."""
        with self._lock:
            latencies = list(self._latencies)

            if latencies:
                sorted_latencies = sorted(latencies)
                n = len(sorted_latencies)
                latency_avg = sum(latencies) / n
                latency_p50 = sorted_latencies[min(int(n * 0.50), n - 1)]
                latency_p95 = sorted_latencies[min(int(n * 0.95), n - 1)]
                latency_p99 = sorted_latencies[min(int(n * 0.99), n - 1)]
                latency_min = sorted_latencies[0]
                latency_max = sorted_latencies[-1]
            else:
                latency_avg = latency_p50 = latency_p95 = latency_p99 = 0.0
                latency_min = latency_max = 0.0

            return MetricsSnapshot(
                requests_total=self._requests_total,
                requests_success=self._requests_success,
                requests_failed=self._requests_failed,
                requests_timed_out=self._requests_timed_out,
                latency_avg_ms=latency_avg,
                latency_p50_ms=latency_p50,
                latency_p95_ms=latency_p95,
                latency_p99_ms=latency_p99,
                latency_min_ms=latency_min,
                latency_max_ms=latency_max,
                inflight=self._inflight,
                inflight_max=self._inflight_max,
                subscriptions_active=self._subscriptions_active,
                notifications_delivered=self._notifications_delivered,
                notifications_dropped=self._notifications_dropped,
                queue_overflows=self._queue_overflows,
                decode_errors=self._decode_errors,
                connections_lost=self._connections_lost,
                reconnect_attempts=self._reconnect_attempts,
                reconnect_successes=self._reconnect_successes,
            )

    def reset(self):
        """Reset all metrics."""
        with self._lock:
            self._reset_counters()
            self._latencies.clear()

    def to_dict(self) -> Dict[str, Any]:
        """Get metrics as a dictionary (for logging/serialization)."""
        snapshot = self.snapshot()
        return {
            "requests": {
                "total": snapshot.requests_total,
                "success": snapshot.requests_success,
                "failed": snapshot.requests_failed,
                "timed_out": snapshot.requests_timed_out,
                "error_rate": (
                    snapshot.requests_failed / snapshot.requests_total
                    if snapshot.requests_total > 0
                    else 0.0
                ),
            },
            "latency_ms": {
                "avg": round(snapshot.latency_avg_ms, 2),
                "p50": round(snapshot.latency_p50_ms, 2),
                "p95": round(snapshot.latency_p95_ms, 2),
                "p99": round(snapshot.latency_p99_ms, 2),
                "min": round(snapshot.latency_min_ms, 2),
                "max": round(snapshot.latency_max_ms, 2),
            },
            "inflight": {
                "current": snapshot.inflight,
                "max": snapshot.inflight_max,
            },
            "subscriptions": {
                "active": snapshot.subscriptions_active,
                "delivered": snapshot.notifications_delivered,
                "dropped": snapshot.notifications_dropped,
                "overflows": snapshot.queue_overflows,
            },
            "connection": {
                "decode_errors": snapshot.decode_errors,
                "lost": snapshot.connections_lost,
                "reconnect_attempts": snapshot.reconnect_attempts,
                "reconnect_successes": snapshot.reconnect_successes,
            },
        }
