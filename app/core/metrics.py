"""
Simple in-memory metrics for Prometheus exposition.
Thread-safe counters.
"""
import threading
from typing import Dict

# (counter name, help text) in exposition order
COUNTERS = (
    ("requests_total", "Total HTTP requests"),
    ("builds_submitted_total", "Builds admitted to the queue"),
    ("builds_rejected_total", "Build submissions rejected by validation or quota"),
    ("builds_completed_total", "Builds that produced an artifact"),
    ("builds_failed_total", "Builds that failed or timed out"),
    ("builds_cancelled_total", "Builds cancelled while queued"),
    ("artifacts_expired_total", "Artifacts deleted by retention"),
    ("auth_exchanges_total", "Successful proof exchanges"),
    ("auth_failures_total", "Rejected proofs and credentials"),
)


class Metrics:
    """Thread-safe metrics collection."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {
            "requests_2xx": 0,
            "requests_4xx": 0,
            "requests_5xx": 0,
        }
        for name, _ in COUNTERS:
            self._counters[name] = 0

    def inc(self, name: str, value: int = 1) -> None:
        """Increment a counter."""
        with self._lock:
            if name not in self._counters:
                self._counters[name] = 0
            self._counters[name] += value

    def get(self, name: str) -> int:
        """Get a counter value."""
        with self._lock:
            return self._counters.get(name, 0)

    def get_all(self) -> Dict[str, int]:
        """Get all counter values."""
        with self._lock:
            return self._counters.copy()

    def to_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        lines = []
        counters = self.get_all()

        for name, help_text in COUNTERS:
            lines.append(f"# HELP buildservice_{name} {help_text}")
            lines.append(f"# TYPE buildservice_{name} counter")
            lines.append(f"buildservice_{name} {counters.get(name, 0)}")

        lines.append("# HELP buildservice_requests_by_status HTTP requests by status class")
        lines.append("# TYPE buildservice_requests_by_status counter")
        lines.append(f'buildservice_requests_by_status{{status="2xx"}} {counters["requests_2xx"]}')
        lines.append(f'buildservice_requests_by_status{{status="4xx"}} {counters["requests_4xx"]}')
        lines.append(f'buildservice_requests_by_status{{status="5xx"}} {counters["requests_5xx"]}')

        return "\n".join(lines) + "\n"


# Global metrics instance
metrics = Metrics()
