"""
Simple in-memory metrics for Prometheus exposition.
Thread-safe counters.
"""
import threading
from typing import Dict

# (counter name, help text)
COUNTERS = (
    ("requests_total", "Total HTTP requests"),
    ("builds_submitted_total", "Builds accepted into the queue"),
    ("builds_completed_total", "Builds that produced an artifact"),
    ("builds_failed_total", "Builds that ended without an artifact"),
    ("builds_rejected_total", "Build submissions rejected because the queue was full"),
)


class Metrics:
    """Thread-safe metrics collection."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {name: 0 for name, _ in COUNTERS}
        self._counters.update({"requests_2xx": 0, "requests_4xx": 0, "requests_5xx": 0})

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
            lines.append(f"# HELP cart_{name} {help_text}")
            lines.append(f"# TYPE cart_{name} counter")
            lines.append(f"cart_{name} {counters.get(name, 0)}")

        # Requests by status class
        lines.append("# HELP cart_requests_by_status HTTP requests by status class")
        lines.append("# TYPE cart_requests_by_status counter")
        for status in ("2xx", "4xx", "5xx"):
            lines.append(f'cart_requests_by_status{{status="{status}"}} {counters[f"requests_{status}"]}')

        return "\n".join(lines) + "\n"


# Global metrics instance
metrics = Metrics()
