import threading
import time
from collections import deque

from src.models.delivery import Outcome


class MetricsCollector:
    """Collects and computes webhook delivery metrics with rolling windows.

    Samples older than the window are dropped on every record and read, so
    memory stays proportional to the traffic inside one window.
    """

    def __init__(self, window_seconds: float = 300):
        self._window_seconds = window_seconds
        self._successes: deque[float] = deque()  # timestamps
        self._failures: deque[float] = deque()
        self._response_times: deque[tuple[float, int]] = deque()
        self._lock = threading.Lock()

    def record(self, outcome: Outcome) -> None:
        now = time.monotonic()
        with self._lock:
            if outcome.success:
                self._successes.append(now)
            else:
                self._failures.append(now)
            self._response_times.append((now, outcome.elapsed_ms))
            self._prune(now)

    def record_success(self) -> None:
        now = time.monotonic()
        with self._lock:
            self._successes.append(now)
            self._prune(now)

    def record_failure(self) -> None:
        now = time.monotonic()
        with self._lock:
            self._failures.append(now)
            self._prune(now)

    def _prune(self, now: float) -> None:
        """Drop samples older than the window. Caller holds the lock."""
        cutoff = now - self._window_seconds
        for samples in (self._successes, self._failures):
            while samples and samples[0] < cutoff:
                samples.popleft()
        while self._response_times and self._response_times[0][0] < cutoff:
            self._response_times.popleft()

    def failure_rate(self) -> float:
        """Failure rate in the current rolling window (0.0 to 1.0)."""
        with self._lock:
            self._prune(time.monotonic())
            total = len(self._successes) + len(self._failures)
            if total == 0:
                return 0.0
            return len(self._failures) / total

    def total_in_window(self) -> int:
        with self._lock:
            self._prune(time.monotonic())
            return len(self._successes) + len(self._failures)

    def failure_count_in_window(self) -> int:
        with self._lock:
            self._prune(time.monotonic())
            return len(self._failures)

    def average_response_ms(self) -> float:
        with self._lock:
            self._prune(time.monotonic())
            if not self._response_times:
                return 0.0
            return sum(ms for _, ms in self._response_times) / len(self._response_times)

    def reset(self) -> None:
        with self._lock:
            self._successes.clear()
            self._failures.clear()
            self._response_times.clear()
