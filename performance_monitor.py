import time
from typing import Dict

from metrics import og_image_generation_duration

STATUS_SUCCESS = "success"
STATUS_ERROR = "error"


class PerformanceMonitor:
    """Labelled stage timer for one request or one background task.

    Every ``end`` records the elapsed milliseconds locally and observes the duration (in
    seconds) in the ``og_image_generation_duration_seconds`` histogram, labelled with the
    stage, address, cache-hit flag and the status current at that moment. Callers flip the
    status to ``error`` before closing ``total`` so the terminal observation carries it.

    Calling ``end`` for a label that was never started is silently ignored: a misplaced
    timer must never fail the request it is measuring.
    """

    def __init__(self, address: str, cache_hit: bool = False):
        self.address = address
        self.cache_hit = cache_hit
        self.status = STATUS_SUCCESS
        self._timers: Dict[str, float] = {}
        self._durations: Dict[str, float] = {}

    def set_status(self, status: str) -> None:
        self.status = status

    def set_cache_hit(self, cache_hit: bool) -> None:
        self.cache_hit = cache_hit

    def start(self, label: str) -> None:
        self._timers[label] = time.perf_counter()

    def end(self, label: str) -> None:
        started = self._timers.pop(label, None)
        if started is None:
            return
        elapsed = time.perf_counter() - started
        self._durations[label] = elapsed * 1000
        og_image_generation_duration.labels(
            step=label,
            address=self.address,
            cache_hit=str(self.cache_hit).lower(),
            status=self.status,
        ).observe(elapsed)

    def get_duration(self, label: str) -> float:
        return self._durations.get(label, 0.0)

    def get_summary(self) -> str:
        lines = ["", "Performance Summary:"]
        stage_total = 0.0
        for label, duration in self._durations.items():
            if label == "total":
                continue
            lines.append(f"{label}: {duration:.0f}ms")
            stage_total += duration
        total = self._durations.get("total", stage_total)
        lines.append(f"Total Time: {total:.0f}ms")
        return "\n".join(lines) + "\n"
