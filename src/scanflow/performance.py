# src/scanflow/performance.py
from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Optional, TypeVar, Awaitable

logger = logging.getLogger("scanflow")

T = TypeVar("T")

# (good, acceptable) upper bounds in milliseconds, keyed by metric name prefix
THRESHOLDS_MS: Dict[str, tuple] = {
    "image_load": (500, 1500),
    "optimize": (1000, 3000),
    "thumbnails": (500, 1500),
    "enhance": (2000, 5000),
    "recognition": (5000, 15000),
}
DEFAULT_THRESHOLD_MS = (1000, 3000)


@dataclass
class Metric:
    name: str
    start: float
    end: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def duration_ms(self) -> Optional[int]:
        if self.end is None:
            return None
        return int(round((self.end - self.start) * 1000))


def rate_duration(name: str, duration_ms: int) -> str:
    """'good', 'acceptable' or 'slow' against the thresholds for the metric kind."""
    good, acceptable = next(
        (v for k, v in THRESHOLDS_MS.items() if name.startswith(k)), DEFAULT_THRESHOLD_MS
    )
    if duration_ms <= good:
        return "good"
    if duration_ms <= acceptable:
        return "acceptable"
    return "slow"


class PerformanceMonitor:
    """
    Named start/end timers. Completed metrics are logged at debug level and,
    when a log path is configured, appended to a JSONL performance log.
    """

    def __init__(self, enabled: bool = True, log_path: Optional[Path] = None):
        self.enabled = enabled
        self.log_path = Path(log_path) if log_path else None
        self._metrics: Dict[str, Metric] = {}

    def start(self, name: str, **metadata: Any) -> None:
        if not self.enabled:
            return
        self._metrics[name] = Metric(name=name, start=time.perf_counter(), metadata=dict(metadata))

    def end(self, name: str, **metadata: Any) -> Optional[int]:
        if not self.enabled:
            return None
        metric = self._metrics.pop(name, None)
        if metric is None:
            logger.warning("No metric found for %s", name)
            return None
        metric.end = time.perf_counter()
        metric.metadata.update(metadata)
        duration = metric.duration_ms
        rating = rate_duration(name, duration)
        logger.debug("Performance, %s, %dms, %s", name, duration, rating)
        self._log_performance({
            "metric_type": name,
            "duration_ms": duration,
            "rating": rating,
            **metric.metadata,
        })
        return duration

    def measure(self, name: str, fn: Callable[[], T], **metadata: Any) -> T:
        self.start(name, **metadata)
        try:
            result = fn()
        except Exception as e:
            self.end(name, error=str(e))
            raise
        self.end(name)
        return result

    async def measure_async(self, name: str, fn: Callable[[], Awaitable[T]], **metadata: Any) -> T:
        self.start(name, **metadata)
        try:
            result = await fn()
        except Exception as e:
            self.end(name, error=str(e))
            raise
        self.end(name)
        return result

    def pending(self) -> Dict[str, Metric]:
        return dict(self._metrics)

    def _log_performance(self, metric: Dict):
        if not self.log_path:
            return
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.log_path, "a", encoding="utf-8") as f:
                log_entry = {"timestamp": time.strftime("%Y-%m-%dT%H:%M:%S%z"), **metric}
                f.write(json.dumps(log_entry, ensure_ascii=False, default=str) + "\n")
        except Exception:
            logger.exception("Failed to write performance log")
