"""Thread-safe pipeline counters and a periodic log reporter."""

import logging
import threading
import time
from collections import defaultdict

from apscheduler.schedulers.background import BackgroundScheduler

logger = logging.getLogger(__name__)

COUNTERS = (
    "lines_read",
    "parse_errors",
    "drops_parsed",
    "drops_expired",
    "drops_ignored",
    "events_submitted",
    "events_rejected",
    "drops_abandoned",
)


class PipelineStats:
    def __init__(self):
        self._lock = threading.Lock()
        self._counts: dict[str, int] = defaultdict(int)
        self._start_time = time.monotonic()

    def increment(self, name: str, amount: int = 1):
        with self._lock:
            self._counts[name] += amount

    def snapshot(self) -> dict:
        """Return a point-in-time copy of all counters."""
        with self._lock:
            counts = {name: self._counts.get(name, 0) for name in COUNTERS}
            counts.update(self._counts)
        counts["uptime_seconds"] = round(time.monotonic() - self._start_time, 1)
        return counts


def log_stats(stats: PipelineStats):
    snap = stats.snapshot()
    logger.info(
        "Stats: lines=%d parsed=%d parse_errors=%d expired=%d ignored=%d events=%d rejected=%d abandoned=%d",
        snap["lines_read"], snap["drops_parsed"], snap["parse_errors"], snap["drops_expired"],
        snap["drops_ignored"], snap["events_submitted"], snap["events_rejected"], snap["drops_abandoned"],
    )


def start_stats_reporter(stats: PipelineStats, interval: int) -> BackgroundScheduler | None:
    """Log a stats summary every interval seconds. Returns None when disabled."""
    if interval <= 0:
        return None
    scheduler = BackgroundScheduler(daemon=True)
    scheduler.add_job(log_stats, "interval", seconds=interval, args=[stats])
    scheduler.start()
    return scheduler
