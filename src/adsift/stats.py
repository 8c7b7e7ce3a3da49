"""
Thread-safe statistics collection for the adsift blocker.

Tracks classification totals, blocks per category, upstream resolver
outcomes and proxy outcomes. Counters are updated under a single lock so
concurrent handler threads never lose updates; snapshots are copied under
the lock and formatted outside it.
"""

from __future__ import annotations

import importlib.metadata as importlib_metadata
import json
import logging
import socket
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .verdict import Category

logger = logging.getLogger(__name__)


try:
    ADSIFT_VERSION = importlib_metadata.version("adsift")
except importlib_metadata.PackageNotFoundError:  # pragma: no cover - source checkout
    ADSIFT_VERSION = "unknown"


_PROCESS_START_TIME = time.time()

# Rough size of an average blocked ad/tracker payload, used for bytes_saved.
ESTIMATED_BYTES_PER_BLOCK = 50 * 1024


def get_process_uptime_seconds() -> float:
    """Return process uptime in seconds since this module was imported.

    Example:
      >>> get_process_uptime_seconds() >= 0.0
      True
    """
    return max(0.0, time.time() - _PROCESS_START_TIME)


@dataclass(frozen=True)
class BlockStats:
    """
    Immutable point-in-time snapshot of blocker statistics.

    Inputs (constructor):
        All fields provided by StatsCollector.snapshot()

    Outputs:
        Snapshot instance; derived figures (block_percentage, bytes_saved)
        are computed properties.

    Example:
        >>> s = BlockStats(created_at=0.0, total_requests=4, blocked_requests=1)
        >>> s.block_percentage
        25.0
    """

    created_at: float
    total_requests: int = 0
    blocked_requests: int = 0
    categories: Dict[str, int] = field(default_factory=dict)
    upstreams: Dict[str, Dict[str, int]] = field(default_factory=dict)
    proxy: Dict[str, int] = field(default_factory=dict)

    @property
    def block_percentage(self) -> float:
        if self.total_requests <= 0:
            return 0.0
        return (self.blocked_requests / self.total_requests) * 100.0

    @property
    def bytes_saved(self) -> int:
        return self.blocked_requests * ESTIMATED_BYTES_PER_BLOCK

    @property
    def ads_blocked(self) -> int:
        return self.categories.get(Category.ADVERTISEMENT.value, 0)

    @property
    def trackers_blocked(self) -> int:
        return self.categories.get(Category.TRACKING.value, 0)

    @property
    def malware_blocked(self) -> int:
        return self.categories.get(Category.MALWARE.value, 0)

    def blocked_for(self, category: Category) -> int:
        return self.categories.get(category.value, 0)


class StatsCollector:
    """
    Thread-safe statistics aggregator shared by the pipeline and front ends.

    Inputs (constructor):
        None

    Outputs:
        StatsCollector instance for recording events and taking snapshots

    All public methods take one RLock and do O(1) work inside it.

    Example:
        >>> collector = StatsCollector()
        >>> collector.record_request()
        >>> collector.record_block(Category.TRACKING)
        >>> snap = collector.snapshot()
        >>> snap.blocked_requests, snap.trackers_blocked
        (1, 1)
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._total = 0
        self._blocked = 0
        self._categories: Dict[str, int] = defaultdict(int)
        self._upstreams: Dict[str, Dict[str, int]] = defaultdict(
            lambda: defaultdict(int)
        )
        self._proxy: Dict[str, int] = defaultdict(int)

    def record_request(self) -> None:
        with self._lock:
            self._total += 1

    def record_block(self, category: Category) -> None:
        """
        Record one blocked request under its category.

        Inputs:
            category: Category reported by the verdict.

        Outputs:
            None
        """
        with self._lock:
            self._blocked += 1
            self._categories[Category(category).value] += 1

    def record_upstream_result(self, upstream_id: str, outcome: str) -> None:
        """
        Record an upstream DNS forward outcome.

        Inputs:
            upstream_id: Upstream identifier (e.g. "8.8.8.8:53"), or "all" for
                the aggregate exhaustion outcome.
            outcome: "ok", "failed" or "all_failed".

        Outputs:
            None

        Example:
            >>> collector = StatsCollector()
            >>> collector.record_upstream_result("8.8.8.8:53", "ok")
            >>> collector.snapshot().upstreams["8.8.8.8:53"]["ok"]
            1
        """
        with self._lock:
            self._upstreams[upstream_id][outcome] += 1

    def record_proxy_result(self, outcome: str) -> None:
        with self._lock:
            self._proxy[outcome] += 1

    def snapshot(self, reset: bool = False) -> BlockStats:
        """Create an immutable snapshot of current statistics.

        Inputs:
            reset: If True, zero all counters after copying them.

        Outputs:
            BlockStats with copies of every counter.
        """
        with self._lock:
            snap = BlockStats(
                created_at=time.time(),
                total_requests=self._total,
                blocked_requests=self._blocked,
                categories=dict(self._categories),
                upstreams={k: dict(v) for k, v in self._upstreams.items()},
                proxy=dict(self._proxy),
            )
            if reset:
                self.reset()
        return snap

    def reset(self) -> None:
        with self._lock:
            self._total = 0
            self._blocked = 0
            self._categories.clear()
            self._upstreams.clear()
            self._proxy.clear()


def format_snapshot_json(snapshot: BlockStats) -> str:
    """Format a statistics snapshot as single-line JSON with meta information.

    Inputs:
        snapshot: BlockStats to serialize.

    Outputs:
        JSON string (single line, no trailing newline). Empty sections are
        omitted.

    Example:
        >>> collector = StatsCollector()
        >>> collector.record_request()
        >>> "total_requests" in format_snapshot_json(collector.snapshot())
        True
    """
    ts = datetime.fromtimestamp(snapshot.created_at, tz=timezone.utc).isoformat()

    try:
        hostname = socket.gethostname()
    except OSError:  # pragma: no cover - environment specific
        hostname = "unknown-host"

    output: Dict[str, Any] = {
        "ts": ts,
        "totals": {
            "total_requests": snapshot.total_requests,
            "blocked_requests": snapshot.blocked_requests,
            "block_percentage": round(snapshot.block_percentage, 2),
            "bytes_saved": snapshot.bytes_saved,
        },
        "meta": {
            "timestamp": ts,
            "hostname": hostname,
            "version": ADSIFT_VERSION,
            "uptime": get_process_uptime_seconds(),
        },
    }

    if snapshot.categories:
        output["categories"] = snapshot.categories

    if snapshot.upstreams:
        output["upstreams"] = snapshot.upstreams

    if snapshot.proxy:
        output["proxy"] = snapshot.proxy

    return json.dumps(output, separators=(",", ":"))


class StatsReporter(threading.Thread):
    """
    Background daemon thread for periodic statistics logging.

    Inputs (constructor):
        collector: StatsCollector instance to snapshot
        interval_seconds: Seconds between log emissions (default 300)
        reset_on_log: Reset counters after each log (default False)
        log_level: Logging level name ("debug", "info", "warning", "error")
        logger_name: Logger name to use (default "adsift.stats")

    Outputs:
        StatsReporter thread instance (call start() to begin)

    Example:
        >>> reporter = StatsReporter(StatsCollector(), interval_seconds=60)
        >>> reporter.start()  # doctest: +SKIP
        >>> reporter.stop()  # doctest: +SKIP
    """

    def __init__(
        self,
        collector: StatsCollector,
        interval_seconds: int = 300,
        reset_on_log: bool = False,
        log_level: str = "info",
        logger_name: str = "adsift.stats",
    ) -> None:
        super().__init__(daemon=True, name="StatsReporter")
        self.collector = collector
        self.interval_seconds = max(1, interval_seconds)
        self.reset_on_log = reset_on_log
        self.logger = logging.getLogger(logger_name)

        level_map = {
            "debug": logging.DEBUG,
            "info": logging.INFO,
            "warning": logging.WARNING,
            "error": logging.ERROR,
            "critical": logging.CRITICAL,
        }
        self.log_level = level_map.get(str(log_level).lower(), logging.INFO)

        self._stop_event = threading.Event()

    def emit_once(self) -> Optional[str]:
        snapshot = self.collector.snapshot(reset=self.reset_on_log)
        json_line = format_snapshot_json(snapshot)
        self.logger.log(self.log_level, json_line)
        return json_line

    def run(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.emit_once()
            except Exception as e:  # pragma: no cover
                self.logger.error("StatsReporter error: %s", e, exc_info=True)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self.is_alive():
            self.join(timeout=timeout)
