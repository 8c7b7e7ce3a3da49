"""
Brief: Tests for adsift.stats collector, snapshot formatting and reporter.

Inputs:
  - None

Outputs:
  - None
"""

import json
import logging
import threading

from adsift.stats import (
    ESTIMATED_BYTES_PER_BLOCK,
    BlockStats,
    StatsCollector,
    StatsReporter,
    format_snapshot_json,
)
from adsift.verdict import Category


def test_empty_snapshot():
    s = StatsCollector().snapshot()
    assert s.total_requests == 0
    assert s.blocked_requests == 0
    assert s.block_percentage == 0.0
    assert s.bytes_saved == 0
    assert s.categories == {}


def test_percentage_and_bytes_saved():
    s = BlockStats(created_at=0.0, total_requests=3, blocked_requests=1)
    assert abs(s.block_percentage - 33.333) < 0.01
    assert s.bytes_saved == ESTIMATED_BYTES_PER_BLOCK


def test_category_counters():
    c = StatsCollector()
    for cat in (Category.ADVERTISEMENT, Category.ADVERTISEMENT, Category.TRACKING, Category.MALWARE):
        c.record_request()
        c.record_block(cat)
    s = c.snapshot()
    assert s.ads_blocked == 2
    assert s.trackers_blocked == 1
    assert s.malware_blocked == 1
    assert s.blocked_for(Category.SOCIAL) == 0
    assert s.categories == {"Advertisement": 2, "Tracking": 1, "Malware": 1}


def test_snapshot_is_a_copy():
    c = StatsCollector()
    c.record_request()
    s = c.snapshot()
    c.record_request()
    assert s.total_requests == 1
    assert c.snapshot().total_requests == 2


def test_snapshot_reset_and_reset():
    c = StatsCollector()
    c.record_request()
    c.record_upstream_result("8.8.8.8:53", "ok")
    c.record_proxy_result("blocked")
    s = c.snapshot(reset=True)
    assert s.total_requests == 1
    assert s.upstreams == {"8.8.8.8:53": {"ok": 1}}
    assert s.proxy == {"blocked": 1}
    after = c.snapshot()
    assert after.total_requests == 0
    assert after.upstreams == {}
    assert after.proxy == {}

    c.record_block(Category.CUSTOM)
    c.reset()
    assert c.snapshot().blocked_requests == 0


def test_concurrent_updates_are_not_lost():
    c = StatsCollector()

    def worker():
        for _ in range(1000):
            c.record_request()
            c.record_block(Category.TRACKING)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    s = c.snapshot()
    assert s.total_requests == 8000
    assert s.blocked_requests == 8000
    assert s.trackers_blocked == 8000


def test_format_snapshot_json():
    c = StatsCollector()
    for _ in range(3):
        c.record_request()
    c.record_block(Category.ADVERTISEMENT)
    c.record_upstream_result("all", "all_failed")
    data = json.loads(format_snapshot_json(c.snapshot()))
    assert data["totals"] == {
        "total_requests": 3,
        "blocked_requests": 1,
        "block_percentage": 33.33,
        "bytes_saved": ESTIMATED_BYTES_PER_BLOCK,
    }
    assert data["categories"] == {"Advertisement": 1}
    assert data["upstreams"] == {"all": {"all_failed": 1}}
    assert "proxy" not in data
    assert set(data["meta"]) == {"timestamp", "hostname", "version", "uptime"}


def test_reporter_emit_once_logs_and_resets(caplog):
    c = StatsCollector()
    c.record_request()
    reporter = StatsReporter(c, interval_seconds=60, reset_on_log=True, log_level="warning")
    with caplog.at_level(logging.WARNING, logger="adsift.stats"):
        line = reporter.emit_once()
    assert json.loads(line)["totals"]["total_requests"] == 1
    assert any(r.levelno == logging.WARNING and r.getMessage() == line for r in caplog.records)
    assert c.snapshot().total_requests == 0


def test_reporter_thread_stops_promptly():
    reporter = StatsReporter(StatsCollector(), interval_seconds=3600)
    reporter.start()
    reporter.stop(timeout=2.0)
    assert not reporter.is_alive()
