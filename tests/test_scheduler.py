"""Tests for the collection scheduler."""
from __future__ import annotations

import sys
import threading
import time
from datetime import datetime
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from catalog import MetricCatalog
from collectors.base import BaseCollector, WorkerReport
from config import ConfigError
from conftest import RecordingSink, make_sqlite_target
from models import ErrorKind, Event, Target
from scheduler import CollectionScheduler, SchedulerState, parse_target, resolve_targets
from sinks import MemorySink

STATUS = MetricCatalog.from_config([{"name": "status", "query": "SELECT dbid, status FROM instance"}])


class SlowWorker(BaseCollector):
    """Publishes one event after waiting on a gate."""

    def __init__(self, target: Target, catalog: MetricCatalog, sink, gate: threading.Event) -> None:
        self.target = target
        self.catalog = catalog
        self.sink = sink
        self.gate = gate

    def label(self) -> str:
        return self.target.label

    def collect(self) -> WorkerReport:
        report = WorkerReport(target=self.label())
        self.gate.wait(5)
        self.sink.publish(Event.capture(self.catalog[0], {"target": self.target.label}))
        report.events_published += 1
        return report.finish()


def test_parse_target() -> None:
    assert parse_target("sqlite:///a.db") == Target(url="sqlite:///a.db")
    assert parse_target({"name": "a", "url": "sqlite:///a.db"}) == Target(url="sqlite:///a.db", name="a")
    with pytest.raises(ConfigError):
        parse_target({"name": "a"})
    with pytest.raises(ConfigError):
        parse_target("  ")
    with pytest.raises(ConfigError):
        parse_target(42)


def test_resolve_targets_prefers_configured() -> None:
    targets = resolve_targets(["sqlite:///a.db"], environ={"DATA_SOURCE_NAME": "sqlite:///b.db"})
    assert [t.url for t in targets] == ["sqlite:///a.db"]


def test_resolve_targets_falls_back_to_env() -> None:
    targets = resolve_targets([], environ={"DATA_SOURCE_NAME": "sqlite:///b.db"})
    assert len(targets) == 1
    assert targets[0].url == "sqlite:///b.db"


def test_resolve_targets_without_anything_fails() -> None:
    with pytest.raises(ConfigError):
        resolve_targets([], environ={})


def test_invalid_scheduler_arguments() -> None:
    t = [Target(url="sqlite://")]
    with pytest.raises(ConfigError):
        CollectionScheduler(t, STATUS, MemorySink(), period_sec=0)
    with pytest.raises(ConfigError):
        CollectionScheduler(t, STATUS, MemorySink(), overlap="queue")
    with pytest.raises(ConfigError):
        CollectionScheduler([], STATUS, MemorySink())


def test_run_once_isolates_failing_target(tmp_path: Path, unreachable_target: Target) -> None:
    script = "CREATE TABLE instance (dbid TEXT, status TEXT); INSERT INTO instance VALUES ('1', 'OPEN');"
    good_a = make_sqlite_target(tmp_path / "a.db", script, name="a")
    good_b = make_sqlite_target(tmp_path / "b.db", script, name="b")
    sink = RecordingSink()
    scheduler = CollectionScheduler([good_a, unreachable_target, good_b], STATUS, sink)

    summary = scheduler.run_once(timeout=30)

    assert summary.workers == 3
    assert summary.targets_failed == 1
    assert summary.events_published == 2
    assert summary.issue_count(ErrorKind.CONNECTION) == 1
    assert len(sink.events) == 2
    assert scheduler.state is SchedulerState.IDLE


def test_failing_metric_still_runs_on_other_targets(tmp_path: Path) -> None:
    a = make_sqlite_target(tmp_path / "a.db", "CREATE TABLE t (x TEXT); INSERT INTO t VALUES ('1');", name="a")
    b = make_sqlite_target(tmp_path / "b.db", "CREATE TABLE other (y TEXT);", name="b")
    catalog = MetricCatalog.from_config([
        {"name": "m1", "query": "SELECT x FROM t"},
        {"name": "m2", "query": "SELECT 'done' AS flag"},
    ])
    sink = RecordingSink()
    summary = CollectionScheduler([a, b], catalog, sink).run_once(timeout=30)

    # m1 fails on b only; m2 runs on both
    assert summary.issue_count(ErrorKind.QUERY) == 1
    assert sorted(e.type for e in sink.events) == ["m1", "m2", "m2"]


def test_connection_failure_is_retried_next_tick(unreachable_target: Target) -> None:
    sink = RecordingSink()
    scheduler = CollectionScheduler([unreachable_target], STATUS, sink)
    first = scheduler.run_once(timeout=30)
    second = scheduler.run_once(timeout=30)
    assert first.issue_count(ErrorKind.CONNECTION) == 1
    assert second.issue_count(ErrorKind.CONNECTION) == 1
    assert sink.events == []
    status = scheduler.status()
    assert status["ticks"] == 2
    assert status["totals"]["targets_failed"] == 2


def test_overlap_allowed_starts_second_worker() -> None:
    gate = threading.Event()
    target = Target(url="sqlite://", name="slow")
    sink = MemorySink()
    scheduler = CollectionScheduler(
        [target], STATUS, sink, overlap="allow",
        worker_factory=lambda t, c, s: SlowWorker(t, c, s, gate),
    )
    first = scheduler.tick()
    second = scheduler.tick()
    assert len(first) == 1 and len(second) == 1
    assert scheduler.in_flight() == 2
    assert scheduler.state is SchedulerState.COLLECTING
    gate.set()
    assert scheduler.drain(5)
    assert sink.published == 2


def test_overlap_skip_skips_busy_target() -> None:
    gate = threading.Event()
    target = Target(url="sqlite://", name="slow")
    sink = MemorySink()
    scheduler = CollectionScheduler(
        [target], STATUS, sink, overlap="skip",
        worker_factory=lambda t, c, s: SlowWorker(t, c, s, gate),
    )
    assert len(scheduler.tick()) == 1
    assert scheduler.tick() == []
    assert scheduler.status()["skipped"] == 1
    gate.set()
    assert scheduler.drain(5)
    assert len(scheduler.tick()) == 1
    assert scheduler.drain(5)
    assert sink.published == 2


def test_concurrent_publish_loses_no_events() -> None:
    gate = threading.Event()
    targets = [Target(url="sqlite://", name=f"t{i}") for i in range(8)]
    sink = MemorySink(max_events=1000)
    scheduler = CollectionScheduler(
        targets, STATUS, sink,
        worker_factory=lambda t, c, s: SlowWorker(t, c, s, gate),
    )
    for _ in range(5):
        scheduler.tick()
    gate.set()
    assert scheduler.drain(10)
    events = sink.events()
    assert len(events) == 40
    labels = [e.fields["target"] for e in events]
    assert sorted(set(labels)) == sorted(t.label for t in targets)
    assert all(labels.count(t.label) == 5 for t in targets)


def test_run_forever_ticks_until_stopped() -> None:
    gate = threading.Event()
    gate.set()
    sink = MemorySink()
    scheduler = CollectionScheduler(
        [Target(url="sqlite://", name="fast")], STATUS, sink, period_sec=0.05,
        worker_factory=lambda t, c, s: SlowWorker(t, c, s, gate),
    )
    loop = threading.Thread(target=scheduler.run_forever)
    loop.start()
    deadline = time.monotonic() + 5
    while scheduler.ticks < 3 and time.monotonic() < deadline:
        time.sleep(0.01)
    scheduler.stop()
    loop.join(5)

    assert not loop.is_alive()
    assert scheduler.ticks >= 3
    assert scheduler.state is SchedulerState.STOPPED
    ticks = scheduler.ticks
    time.sleep(0.2)
    assert scheduler.ticks == ticks


def test_stop_abandons_workers_after_timeout() -> None:
    gate = threading.Event()
    scheduler = CollectionScheduler(
        [Target(url="sqlite://", name="stuck")], STATUS, MemorySink(), shutdown_timeout_sec=0.05,
        worker_factory=lambda t, c, s: SlowWorker(t, c, s, gate),
    )
    scheduler.tick()
    scheduler.stop()
    started = time.monotonic()
    assert scheduler.drain(0.05) is False
    assert time.monotonic() - started < 2
    gate.set()
    assert scheduler.drain(5)


def test_event_timestamps_not_before_tick(status_db: Target) -> None:
    sink = RecordingSink()
    scheduler = CollectionScheduler([status_db], STATUS, sink)
    scheduler.run_once(timeout=30)

    last_tick = datetime.fromisoformat(scheduler.status()["last_tick"])
    assert sink.events
    assert all(e.timestamp >= last_tick for e in sink.events)


def test_overlap_skip_tracks_identical_targets_separately() -> None:
    gate = threading.Event()
    targets = [Target(url="sqlite://", name="same"), Target(url="sqlite://", name="same")]
    sink = MemorySink()
    scheduler = CollectionScheduler(
        targets, STATUS, sink, overlap="skip",
        worker_factory=lambda t, c, s: SlowWorker(t, c, s, gate),
    )
    assert len(scheduler.tick()) == 2
    assert scheduler.tick() == []
    assert scheduler.status()["skipped"] == 2
    gate.set()
    assert scheduler.drain(5)
    assert sink.published == 2
