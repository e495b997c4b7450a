"""
Collection scheduler: fires on a fixed period and fans out one target
worker thread per configured target.
"""
from __future__ import annotations

import os
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Mapping, Sequence

from catalog import MetricCatalog
from collectors.base import BaseCollector, WorkerReport
from collectors.target_worker import TargetWorker
from config import OVERLAP_POLICIES, ConfigError
from models import ErrorKind, Target
from sinks import EventSink
from utils import format_duration, get_logger

logger = get_logger(__name__)

WorkerFactory = Callable[[Target, MetricCatalog, EventSink], BaseCollector]


class SchedulerState(str, Enum):
    IDLE = "idle"
    COLLECTING = "collecting"
    STOPPED = "stopped"


@dataclass
class RunSummary:
    """Totals over a set of worker reports."""
    workers: int = 0
    targets_failed: int = 0
    rows: int = 0
    events_published: int = 0
    publish_failures: int = 0
    issues_by_kind: dict[str, int] = field(default_factory=dict)
    reports: list[WorkerReport] = field(default_factory=list)

    def add(self, report: WorkerReport, keep: bool = True) -> None:
        self.workers += 1
        if not report.connected:
            self.targets_failed += 1
        self.rows += report.rows
        self.events_published += report.events_published
        self.publish_failures += report.publish_failures
        for issue in report.issues:
            self.issues_by_kind[issue.kind.value] = self.issues_by_kind.get(issue.kind.value, 0) + 1
        if keep:
            self.reports.append(report)

    def issue_count(self, kind: ErrorKind) -> int:
        return self.issues_by_kind.get(kind.value, 0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "workers": self.workers,
            "targets_failed": self.targets_failed,
            "rows": self.rows,
            "events_published": self.events_published,
            "publish_failures": self.publish_failures,
            "issues_by_kind": dict(self.issues_by_kind),
        }


def parse_target(entry: Any) -> Target:
    """Target from a URL string or a ``{name, url}`` mapping."""
    if isinstance(entry, Target):
        return entry
    if isinstance(entry, str):
        if not entry.strip():
            raise ConfigError("Target URL must not be empty")
        return Target(url=entry.strip())
    if isinstance(entry, dict):
        url = entry.get("url")
        if not url or not str(url).strip():
            raise ConfigError(f"Target {entry.get('name', '?')!r} missing required field 'url'")
        name = entry.get("name")
        return Target(url=str(url).strip(), name=str(name) if name else None)
    raise ConfigError(f"Invalid target entry: {type(entry).__name__}")


def resolve_targets(
    configured: Sequence[Any],
    environ: Mapping[str, str] | None = None,
    env_key: str = "DATA_SOURCE_NAME",
) -> list[Target]:
    """Configured targets, or the single target named by ``env_key`` when none are configured."""
    targets = [parse_target(t) for t in configured]
    if targets:
        return targets
    environ = os.environ if environ is None else environ
    fallback = (environ.get(env_key) or "").strip()
    if not fallback:
        raise ConfigError(f"No targets configured and {env_key} is not set")
    logger.info("No targets configured; using %s", env_key)
    return [Target(url=fallback, name=env_key.lower())]


class CollectionScheduler:
    """Runs the catalog against every target once per period.

    Ticks never wait for the previous tick's workers. With ``overlap="skip"``
    a target whose previous worker is still running is skipped for that tick.
    """

    def __init__(
        self,
        targets: Sequence[Target],
        catalog: MetricCatalog,
        sink: EventSink,
        period_sec: float = 10.0,
        overlap: str = "allow",
        shutdown_timeout_sec: float = 5.0,
        connect_timeout_sec: float | None = None,
        worker_factory: WorkerFactory | None = None,
    ) -> None:
        if period_sec <= 0:
            raise ConfigError("period must be positive")
        if overlap not in OVERLAP_POLICIES:
            raise ConfigError(f"overlap must be one of {', '.join(OVERLAP_POLICIES)}, got {overlap!r}")
        if not targets:
            raise ConfigError("At least one target is required")
        self.targets = list(targets)
        self.catalog = catalog
        self.sink = sink
        self.period_sec = period_sec
        self.overlap = overlap
        self.shutdown_timeout_sec = shutdown_timeout_sec
        self.connect_timeout_sec = connect_timeout_sec
        self.worker_factory = worker_factory or self._default_worker

        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._threads: set[threading.Thread] = set()
        # in-flight workers per target position; equal targets are still separate slots
        self._active: dict[int, int] = {}
        self._ticks = 0
        self._skipped = 0
        self._last_tick: datetime | None = None
        self._totals = RunSummary()
        self._last_reports: dict[str, WorkerReport] = {}

    def _default_worker(self, target: Target, catalog: MetricCatalog, sink: EventSink) -> BaseCollector:
        return TargetWorker(target, catalog, sink, connect_timeout_sec=self.connect_timeout_sec)

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def state(self) -> SchedulerState:
        if self._stop.is_set():
            return SchedulerState.STOPPED
        with self._lock:
            busy = bool(self._threads)
        return SchedulerState.COLLECTING if busy else SchedulerState.IDLE

    @property
    def ticks(self) -> int:
        with self._lock:
            return self._ticks

    def in_flight(self) -> int:
        with self._lock:
            return len(self._threads)

    def status(self) -> dict[str, Any]:
        state = self.state
        with self._lock:
            return {
                "state": state.value,
                "period_sec": self.period_sec,
                "overlap": self.overlap,
                "ticks": self._ticks,
                "skipped": self._skipped,
                "in_flight": len(self._threads),
                "last_tick": self._last_tick.isoformat() if self._last_tick else None,
                "targets": [t.label for t in self.targets],
                "totals": self._totals.to_dict(),
                "last_reports": {k: r.to_dict() for k, r in self._last_reports.items()},
            }

    # -------------------------------------------------------------------------
    # Ticks
    # -------------------------------------------------------------------------

    def tick(self, on_report: Callable[[WorkerReport], None] | None = None) -> list[threading.Thread]:
        """Launch one worker thread per target and return without waiting."""
        with self._lock:
            self._ticks += 1
            self._last_tick = datetime.now(timezone.utc)
            tick_no = self._ticks
        launched: list[threading.Thread] = []
        for slot, target in enumerate(self.targets):
            with self._lock:
                if self.overlap == "skip" and self._active.get(slot):
                    self._skipped += 1
                    logger.warning("Tick %d: previous run for %s still active; skipping", tick_no, target.label)
                    continue
                self._active[slot] = self._active.get(slot, 0) + 1
                thread = threading.Thread(
                    target=self._run_worker,
                    args=(slot, target, on_report),
                    name=f"worker-{tick_no}-{target.label}",
                    daemon=True,
                )
                self._threads.add(thread)
            thread.start()
            launched.append(thread)
        logger.debug("Tick %d: launched %d worker(s)", tick_no, len(launched))
        return launched

    def _run_worker(self, slot: int, target: Target, on_report: Callable[[WorkerReport], None] | None) -> None:
        try:
            worker = self.worker_factory(target, self.catalog, self.sink)
            report = worker.collect_safe()
            self._record(report)
            if on_report is not None:
                on_report(report)
        finally:
            with self._lock:
                self._threads.discard(threading.current_thread())
                remaining = self._active.get(slot, 1) - 1
                if remaining > 0:
                    self._active[slot] = remaining
                else:
                    self._active.pop(slot, None)

    def _record(self, report: WorkerReport) -> None:
        with self._lock:
            self._totals.add(report, keep=False)
            self._last_reports[report.target] = report
        logger.info(
            "Collected %s: %d event(s), %d publish failure(s), %d issue(s) in %s",
            report.target, report.events_published, report.publish_failures,
            len(report.issues), format_duration(report.duration_sec),
        )

    def run_once(self, timeout: float | None = None) -> RunSummary:
        """One synchronous tick: launch every worker and wait for all of them."""
        summary = RunSummary()
        summary_lock = threading.Lock()

        def collect_report(report: WorkerReport) -> None:
            with summary_lock:
                summary.add(report)

        threads = self.tick(on_report=collect_report)
        deadline = None if timeout is None else time.monotonic() + timeout
        for thread in threads:
            thread.join(None if deadline is None else max(0.0, deadline - time.monotonic()))
        with summary_lock:
            return summary

    # -------------------------------------------------------------------------
    # Loop
    # -------------------------------------------------------------------------

    def run_forever(self) -> None:
        """Tick every period until stop(); then drain in-flight workers."""
        logger.info(
            "Scheduler started: %d target(s), %d metric(s), period %s",
            len(self.targets), len(self.catalog), format_duration(self.period_sec),
        )
        next_tick = time.monotonic() + self.period_sec
        while not self._stop.wait(max(0.0, next_tick - time.monotonic())):
            self.tick()
            next_tick += self.period_sec
            now = time.monotonic()
            if next_tick < now:
                # ticks fell behind; skip the missed ones
                missed = int((now - next_tick) // self.period_sec) + 1
                next_tick += missed * self.period_sec
        self.drain(self.shutdown_timeout_sec)
        logger.info("Scheduler stopped after %d tick(s)", self.ticks)

    def stop(self) -> None:
        """Stop scheduling new ticks. In-flight workers are not interrupted."""
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def drain(self, timeout: float) -> bool:
        """Wait up to ``timeout`` seconds for in-flight workers. True if all finished."""
        deadline = time.monotonic() + max(0.0, timeout)
        while True:
            with self._lock:
                threads = list(self._threads)
            if not threads:
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning("Abandoning %d in-flight worker(s) on shutdown", len(threads))
                return False
            threads[0].join(remaining)

