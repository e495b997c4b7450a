"""
Base collector interface: target workers implement this.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from models import CollectionIssue, ErrorKind
from utils import get_logger

logger = get_logger(__name__)

_FAILED_KINDS = (ErrorKind.CONNECTION, ErrorKind.QUERY, ErrorKind.INTERNAL)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class WorkerReport:
    """Outcome of one collection run against one target."""
    target: str
    started_at: datetime = field(default_factory=_now)
    finished_at: datetime | None = None
    rows: int = 0
    events_published: int = 0
    publish_failures: int = 0
    metrics_completed: list[str] = field(default_factory=list)
    issues: list[CollectionIssue] = field(default_factory=list)

    @property
    def connected(self) -> bool:
        return not any(i.kind is ErrorKind.CONNECTION for i in self.issues)

    @property
    def success(self) -> bool:
        """Connected and every metric completed without a query error."""
        return not any(i.kind in _FAILED_KINDS for i in self.issues)

    @property
    def duration_sec(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def count(self, kind: ErrorKind) -> int:
        return sum(1 for i in self.issues if i.kind is kind)

    def finish(self) -> WorkerReport:
        self.finished_at = _now()
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "target": self.target,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_sec": self.duration_sec,
            "connected": self.connected,
            "success": self.success,
            "rows": self.rows,
            "events_published": self.events_published,
            "publish_failures": self.publish_failures,
            "metrics_completed": list(self.metrics_completed),
            "issues": [i.to_dict() for i in self.issues],
        }


class BaseCollector(ABC):
    """Abstract base for collectors that produce a WorkerReport."""

    name: str = "base"
    report: WorkerReport | None = None

    @abstractmethod
    def label(self) -> str:
        ...

    @abstractmethod
    def collect(self) -> WorkerReport:
        """Run collection and return the report. Failures are recorded as issues."""
        ...

    def start_report(self) -> WorkerReport:
        """New report for this run; kept so a crash still returns partial counts."""
        self.report = WorkerReport(target=self.label())
        return self.report

    def collect_safe(self) -> WorkerReport:
        """Wrapper that turns an unexpected exception into a failed report."""
        self.report = None
        try:
            return self.collect()
        except Exception as e:
            report = self.report or WorkerReport(target=self.label())
            report.issues.append(CollectionIssue(
                kind=ErrorKind.INTERNAL,
                target=self.label(),
                message=f"unexpected {type(e).__name__}: {e}",
            ))
            logger.exception("Collector for %s failed unexpectedly", self.label())
            return report.finish()
