"""
Target worker: runs the metric catalog against one database and publishes
one event per result row.
"""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import Connection, Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import NullPool

from catalog import MetricCatalog
from collectors.base import BaseCollector, WorkerReport
from decoder import decode_row
from models import CollectionIssue, ErrorKind, Event, MetricDefinition, Target
from sinks import EventSink
from utils import get_logger

logger = get_logger(__name__)

# connect() keyword that bounds connection setup, per backend
_CONNECT_TIMEOUT_ARGS = {
    "oracle": "tcp_connect_timeout",
    "postgresql": "connect_timeout",
    "mysql": "connect_timeout",
    "mssql": "timeout",
    "sqlite": "timeout",
}

_ISSUE_LEVELS = {
    ErrorKind.CONNECTION: logging.ERROR,
    ErrorKind.QUERY: logging.ERROR,
    ErrorKind.DECODE: logging.WARNING,
    ErrorKind.PUBLISH: logging.WARNING,
}


class TargetWorker(BaseCollector):
    """Owns one connection for one run; metrics and rows are processed in order."""

    name = "sql"

    def __init__(
        self,
        target: Target,
        catalog: MetricCatalog,
        sink: EventSink,
        connect_timeout_sec: float | None = None,
    ) -> None:
        self.target = target
        self.catalog = catalog
        self.sink = sink
        self.connect_timeout_sec = connect_timeout_sec

    def label(self) -> str:
        return self.target.label

    def collect(self) -> WorkerReport:
        report = self.start_report()
        engine: Engine | None = None
        try:
            engine = self._create_engine()
            conn = engine.connect()
        except (SQLAlchemyError, ImportError, ValueError) as e:
            self._record(report, ErrorKind.CONNECTION, f"cannot connect: {e}")
            if engine is not None:
                engine.dispose()
            return report.finish()

        try:
            for metric in self.catalog:
                self._run_metric(conn, metric, report)
        finally:
            conn.close()
            engine.dispose()

        report.finish()
        logger.debug(
            "Collected %s: %d rows, %d events, %d issues in %.2fs",
            report.target, report.rows, report.events_published, len(report.issues), report.duration_sec,
        )
        return report

    def _create_engine(self) -> Engine:
        url = make_url(self.target.url)
        connect_args: dict[str, Any] = {}
        if self.connect_timeout_sec is not None:
            arg = _CONNECT_TIMEOUT_ARGS.get(url.get_backend_name())
            if arg:
                connect_args[arg] = self.connect_timeout_sec
        return create_engine(url, poolclass=NullPool, connect_args=connect_args)

    def _run_metric(self, conn: Connection, metric: MetricDefinition, report: WorkerReport) -> None:
        try:
            result = conn.exec_driver_sql(metric.query)
            columns = list(result.keys())
            for row in result:
                report.rows += 1
                try:
                    self._process_row(dict(zip(columns, row)), metric, report)
                except Exception as e:
                    self._record(
                        report, ErrorKind.DECODE, f"row dropped: {type(e).__name__}: {e}", metric=metric.name,
                    )
        except SQLAlchemyError as e:
            self._record(report, ErrorKind.QUERY, f"query failed: {e}", metric=metric.name)
        else:
            report.metrics_completed.append(metric.name)
        finally:
            self._end_transaction(conn, metric)

    def _process_row(self, raw: dict[str, Any], metric: MetricDefinition, report: WorkerReport) -> None:
        decoded = decode_row(raw)
        for issue in decoded.issues:
            self._record(report, ErrorKind.DECODE, issue.message(), metric=metric.name, column=issue.column)

        event = Event.capture(metric, decoded.fields)
        try:
            ok = self.sink.publish(event)
        except Exception as e:
            ok = False
            self._record(report, ErrorKind.PUBLISH, f"sink raised {type(e).__name__}: {e}", metric=metric.name)
        else:
            if not ok:
                self._record(report, ErrorKind.PUBLISH, "sink rejected event", metric=metric.name)
        if ok:
            report.events_published += 1
        else:
            report.publish_failures += 1

    def _end_transaction(self, conn: Connection, metric: MetricDefinition) -> None:
        # read-only work; also clears a failed transaction before the next metric
        try:
            conn.rollback()
        except SQLAlchemyError as e:
            logger.warning("Rollback after metric '%s' on %s failed: %s", metric.name, self.label(), e)

    def _record(
        self,
        report: WorkerReport,
        kind: ErrorKind,
        message: str,
        metric: str | None = None,
        column: str | None = None,
    ) -> None:
        issue = CollectionIssue(kind=kind, target=self.label(), message=message, metric=metric, column=column)
        report.issues.append(issue)
        logger.log(_ISSUE_LEVELS.get(kind, logging.ERROR), "%s", issue.describe())
