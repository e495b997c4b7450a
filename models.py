"""
Data models for the DB metrics collector: metric definitions, targets,
decoded events and the issues recorded while collecting.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

from utils import mask_url

TYPE_FIELD = "type"
TIMESTAMP_FIELD = "timestamp"


class ErrorKind(str, Enum):
    CONNECTION = "connection"
    QUERY = "query"
    DECODE = "decode"
    PUBLISH = "publish"
    INTERNAL = "internal"


@dataclass(frozen=True)
class MetricDefinition:
    """A named diagnostic query run against every target."""
    name: str
    query: str

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "query": self.query}


@dataclass(frozen=True)
class Target:
    """One database instance, identified by a connection URL."""
    url: str
    name: str | None = None

    @property
    def label(self) -> str:
        """Name for logs and reports; never includes the password."""
        return self.name or mask_url(self.url)


@dataclass(frozen=True)
class Event:
    """Decoded, sink-ready record built from one result row.

    ``fields`` holds the decoded columns (lower-cased names); ``type`` is the
    metric name and ``timestamp`` the capture time.
    """
    type: str
    timestamp: datetime
    fields: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))

    @classmethod
    def capture(cls, metric: MetricDefinition, fields: Mapping[str, Any]) -> Event:
        return cls(type=metric.name, timestamp=datetime.now(timezone.utc), fields=fields)

    def to_dict(self) -> dict[str, Any]:
        """Flat sink representation; the mandatory fields win over columns of the same name."""
        out = dict(self.fields)
        out[TYPE_FIELD] = self.type
        out[TIMESTAMP_FIELD] = self.timestamp
        return out


@dataclass
class CollectionIssue:
    """A non-fatal failure recorded while collecting one target."""
    kind: ErrorKind
    target: str
    message: str
    metric: str | None = None
    column: str | None = None

    def describe(self) -> str:
        where = self.target
        if self.metric:
            where += f" metric={self.metric}"
        if self.column:
            where += f" column={self.column}"
        return f"[{self.kind.value}] {where}: {self.message}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "target": self.target,
            "message": self.message,
            "metric": self.metric,
            "column": self.column,
        }
