"""
Metric catalog: the ordered, read-only list of named queries run against
every target.
"""
from __future__ import annotations

from typing import Any, Iterator, Sequence

from config import DEFAULT_CATALOG, ConfigError
from models import MetricDefinition


class MetricCatalog(Sequence[MetricDefinition]):
    """Immutable ordered sequence of metric definitions with unique names."""

    def __init__(self, metrics: Sequence[MetricDefinition]) -> None:
        names: set[str] = set()
        for m in metrics:
            if not m.name or not m.name.strip():
                raise ConfigError("Metric name must not be empty")
            if not m.query or not m.query.strip():
                raise ConfigError(f"Metric '{m.name}' has an empty query")
            if m.name in names:
                raise ConfigError(f"Duplicate metric name '{m.name}'")
            names.add(m.name)
        self._metrics: tuple[MetricDefinition, ...] = tuple(metrics)
        self._names = frozenset(names)

    def __getitem__(self, index):  # type: ignore[override]
        return self._metrics[index]

    def __len__(self) -> int:
        return len(self._metrics)

    def __iter__(self) -> Iterator[MetricDefinition]:
        return iter(self._metrics)

    def __repr__(self) -> str:
        return f"MetricCatalog({[m.name for m in self._metrics]!r})"

    @property
    def names(self) -> frozenset[str]:
        return self._names

    @classmethod
    def from_config(cls, entries: Sequence[Any] | None) -> MetricCatalog:
        """Build from config entries: ``{name, query}`` mappings (``sql`` is accepted for ``query``)."""
        if entries is None:
            entries = DEFAULT_CATALOG
        if isinstance(entries, (str, bytes)) or not isinstance(entries, Sequence):
            raise ConfigError("catalog must be a list of {name, query} entries")
        metrics: list[MetricDefinition] = []
        for i, entry in enumerate(entries):
            if not isinstance(entry, dict):
                raise ConfigError(f"catalog[{i}] must be a mapping, got {type(entry).__name__}")
            if "name" not in entry:
                raise ConfigError(f"catalog[{i}] missing required field 'name'")
            query = entry.get("query", entry.get("sql"))
            if query is None:
                raise ConfigError(f"Metric '{entry['name']}' missing required field 'query'")
            metrics.append(MetricDefinition(name=str(entry["name"]), query=str(query)))
        if not metrics:
            raise ConfigError("catalog must define at least one metric")
        return cls(metrics)


def default_catalog() -> MetricCatalog:
    return MetricCatalog.from_config(DEFAULT_CATALOG)
