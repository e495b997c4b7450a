"""
Event sinks: the publish boundary. Every sink is safe to share between
target workers; each one guards its state with a lock.
"""
from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from pathlib import Path
from typing import Any, Sequence, TextIO

from config import ConfigError
from models import Event
from utils import get_logger, json_default

logger = get_logger(__name__)


class EventSink(ABC):
    """Publish boundary. ``connect()`` opens resources and returns the handle."""

    name: str = "base"

    def connect(self) -> EventSink:
        return self

    @abstractmethod
    def publish(self, event: Event) -> bool:
        """Publish one event. Returns False on failure."""
        ...

    def close(self) -> None:
        pass


class LogSink(EventSink):
    """Writes every event to the log."""

    name = "log"

    def __init__(self, level: str = "INFO") -> None:
        self.level = get_level(level)

    def publish(self, event: Event) -> bool:
        logger.log(self.level, "Published event: %s", event.to_dict())
        return True


class JsonLinesSink(EventSink):
    """Appends one JSON object per event to a file."""

    name = "jsonl"

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()
        self._lock = threading.Lock()
        self._fh: TextIO | None = None

    def connect(self) -> JsonLinesSink:
        with self._lock:
            if self._fh is None:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                self._fh = open(self.path, "a", encoding="utf-8")
        return self

    def publish(self, event: Event) -> bool:
        with self._lock:
            if self._fh is None:
                logger.warning("JSON-lines sink %s is not connected", self.path)
                return False
            try:
                self._fh.write(json.dumps(event.to_dict(), default=json_default) + "\n")
                self._fh.flush()
                return True
            except (OSError, TypeError, ValueError) as e:
                logger.warning("Failed to write event to %s: %s", self.path, e)
                return False

    def close(self) -> None:
        with self._lock:
            if self._fh is not None:
                self._fh.close()
                self._fh = None


class MemorySink(EventSink):
    """Bounded in-memory buffer of the most recent events."""

    name = "memory"

    def __init__(self, max_events: int = 1000) -> None:
        self.max_events = max_events
        self._buffer: deque[Event] = deque(maxlen=max_events)
        self._lock = threading.Lock()
        self._published = 0

    def publish(self, event: Event) -> bool:
        with self._lock:
            self._buffer.append(event)
            self._published += 1
        return True

    def events(self, limit: int | None = None) -> list[Event]:
        with self._lock:
            items = list(self._buffer)
        return items[-limit:] if limit else items

    @property
    def published(self) -> int:
        with self._lock:
            return self._published

    def clear(self) -> None:
        with self._lock:
            self._buffer.clear()


class CompositeSink(EventSink):
    """Publishes to every child sink; succeeds only if all of them do."""

    name = "composite"

    def __init__(self, sinks: Sequence[EventSink]) -> None:
        self.sinks = list(sinks)

    def connect(self) -> CompositeSink:
        self.sinks = [s.connect() for s in self.sinks]
        return self

    def publish(self, event: Event) -> bool:
        ok = True
        for sink in self.sinks:
            try:
                if not sink.publish(event):
                    ok = False
            except Exception as e:
                logger.warning("Sink %s raised on publish: %s", sink.name, e)
                ok = False
        return ok

    def close(self) -> None:
        for sink in self.sinks:
            try:
                sink.close()
            except Exception as e:
                logger.warning("Sink %s raised on close: %s", sink.name, e)

    def find(self, sink_type: type[EventSink]) -> EventSink | None:
        for sink in self.sinks:
            if isinstance(sink, sink_type):
                return sink
        return None


def get_level(level: str) -> int:
    return getattr(logging, str(level).upper(), logging.INFO)


def build_sink(specs: Sequence[Any]) -> CompositeSink:
    """Build sinks from config entries like ``{"type": "jsonl", "path": "..."}``."""
    sinks: list[EventSink] = []
    for i, spec in enumerate(specs):
        if isinstance(spec, str):
            spec = {"type": spec}
        if not isinstance(spec, dict) or "type" not in spec:
            raise ConfigError(f"sinks[{i}] must be a mapping with a 'type'")
        kind = str(spec["type"]).lower()
        if kind == "log":
            sinks.append(LogSink(level=spec.get("level", "INFO")))
        elif kind == "jsonl":
            if not spec.get("path"):
                raise ConfigError(f"sinks[{i}]: jsonl sink requires 'path'")
            sinks.append(JsonLinesSink(spec["path"]))
        elif kind == "memory":
            sinks.append(MemorySink(max_events=int(spec.get("max_events", 1000))))
        else:
            raise ConfigError(f"sinks[{i}]: unknown sink type {kind!r}")
    if not sinks:
        raise ConfigError("At least one sink must be configured")
    return CompositeSink(sinks)
