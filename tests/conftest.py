"""Shared fixtures: SQLite targets and recording sinks."""
from __future__ import annotations

import sqlite3
import sys
import threading
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import config
from models import Event, Target
from sinks import EventSink


class RecordingSink(EventSink):
    """Keeps every published event; optionally rejects or raises."""

    name = "recording"

    def __init__(self, reject_every: int = 0, raise_on: str | None = None) -> None:
        self.events: list[Event] = []
        self.reject_every = reject_every
        self.raise_on = raise_on
        self.calls = 0
        self._lock = threading.Lock()

    def publish(self, event: Event) -> bool:
        with self._lock:
            self.calls += 1
            if self.raise_on and self.raise_on in event.fields.values():
                raise RuntimeError("sink exploded")
            if self.reject_every and self.calls % self.reject_every == 0:
                return False
            self.events.append(event)
            return True


def make_sqlite_target(path: Path, script: str, name: str | None = None) -> Target:
    conn = sqlite3.connect(path)
    try:
        conn.executescript(script)
        conn.commit()
    finally:
        conn.close()
    return Target(url=f"sqlite:///{path}", name=name)


@pytest.fixture
def recording_sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def status_db(tmp_path: Path) -> Target:
    return make_sqlite_target(
        tmp_path / "status.db",
        """
        CREATE TABLE instance (dbid TEXT, status TEXT);
        INSERT INTO instance VALUES ('123', 'OPEN');
        CREATE TABLE sessions (username TEXT, cpu TEXT, waits INTEGER);
        INSERT INTO sessions VALUES ('SYS', '1.5', 3);
        INSERT INTO sessions VALUES ('APP', '0.25', 7);
        INSERT INTO sessions VALUES ('BATCH', '12', NULL);
        """,
        name="status-db",
    )


@pytest.fixture
def unreachable_target(tmp_path: Path) -> Target:
    return Target(url=f"sqlite:///{tmp_path / 'missing' / 'nowhere.db'}", name="unreachable")


@pytest.fixture(autouse=True)
def clean_config(monkeypatch: pytest.MonkeyPatch):
    for key in ("DBMC_PERIOD", "DBMC_TARGETS", "DBMC_OVERLAP", "DBMC_LOG_LEVEL", "DBMC_API_PORT", "DBMC_API_ENABLED"):
        monkeypatch.delenv(key, raising=False)
    config.reset()
    yield
    config.reset()
