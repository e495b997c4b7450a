"""
Process lifecycle: wire settings, catalog, sinks and scheduler together;
start on demand, stop on SIGINT/SIGTERM.
"""
from __future__ import annotations

import os
import signal
import threading
from typing import Any, Mapping, MutableMapping

from catalog import MetricCatalog
from config import CollectorSettings
from scheduler import CollectionScheduler, RunSummary, resolve_targets
from sinks import CompositeSink, MemorySink, build_sink
from utils import get_logger

logger = get_logger(__name__)


def apply_driver_env(driver_env: Mapping[str, str], environ: MutableMapping[str, str] | None = None) -> None:
    """Export driver settings (e.g. NLS_LANG) before the first connection."""
    environ = os.environ if environ is None else environ
    for key, value in driver_env.items():
        environ[key] = value
        logger.debug("Driver env %s=%s", key, value)


class CollectorService:
    """One collector process: sink + scheduler (+ optional status API)."""

    def __init__(self, settings: CollectorSettings, environ: Mapping[str, str] | None = None) -> None:
        self.settings = settings
        self.catalog = MetricCatalog.from_config(settings.catalog)
        self.targets = resolve_targets(settings.targets, environ=environ, env_key=settings.fallback_env)
        self.sink: CompositeSink = build_sink(settings.sinks)
        self.scheduler = CollectionScheduler(
            targets=self.targets,
            catalog=self.catalog,
            sink=self.sink,
            period_sec=settings.period_sec,
            overlap=settings.overlap,
            shutdown_timeout_sec=settings.shutdown_timeout_sec,
            connect_timeout_sec=settings.connect_timeout_sec,
        )
        self._connected = False
        self._closed = False
        self._close_lock = threading.Lock()
        self._api_server: Any = None

    @property
    def memory_sink(self) -> MemorySink | None:
        sink = self.sink.find(MemorySink)
        return sink if isinstance(sink, MemorySink) else None

    def open(self) -> None:
        if self._connected:
            return
        apply_driver_env(self.settings.driver_env)
        self.sink.connect()
        self._connected = True

    def start(self, install_signals: bool = True) -> None:
        """Run until stop() or a termination signal. Closes the sink on the way out."""
        self.open()
        if install_signals:
            signal.signal(signal.SIGTERM, self._handle_signal)
            signal.signal(signal.SIGINT, self._handle_signal)
        logger.info(
            "Collector running against %s. Hit CTRL-C to stop it.",
            ", ".join(t.label for t in self.targets),
        )
        try:
            self.scheduler.run_forever()
        finally:
            self.close()

    def collect_once(self) -> RunSummary:
        """Single synchronous collection run."""
        self.open()
        return self.scheduler.run_once()

    def stop(self) -> None:
        logger.info("Stopping collector")
        self.scheduler.stop()
        if self._api_server is not None:
            self._api_server.should_exit = True

    def close(self) -> None:
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        self.sink.close()

    def _handle_signal(self, signum: int, frame: object) -> None:
        logger.info("Received signal %d", signum)
        self.stop()

    # -------------------------------------------------------------------------
    # Status API
    # -------------------------------------------------------------------------

    def start_api(self) -> threading.Thread:
        """Serve the status API from a daemon thread."""
        import uvicorn

        from api import create_app

        config = uvicorn.Config(
            create_app(self),
            host=self.settings.api_host,
            port=self.settings.api_port,
            log_level=self.settings.log_level.lower(),
        )
        self._api_server = uvicorn.Server(config)
        thread = threading.Thread(target=self._api_server.run, name="status-api", daemon=True)
        thread.start()
        logger.info("Status API on http://%s:%d", self.settings.api_host, self.settings.api_port)
        return thread
