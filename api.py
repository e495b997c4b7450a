"""
REST API for the DB metrics collector: health, scheduler status, recent events.
"""
from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any

from fastapi import FastAPI, HTTPException, Query

if TYPE_CHECKING:
    from service import CollectorService


def create_app(service: CollectorService) -> FastAPI:
    app = FastAPI(
        title="DB Metrics Collector API",
        description="Health, collection status and recent events",
        version="1.0.0",
    )

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {"status": "ok", "timestamp": time.time()}

    @app.get("/status")
    def status() -> dict[str, Any]:
        return service.scheduler.status()

    @app.get("/catalog")
    def catalog() -> list[dict[str, Any]]:
        return [m.to_dict() for m in service.catalog]

    @app.get("/events")
    def events(limit: int = Query(100, ge=1, le=10000)) -> list[dict[str, Any]]:
        sink = service.memory_sink
        if sink is None:
            raise HTTPException(status_code=404, detail="No memory sink configured")
        return [event.to_dict() for event in reversed(sink.events(limit))]

    return app
