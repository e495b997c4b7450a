"""
Collectors package: workers that run the metric catalog against a target.
"""
from __future__ import annotations

from collectors.base import BaseCollector, WorkerReport
from collectors.target_worker import TargetWorker

__all__ = [
    "BaseCollector",
    "WorkerReport",
    "TargetWorker",
]
