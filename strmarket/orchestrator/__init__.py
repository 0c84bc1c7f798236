"""Job orchestration, batch refresh, result consumption, and runtime assembly."""

from strmarket.orchestrator.batch import (
    BatchProgress,
    BatchRefreshRequest,
    BatchScheduler,
    BatchStatus,
    BatchStrategy,
)
from strmarket.orchestrator.consumer import ResultConsumer
from strmarket.orchestrator.service import JobOrchestrator

__all__ = [
    "JobOrchestrator",
    "ResultConsumer",
    "BatchScheduler",
    "BatchRefreshRequest",
    "BatchProgress",
    "BatchStatus",
    "BatchStrategy",
]
