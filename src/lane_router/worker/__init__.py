"""Lane workers: worker-tier rate check, processing and the dead-letter safety net."""

from lane_router.worker.consumer import LaneWorker, WorkerOutcome, validate_worker_binding
from lane_router.worker.processors import JobProcessor, echo_processor, load_processor

__all__ = [
    "JobProcessor",
    "LaneWorker",
    "WorkerOutcome",
    "echo_processor",
    "load_processor",
    "validate_worker_binding",
]
