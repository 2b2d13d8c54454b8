from taskforge.worker.loop import TaskWorker, WorkerConfig, WorkerResult, run_worker
from taskforge.worker.state import WorkerState, WorkerStateStore, load_worker_state

__all__ = [
    "TaskWorker",
    "WorkerConfig",
    "WorkerResult",
    "WorkerState",
    "WorkerStateStore",
    "load_worker_state",
    "run_worker",
]
