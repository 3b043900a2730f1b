from scheduler_platform.jobs.base import ExecutionOutcome, Executor

__all__ = [
    "ExecutionOutcome",
    "Executor",
]
