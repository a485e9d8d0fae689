import logging
from collections.abc import Callable
from typing import Any, Protocol

from fastapi import BackgroundTasks

from app.observability import log_event, metrics_store


class TaskQueue(Protocol):
    def submit(self, name: str, func: Callable[..., object], *args: Any) -> None: ...


def run_task_safely(name: str, func: Callable[..., object], *args: Any) -> None:
    """Consumer side of the outbound queue: failures are logged and counted, never raised."""
    try:
        func(*args)
    except Exception:
        metrics_store.increment("background_task_failures_total")
        log_event(
            "background_task_failed",
            level=logging.WARNING,
            detail={"task": name},
            exc_info=True,
        )
        return
    metrics_store.increment("background_task_completed_total")


class BackgroundTaskQueue:
    """Runs submitted work after the HTTP response has been sent."""

    def __init__(self, background_tasks: BackgroundTasks) -> None:
        self._background_tasks = background_tasks

    def submit(self, name: str, func: Callable[..., object], *args: Any) -> None:
        self._background_tasks.add_task(run_task_safely, name, func, *args)


class ImmediateTaskQueue:
    """Runs submitted work inline, before the caller returns."""

    def submit(self, name: str, func: Callable[..., object], *args: Any) -> None:
        run_task_safely(name, func, *args)
