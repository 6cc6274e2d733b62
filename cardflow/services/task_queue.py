"""
Cardflow Core
Fan-out task queue.

Event fan-out (notification routing, webhook dispatch) runs outside the
transaction that produced the event. Producers hand a task name plus plain
arguments (ids, never ORM instances) to the queue after their commit.

Modes (config ``TASK_QUEUE_MODE``):
    thread  – ThreadPoolExecutor with ``TASK_QUEUE_WORKERS`` workers; each
              task runs in its own app context and therefore its own
              DB session.
    inline  – the task runs synchronously on the caller's thread and
              session, right after the caller's commit. Used by tests.

A task's failure is logged and rolled back; it never propagates to the
producer.

Usage:
    from cardflow.services.task_queue import register_task, task_queue

    @register_task("route_event_notifications")
    def route_event_notifications(event_id: int) -> None:
        ...

    task_queue.enqueue("route_event_notifications", event.id)
"""

import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor

from cardflow.models import db

logger = logging.getLogger(__name__)

# ── Task registry ────────────────────────────────────────────────────────────

_TASK_REGISTRY: dict[str, Callable] = {}


def register_task(name: str):
    """Decorator to register a fan-out task handler."""
    def decorator(fn):
        _TASK_REGISTRY[name] = fn
        return fn
    return decorator


def registered_tasks() -> list[str]:
    return sorted(_TASK_REGISTRY)


# ── Queue ────────────────────────────────────────────────────────────────────

class TaskQueue:
    """Runs registered tasks after commit, inline or on a worker pool."""

    def __init__(self):
        self._app = None
        self._mode = "inline"
        self._workers = 4
        self._executor = None
        self._executor_lock = threading.Lock()

    def init_app(self, app):
        self._app = app
        self._mode = app.config.get("TASK_QUEUE_MODE", "thread")
        self._workers = int(app.config.get("TASK_QUEUE_WORKERS", 4))
        if self._mode not in ("thread", "inline"):
            raise ValueError(f"Unknown TASK_QUEUE_MODE: {self._mode!r}")
        app.extensions["task_queue"] = self
        logger.info("Task queue initialised: mode=%s workers=%d", self._mode, self._workers)

    @property
    def mode(self) -> str:
        return self._mode

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._workers, thread_name_prefix="cardflow-task",
                )
            return self._executor

    def enqueue(self, name: str, *args) -> None:
        """Hand a task to the queue. Never raises to the producer."""
        if name not in _TASK_REGISTRY:
            logger.error("Unknown task %s; dropped", name)
            return

        if self._mode == "inline" or self._app is None:
            self._run(name, args)
            return

        try:
            self._get_executor().submit(self._run_in_context, name, args)
        except RuntimeError:
            logger.exception("Could not enqueue task %s%r", name, args)

    def _run_in_context(self, name, args):
        with self._app.app_context():
            self._run(name, args)

    def _run(self, name, args):
        fn = _TASK_REGISTRY[name]
        try:
            fn(*args)
            db.session.commit()
        except Exception:
            db.session.rollback()
            logger.exception("Task %s%r failed", name, args)

    def shutdown(self, wait: bool = True) -> None:
        with self._executor_lock:
            if self._executor is not None:
                self._executor.shutdown(wait=wait)
                self._executor = None


task_queue = TaskQueue()
