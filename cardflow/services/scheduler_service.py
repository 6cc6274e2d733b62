"""
Cardflow Core
Scheduler Service.

Lightweight interval scheduler for the periodic sweeps (entropy, bundle
delivery). Jobs are plain functions registered with ``@register_job``;
each has a ScheduledJob row holding its interval and run history.

    - SchedulerService.run_job(name): run one job now (API and tests)
    - SchedulerService.run_due(now): run every enabled job whose interval
      has elapsed since its last run
    - SchedulerService.start(): background thread calling run_due every
      SCHEDULER_TICK_SECONDS, only when SCHEDULER_ENABLED is set
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from contextlib import nullcontext
from datetime import datetime, timedelta

from flask import Flask, current_app, has_app_context

from cardflow.models import as_utc, db, utcnow
from cardflow.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}
_job_intervals: dict[str, str] = {}


def register_job(name: str, interval_config_key: str | None = None):
    """Decorator to register a job function.

    Usage:
        @register_job("entropy_sweep", interval_config_key="ENTROPY_SWEEP_INTERVAL")
        def entropy_sweep(app):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        if interval_config_key:
            _job_intervals[name] = interval_config_key
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    """Return all registered job functions."""
    return dict(_job_registry)


class SchedulerService:
    """
    Lightweight scheduler service.

    Manages job registration, persistence, and execution.
    Jobs are executed within Flask app context.
    """

    _app: Flask | None = None
    _stop: threading.Event | None = None
    _thread: threading.Thread | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        """Initialize scheduler with Flask app context."""
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs",
                    len(_job_registry))

    @classmethod
    def _context(cls):
        if has_app_context() and current_app._get_current_object() is cls._app:
            return nullcontext()
        return cls._app.app_context()

    @classmethod
    def default_interval(cls, job_name: str) -> int:
        key = _job_intervals.get(job_name)
        if key and cls._app is not None:
            return int(cls._app.config.get(key, 3600))
        return 3600

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """
        Ensure all registered jobs have a corresponding DB record.
        Creates missing records with the configured interval.
        """
        if not cls._app:
            return []

        created = []
        with cls._context():
            for name, fn in _job_registry.items():
                existing = ScheduledJob.query.filter_by(job_name=name).first()
                if not existing:
                    seconds = cls.default_interval(name)
                    job = ScheduledJob(
                        job_name=name,
                        description=(fn.__doc__ or f"Scheduled job: {name}").strip(),
                        schedule_type="interval",
                        schedule_config={"seconds": seconds,
                                         "description": f"Every {seconds} seconds"},
                        status="active",
                        is_enabled=True,
                    )
                    db.session.add(job)
                    created.append(job)
            if created:
                db.session.commit()
                logger.info("Created %d scheduled job records", len(created))
        return created

    @classmethod
    def run_job(cls, job_name: str, *, now: datetime | None = None) -> dict:
        """
        Execute a single job by name.

        Returns:
            Dict with status, duration_ms, result or error.
        """
        fn = _job_registry.get(job_name)
        if not fn:
            return {"status": "error", "error": f"Unknown job: {job_name}"}

        if not cls._app:
            return {"status": "error", "error": "Scheduler not initialized"}

        start = time.monotonic()
        result = None
        error = None
        status = "success"

        with cls._context():
            try:
                result = fn(cls._app)
            except Exception as exc:
                db.session.rollback()
                status = "failed"
                error = str(exc)
                logger.exception("Job %s failed: %s", job_name, exc,
                                 extra={"job_name": job_name})

            duration_ms = int((time.monotonic() - start) * 1000)

            try:
                cls.ensure_jobs_registered()
                job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
                if job_record:
                    job_record.record_run(
                        status=status,
                        duration_ms=duration_ms,
                        result=result if isinstance(result, dict) else {"output": str(result)},
                        error=error,
                        now=now,
                    )
                    db.session.commit()
            except Exception:
                db.session.rollback()
                logger.exception("Failed to update job record for %s", job_name,
                                 extra={"job_name": job_name})

        return {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

    @classmethod
    def due_jobs(cls, now: datetime | None = None) -> list[str]:
        """Names of enabled jobs whose interval has elapsed."""
        now = now or utcnow()
        cls.ensure_jobs_registered()
        due = []
        for name in _job_registry:
            record = ScheduledJob.query.filter_by(job_name=name).first()
            if record is None or not record.is_enabled:
                continue
            interval = record.interval_seconds or cls.default_interval(name)
            last = as_utc(record.last_run_at)
            if last is None or now - last >= timedelta(seconds=interval):
                due.append(name)
        return due

    @classmethod
    def run_due(cls, now: datetime | None = None) -> list[dict]:
        if not cls._app:
            return []
        with cls._context():
            names = cls.due_jobs(now)
        return [cls.run_job(name, now=now) for name in names]

    @classmethod
    def list_jobs(cls) -> list[dict]:
        """List all registered jobs with their DB status."""
        jobs = []
        for name in _job_registry:
            job_record = ScheduledJob.query.filter_by(job_name=name).first()
            jobs.append({
                "job_name": name,
                "registered": True,
                "db_record": job_record.to_dict() if job_record else None,
            })
        return jobs

    @classmethod
    def get_job_status(cls, job_name: str) -> dict | None:
        """Get status of a specific job."""
        job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if job_record:
            return job_record.to_dict()
        return None

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        """Enable or disable a scheduled job."""
        job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if not job_record:
            return None
        job_record.is_enabled = enabled
        job_record.status = "active" if enabled else "paused"
        db.session.commit()
        return job_record.to_dict()

    # ── Background loop ──────────────────────────────────────────────────────

    @classmethod
    def start(cls) -> bool:
        """Start the tick thread. Returns False when disabled or already running."""
        if not cls._app or not cls._app.config.get("SCHEDULER_ENABLED"):
            return False
        if cls._thread is not None and cls._thread.is_alive():
            return False

        tick = int(cls._app.config.get("SCHEDULER_TICK_SECONDS", 30))
        cls._stop = threading.Event()
        cls._thread = threading.Thread(target=cls._loop, args=(cls._stop, tick),
                                       name="cardflow-scheduler", daemon=True)
        cls._thread.start()
        logger.info("Scheduler started (tick=%ss)", tick)
        return True

    @classmethod
    def _loop(cls, stop: threading.Event, tick: int) -> None:
        while not stop.is_set():
            try:
                with cls._app.app_context():
                    cls.run_due()
            except Exception:
                logger.exception("Scheduler tick failed")
            stop.wait(tick)

    @classmethod
    def stop(cls, timeout: float | None = 5.0) -> None:
        if cls._stop is not None:
            cls._stop.set()
        if cls._thread is not None:
            cls._thread.join(timeout)
        cls._thread = None
        cls._stop = None
