"""
Compliance Obligation & Review Engine
Scheduler Service — periodic engine tick.

A lightweight thread-based scheduler: jobs register through a decorator,
their run history lives in the ScheduledJob table, and every execution
happens inside the Flask app context.

Architecture:
    - SchedulerService: job persistence, execution, enable/disable
    - Jobs registered via @register_job (services/scheduled_jobs.py)
    - Optional daemon thread (SCHEDULER_ENABLED) ticking every
      SCHEDULER_INTERVAL_SECONDS; manual trigger via /api/v1/admin/jobs
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable

from flask import Flask

from compliance_engine.models import db
from compliance_engine.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}


def register_job(name: str):
    """Decorator to register a job function.

    Usage:
        @register_job("reminder_dispatch")
        def dispatch_reminders(app):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
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
    _thread: threading.Thread | None = None
    _stop: threading.Event | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        """Initialize scheduler with Flask app context; starts the tick thread when enabled."""
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs",
                    len(_job_registry))
        if app.config.get("SCHEDULER_ENABLED"):
            cls.ensure_jobs_registered()
            cls.start()

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """
        Ensure all registered jobs have a corresponding DB record.
        Creates missing records with the configured tick interval.
        """
        if not cls._app:
            return []

        created = []
        with cls._app.app_context():
            interval = cls._app.config.get("SCHEDULER_INTERVAL_SECONDS", 300)
            for name, fn in _job_registry.items():
                existing = ScheduledJob.query.filter_by(job_name=name).first()
                if not existing:
                    job = ScheduledJob(
                        job_name=name,
                        description=(fn.__doc__ or f"Scheduled job: {name}").strip().splitlines()[0],
                        interval_seconds=interval,
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
    def run_job(cls, job_name: str) -> dict:
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

        try:
            with cls._app.app_context():
                result = fn(cls._app)
        except Exception as exc:
            status = "failed"
            error = str(exc)
            logger.exception("Job %s failed: %s", job_name, exc,
                             extra={"job_name": job_name})

        duration_ms = int((time.monotonic() - start) * 1000)

        try:
            with cls._app.app_context():
                job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
                if job_record:
                    job_record.record_run(
                        status=status,
                        duration_ms=duration_ms,
                        result=result if isinstance(result, dict) else {"output": str(result)},
                        error=error,
                    )
                    db.session.commit()
        except Exception:
            logger.exception("Failed to update job record for %s", job_name,
                             extra={"job_name": job_name})

        logger.info("Job %s finished: %s", job_name, status,
                    extra={"job_name": job_name, "duration_ms": duration_ms})
        return {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

    @classmethod
    def run_due_jobs(cls, now: datetime | None = None) -> list[dict]:
        """Run every enabled job whose interval elapsed since its last run."""
        if not cls._app:
            return []
        now = now or datetime.now(timezone.utc)
        with cls._app.app_context():
            due = []
            for name in _job_registry:
                record = ScheduledJob.query.filter_by(job_name=name).first()
                if record is None or record.is_due(now):
                    due.append(name)
        return [cls.run_job(name) for name in due]

    @classmethod
    def start(cls) -> None:
        """Start the daemon tick thread (idempotent)."""
        if cls._thread and cls._thread.is_alive():
            return
        cls._stop = threading.Event()
        interval = cls._app.config.get("SCHEDULER_INTERVAL_SECONDS", 300)
        # Jobs carry their own interval; the loop wakes often enough to honour the shortest one.
        wake = max(1, min(interval, 60))

        def _loop(stop: threading.Event):
            while not stop.is_set():
                try:
                    cls.run_due_jobs()
                except Exception:
                    logger.exception("Scheduler tick failed")
                stop.wait(wake)

        cls._thread = threading.Thread(target=_loop, args=(cls._stop,),
                                       name="engine-scheduler", daemon=True)
        cls._thread.start()
        logger.info("Scheduler thread started (wake every %ss)", wake)

    @classmethod
    def stop(cls) -> None:
        if cls._stop:
            cls._stop.set()
        if cls._thread:
            cls._thread.join(timeout=5)
        cls._thread = None

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
        logger.info("Job %s %s", job_name, "enabled" if enabled else "paused",
                    extra={"job_name": job_name})
        return job_record.to_dict()
