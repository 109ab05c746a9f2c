"""
Admissions Workflow Platform
Scheduler Service.

Lightweight in-process background job scheduler. Jobs are plain functions
registered with ``@register_job`` and run on fixed minute intervals by a
daemon thread (``SCHEDULER_ENABLED``), or triggered manually via the admin
API.

Architecture:
    - SchedulerService: Manages job registration and execution
    - Jobs are stored in ScheduledJob model for persistence and run history
    - ``tick()`` runs every enabled job whose interval has elapsed
    - Pluggable job functions registered via decorator
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Callable

from flask import Flask

from admissions.models import db
from admissions.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}


def register_job(name: str):
    """Decorator to register a job function.

    Usage:
        @register_job("automatic_transition_scan")
        def scan_automatic_transitions(app):
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
    _running: bool = False
    _thread: threading.Thread | None = None
    _stop_event: threading.Event | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        """Initialize scheduler with Flask app context."""
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs",
                    len(_job_registry))

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """
        Ensure all registered jobs have a corresponding DB record.
        Creates missing records with default config.
        """
        if not cls._app:
            return []

        created = []
        with cls._app.app_context():
            for name, _fn in _job_registry.items():
                existing = ScheduledJob.query.filter_by(job_name=name).first()
                if not existing:
                    job = ScheduledJob(
                        job_name=name,
                        description=(_fn.__doc__ or f"Scheduled job: {name}").strip().splitlines()[0],
                        schedule_type="interval",
                        schedule_config=_get_default_schedule(name, cls._app.config),
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
            logger.exception("Job %s failed: %s", job_name, exc)

        duration_ms = int((time.monotonic() - start) * 1000)

        # Update DB record
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
            logger.exception("Failed to update job record for %s", job_name)

        return {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

    @classmethod
    def due_jobs(cls, now: datetime | None = None) -> list[str]:
        """Names of enabled jobs whose interval has elapsed since their last run."""
        now = now or datetime.now(timezone.utc)
        due = []
        for name in _job_registry:
            record = ScheduledJob.query.filter_by(job_name=name).first()
            if record is None or not record.is_enabled:
                continue
            minutes = int((record.schedule_config or {}).get("minutes", 5))
            last = record.last_run_at
            if last is not None and last.tzinfo is None:
                # SQLite returns naive values; they are stored as UTC
                last = last.replace(tzinfo=timezone.utc)
            if last is None or now - last >= timedelta(minutes=minutes):
                due.append(name)
        return due

    @classmethod
    def tick(cls, now: datetime | None = None) -> list[dict]:
        """Run every job that is due. Returns the run results."""
        if not cls._app:
            return []
        with cls._app.app_context():
            names = cls.due_jobs(now)
        return [cls.run_job(name) for name in names]

    @classmethod
    def start(cls, poll_seconds: int = 30) -> None:
        """Start the background polling thread (idempotent)."""
        if cls._running or not cls._app:
            return
        cls.ensure_jobs_registered()
        cls._stop_event = threading.Event()
        cls._running = True

        def _loop():
            while not cls._stop_event.is_set():
                try:
                    cls.tick()
                except Exception:
                    logger.exception("Scheduler tick failed")
                cls._stop_event.wait(poll_seconds)

        cls._thread = threading.Thread(target=_loop, name="admissions-scheduler", daemon=True)
        cls._thread.start()
        logger.info("Scheduler thread started (poll every %ds)", poll_seconds)

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


def _get_default_schedule(job_name: str, config=None) -> dict:
    """Return default interval config for known job types."""
    config = config or {}
    scan_minutes = int(config.get("WORKFLOW_SCAN_INTERVAL_MINUTES", 5))
    defaults = {
        "automatic_transition_scan": {
            "minutes": scan_minutes,
            "description": f"Every {scan_minutes} minutes",
        },
        "side_effect_dispatch": {"minutes": 1, "description": "Every minute"},
    }
    return defaults.get(job_name, {"minutes": 60, "description": "Hourly"})
