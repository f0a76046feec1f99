"""
SignFlow — Document Signature Workflow
Scheduler Service.

Lightweight job registry for the workflow's periodic work (expiration
sweep, automatic reminders, provider event retry). The trigger itself is
external: a cron entry calling ``flask run-job <name>``, or the admin API.

Architecture:
    - Job functions registered via the ``@register_job(name)`` decorator
    - Jobs persisted in the ScheduledJob model (config + run history)
    - SchedulerService executes a job inside the Flask app context
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from flask import Flask, current_app, has_app_context

from signflow.models import db
from signflow.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}


def register_job(name: str):
    """Decorator to register a job function.

    Usage:
        @register_job("signature_expiration_sweep")
        def expire_signatures(app):
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
    Job registration, persistence and execution.

    Jobs run within the Flask app context; an already active context of the
    same app is reused so the job shares the caller's session.
    """

    _app: Flask | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        """Initialize scheduler with Flask app context."""
        # Importing the module registers the jobs.
        from signflow.services import scheduled_jobs  # noqa: F401

        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs",
                    len(_job_registry))

    @classmethod
    def _in_context(cls, fn):
        if has_app_context() and current_app._get_current_object() is cls._app:
            return fn()
        with cls._app.app_context():
            return fn()

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """
        Ensure all registered jobs have a corresponding DB record.
        Creates missing records with default config.
        """
        if not cls._app:
            return []

        def _ensure():
            created = []
            for name, fn in _job_registry.items():
                existing = ScheduledJob.query.filter_by(job_name=name).first()
                if not existing:
                    job = ScheduledJob(
                        job_name=name,
                        description=(fn.__doc__ or f"Scheduled job: {name}").strip().splitlines()[0],
                        schedule_type="cron",
                        schedule_config=_get_default_schedule(name),
                        status="active",
                        is_enabled=True,
                    )
                    db.session.add(job)
                    created.append(job)
            if created:
                db.session.commit()
                logger.info("Created %d scheduled job records", len(created))
            return created

        return cls._in_context(_ensure)

    @classmethod
    def run_job(cls, job_name: str, *, force: bool = False) -> dict:
        """
        Execute a single job by name.

        A disabled job is skipped unless ``force`` is set (manual trigger).

        Returns:
            Dict with status, duration_ms, result or error.
        """
        fn = _job_registry.get(job_name)
        if not fn:
            return {"job_name": job_name, "status": "error", "error": f"Unknown job: {job_name}"}

        if not cls._app:
            return {"job_name": job_name, "status": "error", "error": "Scheduler not initialized"}

        return cls._in_context(lambda: cls._execute(job_name, fn, force))

    @classmethod
    def _execute(cls, job_name: str, fn: Callable, force: bool) -> dict:
        job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if job_record is not None and not job_record.is_enabled and not force:
            logger.info("Job %s is disabled, skipped", job_name, extra={"job_name": job_name})
            return {"job_name": job_name, "status": "skipped", "duration_ms": 0,
                    "result": None, "error": None}

        start = time.monotonic()
        result = None
        error = None
        status = "success"

        try:
            result = fn(cls._app)
        except Exception as exc:  # job runner boundary: one failing job must not kill the trigger
            db.session.rollback()
            status = "failed"
            error = str(exc)
            logger.exception("Job %s failed: %s", job_name, exc, extra={"job_name": job_name})

        duration_ms = int((time.monotonic() - start) * 1000)

        job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if job_record:
            job_record.record_run(
                status=status,
                duration_ms=duration_ms,
                result=result if isinstance(result, dict) else {"output": str(result)},
                error=error,
            )
            db.session.commit()

        logger.info("Job %s finished: %s in %d ms", job_name, status, duration_ms,
                    extra={"job_name": job_name})
        return {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

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


def _get_default_schedule(job_name: str) -> dict:
    """Return default schedule config for known job types."""
    defaults = {
        "signature_expiration_sweep": {"hour": "0", "minute": "0",
                                       "description": "Daily at midnight"},
        "signature_reminders": {"hour": "9", "minute": "0", "description": "Daily at 09:00"},
        "provider_event_retry": {"hour": "*", "minute": "15", "description": "Hourly at :15"},
    }
    return defaults.get(job_name, {"hour": "0", "minute": "0",
                                    "description": "Daily at midnight"})
