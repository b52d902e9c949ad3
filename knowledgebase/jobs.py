"""
Background jobs for long rescans and storage syncs.

Job state lives in the jobs table so status polls work from any worker. The
work itself runs in a daemon thread with its own app context; progress lines
from the services become the job's ``message`` and refresh ``heartbeat_at``.
"""
import logging
import os
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from flask import current_app

from knowledgebase import db
from knowledgebase.models import Job, JobStatus

logger = logging.getLogger(__name__)


def new_job_id() -> str:
    return f"job_{int(time.time() * 1000)}_{os.urandom(4).hex()}"


def set_job(job_id: str, **updates: Any) -> Dict[str, Any]:
    """Create or update a job row and return its dict form."""
    job = db.session.get(Job, job_id)
    if job is None:
        job = Job(id=job_id, kind=updates.get("kind") or "unknown")
        db.session.add(job)
    job.update_from_dict(updates)
    db.session.commit()
    return job.to_dict()


def get_job(job_id: str) -> Dict[str, Any]:
    job = db.session.get(Job, job_id) if job_id else None
    return job.to_dict() if job else {}


def fail_if_stale(job_id: str, stale_seconds: Optional[int] = None) -> Dict[str, Any]:
    """
    Mark a processing job as failed when its worker stopped sending heartbeats
    (thread died, worker restarted). Returns the current job dict.
    """
    job = db.session.get(Job, job_id) if job_id else None
    if job is None:
        return {}
    if job.status != JobStatus.PROCESSING.value:
        return job.to_dict()

    if stale_seconds is None:
        stale_seconds = current_app.config.get("JOB_STALE_SECONDS", 300)
    hb = job.heartbeat_at or job.updated_at
    if hb is not None and hb.tzinfo is None:
        hb = hb.replace(tzinfo=timezone.utc)
    age = (datetime.now(timezone.utc) - hb).total_seconds() if hb else stale_seconds + 1
    if age <= stale_seconds:
        return job.to_dict()

    logger.warning("Job %s has no heartbeat for %ds, marking it failed", job_id, age)
    return set_job(job_id, status=JobStatus.ERROR.value,
                   error="The job stopped responding. Start it again.")


def run_job(job_id: str, target: Callable[..., Any], args: tuple) -> None:
    set_job(job_id, status=JobStatus.PROCESSING.value, progress=1, heartbeat=True)

    def on_progress(message: str) -> None:
        logger.debug("[%s] %s", job_id, message)
        try:
            set_job(job_id, message=message, heartbeat=True)
        except Exception as e:
            db.session.rollback()
            logger.warning("Could not record progress for %s: %s", job_id, e)

    try:
        result = target(*args, on_progress=on_progress)
    except Exception as e:
        db.session.rollback()
        logger.exception("Job %s failed", job_id)
        set_job(job_id, status=JobStatus.ERROR.value, error=str(e) or type(e).__name__, heartbeat=True)
        return

    set_job(job_id, status=JobStatus.COMPLETE.value, progress=100, result=result,
            message="Complete", heartbeat=True)


def _run_in_thread(app, job_id: str, target: Callable[..., Any], args: tuple) -> None:
    with app.app_context():
        try:
            run_job(job_id, target, args)
        finally:
            db.session.remove()


def start_job(kind: str, target: Callable[..., Any], *args: Any,
              user_id: Optional[int] = None, target_id: Optional[str] = None) -> str:
    """
    Register a job and run ``target(*args, on_progress=...)`` in the background.
    With JOBS_INLINE set the target runs before this returns.
    """
    job_id = new_job_id()
    set_job(job_id, kind=kind, user_id=user_id, target_id=target_id,
            status=JobStatus.WAITING.value, progress=0, message="Preparing...")

    app = current_app._get_current_object()
    if app.config.get("JOBS_INLINE"):
        run_job(job_id, target, args)
    else:
        t = threading.Thread(target=_run_in_thread, args=(app, job_id, target, args), daemon=True)
        t.start()
    return job_id
