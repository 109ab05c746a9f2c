"""
Side-effect outbox — enqueue and dispatch.

The workflow engine calls the ``enqueue_*`` helpers inside its stage-change
transaction; they only add ``SideEffectJob`` rows (no flush, no commit).

``SideEffectDispatcher`` runs after commit (scheduled job
``side_effect_dispatch``). It owns its transactions: due jobs are claimed
(``running``) and committed before delivery starts, then each job commits
its own outcome, so a failing job never undoes another job's work and two
dispatchers never deliver the same job. Claims older than
``SIDE_EFFECT_CLAIM_TIMEOUT_SECONDS`` are released back to the queue.
Failures back off exponentially (``backoff * 2**(attempts-1)``) and the job goes ``dead``
once ``max_attempts`` is reached. Dead jobs stay visible to operators and
can be requeued; the dispatcher never touches an application's stage.
"""

import logging
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

from flask import current_app

from admissions.core.exceptions import NotFoundError, ValidationError
from admissions.integrations.sis_gateway import IntegrationSync
from admissions.models import db
from admissions.models.application import Application
from admissions.models.audit import write_audit
from admissions.models.side_effect import SideEffectJob
from admissions.models.workflow import WorkflowStage
from admissions.services.notification import NotificationDispatcher

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _max_attempts() -> int:
    return int(current_app.config.get("SIDE_EFFECT_MAX_ATTEMPTS", 3))


# ═══════════════════════════════════════════════════════════════════
# ENQUEUE (called inside the engine's transaction)
# ═══════════════════════════════════════════════════════════════════

def enqueue_stage_notifications(application, stage, event_name: str) -> list[SideEffectJob]:
    """Queue one notification job per trigger of *stage* registered for *event_name*."""
    jobs = []
    for trigger in stage.triggers_for(event_name):
        job = SideEffectJob(
            application_id=application.id,
            job_type="notification",
            payload={
                "event": event_name,
                "audience": trigger.get("audience", "applicant"),
                "template": trigger.get("template"),
                "channels": list(trigger.get("channels") or ["in_app"]),
                "application_id": application.id,
                "applicant_user_id": application.applicant_user_id,
                "stage_id": stage.id,
                "stage_name": stage.name,
                "assigned_role": stage.assigned_role,
            },
            max_attempts=_max_attempts(),
        )
        db.session.add(job)
        jobs.append(job)
    return jobs


def enqueue_integration_sync(application, stage) -> SideEffectJob:
    job = SideEffectJob(
        application_id=application.id,
        job_type="integration_sync",
        payload={
            "application_id": application.id,
            "stage_id": stage.id,
            "stage_name": stage.name,
        },
        max_attempts=_max_attempts(),
    )
    db.session.add(job)
    return job


# ═══════════════════════════════════════════════════════════════════
# DISPATCH (after commit)
# ═══════════════════════════════════════════════════════════════════

class SideEffectDispatcher:
    """Executes due outbox jobs with bounded retries."""

    def __init__(self, notifier=None, integration_sync=None, clock=None, backoff_seconds=None):
        self.notifier = notifier or NotificationDispatcher()
        self._integration_sync = integration_sync
        self.clock = clock or _utcnow
        self._backoff_seconds = backoff_seconds

    @property
    def integration_sync(self):
        if self._integration_sync is None:
            self._integration_sync = IntegrationSync.from_config(current_app.config)
        return self._integration_sync

    @property
    def backoff_seconds(self) -> int:
        if self._backoff_seconds is not None:
            return self._backoff_seconds
        return int(current_app.config.get("SIDE_EFFECT_BACKOFF_SECONDS", 60))

    @property
    def claim_timeout_seconds(self) -> int:
        return int(current_app.config.get("SIDE_EFFECT_CLAIM_TIMEOUT_SECONDS", 300))

    def run_pending(self, limit: int | None = None) -> dict:
        """
        Execute every queued job whose ``next_attempt_at`` has passed.

        Due jobs are claimed first (``running``, committed) so a second
        dispatcher never picks them up while they are being delivered.

        Returns:
            {"processed", "succeeded", "retrying", "dead"}
        """
        self.release_stale_claims()
        job_ids = self._claim(limit)

        summary = {"processed": 0, "succeeded": 0, "retrying": 0, "dead": 0}
        for job_id in job_ids:
            outcome = self._run_one(job_id)
            summary["processed"] += 1
            summary[outcome] += 1
        if job_ids:
            logger.info(
                "Side-effect dispatch: %d processed, %d succeeded, %d retrying, %d dead",
                summary["processed"], summary["succeeded"], summary["retrying"], summary["dead"],
                extra={"event_type": "side_effect_dispatch"},
            )
        return summary

    def _claim(self, limit: int | None) -> list[int]:
        now = self.clock()
        q = (
            SideEffectJob.query
            .filter(SideEffectJob.status == "queued", SideEffectJob.next_attempt_at <= now)
            .order_by(SideEffectJob.next_attempt_at, SideEffectJob.id)
            .with_for_update(skip_locked=True)
        )
        if limit:
            q = q.limit(limit)
        jobs = q.all()
        job_ids = [j.id for j in jobs]
        for job in jobs:
            job.status = "running"
            job.claimed_at = now
        # Releases the row locks; the running status keeps other dispatchers off
        db.session.commit()
        return job_ids

    def release_stale_claims(self) -> int:
        """Put ``running`` jobs whose claim outlived the timeout back in the queue."""
        cutoff = self.clock() - timedelta(seconds=self.claim_timeout_seconds)
        released = (
            SideEffectJob.query
            .filter(SideEffectJob.status == "running", SideEffectJob.claimed_at < cutoff)
            .update({"status": "queued", "claimed_at": None}, synchronize_session=False)
        )
        if released:
            db.session.commit()
            logger.warning(
                "Released %d stale side-effect claim(s) older than %ds",
                released, self.claim_timeout_seconds,
                extra={"event_type": "side_effect.claim_released"},
            )
        return released

    def _run_one(self, job_id: int) -> str:
        job = db.session.get(SideEffectJob, job_id)
        payload = dict(job.payload or {})
        job_type = job.job_type
        try:
            result = self._execute(job_type, payload)
        except Exception as exc:
            # Discard anything the handler flushed before failing
            db.session.rollback()
            return self._record_failure(job_id, exc)

        job.status = "succeeded"
        job.claimed_at = None
        job.attempts = (job.attempts or 0) + 1
        job.result = result
        job.last_error = None
        job.completed_at = self.clock()
        db.session.commit()
        return "succeeded"

    def _execute(self, job_type: str, payload: dict) -> dict:
        if job_type == "notification":
            notifications = self.notifier.dispatch(payload.get("event"), payload.get("audience"), payload)
            return {"notifications": len(notifications or [])}
        if job_type == "integration_sync":
            application = db.session.get(Application, payload.get("application_id"))
            if application is None:
                return {"sis": "skipped", "lms": "skipped", "reason": "application_deleted"}
            stage = db.session.get(WorkflowStage, payload.get("stage_id")) if payload.get("stage_id") else None
            if stage is None:
                stage = SimpleNamespace(id=payload.get("stage_id"), name=payload.get("stage_name"))
            return self.integration_sync.sync_on_status_change(application, stage)
        raise ValueError(f"Unknown side-effect job type: {job_type}")

    def _record_failure(self, job_id: int, exc: Exception) -> str:
        job = db.session.get(SideEffectJob, job_id)
        job.attempts = (job.attempts or 0) + 1
        job.last_error = f"{type(exc).__name__}: {exc}"[:2000]
        job.claimed_at = None

        if job.attempts >= (job.max_attempts or 1):
            job.status = "dead"
            job.completed_at = self.clock()
            outcome = "dead"
            logger.error(
                "Side-effect job %d (%s) dead after %d attempt(s): %s",
                job.id, job.job_type, job.attempts, exc,
                extra={"application_id": job.application_id, "job_id": job.id,
                       "event_type": "side_effect.dead"},
            )
        else:
            delay = self.backoff_seconds * 2 ** (job.attempts - 1)
            job.status = "queued"
            job.next_attempt_at = self.clock() + timedelta(seconds=delay)
            outcome = "retrying"
            logger.warning(
                "Side-effect job %d (%s) failed attempt %d/%d, retry in %ds: %s",
                job.id, job.job_type, job.attempts, job.max_attempts, delay, exc,
                extra={"application_id": job.application_id, "job_id": job.id,
                       "event_type": "side_effect.retry"},
            )
        db.session.commit()
        return outcome


# ═══════════════════════════════════════════════════════════════════
# OPERATOR QUEUE
# ═══════════════════════════════════════════════════════════════════

def list_dead_letters(limit: int = 100) -> list[SideEffectJob]:
    return (
        SideEffectJob.query.filter_by(status="dead")
        .order_by(SideEffectJob.completed_at.desc(), SideEffectJob.id.desc())
        .limit(limit)
        .all()
    )


def retry_dead_letter(job_id: int, actor=None) -> SideEffectJob:
    """Requeue a dead job with a fresh attempt budget. Flushes only."""
    job = db.session.get(SideEffectJob, job_id)
    if job is None:
        raise NotFoundError(resource="SideEffectJob", resource_id=job_id)
    if job.status != "dead":
        raise ValidationError(
            f"Side-effect job {job_id} is {job.status}; only dead jobs can be requeued",
            details={"status": job.status},
        )
    previous_error = job.last_error
    job.status = "queued"
    job.attempts = 0
    job.claimed_at = None
    job.next_attempt_at = _utcnow()
    job.completed_at = None
    db.session.flush()
    write_audit(
        entity_type="side_effect_job", entity_id=job.id, action="side_effect_job.requeue",
        actor=getattr(actor, "label", "system"), actor_user_id=getattr(actor, "user_id", None),
        diff={"last_error": previous_error},
    )
    return job
