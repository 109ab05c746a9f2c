"""
Tests — in-process scheduler: job registry, persistence, due-job selection.
"""

from datetime import datetime, timedelta, timezone

from admissions.models import db
from admissions.models.scheduling import ScheduledJob
from admissions.services.scheduler_service import (
    SchedulerService,
    _get_default_schedule,
    get_registered_jobs,
)


class TestSchedulerService:

    def test_registered_jobs(self):
        jobs = get_registered_jobs()
        assert "automatic_transition_scan" in jobs
        assert "side_effect_dispatch" in jobs

    def test_ensure_jobs_registered(self, app):
        SchedulerService.init_app(app)
        created = SchedulerService.ensure_jobs_registered()
        assert len(created) == len(get_registered_jobs())

        # Verify via fresh query (objects may be detached after context exit)
        scan = ScheduledJob.query.filter_by(job_name="automatic_transition_scan").one()
        assert scan.status == "active"
        assert scan.schedule_config["minutes"] == app.config["WORKFLOW_SCAN_INTERVAL_MINUTES"]

        assert SchedulerService.ensure_jobs_registered() == []

    def test_due_jobs_respect_interval_and_toggle(self, app):
        SchedulerService.init_app(app)
        SchedulerService.ensure_jobs_registered()
        now = datetime.now(timezone.utc)
        assert set(SchedulerService.due_jobs(now)) == {"automatic_transition_scan", "side_effect_dispatch"}

        dispatch = ScheduledJob.query.filter_by(job_name="side_effect_dispatch").one()
        dispatch.last_run_at = now
        db.session.commit()
        assert SchedulerService.due_jobs(now) == ["automatic_transition_scan"]
        assert "side_effect_dispatch" in SchedulerService.due_jobs(now + timedelta(minutes=2))

        result = SchedulerService.toggle_job("automatic_transition_scan", False)
        assert result["status"] == "paused"
        assert result["is_enabled"] is False
        assert SchedulerService.due_jobs(now) == []

    def test_toggle_unknown_job(self):
        assert SchedulerService.toggle_job("nope", True) is None

    def test_run_unknown_job(self, app):
        SchedulerService.init_app(app)
        assert SchedulerService.run_job("nope")["status"] == "error"

    def test_default_schedules(self):
        assert _get_default_schedule("automatic_transition_scan", {"WORKFLOW_SCAN_INTERVAL_MINUTES": 10})["minutes"] == 10
        assert _get_default_schedule("side_effect_dispatch")["minutes"] == 1
        assert _get_default_schedule("something_else")["minutes"] == 60
