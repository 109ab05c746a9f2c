"""
Tests — automatic transition scanner, the scheduled sweep and its cursor.
"""

import pytest

from admissions.core.exceptions import NotFoundError
from admissions.models import db
from admissions.models.application import Application
from admissions.models.scheduling import ScheduledJob
from admissions.models.side_effect import SideEffectJob
from admissions.services.permission_service import Actor
from admissions.services.scheduled_jobs import scan_automatic_transitions
from admissions.services.transition_scanner import AutomaticTransitionScanner, mark_dirty
from admissions.services.workflow_engine import WorkflowEngine

from conftest import add_document, make_application, make_workflow, transition_by_name

SYSTEM = Actor.system()


def _stage_name(application_id):
    return db.session.get(Application, application_id, populate_existing=True).current_stage.name


def _started(**kwargs):
    application = make_application(**kwargs)
    WorkflowEngine().initialize(application.id, SYSTEM)
    return application.id


class _FailingEngine(WorkflowEngine):
    def __init__(self, fail_for):
        super().__init__()
        self.fail_for = fail_for

    def execute_transition(self, application_id, transition_id, actor, payload=None):
        if application_id == self.fail_for:
            raise RuntimeError("database went away")
        return super().execute_transition(application_id, transition_id, actor, payload)


class _StaleEngine(WorkflowEngine):
    """Selects a transition that no longer starts at the application's stage."""

    def __init__(self, transition):
        super().__init__()
        self.stale = transition

    def evaluate_automatic(self, application_id):
        return self.stale


@pytest.fixture()
def chain_workflow():
    """Intake → Screening → Closed, both hops automatic and unconditional."""
    return make_workflow(
        stages=[{"name": "Intake"}, {"name": "Screening"}, {"name": "Closed"}],
        transitions=[
            {"source": "Intake", "target": "Screening", "name": "Screen", "is_automatic": True},
            {"source": "Screening", "target": "Closed", "name": "Close", "is_automatic": True},
        ],
        name="Chain Workflow",
    )


class TestScan:

    def test_one_hop_per_scan(self, chain_workflow):
        app_id = _started()
        scanner = AutomaticTransitionScanner(WorkflowEngine())

        first = scanner.scan()
        assert (first.scanned, first.transitioned) == (1, 1)
        assert _stage_name(app_id) == "Screening"
        assert db.session.get(Application, app_id).needs_evaluation is True

        second = scanner.scan()
        assert second.transitioned == 1
        assert second.transitions == [{
            "application_id": app_id,
            "transition_id": transition_by_name(chain_workflow.id, "Close").id,
            "transition": "Close",
        }]
        assert _stage_name(app_id) == "Closed"

        third = scanner.scan()
        assert third.scanned == 0

    def test_nothing_to_fire_clears_flag(self, review_workflow):
        app_id = _started()
        assert db.session.get(Application, app_id).needs_evaluation is True

        result = AutomaticTransitionScanner(WorkflowEngine()).scan()
        assert (result.scanned, result.transitioned, result.skipped) == (1, 0, 0)
        assert db.session.get(Application, app_id, populate_existing=True).needs_evaluation is False
        assert _stage_name(app_id) == "Submitted"

    def test_scan_uses_system_actor(self, review_workflow):
        app_id = _started()
        add_document(app_id, "transcript")
        AutomaticTransitionScanner(WorkflowEngine()).scan()
        latest = WorkflowEngine().get_status_history(app_id)[-1]
        assert latest.created_by == "system"
        assert latest.created_by_user_id is None

    def test_custom_actor_label(self, review_workflow):
        app_id = _started()
        add_document(app_id, "transcript")
        AutomaticTransitionScanner(WorkflowEngine(), actor=Actor.system("nightly-scan")).scan()
        assert WorkflowEngine().get_status_history(app_id)[-1].created_by == "nightly-scan"

    def test_restrict_to_application_ids(self, review_workflow):
        first, second = _started(), _started()
        add_document(first, "transcript")
        add_document(second, "transcript")

        result = AutomaticTransitionScanner(WorkflowEngine()).scan(application_ids=[second])
        assert result.scanned == 1
        assert _stage_name(first) == "Submitted"
        assert _stage_name(second) == "InReview"

    def test_limit(self, review_workflow):
        ids = [_started() for _ in range(3)]
        result = AutomaticTransitionScanner(WorkflowEngine()).scan(limit=2)
        assert result.scanned == 2
        assert db.session.get(Application, ids[2], populate_existing=True).needs_evaluation is True

    def test_only_dirty(self, review_workflow):
        app_id = _started()
        scanner = AutomaticTransitionScanner(WorkflowEngine())
        scanner.scan(only_dirty=True)

        add_document(app_id, "transcript")
        assert scanner.scan(only_dirty=True).scanned == 0

        mark_dirty(app_id)
        db.session.commit()
        result = scanner.scan(only_dirty=True)
        assert (result.scanned, result.transitioned) == (1, 1)
        assert _stage_name(app_id) == "InReview"


class TestScanFailures:

    def test_unexpected_error_is_counted_and_scan_continues(self, review_workflow):
        bad, good = _started(), _started()
        add_document(bad, "transcript")
        add_document(good, "transcript")

        result = AutomaticTransitionScanner(_FailingEngine(fail_for=bad)).scan()
        assert (result.scanned, result.transitioned, result.errors) == (2, 1, 1)
        assert result.failures == [{"application_id": bad, "error": "database went away"}]
        assert _stage_name(bad) == "Submitted"
        assert _stage_name(good) == "InReview"

    def test_lost_race_counts_as_skipped(self, review_workflow):
        app_id = _started()
        stale = transition_by_name(review_workflow.id, "Decide")

        result = AutomaticTransitionScanner(_StaleEngine(stale)).scan()
        assert (result.scanned, result.transitioned, result.skipped, result.errors) == (1, 0, 1, 0)
        assert _stage_name(app_id) == "Submitted"


class TestMarkDirty:

    def test_document_verified_queues_stage_notifications(self):
        make_workflow(
            stages=[
                {"name": "Documents", "notification_triggers": [
                    {"event": "document_verified", "template": "document_verified"}]},
                {"name": "Done"},
            ],
            transitions=[{"source": "Documents", "target": "Done", "name": "Proceed", "is_automatic": True,
                          "conditions": [{"field": "all_documents_verified", "operator": "equals", "value": True}]}],
            name="Docs Workflow",
        )
        app_id = _started()
        assert SideEffectJob.query.count() == 0

        mark_dirty(app_id, reason="document_verified")
        db.session.commit()

        job = SideEffectJob.query.one()
        assert job.payload["event"] == "document_verified"
        assert job.payload["template"] == "document_verified"
        assert db.session.get(Application, app_id).needs_evaluation is True

    def test_unknown_application(self):
        with pytest.raises(NotFoundError):
            mark_dirty(999)


class TestScheduledScan:

    def test_job_runs_scan(self, app, review_workflow):
        app_id = _started()
        add_document(app_id, "transcript")

        result = scan_automatic_transitions(app)
        assert result["transitioned"] == 1
        assert _stage_name(app_id) == "InReview"

    def test_job_respects_auto_process_switch(self, app, review_workflow):
        app_id = _started()
        add_document(app_id, "transcript")

        app.config["WORKFLOW_AUTO_PROCESS_TRANSITIONS"] = False
        try:
            result = scan_automatic_transitions(app)
        finally:
            app.config["WORKFLOW_AUTO_PROCESS_TRANSITIONS"] = True

        assert result["skipped"] is True
        assert _stage_name(app_id) == "Submitted"


class _DocumentArrivesMidScan(WorkflowEngine):
    """A verified transcript lands, and the application is flagged, while the scan evaluates it."""

    def evaluate_automatic(self, application_id):
        selected = super().evaluate_automatic(application_id)
        add_document(application_id, "transcript")
        mark_dirty(application_id, reason="document_verified")
        db.session.commit()
        return selected


class TestDirtyToken:

    def test_mark_dirty_bumps_token(self, review_workflow):
        app_id = _started()
        before = db.session.get(Application, app_id).dirty_token

        mark_dirty(app_id)
        db.session.commit()
        assert db.session.get(Application, app_id, populate_existing=True).dirty_token == before + 1

    def test_flag_raised_during_evaluation_survives(self, review_workflow):
        app_id = _started()

        result = AutomaticTransitionScanner(_DocumentArrivesMidScan()).scan()
        assert (result.scanned, result.transitioned) == (1, 0)
        assert db.session.get(Application, app_id, populate_existing=True).needs_evaluation is True

        follow_up = AutomaticTransitionScanner(WorkflowEngine()).scan(only_dirty=True)
        assert (follow_up.scanned, follow_up.transitioned) == (1, 1)
        assert _stage_name(app_id) == "InReview"


class TestSweep:

    def test_reaches_applications_without_the_flag(self, review_workflow):
        app_id = _started()
        scanner = AutomaticTransitionScanner(WorkflowEngine())
        scanner.scan()
        add_document(app_id, "transcript")
        assert db.session.get(Application, app_id, populate_existing=True).needs_evaluation is False

        result = scanner.sweep(10)
        assert result.transitioned == 1
        assert result.cursor == app_id
        assert _stage_name(app_id) == "InReview"

    def test_failing_application_does_not_starve_the_rest(self, review_workflow):
        bad, good = _started(), _started()
        add_document(bad, "transcript")
        add_document(good, "transcript")
        scanner = AutomaticTransitionScanner(_FailingEngine(fail_for=bad))

        first = scanner.sweep(1)
        assert (first.errors, first.transitioned) == (1, 0)
        assert first.cursor == bad

        second = scanner.sweep(1, cursor=first.cursor)
        assert second.transitioned == 1
        assert second.cursor == good
        assert _stage_name(good) == "InReview"
        assert _stage_name(bad) == "Submitted"

    def test_flagged_application_evaluated_once_per_sweep(self, review_workflow):
        app_id = _started()
        add_document(app_id, "transcript")

        result = AutomaticTransitionScanner(WorkflowEngine()).sweep(10)
        assert (result.scanned, result.transitioned) == (1, 1)
        assert result.to_dict()["cursor"] == app_id


class TestScheduledSweepCursor:

    def test_cursor_advances_and_wraps(self, app, review_workflow):
        db.session.add(ScheduledJob(job_name="automatic_transition_scan"))
        db.session.commit()
        first, second, third = _started(), _started(), _started()

        batch_size = app.config["WORKFLOW_SCAN_BATCH_SIZE"]
        app.config["WORKFLOW_SCAN_BATCH_SIZE"] = 2
        try:
            scan_automatic_transitions(app)
            record = ScheduledJob.query.filter_by(job_name="automatic_transition_scan").one()
            assert record.state == {"cursor": second}

            scan_automatic_transitions(app)
            db.session.refresh(record)
            assert record.state == {"cursor": first}
        finally:
            app.config["WORKFLOW_SCAN_BATCH_SIZE"] = batch_size

        for app_id in (first, second, third):
            assert db.session.get(Application, app_id, populate_existing=True).needs_evaluation is False

    def test_ready_application_behind_backlog_is_reached(self, app, review_workflow):
        db.session.add(ScheduledJob(job_name="automatic_transition_scan"))
        db.session.commit()
        waiting = _started()
        ready = _started()
        add_document(ready, "transcript")

        batch_size = app.config["WORKFLOW_SCAN_BATCH_SIZE"]
        app.config["WORKFLOW_SCAN_BATCH_SIZE"] = 1
        try:
            for _ in range(3):
                scan_automatic_transitions(app)
        finally:
            app.config["WORKFLOW_SCAN_BATCH_SIZE"] = batch_size

        assert _stage_name(waiting) == "Submitted"
        assert _stage_name(ready) == "InReview"
