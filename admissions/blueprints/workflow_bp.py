"""
Admissions Workflow Platform
Workflow Blueprint — applicant and staff endpoints.

Endpoint groups:
  State           GET  /api/v1/applications/<id>/workflow
  Initialise      POST /api/v1/applications/<id>/workflow/initialize
  Transitions     GET  /api/v1/applications/<id>/workflow/transitions
                  POST /api/v1/applications/<id>/workflow/transitions/<tid>
  History         GET  /api/v1/applications/<id>/workflow/history
  Completeness    GET  /api/v1/applications/<id>/workflow/completeness
  Re-evaluation   POST /api/v1/applications/<id>/workflow/evaluate
  Completion      POST /api/v1/applications/<id>/workflow/actions/<action>
                  POST /api/v1/applications/<id>/documents/<type>/verification
  Active workflow GET  /api/v1/workflows/active?application_type=

The acting user comes from ``X-User-Id`` / ``X-User`` headers (see
``utils.helpers.current_actor``). The engine owns the transaction for stage
changes; the other mutating routes commit here.
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from admissions.blueprints import register_error_handlers
from admissions.models.application import Application
from admissions.services import workflow_service
from admissions.services.transition_scanner import AutomaticTransitionScanner, mark_dirty
from admissions.services.workflow_engine import WorkflowEngine
from admissions.utils.helpers import current_actor, db_commit_or_error, get_or_404

logger = logging.getLogger(__name__)

workflow_bp = Blueprint("workflow", __name__, url_prefix="/api/v1")
register_error_handlers(workflow_bp)


def _engine() -> WorkflowEngine:
    return WorkflowEngine()


# ═════════════════════════════════════════════════════════════════════════
# Application workflow state
# ═════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/applications/<int:app_id>/workflow", methods=["GET"])
def get_workflow_state(app_id):
    """Current stage, state and the stages the caller can move to next."""
    application, err = get_or_404(Application, app_id)
    if err:
        return err
    engine = _engine()
    stage = engine.get_current_stage(app_id)
    next_stages = engine.get_next_stages(app_id, current_actor())
    return jsonify({
        "application_id": app_id,
        "workflow_id": application.workflow_id,
        "workflow_state": application.workflow_state,
        "version": application.version,
        "current_stage": stage.to_dict() if stage else None,
        "next_stages": [s.to_dict() for s in next_stages if s is not None],
    })


@workflow_bp.route("/applications/<int:app_id>/workflow/initialize", methods=["POST"])
def initialize_workflow(app_id):
    """Enter the active workflow for the application's type.

    Body: {notes?}
    Returns: the first status record (201).
    """
    data = request.get_json(silent=True) or {}
    status = _engine().initialize(app_id, current_actor(), notes=data.get("notes"))
    return jsonify(status.to_dict()), 201


@workflow_bp.route("/applications/<int:app_id>/workflow/transitions", methods=["GET"])
def list_available_transitions(app_id):
    summaries = _engine().available_transitions(app_id, current_actor())
    return jsonify({"items": [s.to_dict() for s in summaries], "total": len(summaries)})


@workflow_bp.route("/applications/<int:app_id>/workflow/transitions/<int:transition_id>", methods=["POST"])
def execute_transition(app_id, transition_id):
    """Execute a manual transition.

    Body: {notes?, expected_version?}
    Errors carry ``code`` and ``details`` (missing permissions, failed conditions).
    """
    data = request.get_json(silent=True) or {}
    payload = {"notes": data.get("notes")}
    if data.get("expected_version") is not None:
        try:
            payload["expected_version"] = int(data["expected_version"])
        except (TypeError, ValueError):
            return jsonify({"error": "expected_version must be an integer"}), 400
    status = _engine().execute_transition(app_id, transition_id, current_actor(), payload)
    return jsonify(status.to_dict()), 200


@workflow_bp.route("/applications/<int:app_id>/workflow/history", methods=["GET"])
def get_status_history(app_id):
    history = _engine().get_status_history(app_id)
    return jsonify({"items": [h.to_dict() for h in history], "total": len(history)})


@workflow_bp.route("/applications/<int:app_id>/workflow/completeness", methods=["GET"])
def get_completeness(app_id):
    return jsonify(_engine().check_completeness(app_id))


def _scan_after_signal(app_id):
    """Scan one flagged application now when automatic processing is on."""
    if not current_app.config.get("WORKFLOW_AUTO_PROCESS_TRANSITIONS", True):
        return None
    return AutomaticTransitionScanner(_engine()).scan(application_ids=[app_id]).to_dict()


@workflow_bp.route("/applications/<int:app_id>/workflow/evaluate", methods=["POST"])
def request_evaluation(app_id):
    """Flag the application for automatic-transition evaluation.

    Body: {reason?}  e.g. "document_verified"
    When automatic processing is on, the application is scanned immediately.
    """
    data = request.get_json(silent=True) or {}
    mark_dirty(app_id, reason=data.get("reason"))
    err = db_commit_or_error()
    if err:
        return err

    scan = _scan_after_signal(app_id)
    return jsonify({"queued": True, "scan": scan}), 202 if scan is None else 200


# ═════════════════════════════════════════════════════════════════════════
# Stage completion
# ═════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/applications/<int:app_id>/workflow/actions/<action_id>", methods=["POST"])
def complete_action(app_id, action_id):
    """Record a required action of the current stage as done.

    Body: {data?}
    Returns the completeness report and the follow-up scan (None when
    automatic processing is off).
    """
    data = request.get_json(silent=True) or {}
    if data.get("data") is not None and not isinstance(data["data"], dict):
        return jsonify({"error": "data must be an object"}), 400
    report = _engine().complete_action(app_id, action_id, current_actor(), data=data.get("data"))
    return jsonify({**report, "scan": _scan_after_signal(app_id)})


@workflow_bp.route("/applications/<int:app_id>/documents/<document_type>/verification", methods=["POST"])
def record_document_verification(app_id, document_type):
    """Store the verification outcome for the newest document of a type.

    Body: {status: pending|verified|rejected, confidence_score?}
    """
    data = request.get_json(silent=True) or {}
    status = str(data.get("status") or "").strip()
    if not status:
        return jsonify({"error": "status is required"}), 400
    confidence = data.get("confidence_score")
    if confidence is not None:
        try:
            confidence = float(confidence)
        except (TypeError, ValueError):
            return jsonify({"error": "confidence_score must be a number"}), 400
    doc = _engine().record_document_verification(
        app_id, document_type, status, current_actor(), confidence_score=confidence,
    )
    scan = _scan_after_signal(app_id) if status != "pending" else None
    return jsonify({"document": doc.to_dict(), "scan": scan})


# ═════════════════════════════════════════════════════════════════════════
# Active workflow lookup
# ═════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/workflows/active", methods=["GET"])
def get_active_workflow():
    application_type = (request.args.get("application_type") or "").strip()
    if not application_type:
        return jsonify({"error": "application_type is required"}), 400
    wf = workflow_service.get_active_workflow(application_type)
    if wf is None:
        return jsonify({"error": f"No active workflow for '{application_type}'",
                        "code": "NO_ACTIVE_WORKFLOW"}), 404
    return jsonify(wf.to_dict(include_graph=True))
