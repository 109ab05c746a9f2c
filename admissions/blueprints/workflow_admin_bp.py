"""
Admissions Workflow Platform
Workflow Admin Blueprint — workflow editor and operator endpoints.

Endpoint groups:
  Workflows        GET/POST        /api/v1/admin/workflows
                   GET/PUT/DELETE  /api/v1/admin/workflows/<id>
  Lifecycle        POST /api/v1/admin/workflows/<id>/activate | deactivate | duplicate
                   GET  /api/v1/admin/workflows/<id>/validate
  Stages           POST /api/v1/admin/workflows/<id>/stages
                   POST /api/v1/admin/workflows/<id>/stages/reorder
                   PUT/DELETE /api/v1/admin/stages/<sid>
  Transitions      POST /api/v1/admin/workflows/<id>/transitions
                   PUT/DELETE /api/v1/admin/transitions/<tid>
  Audit            GET  /api/v1/admin/workflows/<id>/audit
  Scheduler        GET  /api/v1/admin/scheduler/jobs[/<name>]
                   POST /api/v1/admin/scheduler/jobs/<name>/run | toggle
  Dead letters     GET  /api/v1/admin/side-effects/dead-letters
                   POST /api/v1/admin/side-effects/<job_id>/retry

Every route is guarded by a workflow-editor permission. Services flush;
routes commit.
"""

import functools
import logging

from flask import Blueprint, jsonify, request

from admissions.blueprints import paginate_query, register_error_handlers
from admissions.models.audit import AuditLog
from admissions.services import side_effects, workflow_service
from admissions.services.permission_service import PermissionChecker
from admissions.services.scheduler_service import SchedulerService, get_registered_jobs
from admissions.utils.helpers import current_actor, db_commit_or_error

logger = logging.getLogger(__name__)

workflow_admin_bp = Blueprint("workflow_admin", __name__, url_prefix="/api/v1/admin")
register_error_handlers(workflow_admin_bp)

_checker = PermissionChecker()


def require_permission(codename):
    """Reject the request with 403 unless the current actor holds *codename*."""
    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            actor = current_actor()
            if not _checker.has_permission(actor, codename):
                logger.warning("Permission %s denied for %s on %s", codename, actor.label, request.endpoint)
                return jsonify({
                    "error": f"Permission '{codename}' required",
                    "code": "PERMISSION_DENIED",
                    "details": {"missing_permissions": [codename]},
                }), 403
            return fn(*args, **kwargs)
        return wrapper
    return decorator


def _commit(payload, status=200):
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(payload), status


# ═════════════════════════════════════════════════════════════════════════
# Workflows
# ═════════════════════════════════════════════════════════════════════════


@workflow_admin_bp.route("/workflows", methods=["GET"])
@require_permission("view_workflow_editor")
def list_workflows():
    """Query params: application_type, is_active (true/false), search."""
    filters = {
        "application_type": request.args.get("application_type"),
        "search": request.args.get("search"),
    }
    if request.args.get("is_active") is not None:
        filters["is_active"] = request.args.get("is_active", "").lower() in ("1", "true", "yes")
    workflows = workflow_service.list_workflows(filters)
    return jsonify({"items": [w.to_dict() for w in workflows], "total": len(workflows)})


@workflow_admin_bp.route("/workflows", methods=["POST"])
@require_permission("edit_workflow")
def create_workflow():
    """Body: {name, application_type, description?, stages?, transitions?}"""
    data = request.get_json(silent=True) or {}
    wf = workflow_service.create_workflow(data, actor=current_actor())
    return _commit(wf.to_dict(include_graph=True), 201)


@workflow_admin_bp.route("/workflows/<int:workflow_id>", methods=["GET"])
@require_permission("view_workflow_editor")
def get_workflow(workflow_id):
    return jsonify(workflow_service.get_workflow(workflow_id).to_dict(include_graph=True))


@workflow_admin_bp.route("/workflows/<int:workflow_id>", methods=["PUT"])
@require_permission("edit_workflow")
def update_workflow(workflow_id):
    data = request.get_json(silent=True) or {}
    wf = workflow_service.update_workflow(workflow_id, data, actor=current_actor())
    return _commit(wf.to_dict())


@workflow_admin_bp.route("/workflows/<int:workflow_id>", methods=["DELETE"])
@require_permission("edit_workflow")
def delete_workflow(workflow_id):
    workflow_service.delete_workflow(workflow_id, actor=current_actor())
    return _commit({"deleted": True, "id": workflow_id})


# ── Lifecycle ────────────────────────────────────────────────────────────────


@workflow_admin_bp.route("/workflows/<int:workflow_id>/activate", methods=["POST"])
@require_permission("activate_workflow")
def activate_workflow(workflow_id):
    wf = workflow_service.activate_workflow(workflow_id, actor=current_actor())
    return _commit(wf.to_dict())


@workflow_admin_bp.route("/workflows/<int:workflow_id>/deactivate", methods=["POST"])
@require_permission("activate_workflow")
def deactivate_workflow(workflow_id):
    wf = workflow_service.deactivate_workflow(workflow_id, actor=current_actor())
    return _commit(wf.to_dict())


@workflow_admin_bp.route("/workflows/<int:workflow_id>/duplicate", methods=["POST"])
@require_permission("edit_workflow")
def duplicate_workflow(workflow_id):
    """Body: {name?}"""
    data = request.get_json(silent=True) or {}
    wf = workflow_service.duplicate_workflow(workflow_id, data.get("name"), actor=current_actor())
    return _commit(wf.to_dict(include_graph=True), 201)


@workflow_admin_bp.route("/workflows/<int:workflow_id>/validate", methods=["GET"])
@require_permission("view_workflow_editor")
def validate_workflow(workflow_id):
    issues = workflow_service.validate_workflow(workflow_id)
    return jsonify({"valid": not issues, "issues": [i.to_dict() for i in issues]})


@workflow_admin_bp.route("/workflows/<int:workflow_id>/audit", methods=["GET"])
@require_permission("view_workflow_editor")
def workflow_audit(workflow_id):
    """Audit rows for the workflow itself (paginated: limit, offset)."""
    workflow_service.get_workflow(workflow_id)
    q = (
        AuditLog.query
        .filter(AuditLog.entity_type == "workflow", AuditLog.entity_id == str(workflow_id))
        .order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())
    )
    items, total = paginate_query(q, default_limit=50)
    return jsonify({"items": [a.to_dict() for a in items], "total": total})


# ═════════════════════════════════════════════════════════════════════════
# Stages
# ═════════════════════════════════════════════════════════════════════════


@workflow_admin_bp.route("/workflows/<int:workflow_id>/stages", methods=["POST"])
@require_permission("edit_workflow")
def create_stage(workflow_id):
    data = request.get_json(silent=True) or {}
    stage = workflow_service.create_stage(workflow_id, data, actor=current_actor())
    return _commit(stage.to_dict(), 201)


@workflow_admin_bp.route("/workflows/<int:workflow_id>/stages/reorder", methods=["POST"])
@require_permission("edit_workflow")
def reorder_stages(workflow_id):
    """Body: {stage_ids: [..]} — every stage of the workflow, in display order."""
    data = request.get_json(silent=True) or {}
    stages = workflow_service.reorder_stages(workflow_id, data.get("stage_ids") or [], actor=current_actor())
    return _commit({"items": [s.to_dict() for s in stages]})


@workflow_admin_bp.route("/stages/<int:stage_id>", methods=["PUT"])
@require_permission("edit_workflow")
def update_stage(stage_id):
    data = request.get_json(silent=True) or {}
    stage = workflow_service.update_stage(stage_id, data, actor=current_actor())
    return _commit(stage.to_dict())


@workflow_admin_bp.route("/stages/<int:stage_id>", methods=["DELETE"])
@require_permission("edit_workflow")
def delete_stage(stage_id):
    workflow_service.delete_stage(stage_id, actor=current_actor())
    return _commit({"deleted": True, "id": stage_id})


# ═════════════════════════════════════════════════════════════════════════
# Transitions
# ═════════════════════════════════════════════════════════════════════════


@workflow_admin_bp.route("/workflows/<int:workflow_id>/transitions", methods=["POST"])
@require_permission("edit_workflow")
def create_transition(workflow_id):
    """Body: {name, source_stage_id, target_stage_id, conditions?, required_permissions?,
    is_automatic?, is_revision?, priority?}"""
    data = request.get_json(silent=True) or {}
    tr = workflow_service.create_transition(workflow_id, data, actor=current_actor())
    return _commit(tr.to_dict(), 201)


@workflow_admin_bp.route("/transitions/<int:transition_id>", methods=["PUT"])
@require_permission("edit_workflow")
def update_transition(transition_id):
    data = request.get_json(silent=True) or {}
    tr = workflow_service.update_transition(transition_id, data, actor=current_actor())
    return _commit(tr.to_dict())


@workflow_admin_bp.route("/transitions/<int:transition_id>", methods=["DELETE"])
@require_permission("edit_workflow")
def delete_transition(transition_id):
    workflow_service.delete_transition(transition_id, actor=current_actor())
    return _commit({"deleted": True, "id": transition_id})


# ═════════════════════════════════════════════════════════════════════════
# Scheduler & outbox operations
# ═════════════════════════════════════════════════════════════════════════


@workflow_admin_bp.route("/scheduler/jobs", methods=["GET"])
@require_permission("view_workflow_editor")
def list_scheduled_jobs():
    SchedulerService.ensure_jobs_registered()
    return jsonify({"items": SchedulerService.list_jobs()})


@workflow_admin_bp.route("/scheduler/jobs/<job_name>", methods=["GET"])
@require_permission("view_workflow_editor")
def get_scheduled_job(job_name):
    SchedulerService.ensure_jobs_registered()
    record = SchedulerService.get_job_status(job_name)
    if record is None:
        return jsonify({"error": f"Unknown job: {job_name}"}), 404
    return jsonify(record)


@workflow_admin_bp.route("/scheduler/jobs/<job_name>/run", methods=["POST"])
@require_permission("activate_workflow")
def run_scheduled_job(job_name):
    if job_name not in get_registered_jobs():
        return jsonify({"error": f"Unknown job: {job_name}"}), 404
    SchedulerService.ensure_jobs_registered()
    result = SchedulerService.run_job(job_name)
    return jsonify(result), 200 if result["status"] == "success" else 500


@workflow_admin_bp.route("/scheduler/jobs/<job_name>/toggle", methods=["POST"])
@require_permission("activate_workflow")
def toggle_scheduled_job(job_name):
    """Body: {enabled: bool}"""
    data = request.get_json(silent=True) or {}
    SchedulerService.ensure_jobs_registered()
    record = SchedulerService.toggle_job(job_name, bool(data.get("enabled", True)))
    if record is None:
        return jsonify({"error": f"Unknown job: {job_name}"}), 404
    return jsonify(record)


@workflow_admin_bp.route("/side-effects/dead-letters", methods=["GET"])
@require_permission("view_workflow_editor")
def list_dead_letters():
    limit = min(request.args.get("limit", 100, type=int) or 100, 1000)
    jobs = side_effects.list_dead_letters(limit=limit)
    return jsonify({"items": [j.to_dict() for j in jobs], "total": len(jobs)})


@workflow_admin_bp.route("/side-effects/<int:job_id>/retry", methods=["POST"])
@require_permission("edit_workflow")
def retry_dead_letter(job_id):
    job = side_effects.retry_dead_letter(job_id, actor=current_actor())
    return _commit(job.to_dict())
