"""
Admissions Workflow Platform
Blueprint registry.
"""

from flask import jsonify, request

from admissions.core.exceptions import ConflictError, NotFoundError, ValidationError, WorkflowError
from admissions.models import db


def paginate_query(query, default_limit=200, max_limit=1000):
    """Apply limit/offset pagination to a SQLAlchemy query.

    Query params:
        limit  — max items (default 200, capped at max_limit)
        offset — starting position (default 0)

    Returns:
        (items_list, total_count)
    """
    total = query.count()
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    items = query.limit(limit).offset(offset).all()
    return items, total


def register_error_handlers(bp) -> None:
    """Map platform exceptions to JSON responses on *bp*."""

    @bp.errorhandler(WorkflowError)
    def _handle_workflow_error(error: WorkflowError):
        db.session.rollback()
        return jsonify(error.to_dict()), error.http_status

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        db.session.rollback()
        return jsonify({"error": str(error), "code": "NOT_FOUND"}), 404

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        db.session.rollback()
        return jsonify({"error": str(error), "code": "VALIDATION_ERROR", "details": error.details}), 422

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        db.session.rollback()
        return jsonify({"error": str(error), "code": "CONFLICT"}), 409
