"""Shared blueprint helpers.

get_or_404:          tuple-return lookup (NOT abort)
db_commit_or_error:  commit with uniform error responses
current_actor:       build the workflow ``Actor`` from request headers
"""
import logging

from flask import jsonify, request

from admissions.models import db
from admissions.models.auth import User
from admissions.services.permission_service import Actor

logger = logging.getLogger(__name__)


def get_or_404(model, pk, label=None):
    """Fetch a model instance by primary key or return a 404 error tuple.

    - Success: (obj, None)
    - Failure: (None, (jsonify_response, 404))

    Usage:
        obj, err = get_or_404(Application, app_id)
        if err:
            return err
    """
    label = label or model.__name__
    obj = db.session.get(model, pk)
    if not obj:
        return None, (jsonify({"error": f"{label} not found"}), 404)
    return obj, None


def db_commit_or_error():
    """Commit the current SQLAlchemy session, returning an error response on failure.

    Returns:
        None on success.
        (response, status_code) tuple on failure — ready for ``return``.

    IntegrityError → 409 (duplicate / constraint violation)
    OperationalError → 500 (connection / lock issues)
    Other → 500 (unexpected)
    """
    from sqlalchemy.exc import IntegrityError, OperationalError

    try:
        db.session.commit()
        return None
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Integrity error on commit: %s", exc.orig)
        return jsonify({"error": "Duplicate or constraint violation"}), 409
    except OperationalError:
        db.session.rollback()
        logger.exception("Database operational error on commit")
        return jsonify({"error": "Database error"}), 500
    except Exception:
        db.session.rollback()
        logger.exception("Unexpected database error on commit")
        return jsonify({"error": "Database error"}), 500


def current_actor() -> Actor:
    """Resolve the acting user from ``X-User-Id`` / ``X-User`` headers.

    Authentication happens upstream; an unknown or missing id yields an
    actor without permissions.
    """
    name = (request.headers.get("X-User") or "").strip()
    raw_id = request.headers.get("X-User-Id")
    try:
        user_id = int(raw_id) if raw_id else None
    except (TypeError, ValueError):
        user_id = None

    if user_id is not None:
        user = db.session.get(User, user_id)
        if user is not None:
            return Actor.for_user(user)
        return Actor(user_id=user_id, name=name or f"user:{user_id}")
    return Actor(user_id=None, name=name or "anonymous")
