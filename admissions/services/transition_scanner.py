"""
Automatic Transition Scanner.

Walks in-flight applications and fires the automatic transition the engine
selects for each one, as the system actor (never permission-gated).

One hop per application per scan: after a transition fires, the
application is not re-evaluated in the same pass. The new stage sets the
``needs_evaluation`` flag when it has automatic transitions of its own and
the next scheduler tick picks it up.

``sweep`` is what the scheduled job runs. It evaluates flagged applications
first, then a round-robin slice of every in-flight application starting
after a cursor the caller persists, so each application is reached within
``ceil(in_flight / batch_size)`` runs however large the backlog is.

The flag is only cleared when ``dirty_token`` still holds the value read
before evaluation; a ``mark_dirty`` that lands mid-evaluation survives.

Losing a race against a manual transition, or conditions changing between
selection and execution, counts as ``skipped``. Any other failure is logged,
counted as an error, and the scan moves on to the next application.
"""

import logging
from dataclasses import dataclass, field

from flask import current_app

from admissions.core.exceptions import ConditionNotMetError, InvalidTransitionError, NotFoundError
from admissions.models import db
from admissions.models.application import Application
from admissions.services.permission_service import Actor
from admissions.services.side_effects import enqueue_stage_notifications

logger = logging.getLogger(__name__)


@dataclass
class ScanResult:
    scanned: int = 0
    transitioned: int = 0
    skipped: int = 0
    errors: int = 0
    transitions: list = field(default_factory=list)
    failures: list = field(default_factory=list)
    cursor: int | None = None

    def merge(self, other: "ScanResult") -> "ScanResult":
        self.scanned += other.scanned
        self.transitioned += other.transitioned
        self.skipped += other.skipped
        self.errors += other.errors
        self.transitions.extend(other.transitions)
        self.failures.extend(other.failures)
        return self

    def to_dict(self) -> dict:
        out = {
            "scanned": self.scanned,
            "transitioned": self.transitioned,
            "skipped": self.skipped,
            "errors": self.errors,
            "transitions": list(self.transitions),
            "failures": list(self.failures),
        }
        if self.cursor is not None:
            out["cursor"] = self.cursor
        return out


class AutomaticTransitionScanner:
    """Applies automatic transitions through a ``WorkflowEngine``."""

    def __init__(self, engine, actor: Actor | None = None):
        self.engine = engine
        self._actor = actor

    @property
    def actor(self) -> Actor:
        if self._actor is None:
            self._actor = Actor.system(current_app.config.get("WORKFLOW_SYSTEM_ACTOR", "system"))
        return self._actor

    def _candidate_ids(self, application_ids, limit, only_dirty) -> list[int]:
        q = db.session.query(Application.id).filter(Application.workflow_state == "in_progress")
        if application_ids is not None:
            q = q.filter(Application.id.in_(list(application_ids)))
        if only_dirty:
            q = q.filter(Application.needs_evaluation.is_(True))
        q = q.order_by(Application.id)
        if limit:
            q = q.limit(limit)
        return [row[0] for row in q.all()]

    def _round_robin_ids(self, after_id: int, limit: int) -> list[int]:
        """Up to *limit* in-flight ids after *after_id*, wrapping to the lowest ids."""
        base = db.session.query(Application.id).filter(Application.workflow_state == "in_progress")
        ids = [row[0] for row in
               base.filter(Application.id > after_id).order_by(Application.id).limit(limit).all()]
        if len(ids) < limit and after_id > 0:
            ids += [row[0] for row in
                    base.filter(Application.id <= after_id).order_by(Application.id)
                    .limit(limit - len(ids)).all()]
        return ids

    def scan(self, application_ids=None, limit: int | None = None, only_dirty: bool = False) -> ScanResult:
        """
        Evaluate and fire automatic transitions, one hop per application.

        Args:
            application_ids: restrict the scan to these applications.
            limit: maximum number of applications examined.
            only_dirty: only applications flagged ``needs_evaluation``.
        """
        result = ScanResult()
        for app_id in self._candidate_ids(application_ids, limit, only_dirty):
            self._scan_one(app_id, result)
        self._log_summary("Automatic transition scan", result)
        return result

    def sweep(self, batch_size: int, cursor: int = 0) -> ScanResult:
        """
        One scheduled pass: up to *batch_size* flagged applications, then up
        to *batch_size* in-flight applications after *cursor* (wrapping).

        Applications evaluated in the flagged pass are not evaluated again in
        the round-robin pass. ``result.cursor`` is the value to pass next time.
        """
        result = ScanResult()
        flagged = self._candidate_ids(None, batch_size, only_dirty=True)
        for app_id in flagged:
            self._scan_one(app_id, result)

        window = self._round_robin_ids(cursor or 0, batch_size)
        seen = set(flagged)
        for app_id in window:
            if app_id not in seen:
                self._scan_one(app_id, result)
        result.cursor = window[-1] if window else 0

        self._log_summary("Automatic transition sweep", result)
        return result

    def _scan_one(self, app_id: int, result: ScanResult) -> None:
        result.scanned += 1
        try:
            seen_token = self._dirty_token(app_id)
            transition = self.engine.evaluate_automatic(app_id)
            if transition is None:
                self._clear_dirty(app_id, seen_token)
                return
            transition_id, transition_name = transition.id, transition.name
            self.engine.execute_transition(app_id, transition_id, self.actor)
            result.transitioned += 1
            result.transitions.append({
                "application_id": app_id,
                "transition_id": transition_id,
                "transition": transition_name,
            })
        except (InvalidTransitionError, ConditionNotMetError, NotFoundError) as exc:
            db.session.rollback()
            result.skipped += 1
            logger.info(
                "Automatic transition skipped: %s", exc,
                extra={"application_id": app_id, "event_type": "scan.skipped"},
            )
        except Exception as exc:
            db.session.rollback()
            result.errors += 1
            result.failures.append({"application_id": app_id, "error": str(exc)[:500]})
            logger.exception(
                "Automatic transition scan failed for application %s", app_id,
                extra={"application_id": app_id, "event_type": "scan.error"},
            )

    @staticmethod
    def _log_summary(label: str, result: ScanResult) -> None:
        logger.info(
            "%s: %d scanned, %d transitioned, %d skipped, %d errors",
            label, result.scanned, result.transitioned, result.skipped, result.errors,
            extra={"event_type": "scan.summary"},
        )

    @staticmethod
    def _dirty_token(application_id: int) -> int | None:
        return (
            db.session.query(Application.dirty_token)
            .filter(Application.id == application_id)
            .scalar()
        )

    @staticmethod
    def _clear_dirty(application_id: int, seen_token: int | None) -> None:
        updated = (
            Application.query
            .filter(
                Application.id == application_id,
                Application.needs_evaluation.is_(True),
                Application.dirty_token == seen_token,
            )
            .update({"needs_evaluation": False}, synchronize_session=False)
        )
        if updated:
            db.session.commit()


def mark_dirty(application_id: int, reason: str | None = None) -> Application:
    """
    Flag an application for re-evaluation by the next scan.

    ``reason="document_verified"`` also queues the current stage's
    ``document_verified`` notifications. Flushes only.
    """
    app = db.session.get(Application, application_id)
    if app is None:
        raise NotFoundError(resource="Application", resource_id=application_id)
    app.needs_evaluation = True
    app.dirty_token = Application.dirty_token + 1
    if reason == "document_verified" and app.current_stage is not None:
        enqueue_stage_notifications(app, app.current_stage, "document_verified")
    db.session.flush()
    logger.info(
        "Application flagged for evaluation (%s)", reason or "manual",
        extra={"application_id": application_id, "event_type": "scan.mark_dirty"},
    )
    return app
