"""
Admissions Workflow Platform
Workflow Engine — application state machine.

Each application is located at exactly one stage of the workflow it was
initialised with, or is ``uninitialized`` before its first entry, or
``terminal`` once it reaches a stage with no outgoing transitions.

Transaction policy: the engine is the transaction boundary for stage
changes. ``initialize`` and ``execute_transition`` commit on success and
roll back on failure; nothing is written when a check fails.

Concurrency:
    The stage pointer is moved with a compare-and-swap UPDATE:

        UPDATE applications SET current_stage_id=:target, version=version+1
         WHERE id=:id AND version=:expected AND current_stage_id=:source

    Zero rows updated means another transition won the race; the loser's
    transaction is rolled back and ``InvalidTransitionError`` is raised.

Side effects:
    Stage exit/entry notifications and SIS/LMS sync are written as
    ``SideEffectJob`` rows in the same transaction and executed after commit
    by ``SideEffectDispatcher``. A failing side effect never touches the
    application's stage.

Usage:
    engine = WorkflowEngine()
    engine.initialize(application.id, Actor.system())
    engine.execute_transition(application.id, transition.id, actor, {"notes": "ok"})
    engine.complete_action(application.id, "pay_application_fee", actor)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

import sqlalchemy as sa

from admissions.core.exceptions import (
    AlreadyInitializedError,
    ConditionNotMetError,
    InvalidTransitionError,
    NoActiveWorkflowError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from admissions.models import db
from admissions.models.application import Application, ApplicationDocument
from admissions.models.audit import write_audit
from admissions.models.workflow import ApplicationStatus, WorkflowTransition
from admissions.services import condition_evaluator
from admissions.services.permission_service import Actor, PermissionChecker
from admissions.services.side_effects import enqueue_integration_sync, enqueue_stage_notifications
from admissions.services.transition_scanner import mark_dirty
from admissions.services.workflow_service import WorkflowDefinitionStore

logger = logging.getLogger(__name__)

DOCUMENT_STATUSES = {"pending", "verified", "rejected"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TransitionSummary:
    """A transition out of the application's current stage, as seen by one actor."""

    id: int
    name: str
    description: str
    source_stage_id: int
    target_stage_id: int
    target_stage_name: str | None
    is_automatic: bool
    is_revision: bool
    priority: int
    required_permissions: list = field(default_factory=list)
    conditions_met: bool = True
    failed_conditions: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "source_stage_id": self.source_stage_id,
            "target_stage_id": self.target_stage_id,
            "target_stage_name": self.target_stage_name,
            "is_automatic": self.is_automatic,
            "is_revision": self.is_revision,
            "priority": self.priority,
            "required_permissions": list(self.required_permissions),
            "conditions_met": self.conditions_met,
            "failed_conditions": [f.to_dict() for f in self.failed_conditions],
        }


def build_context(application: Application, stage=None) -> dict:
    """
    Evaluation context for transition conditions.

    Application data keys sit at the top level and under ``application_data``;
    derived keys (documents, completed actions) are added last and win.
    """
    data = dict(application.data or {})

    documents: dict[str, str] = {}
    for doc in application.documents:
        # A verified copy of a document type outranks pending/rejected copies
        if documents.get(doc.document_type) != "verified":
            documents[doc.document_type] = doc.verification_status

    uploaded_ok = bool(documents) and all(s == "verified" for s in documents.values())
    required = list(getattr(stage, "required_documents", None) or [])
    if required:
        all_verified = all(documents.get(tag) == "verified" for tag in required)
    else:
        all_verified = uploaded_ok

    return {
        **data,
        "application_data": data,
        "application": {
            "id": application.id,
            "type": application.application_type,
            "applicant_user_id": application.applicant_user_id,
            "workflow_state": application.workflow_state,
            "is_submitted": application.submitted_at is not None,
        },
        "documents": documents,
        "documents_verified": uploaded_ok,
        "all_documents_verified": all_verified,
        "completed_actions": list(application.completed_actions or []),
    }


class WorkflowEngine:
    """
    Drives applications through their workflow graph.

    Collaborators are injected so tests can swap them:
        permission_checker  — ``has_permission(actor, codename)`` / ``missing_permissions``
        store               — ``get_active_workflow`` / ``get_stages_and_transitions``
        clock               — zero-arg callable returning an aware datetime
    """

    def __init__(self, permission_checker=None, store=None, clock=None):
        self.permission_checker = permission_checker or PermissionChecker()
        self.store = store or WorkflowDefinitionStore()
        self.clock = clock or _utcnow

    # ── Loading ──────────────────────────────────────────────────────────

    @staticmethod
    def _load_application(application_id: int) -> Application:
        # Always re-read: the pointer may have moved in another transaction
        app = db.session.get(Application, application_id, populate_existing=True)
        if app is None:
            raise NotFoundError(resource="Application", resource_id=application_id)
        return app

    def _located(self, application: Application):
        """Return ``(graph, current_stage)`` for an initialised application."""
        if application.workflow_state == "uninitialized" or application.current_stage_id is None:
            raise InvalidTransitionError(
                f"Application {application.id} has not entered a workflow",
                details={"application_id": application.id, "workflow_state": application.workflow_state},
            )
        if application.workflow_id is None:
            raise InvalidTransitionError(
                f"Application {application.id} has no workflow",
                details={"application_id": application.id},
            )
        graph = self.store.get_stages_and_transitions(application.workflow_id)
        return graph, graph.stage(application.current_stage_id)

    # ── Initialise ───────────────────────────────────────────────────────

    def initialize(self, application_id: int, actor: Actor, notes: str | None = None) -> ApplicationStatus:
        """
        Enter the active workflow for the application's type at its entry stage.

        Raises:
            NoActiveWorkflowError: no active workflow for the application type.
            AlreadyInitializedError: the application already entered a workflow.
        """
        app = self._load_application(application_id)
        if app.workflow_state != "uninitialized" or app.current_stage_id is not None:
            stage = app.current_stage
            raise AlreadyInitializedError(app.id, stage.name if stage else None)

        workflow = self.store.get_active_workflow(app.application_type)
        if workflow is None:
            raise NoActiveWorkflowError(app.application_type)

        graph = self.store.get_stages_and_transitions(workflow.id)
        entry = graph.entry_stage()
        if entry is None:
            # Activation validates the graph, so this only happens on a corrupted definition
            raise InvalidTransitionError(
                f"Workflow '{workflow.name}' has no single entry stage",
                details={"workflow_id": workflow.id},
            )

        terminal = graph.is_terminal(entry.id)
        expected_version = app.version
        try:
            status = ApplicationStatus(
                application_id=app.id,
                workflow_stage_id=entry.id,
                transition_id=None,
                status=entry.name,
                notes=notes,
                created_by_user_id=actor.user_id,
                created_by=actor.label,
                created_at=self.clock(),
            )
            db.session.add(status)
            db.session.flush()

            result = db.session.execute(
                sa.update(Application)
                .where(
                    Application.id == app.id,
                    Application.version == expected_version,
                    Application.current_stage_id.is_(None),
                )
                .values(
                    workflow_id=workflow.id,
                    current_stage_id=entry.id,
                    current_status_id=status.id,
                    workflow_state="terminal" if terminal else "in_progress",
                    version=Application.version + 1,
                    needs_evaluation=self._has_automatic(graph, entry.id),
                    dirty_token=Application.dirty_token + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise AlreadyInitializedError(app.id)

            enqueue_stage_notifications(app, entry, "stage_entry")
            write_audit(
                entity_type="application", entity_id=app.id, action="application.initialize",
                actor=actor.label, actor_user_id=actor.user_id,
                diff={"workflow_id": workflow.id, "stage": entry.name},
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info(
            "Application initialised at stage '%s' of workflow '%s'", entry.name, workflow.name,
            extra={"application_id": application_id, "workflow_id": workflow.id,
                   "event_type": "application.initialize"},
        )
        return status

    # ── Queries ──────────────────────────────────────────────────────────

    @staticmethod
    def _has_automatic(graph, stage_id) -> bool:
        return any(t.is_automatic for t in graph.outgoing(stage_id))

    def available_transitions(self, application_id: int, actor: Actor) -> list[TransitionSummary]:
        """
        Transitions out of the current stage the actor may see.

        Manual transitions are filtered by the actor's permissions; automatic
        ones are always listed for information. Empty for uninitialised or
        terminal applications.
        """
        app = self._load_application(application_id)
        if app.workflow_state != "in_progress" or app.current_stage_id is None:
            return []
        graph, stage = self._located(app)
        context = build_context(app, stage)

        summaries = []
        for t in sorted(graph.outgoing(app.current_stage_id), key=lambda t: (-(t.priority or 0), t.id)):
            if not t.is_automatic and self.permission_checker.missing_permissions(actor, t.required_permissions):
                continue
            failures = condition_evaluator.explain(t.transition_conditions, context)
            target = graph.stage(t.target_stage_id)
            summaries.append(TransitionSummary(
                id=t.id,
                name=t.name,
                description=t.description or "",
                source_stage_id=t.source_stage_id,
                target_stage_id=t.target_stage_id,
                target_stage_name=target.name if target else None,
                is_automatic=bool(t.is_automatic),
                is_revision=bool(t.is_revision),
                priority=t.priority or 0,
                required_permissions=list(t.required_permissions or []),
                conditions_met=not failures,
                failed_conditions=failures,
            ))
        return summaries

    def evaluate_automatic(self, application_id: int) -> WorkflowTransition | None:
        """
        The automatic transition that should fire now, or None.

        Candidates are ordered by priority (highest first), then id; the
        first whose conditions hold wins.
        """
        app = self._load_application(application_id)
        if app.workflow_state != "in_progress" or app.current_stage_id is None:
            return None
        graph, stage = self._located(app)
        context = build_context(app, stage)

        candidates = [t for t in graph.outgoing(app.current_stage_id) if t.is_automatic]
        for t in sorted(candidates, key=lambda t: (-(t.priority or 0), t.id)):
            if condition_evaluator.evaluate(t.transition_conditions, context):
                return t
        return None

    def get_current_stage(self, application_id: int):
        app = self._load_application(application_id)
        return app.current_stage

    def get_next_stages(self, application_id: int, actor: Actor) -> list:
        """Distinct target stages reachable in one step by *actor*."""
        app = self._load_application(application_id)
        if app.workflow_state != "in_progress":
            return []
        graph, _ = self._located(app)
        seen, stages = set(), []
        for summary in self.available_transitions(application_id, actor):
            if summary.target_stage_id not in seen:
                seen.add(summary.target_stage_id)
                stages.append(graph.stage(summary.target_stage_id))
        return stages

    def get_status_history(self, application_id: int) -> list[ApplicationStatus]:
        """All status records of the application, oldest first."""
        self._load_application(application_id)
        return (
            ApplicationStatus.query.filter_by(application_id=application_id)
            .order_by(ApplicationStatus.created_at, ApplicationStatus.id)
            .all()
        )

    def check_completeness(self, application_id: int) -> dict:
        """
        Compare the current stage's requirements with what the applicant has done.

        ``missing_requirements`` lists missing document tags first, then
        missing action ids, each in the stage's declared order. Rejected
        documents do not count as provided.
        """
        app = self._load_application(application_id)
        stage = app.current_stage
        if stage is None:
            return {"is_complete": False, "missing_requirements": [], "stage_id": None, "stage_name": None}

        provided_docs = {d.document_type for d in app.documents if d.verification_status != "rejected"}
        done_actions = set(app.completed_actions or [])
        missing = [tag for tag in (stage.required_documents or []) if tag not in provided_docs]
        missing += [action for action in (stage.required_actions or []) if action not in done_actions]
        return {
            "is_complete": not missing,
            "missing_requirements": missing,
            "stage_id": stage.id,
            "stage_name": stage.name,
        }

    # ── Stage completion ─────────────────────────────────────────────────

    def _require(self, app: Application, actor: Actor, codename: str, subject: str, name: str,
                 allow_applicant: bool = False) -> None:
        if actor.is_system:
            return
        if allow_applicant and actor.user_id is not None and actor.user_id == app.applicant_user_id:
            return
        if not self.permission_checker.has_permission(actor, codename):
            logger.warning(
                "%s '%s' rejected: %s lacks %s", subject.capitalize(), name, actor.label, codename,
                extra={"application_id": app.id, "event_type": "application.permission_denied"},
            )
            raise PermissionDeniedError(actor.label, name, [codename], subject=subject)

    def complete_action(self, application_id: int, action_id: str, actor: Actor,
                        data: dict | None = None) -> dict:
        """
        Record that the applicant finished one of the current stage's
        ``required_actions`` and flag the application for evaluation.

        The applicant may record their own actions; anyone else needs
        ``record_stage_completion``. Recording an action twice is a no-op.
        Commits.

        Returns:
            The completeness report, plus ``action`` and ``recorded``.

        Raises:
            InvalidTransitionError: application not in progress.
            ValidationError: the current stage does not require *action_id*.
            PermissionDeniedError
        """
        app = self._load_application(application_id)
        if app.workflow_state != "in_progress":
            raise InvalidTransitionError(
                f"Application {app.id} is not in progress",
                details={"application_id": app.id, "workflow_state": app.workflow_state},
            )
        _, stage = self._located(app)
        required = list(stage.required_actions or [])
        if action_id not in required:
            raise ValidationError(
                f"Stage '{stage.name}' does not require action '{action_id}'",
                details={"action": action_id, "stage": stage.name, "required_actions": required},
            )
        self._require(app, actor, "record_stage_completion", "action", action_id, allow_applicant=True)

        done = list(app.completed_actions or [])
        recorded = action_id not in done
        if recorded:
            try:
                app.completed_actions = done + [action_id]
                write_audit(
                    entity_type="application", entity_id=app.id, action="application.complete_action",
                    actor=actor.label, actor_user_id=actor.user_id,
                    diff={"stage": stage.name, "action": action_id, "data": dict(data or {})},
                )
                mark_dirty(app.id, reason="action_completed")
                db.session.commit()
            except Exception:
                db.session.rollback()
                raise
            logger.info(
                "Action '%s' completed at stage '%s'", action_id, stage.name,
                extra={"application_id": application_id, "event_type": "application.complete_action"},
            )

        report = self.check_completeness(application_id)
        report.update({"action": action_id, "recorded": recorded})
        return report

    def record_document_verification(self, application_id: int, document_type: str, status: str,
                                     actor: Actor, confidence_score: float | None = None) -> ApplicationDocument:
        """
        Store a verification outcome on the newest document of *document_type*.

        Requires ``verify_documents`` unless the actor is the system (the
        verification service). A ``verified`` outcome queues the stage's
        ``document_verified`` notifications; any decided outcome flags the
        application for evaluation. Commits.

        Raises:
            ValidationError: unknown status or confidence outside 0..1.
            NotFoundError: no document of that type.
            PermissionDeniedError
        """
        if status not in DOCUMENT_STATUSES:
            raise ValidationError(
                f"Unknown verification status '{status}'",
                details={"status": status, "allowed": sorted(DOCUMENT_STATUSES)},
            )
        if confidence_score is not None and not 0 <= float(confidence_score) <= 1:
            raise ValidationError(
                "confidence_score must be between 0 and 1",
                details={"confidence_score": confidence_score},
            )
        app = self._load_application(application_id)
        self._require(app, actor, "verify_documents", "document", document_type)

        doc = (
            ApplicationDocument.query
            .filter_by(application_id=app.id, document_type=document_type)
            .order_by(ApplicationDocument.id.desc())
            .first()
        )
        if doc is None:
            raise NotFoundError(resource="ApplicationDocument", resource_id=f"{app.id}/{document_type}")

        previous = doc.verification_status
        try:
            doc.verification_status = status
            doc.confidence_score = float(confidence_score) if confidence_score is not None else None
            doc.verified_at = self.clock() if status != "pending" else None
            write_audit(
                entity_type="application", entity_id=app.id, action="application.document_verification",
                actor=actor.label, actor_user_id=actor.user_id,
                diff={"document_id": doc.id, "document_type": document_type,
                      "from": previous, "to": status, "confidence_score": doc.confidence_score},
            )
            if status != "pending":
                mark_dirty(app.id, reason="document_verified" if status == "verified" else "document_rejected")
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info(
            "Document '%s' %s -> %s", document_type, previous, status,
            extra={"application_id": application_id, "event_type": "application.document_verification"},
        )
        return doc

    # ── Execute ──────────────────────────────────────────────────────────

    def execute_transition(self, application_id: int, transition_id: int, actor: Actor,
                           payload: dict | None = None) -> ApplicationStatus:
        """
        Move the application along *transition_id*.

        Checks, in order: application initialised and not terminal, transition
        exists in the application's workflow, transition starts at the current
        stage, actor permissions (manual transitions only), conditions.

        ``payload`` may carry ``notes`` and ``expected_version`` (the version
        the caller last saw; a mismatch is treated as a lost race).

        Raises:
            InvalidTransitionError, PermissionDeniedError, ConditionNotMetError,
            NotFoundError
        """
        payload = payload or {}
        app = self._load_application(application_id)
        if app.workflow_state == "terminal":
            raise InvalidTransitionError(
                f"Application {app.id} is in a terminal stage",
                details={"application_id": app.id, "workflow_state": app.workflow_state},
            )
        graph, current = self._located(app)

        transition = graph.transition(transition_id)
        if transition is None:
            if db.session.get(WorkflowTransition, transition_id) is None:
                raise NotFoundError(resource="WorkflowTransition", resource_id=transition_id)
            raise InvalidTransitionError(
                f"Transition {transition_id} does not belong to the application's workflow",
                details={"transition_id": transition_id, "workflow_id": app.workflow_id},
            )

        if transition.source_stage_id != app.current_stage_id:
            self._reject(app, transition, "source_mismatch")
            raise InvalidTransitionError(
                f"Transition '{transition.name}' does not start at the current stage",
                details={
                    "transition_id": transition.id,
                    "source_stage_id": transition.source_stage_id,
                    "current_stage_id": app.current_stage_id,
                },
            )

        if not transition.is_automatic and not actor.is_system:
            missing = self.permission_checker.missing_permissions(actor, transition.required_permissions)
            if missing:
                self._reject(app, transition, "permission_denied")
                raise PermissionDeniedError(actor.label, transition.name, missing)

        failures = condition_evaluator.explain(transition.transition_conditions, build_context(app, current))
        if failures:
            self._reject(app, transition, "condition_not_met")
            raise ConditionNotMetError(transition.name, failures)

        expected_version = payload.get("expected_version")
        if expected_version is None:
            expected_version = app.version
        target = graph.stage(transition.target_stage_id)
        terminal = graph.is_terminal(target.id)

        try:
            status = ApplicationStatus(
                application_id=app.id,
                workflow_stage_id=target.id,
                transition_id=transition.id,
                status=target.name,
                notes=payload.get("notes"),
                created_by_user_id=actor.user_id,
                created_by=actor.label,
                created_at=self.clock(),
            )
            db.session.add(status)
            db.session.flush()

            result = db.session.execute(
                sa.update(Application)
                .where(
                    Application.id == app.id,
                    Application.version == int(expected_version),
                    Application.current_stage_id == transition.source_stage_id,
                )
                .values(
                    current_stage_id=target.id,
                    current_status_id=status.id,
                    workflow_state="terminal" if terminal else "in_progress",
                    version=Application.version + 1,
                    needs_evaluation=self._has_automatic(graph, target.id),
                    dirty_token=Application.dirty_token + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise InvalidTransitionError(
                    f"Application {app.id} moved before transition '{transition.name}' could commit",
                    details={"transition_id": transition.id, "expected_version": int(expected_version),
                             "reason": "concurrent_modification"},
                )

            if target.id != current.id:
                enqueue_stage_notifications(app, current, "stage_exit")
            enqueue_stage_notifications(app, target, "stage_entry")
            enqueue_integration_sync(app, target)
            write_audit(
                entity_type="application", entity_id=app.id, action="application.transition",
                actor=actor.label, actor_user_id=actor.user_id,
                diff={
                    "transition": transition.name,
                    "transition_id": transition.id,
                    "from": current.name,
                    "to": target.name,
                    "version": int(expected_version) + 1,
                    "automatic": bool(transition.is_automatic),
                },
            )
            db.session.commit()
        except InvalidTransitionError:
            db.session.rollback()
            logger.warning(
                "Transition '%s' lost a concurrent update", transition.name,
                extra={"application_id": application_id, "transition_id": transition_id,
                       "event_type": "application.transition.conflict"},
            )
            raise
        except Exception:
            db.session.rollback()
            raise

        logger.info(
            "Transition '%s': '%s' -> '%s'%s", transition.name, current.name, target.name,
            " (terminal)" if terminal else "",
            extra={"application_id": application_id, "transition_id": transition_id,
                   "event_type": "application.transition"},
        )
        return status

    @staticmethod
    def _reject(app: Application, transition: WorkflowTransition, reason: str) -> None:
        logger.warning(
            "Transition '%s' rejected: %s", transition.name, reason,
            extra={"application_id": app.id, "transition_id": transition.id,
                   "event_type": "application.transition.rejected"},
        )
