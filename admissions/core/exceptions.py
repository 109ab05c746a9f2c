"""
Platform-wide exception hierarchy.

Services raise these types; blueprints register handlers against them once
and get consistent HTTP status codes everywhere.

Usage:
    from admissions.core.exceptions import NotFoundError, InvalidTransitionError

    raise NotFoundError(resource="Application", resource_id=42)
    raise InvalidTransitionError("Transition 7 does not start at stage 3",
                                 details={"transition_id": 7})

Workflow errors carry a stable machine ``code`` and an ``http_status`` so the
SPA can show a specific, actionable message (which permission is missing,
which condition failed) instead of a generic failure.
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "Workflow", "Application").
        resource_id: The PK that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would create a duplicate unique constraint violation.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


# ── Workflow engine errors ───────────────────────────────────────────────────


class WorkflowError(Exception):
    """Base class for workflow definition and execution errors.

    None of these are retried automatically. Callers may refresh state
    (e.g. re-fetch available transitions) and try again.
    """

    code = "WORKFLOW_ERROR"
    http_status = 400

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": str(self), "code": self.code, "details": self.details}


class NoActiveWorkflowError(WorkflowError):
    """No active workflow exists for the application's type."""

    code = "NO_ACTIVE_WORKFLOW"
    http_status = 422

    def __init__(self, application_type: str) -> None:
        self.application_type = application_type
        super().__init__(
            f"No active workflow for application type '{application_type}'",
            details={"application_type": application_type},
        )


class WorkflowValidationError(WorkflowError):
    """The workflow graph failed structural validation (activation refused)."""

    code = "WORKFLOW_INVALID"
    http_status = 422

    def __init__(self, workflow_id: int, issues: list) -> None:
        self.workflow_id = workflow_id
        self.issues = issues
        super().__init__(
            f"Workflow {workflow_id} has {len(issues)} validation issue(s)",
            details={
                "workflow_id": workflow_id,
                "issues": [i.to_dict() if hasattr(i, "to_dict") else i for i in issues],
            },
        )


class ActiveWorkflowModificationError(WorkflowError):
    """Attempt to edit or delete a workflow that is currently live."""

    code = "ACTIVE_WORKFLOW_LOCKED"
    http_status = 409

    def __init__(self, workflow_id: int, name: str) -> None:
        super().__init__(
            f"Workflow '{name}' is active and cannot be modified; deactivate or duplicate it first",
            details={"workflow_id": workflow_id},
        )


class InvalidTransitionError(WorkflowError):
    """Transition does not start at the application's current stage.

    Also raised to the loser of a concurrent transition race.
    """

    code = "INVALID_TRANSITION"
    http_status = 409


class PermissionDeniedError(WorkflowError):
    """Actor lacks one or more permissions required by a manual transition
    (or another guarded engine operation, named by *subject*)."""

    code = "PERMISSION_DENIED"
    http_status = 403

    def __init__(self, actor: str, transition_name: str, missing: list[str],
                 subject: str = "transition") -> None:
        self.missing_permissions = list(missing)
        super().__init__(
            f"Actor {actor} lacks {', '.join(missing)} for {subject} '{transition_name}'",
            details={subject: transition_name, "missing_permissions": list(missing)},
        )


class ConditionNotMetError(WorkflowError):
    """One or more transition conditions evaluated false."""

    code = "CONDITION_NOT_MET"
    http_status = 422

    def __init__(self, transition_name: str, failures: list) -> None:
        self.failures = failures
        super().__init__(
            f"Conditions for transition '{transition_name}' are not met",
            details={
                "transition": transition_name,
                "failed_conditions": [f.to_dict() for f in failures],
            },
        )


class AlreadyInitializedError(WorkflowError):
    """The application has already entered its workflow."""

    code = "ALREADY_INITIALIZED"
    http_status = 409

    def __init__(self, application_id: int, stage_name: str | None = None) -> None:
        super().__init__(
            f"Application {application_id} is already in workflow"
            + (f" (stage '{stage_name}')" if stage_name else ""),
            details={"application_id": application_id},
        )


class IntegrationError(Exception):
    """An outbound SIS/LMS call failed after the gateway exhausted its retries.

    Raised only inside side-effect jobs so the outbox dispatcher can retry;
    it never reaches a transition caller.
    """

    def __init__(self, system: str, message: str, status_code: int | None = None) -> None:
        self.system = system
        self.status_code = status_code
        super().__init__(f"{system} sync failed: {message}")
