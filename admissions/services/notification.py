"""
Admissions Workflow Platform
Notification Service.

In-app notification rows for workflow events. ``NotificationDispatcher``
is what the side-effect outbox uses to deliver stage entry/exit
notifications to the right audience.

Writes use ``flush`` so the outbox worker commits the notification rows and
the job status change together.
"""

import logging

from admissions.models import db
from admissions.models.notification import Notification
from admissions.services.permission_service import get_user_ids_with_role

logger = logging.getLogger(__name__)


# Subject lines for the template keys used by stage notification triggers
NOTIFICATION_TEMPLATES = {
    "welcome_to_application": "Welcome to Your Application",
    "application_received": "Application Received",
    "documents_required": "Documents Required for Your Application",
    "document_verified": "Document Verified",
    "application_under_review": "Your Application is Under Review",
    "additional_information_required": "Additional Information Required",
    "department_review": "Your Application is Being Reviewed by the Department",
    "interview_scheduled": "Interview Scheduled",
    "committee_review": "Your Application is Being Reviewed by the Committee",
    "acceptance_notification": "Congratulations! Your Application Has Been Accepted",
    "waitlist_notification": "Your Application Has Been Waitlisted",
    "rejection_notification": "Your Application Status",
    "enrollment_confirmation": "Enrollment Confirmation",
}

_TEMPLATE_SEVERITY = {
    "acceptance_notification": "success",
    "enrollment_confirmation": "success",
    "additional_information_required": "warning",
}


_EVENT_MESSAGES = {
    "stage_entry": "Application #{id} entered stage '{stage}'.",
    "stage_exit": "Application #{id} left stage '{stage}'.",
    "document_verified": "A document for application #{id} was verified at stage '{stage}'.",
}


class NotificationService:
    """Stateless service class for notification operations."""

    @staticmethod
    def broadcast(*, title, message="", category="workflow", severity="info",
                  entity_type="", entity_id=None, recipients=None,
                  template=None, channels=None):
        """
        Send a notification to multiple recipients (or 'all' if none given).

        Args:
            recipients: list of recipient identifiers. If None, sends to 'all'.

        Returns:
            List of created Notification instances.
        """
        targets = recipients or ["all"]
        notifications = []
        for r in targets:
            notif = Notification(
                recipient=str(r),
                title=title,
                message=message,
                category=category,
                severity=severity,
                template=template,
                channels=list(channels or ["in_app"]),
                entity_type=entity_type,
                entity_id=entity_id,
            )
            db.session.add(notif)
            notifications.append(notif)
        db.session.flush()
        return notifications


class NotificationDispatcher:
    """
    Delivers workflow notifications.

    ``audience`` decides the recipients:
        applicant → the application's applicant user
        staff     → active users holding the stage's ``assigned_role``
                    (``role:<name>`` placeholder when nobody holds it yet)
        all       → broadcast row
    """

    def dispatch(self, event_name: str, audience: str, context: dict) -> list[Notification]:
        template = context.get("template")
        stage_name = context.get("stage_name", "")
        application_id = context.get("application_id")

        title = NOTIFICATION_TEMPLATES.get(template) or f"Application {event_name.replace('_', ' ')}: {stage_name}"
        message = _EVENT_MESSAGES.get(event_name, "Application #{id} was updated at stage '{stage}'.").format(
            id=application_id, stage=stage_name,
        )
        recipients = self._resolve_recipients(audience, context)
        if not recipients:
            logger.warning(
                "No recipients for %s notification (audience=%s)", event_name, audience,
                extra={"application_id": application_id, "event_type": event_name},
            )
            return []

        notifications = NotificationService.broadcast(
            title=title,
            message=message,
            category="workflow",
            severity=_TEMPLATE_SEVERITY.get(template, "info"),
            entity_type="application",
            entity_id=application_id,
            recipients=recipients,
            template=template,
            channels=context.get("channels"),
        )
        logger.info(
            "Dispatched %s notification to %d recipient(s)", event_name, len(notifications),
            extra={"application_id": application_id, "event_type": event_name},
        )
        return notifications

    @staticmethod
    def _resolve_recipients(audience: str, context: dict) -> list[str]:
        if audience == "all":
            return ["all"]
        if audience == "staff":
            role = context.get("assigned_role")
            if not role:
                return []
            user_ids = get_user_ids_with_role(role)
            return [str(uid) for uid in user_ids] or [f"role:{role}"]
        # applicant (default)
        applicant = context.get("applicant_user_id")
        return [str(applicant)] if applicant is not None else []
