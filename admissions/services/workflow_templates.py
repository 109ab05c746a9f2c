"""
Default workflow templates, permission catalogue and staff roles.

Loaded by ``workflow_service.seed_default_templates()`` (CLI:
``flask seed-workflow-templates``). Stages and transitions refer to each
other by stage name; the seeder resolves names to ids.
"""

# ── Permission catalogue: codename → roles granted it ───────────────────────

DEFAULT_PERMISSIONS = {
    "view_workflow_editor": ["admin", "workflow_manager"],
    "edit_workflow": ["admin", "workflow_manager"],
    "activate_workflow": ["admin"],
    "make_admission_decision": ["admin", "admissions_director", "graduate_director"],
    "request_additional_info": ["admin", "admissions_committee", "department_reviewer", "graduate_committee"],
    "complete_review": ["admin", "admissions_committee", "department_reviewer", "graduate_committee"],
    "schedule_interview": ["admin", "department_reviewer", "graduate_committee"],
    "forward_to_committee": ["admin", "department_reviewer"],
    "complete_committee_review": ["admin", "graduate_committee"],
    "record_stage_completion": ["admin", "admissions_committee", "department_reviewer",
                                "interview_committee", "graduate_committee"],
    "verify_documents": ["admin", "verification_team"],
    "submit_application": ["applicant"],
}

DEFAULT_ROLES = {
    "admin": "Administrator",
    "workflow_manager": "Workflow Manager",
    "admissions_director": "Admissions Director",
    "admissions_committee": "Admissions Committee",
    "verification_team": "Document Verification Team",
    "department_reviewer": "Department Reviewer",
    "interview_committee": "Interview Committee",
    "graduate_committee": "Graduate Committee",
    "graduate_director": "Graduate Director",
    "applicant": "Applicant",
}


def _entry(template, channels, audience="applicant"):
    return [{"event": "stage_entry", "template": template, "audience": audience, "channels": channels}]


_DECISION_TRANSITIONS = [
    {"source": "Decision", "target": "Accepted", "name": "Accept",
     "description": "Accept the applicant",
     "required_permissions": ["make_admission_decision"]},
    {"source": "Decision", "target": "Waitlisted", "name": "Waitlist",
     "description": "Place the applicant on the waitlist",
     "required_permissions": ["make_admission_decision"]},
    {"source": "Decision", "target": "Rejected", "name": "Reject",
     "description": "Reject the application",
     "required_permissions": ["make_admission_decision"]},
    {"source": "Waitlisted", "target": "Accepted", "name": "Accept from Waitlist",
     "description": "Accept an applicant from the waitlist",
     "required_permissions": ["make_admission_decision"]},
    {"source": "Waitlisted", "target": "Rejected", "name": "Reject from Waitlist",
     "description": "Reject an applicant from the waitlist",
     "required_permissions": ["make_admission_decision"]},
    {"source": "Accepted", "target": "Enrollment", "name": "Confirm Enrollment",
     "description": "Applicant confirms enrollment by paying deposit",
     "is_automatic": True,
     "conditions": [{"field": "enrollment_deposit_paid", "operator": "equals", "value": True}]},
]

_OUTCOME_STAGES = [
    {"name": "Accepted", "description": "Applicant has been accepted",
     "notification_triggers": _entry("acceptance_notification", ["email", "in_app", "sms"])},
    {"name": "Waitlisted", "description": "Applicant has been placed on the waitlist",
     "notification_triggers": _entry("waitlist_notification", ["email", "in_app"])},
    {"name": "Rejected", "description": "Application has been rejected",
     "notification_triggers": _entry("rejection_notification", ["email", "in_app"])},
    {"name": "Enrollment", "description": "Accepted applicant has confirmed enrollment",
     "required_actions": ["pay_enrollment_deposit"],
     "notification_triggers": _entry("enrollment_confirmation", ["email", "in_app"])},
]

_INTAKE_STAGES = [
    {"name": "Draft", "description": "Application is being prepared by the applicant",
     "notification_triggers": _entry("welcome_to_application", ["email"])},
    {"name": "Submitted", "description": "Application has been submitted and is awaiting initial screening",
     "required_actions": ["submit_application", "pay_application_fee"],
     "notification_triggers": _entry("application_received", ["email", "in_app"])},
]

_INTAKE_TRANSITIONS = [
    {"source": "Draft", "target": "Submitted", "name": "Submit Application",
     "description": "Applicant submits their application",
     "conditions": [{"field": "is_submitted", "operator": "equals", "value": True}]},
    {"source": "Submitted", "target": "Document Verification", "name": "Initial Screening Passed",
     "description": "Application passes initial screening",
     "is_automatic": True,
     "conditions": [{"field": "application_fee_paid", "operator": "equals", "value": True}]},
]


def _verification_stage(documents):
    return {
        "name": "Document Verification",
        "description": "Required documents are being verified",
        "required_documents": documents,
        "notification_triggers": _entry("documents_required", ["email", "in_app"]) + [
            {"event": "document_verified", "template": "document_verified",
             "audience": "applicant", "channels": ["in_app"]},
        ],
        "assigned_role": "verification_team",
    }


DEFAULT_TEMPLATES = [
    {
        "name": "Undergraduate Admissions",
        "description": "Standard workflow for undergraduate applications",
        "application_type": "undergraduate",
        "stages": _INTAKE_STAGES + [
            _verification_stage(["transcript", "personal_statement", "recommendation_letters"]),
            {"name": "Under Review",
             "description": "Application is being reviewed by the admissions committee",
             "notification_triggers": _entry("application_under_review", ["email", "in_app"]),
             "assigned_role": "admissions_committee"},
            {"name": "Additional Information",
             "description": "Additional information is required from the applicant",
             "required_actions": ["provide_additional_info"],
             "notification_triggers": _entry("additional_information_required", ["email", "in_app", "sms"])},
            {"name": "Decision", "description": "Final decision on the application",
             "assigned_role": "admissions_director"},
        ] + _OUTCOME_STAGES,
        "transitions": _INTAKE_TRANSITIONS + [
            {"source": "Document Verification", "target": "Under Review", "name": "Documents Verified",
             "description": "All required documents have been verified",
             "is_automatic": True,
             "conditions": [{"field": "all_documents_verified", "operator": "equals", "value": True}]},
            {"source": "Under Review", "target": "Additional Information", "name": "Request Information",
             "description": "Request additional information from applicant",
             "required_permissions": ["request_additional_info"]},
            {"source": "Additional Information", "target": "Under Review", "name": "Information Provided",
             "description": "Applicant has provided the requested information",
             "is_automatic": True,
             "conditions": [{"field": "additional_info_provided", "operator": "equals", "value": True}]},
            {"source": "Under Review", "target": "Decision", "name": "Review Complete",
             "description": "Application review is complete",
             "required_permissions": ["complete_review"]},
        ] + _DECISION_TRANSITIONS,
    },
    {
        "name": "Graduate Admissions",
        "description": "Standard workflow for graduate applications",
        "application_type": "graduate",
        "stages": _INTAKE_STAGES + [
            _verification_stage(["transcript", "personal_statement", "recommendation_letters",
                                 "resume", "test_scores"]),
            {"name": "Department Review",
             "description": "Application is being reviewed by the academic department",
             "notification_triggers": _entry("department_review", ["email", "in_app"]),
             "assigned_role": "department_reviewer"},
            {"name": "Interview", "description": "Applicant interview",
             "required_actions": ["complete_interview"],
             "notification_triggers": _entry("interview_scheduled", ["email", "in_app"]),
             "assigned_role": "interview_committee"},
            {"name": "Graduate Committee Review",
             "description": "Application is being reviewed by the graduate committee",
             "notification_triggers": _entry("committee_review", ["email", "in_app"]),
             "assigned_role": "graduate_committee"},
            {"name": "Decision", "description": "Final decision on the application",
             "assigned_role": "graduate_director"},
        ] + _OUTCOME_STAGES,
        "transitions": _INTAKE_TRANSITIONS + [
            {"source": "Document Verification", "target": "Department Review", "name": "Documents Verified",
             "description": "All required documents have been verified",
             "is_automatic": True,
             "conditions": [{"field": "all_documents_verified", "operator": "equals", "value": True}]},
            {"source": "Department Review", "target": "Interview", "name": "Schedule Interview",
             "description": "Schedule an interview with the applicant",
             "required_permissions": ["schedule_interview"]},
            {"source": "Department Review", "target": "Graduate Committee Review", "name": "Forward to Committee",
             "description": "Forward the application to the graduate committee",
             "required_permissions": ["forward_to_committee"]},
            {"source": "Interview", "target": "Graduate Committee Review", "name": "Interview Completed",
             "description": "The interview has taken place",
             "is_automatic": True,
             "conditions": [{"field": "interview_completed", "operator": "equals", "value": True}]},
            {"source": "Graduate Committee Review", "target": "Decision", "name": "Review Complete",
             "description": "Committee review is complete",
             "required_permissions": ["complete_committee_review"]},
        ] + _DECISION_TRANSITIONS,
    },
]
