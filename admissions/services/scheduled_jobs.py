"""
Admissions Workflow Platform
Scheduled Jobs.

Concrete job implementations that run on a schedule.

Jobs:
    - automatic_transition_scan: Fires automatic workflow transitions (one hop per application);
      flagged applications first, then a round-robin batch whose cursor is kept
      in the job record's ``state``
    - side_effect_dispatch: Delivers queued notifications and SIS/LMS sync jobs
"""

from __future__ import annotations

import logging
from typing import Any

from admissions.models import db
from admissions.models.scheduling import ScheduledJob
from admissions.services.scheduler_service import register_job

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job 1: Automatic Transition Scan
# ═══════════════════════════════════════════════════════════════════════════

@register_job("automatic_transition_scan")
def scan_automatic_transitions(app) -> dict[str, Any]:
    """Evaluate in-flight applications and fire due automatic transitions."""
    from admissions.services.transition_scanner import AutomaticTransitionScanner
    from admissions.services.workflow_engine import WorkflowEngine

    if not app.config.get("WORKFLOW_AUTO_PROCESS_TRANSITIONS", True):
        logger.info("Automatic transition processing disabled, skipping scan")
        return {"skipped": True, "reason": "WORKFLOW_AUTO_PROCESS_TRANSITIONS is off"}

    record = ScheduledJob.query.filter_by(job_name="automatic_transition_scan").first()
    record_id = record.id if record else None
    cursor = int(((record.state if record else None) or {}).get("cursor", 0))

    scanner = AutomaticTransitionScanner(WorkflowEngine())
    result = scanner.sweep(int(app.config.get("WORKFLOW_SCAN_BATCH_SIZE", 200)), cursor=cursor)

    # The cursor only persists once the job has a registry row
    if record_id is not None:
        record = db.session.get(ScheduledJob, record_id)
        record.state = {**(record.state or {}), "cursor": result.cursor}
        db.session.commit()
    return result.to_dict()


# ═══════════════════════════════════════════════════════════════════════════
#  Job 2: Side-effect Dispatch
# ═══════════════════════════════════════════════════════════════════════════

@register_job("side_effect_dispatch")
def dispatch_side_effects(app) -> dict[str, Any]:
    """Run due notification and integration jobs from the outbox."""
    from admissions.services.side_effects import SideEffectDispatcher

    return SideEffectDispatcher().run_pending(limit=app.config.get("SIDE_EFFECT_BATCH_SIZE", 100))
