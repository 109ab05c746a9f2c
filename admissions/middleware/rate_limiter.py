"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in admissions/__init__.py with no default
limits; this module applies granular limits per route category.

Usage:
    from admissions.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Applicant/staff workflow endpoints: 120/minute
        - Workflow editor endpoints:          60/minute

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("workflow")
    if bp:
        limiter.limit("120/minute")(bp)

    bp = app.blueprints.get("workflow_admin")
    if bp:
        limiter.limit("60/minute")(bp)

    app.logger.info("Rate limiter configured: workflow 120/min, workflow_admin 60/min")
