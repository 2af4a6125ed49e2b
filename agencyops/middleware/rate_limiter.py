"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in agencyops/__init__.py with no default
limits; this module applies granular limits per route category.

Usage:
    from agencyops.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Activation endpoints: ACTIVATION_RATE_LIMIT (public, token guessing)
        - Work item endpoints:  60/minute
        - Health check:         exempt
        - Event streams:        exempt (long-lived)

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    activation_limit = app.config.get("ACTIVATION_RATE_LIMIT", "10 per minute")
    bp = app.blueprints.get("activation")
    if bp:
        limiter.limit(activation_limit)(bp)

    for bp_name in ("requests", "tasks", "onboarding", "dashboard"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit("60/minute")(bp)

    for bp_name in ("health", "events"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.exempt(bp)

    app.logger.info("Rate limiter configured: activation=%s, work items=60/min", activation_limit)
