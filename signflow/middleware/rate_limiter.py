"""
Rate limiting configuration.

The Limiter instance is created in signflow/__init__.py with no default
limits; this module applies limits per blueprint.

Usage:
    from signflow.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Document / signature mutations:  60/minute
        - Manual provider resync:          10/minute (each call hits the provider)
        - Admin job triggers:              10/minute
        - Provider event callbacks:        exempt (the provider retries on 429)
        - Health check:                    exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    for bp_name in ("documents", "signatures"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit("60/minute")(bp)

    bp = app.blueprints.get("admin")
    if bp:
        limiter.limit("10/minute")(bp)

    sync_view = app.view_functions.get("provider.manual_sync")
    if sync_view:
        limiter.limit("10/minute")(sync_view)

    events_view = app.view_functions.get("provider.receive_event")
    if events_view:
        limiter.exempt(events_view)

    health_view = app.view_functions.get("health")
    if health_view:
        limiter.exempt(health_view)

    app.logger.info(
        "Rate limiter configured — documents/signatures: 60/min, resync: 10/min, "
        "admin: 10/min, provider events: exempt"
    )
