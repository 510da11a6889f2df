"""
Rate limiting configuration.

The Limiter instance is created in salesflow/__init__.py with no default
limits; this module applies a write limit to the workflow blueprint, keyed by
the acting user when the request carries one.

Usage:
    from salesflow.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import request as flask_request

logger = logging.getLogger(__name__)


def _actor_or_ip_key():
    """Rate limit key: X-User header if present, else remote IP."""
    user = flask_request.headers.get("X-User")
    if user:
        return f"user:{user}"
    return flask_request.remote_addr or "unknown"


def _is_read_request():
    return flask_request.method in ("GET", "HEAD", "OPTIONS")


def init_rate_limits(app, limiter):
    """Apply the configured write limit to the workflow endpoints.

    Health checks are exempt. Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING") or not app.config.get("RATELIMIT_ENABLED", True):
        app.logger.info("Rate limiter disabled")
        return

    write_limit = app.config.get("WORKFLOW_WRITE_RATE_LIMIT", "120/minute")
    bp = app.blueprints.get("workflow")
    if bp:
        limiter.limit(write_limit, key_func=_actor_or_ip_key, exempt_when=_is_read_request)(bp)

    bp = app.blueprints.get("health_bp")
    if bp:
        limiter.exempt(bp)

    logger.info("Rate limiter configured: workflow writes %s", write_limit)
