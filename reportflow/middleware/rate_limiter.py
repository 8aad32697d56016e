"""
Rate limiting configuration.

Applies limits to the review blueprint using Flask-Limiter. The Limiter
instance is created in reportflow/__init__.py with no default limits; this
module applies granular limits per route category.

Usage:
    from reportflow.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import request as flask_request

logger = logging.getLogger(__name__)

REVIEW_LIMIT = "120/minute"
BULK_LIMIT = "10/minute"

BULK_ENDPOINTS = ("review.bulk_approve", "review.bulk_reject", "review.bulk_reassign")


def actor_rate_limit_key():
    """Rate limit key: acting user if known, else remote IP."""
    user_id = (flask_request.headers.get("X-User-Id") or "").strip()
    if user_id:
        return f"user:{user_id}"
    return flask_request.remote_addr or "unknown"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to the review API.

    Limits (per acting user):
        - Review endpoints: 120/minute
        - Bulk endpoints:   10/minute (each call fans out over many reports)

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("review")
    if bp:
        limiter.limit(REVIEW_LIMIT, key_func=actor_rate_limit_key)(bp)

    for endpoint in BULK_ENDPOINTS:
        view = app.view_functions.get(endpoint)
        if view:
            app.view_functions[endpoint] = limiter.limit(BULK_LIMIT, key_func=actor_rate_limit_key)(view)

    app.logger.info("Rate limiter configured: review %s, bulk %s", REVIEW_LIMIT, BULK_LIMIT)
