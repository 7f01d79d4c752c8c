"""
Per-blueprint rate limits (Flask-Limiter).

The Limiter in jobflow/__init__.py carries no default limits; this
module attaches the write and read limits from config to the blueprints
that need them and exempts health probes.

Usage:
    from jobflow.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

# Blueprint name -> config key holding its limit string
BLUEPRINT_LIMITS = {
    "progression": "RATE_LIMIT_WRITE",   # responses, overrides
    "stage_config": "RATE_LIMIT_WRITE",  # definition edits
    "job_task": "RATE_LIMIT_WRITE",
    "reporting": "RATE_LIMIT_READ",
}

EXEMPT_BLUEPRINTS = ("health",)


def init_rate_limits(app, limiter):
    """Attach limits per remote IP. Skipped entirely when TESTING is set."""
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    applied = {}
    for bp_name, config_key in BLUEPRINT_LIMITS.items():
        bp = app.blueprints.get(bp_name)
        if bp is None:
            continue
        limit = app.config[config_key]
        limiter.limit(limit)(bp)
        applied[bp_name] = limit

    for bp_name in EXEMPT_BLUEPRINTS:
        bp = app.blueprints.get(bp_name)
        if bp is not None:
            limiter.exempt(bp)

    app.logger.info("Rate limits applied: %s", applied)
