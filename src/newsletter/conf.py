"""
Access to the NEWSLETTER_ENGINE settings dict with defaults.

Settings are read on every call so tests can use override_settings.
"""

from typing import Any

from django.conf import settings

DEFAULTS = {
    "BATCH_SIZE": 10,
    "SEND_INTERVAL_MS": 1000,
    "BATCH_DELAY_MS": 5000,
    "SEND_TIMEOUT_SECONDS": 30,
    "FAILURE_RATIO_THRESHOLD": 0.5,
    "STALE_JOB_TIMEOUT_SECONDS": 600,
    "DRAIN_MAX_SECONDS": 5 * 60 * 60,
    "QUEUE_LOCK_TIMEOUT_SECONDS": 6 * 60 * 60,
    "WORKER_POLL_SECONDS": 5,
    "COMPLETED_JOB_RETENTION_DAYS": 7,
    "RECENT_ACTIVITY_LIMIT": 50,
    "TRACKING_BASE_URL": "",
    "TRACKING_REQUIRE_SIGNATURE": False,
    "ALLOWED_REDIRECT_DOMAINS": [],
    "FALLBACK_REDIRECT_URL": "/",
    "FROM_EMAIL": None,
    "FROM_NAME": "",
}


def engine_setting(name: str) -> Any:
    """Return a NEWSLETTER_ENGINE value, falling back to the default."""
    overrides = getattr(settings, 'NEWSLETTER_ENGINE', None) or {}
    if name in overrides:
        return overrides[name]
    if name == 'FROM_EMAIL':
        return settings.DEFAULT_FROM_EMAIL
    return DEFAULTS[name]
