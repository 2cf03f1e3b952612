"""Optional Sentry error tracking for the game API.

Initialised by the API server when SENTRY_DSN is set. sentry-sdk ships
as the ``sentry`` extra; without it the API simply runs untracked.
"""

from __future__ import annotations

import os

from guessgame.observability.logger import get_logger

log = get_logger(__name__)

_SENSITIVE_KEYS = ("api_key", "dsn", "password", "secret", "token", "player_id")


def init_sentry(release: str = "0.1.0") -> bool:
    """Initialise Sentry if SENTRY_DSN is configured. Returns True if active."""
    dsn = os.environ.get("SENTRY_DSN", "")
    if not dsn:
        return False

    try:
        import sentry_sdk
        from sentry_sdk.integrations.flask import FlaskIntegration
    except ImportError:
        log.warning("sentry.not_installed", msg="pip install 'guessgame[sentry]'")
        return False

    sentry_sdk.init(
        dsn=dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=0.1,
        environment=os.environ.get("ENVIRONMENT", "production"),
        release=os.environ.get("GAME_VERSION", release),
        before_send=scrub_event,
    )
    log.info("sentry.initialised")
    return True


def scrub_event(event: dict, hint: dict) -> dict:
    """Remove sensitive data from Sentry events."""
    for section in ("extra", "tags"):
        data = event.get(section)
        if not isinstance(data, dict):
            continue
        for key in list(data.keys()):
            if any(s in key.lower() for s in _SENSITIVE_KEYS):
                data[key] = "***REDACTED***"
    headers = event.get("request", {}).get("headers")
    if isinstance(headers, dict):
        for key in list(headers.keys()):
            if key.lower() in ("x-player-id", "authorization", "cookie"):
                headers[key] = "***REDACTED***"
    return event
