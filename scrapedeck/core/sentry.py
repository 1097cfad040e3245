"""
Sentry error reporting.

Only active when SENTRY_DSN is configured; otherwise every call is a no-op.
Context dictionaries are scrubbed of credential-like keys before they leave
the process.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import sentry_sdk

from scrapedeck.core.config import settings

logger = logging.getLogger(__name__)

SENSITIVE_FIELDS = {
    "api_key",
    "apikey",
    "authorization",
    "password",
    "secret",
    "token",
    "webhook_secret",
}

_initialized = False


def init_sentry(dsn: Optional[str] = None) -> bool:
    global _initialized
    dsn = dsn or settings.sentry_dsn
    if not dsn:
        return False
    sentry_sdk.init(dsn=dsn, environment=settings.env, send_default_pii=False)
    _initialized = True
    logger.info("Sentry error reporting enabled (env=%s)", settings.env)
    return True


def is_enabled() -> bool:
    return _initialized


def filter_sensitive(data: Dict[str, Any]) -> Dict[str, Any]:
    if not isinstance(data, dict):
        return data
    out: Dict[str, Any] = {}
    for k, v in data.items():
        if any(s in str(k).lower() for s in SENSITIVE_FIELDS):
            out[k] = "[Filtered]"
        elif isinstance(v, dict):
            out[k] = filter_sensitive(v)
        else:
            out[k] = v
    return out


def capture_app_error(error_dict: Dict[str, Any], level: str = "error") -> None:
    if not _initialized:
        return
    try:
        with sentry_sdk.new_scope() as scope:
            scope.set_tag("error_type", error_dict.get("type"))
            scope.set_tag("error_id", error_dict.get("error_id"))
            scope.set_context("app_error", filter_sensitive(error_dict))
            scope.set_level(level)
            sentry_sdk.capture_message(error_dict.get("message") or "AppError", level=level)
    except Exception as e:
        logger.warning("Failed to report error to Sentry: %s", e)
