"""
Centralized Observability Infrastructure.
Provides structured logging setup and Sentry SDK initialization
governed entirely by environment variables.
"""

import os
import logging
import re
from typing import Any, Dict

import sentry_sdk

log = logging.getLogger(__name__)

SENSITIVE_KEYS = {"password", "new_password", "code", "access_token", "refresh_token", "apikey", "authorization"}

# Patterns to scrub in Sentry events
SENSITIVE_PATTERNS = [
    re.compile(r"eyJ[a-zA-Z0-9_\-]+\.[a-zA-Z0-9_\-]+\.[a-zA-Z0-9_\-]+"),  # JWT access tokens
    re.compile(r"([a-zA-Z0-9_\-]{30,})"),  # refresh tokens, keys, dsn-looking strings
    re.compile(r"\b\d{6}\b"),  # one-time codes
]


def _mask_string(val: str) -> str:
    for pattern in SENSITIVE_PATTERNS:
        val = pattern.sub("[REDACTED]", val)
    return val


def _recursive_scrub(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {
            k: "[REDACTED]" if str(k).lower() in SENSITIVE_KEYS else _recursive_scrub(v)
            for k, v in obj.items()
        }
    elif isinstance(obj, list):
        return [_recursive_scrub(i) for i in obj]
    elif isinstance(obj, str):
        return _mask_string(obj)
    return obj


def _scrub_sensitive_data(event: Dict[str, Any], hint: Dict[str, Any]) -> Dict[str, Any]:
    """
    Sentry before_send hook. Scrubs tokens, passwords and one-time codes
    from stack frames, breadcrumbs and request bodies before they leave the device.
    """
    try:
        if "exception" in event and "values" in event["exception"]:
            for exc in event["exception"]["values"]:
                if "stacktrace" in exc and "frames" in exc["stacktrace"]:
                    for frame in exc["stacktrace"]["frames"]:
                        if "vars" in frame:
                            frame["vars"] = _recursive_scrub(frame["vars"])
        if "breadcrumbs" in event and "values" in event["breadcrumbs"]:
            event["breadcrumbs"]["values"] = _recursive_scrub(event["breadcrumbs"]["values"])
        if "request" in event:
            event["request"] = _recursive_scrub(event["request"])
    except Exception as e:
        # Sending a partially scrubbed event beats losing the crash report
        log.warning(f"Sentry scrubber failed: {e}")

    return event


def setup_observability() -> bool:
    """
    Initializes global system logging and Sentry (if DSN is present).
    Should be called once at application startup. Returns True when Sentry is on.
    """

    log_level_str = os.getenv("LOG_LEVEL", "INFO").upper()
    log_level = getattr(logging, log_level_str, logging.INFO)

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    sentry_dsn = os.getenv("SENTRY_DSN")
    if sentry_dsn:
        sentry_env = os.getenv("SENTRY_ENV", "development")

        sentry_sdk.init(
            dsn=sentry_dsn,
            environment=sentry_env,
            traces_sample_rate=float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.2")),
            send_default_pii=False,
            before_send=_scrub_sensitive_data
        )
        log.info(f"Sentry SDK initialized (env: {sentry_env})")
    else:
        log.info("SENTRY_DSN not provided. Running without Sentry.")

    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)
    return bool(sentry_dsn)


def bind_sentry_user(snapshot) -> None:
    """Session listener that tags crash reports with the signed-in user (id and role only)."""
    user = snapshot.user
    sentry_sdk.set_user({"id": user.id, "role": user.role} if user else None)
