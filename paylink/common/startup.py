"""Startup-time helpers for safe config logging."""

from pydantic_settings import BaseSettings

from paylink.common.logging import logger

SECRET_MARKERS = ("key", "secret", "password", "token", "dsn")


def redacted_config(config: BaseSettings, fields: list[str]) -> dict[str, object]:
    """Selected settings values with secret-like fields masked.

    Empty secrets are reported as `<unset>` so a missing provider key is
    visible in the startup line without leaking configured ones.
    """

    snapshot: dict[str, object] = {}
    for name in fields:
        value = getattr(config, name, None)
        if any(marker in name for marker in SECRET_MARKERS):
            value = "<redacted>" if value else "<unset>"
        snapshot[name] = value
    return snapshot


def log_startup_config(config: BaseSettings, fields: list[str]) -> None:
    """Log selected startup config keys for quick troubleshooting."""

    snapshot = redacted_config(config, fields)
    snapshot["service"] = getattr(config, "service_name", "unknown-service")
    logger.info("startup_config=%s", snapshot)
