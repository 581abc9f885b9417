"""Runtime configuration helpers for the billing core."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Final, Optional

from dotenv import load_dotenv

# Load .env file from project root (if it exists)
load_dotenv()


def _parse_bool(value: str | None, *, default: bool = False) -> bool:
    if value is None:
        return default
    value = value.strip().lower()
    return value in {"1", "true", "yes", "on"}


def _parse_int(value: str | None, *, default: int) -> int:
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _parse_float(value: str | None, *, default: float) -> float:
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_bool(name: str, *, default: bool = False) -> bool:
    return _parse_bool(os.getenv(name), default=default)


def _env_int(name: str, *, default: int) -> int:
    return _parse_int(os.getenv(name), default=default)


def _env_str(name: str, *, default: str = "") -> str:
    return os.getenv(name, default).strip()


_audit_log_env = os.getenv("MCP_AUDIT_LOG", "").strip()
AUDIT_LOG_PATH: Final[Optional[Path]] = (
    Path(_audit_log_env).expanduser() if _audit_log_env else None
)

INVOICE_BUCKET: Final[str] = "dokumente"
INVOICE_PREFIX: Final[str] = "rechnung"


# The values below are read on every call so tests and long-running servers
# pick up environment changes without a re-import.


def writes_enabled() -> bool:
    return _env_bool("MCP_ENABLE_WRITES", default=False)


def automation_secret() -> str:
    return _env_str("INVOICE_AUTOMATION_SECRET")


def automation_lease_seconds() -> int:
    return max(1, _env_int("AUTOMATION_LEASE_SECONDS", default=600))


def signed_url_secret() -> str:
    """Secret used to sign document download links.

    Falls back to the automation secret; empty when neither is configured.
    """

    return _env_str("SIGNED_URL_SECRET") or automation_secret()


def signed_url_ttl_seconds() -> int:
    return max(1, _env_int("SIGNED_URL_TTL_SECONDS", default=60 * 60))


def http_timeout_seconds() -> float:
    return _parse_float(os.getenv("HTTP_TIMEOUT_SECONDS"), default=15.0)


def public_base_url() -> str:
    return _env_str("PUBLIC_BASE_URL", default="http://127.0.0.1:8081").rstrip("/")


def brevo_settings() -> dict[str, str]:
    return {
        "api_key": _env_str("BREVO_API_KEY"),
        "sender_email": _env_str("BREVO_SENDER_EMAIL", default="noreply@gleno.io"),
        "sender_name": _env_str("BREVO_SENDER_NAME", default="GLENO"),
    }


__all__ = [
    "AUDIT_LOG_PATH",
    "INVOICE_BUCKET",
    "INVOICE_PREFIX",
    "automation_lease_seconds",
    "automation_secret",
    "brevo_settings",
    "http_timeout_seconds",
    "public_base_url",
    "signed_url_secret",
    "signed_url_ttl_seconds",
    "writes_enabled",
]
