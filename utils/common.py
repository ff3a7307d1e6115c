"""Common utilities: path management, filenames and provider error parsing"""
from datetime import datetime, timezone
import re
import os
from typing import Any, Optional

# DO NOT import settings here: config.py imports this module

# ============= Path Management =============

def get_project_root() -> str:
    """Returns the absolute path to the project's root directory."""
    return os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))


def get_log_file_path() -> str:
    """Creates the log directory if it doesn't exist and returns the full log file path."""
    project_root = get_project_root()
    log_dir = os.path.join(project_root, 'log')

    if not os.path.exists(log_dir):
        os.makedirs(log_dir)

    return os.path.join(log_dir, 'fieldservice_rag.log')


# ============= Filenames =============

def sanitize_filename(filename: str) -> str:
    """Remove dangerous characters from filename."""
    safe_name = re.sub(r'[^\w\-_\.]', '_', filename)
    safe_name = os.path.basename(safe_name)
    return safe_name[:100]


# ============= Provider Errors =============

def parse_provider_error(status_code: int, payload: Any) -> Optional[str]:
    """
    Map an HTTP error from an embedding/completion provider to a ProviderErrorCode value.

    Looks at the provider-supplied `error.code` / `error.type` first (OpenAI style),
    then falls back to the HTTP status.
    """
    code = None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            code = error.get("code") or error.get("type")
        elif isinstance(payload.get("code"), str):
            code = payload.get("code")

    if code in ("insufficient_quota", "billing_hard_limit_reached"):
        return "insufficient_quota"
    if code in ("invalid_api_key", "authentication_error"):
        return "authentication_failed"
    if code in ("rate_limit_exceeded", "rate_limited"):
        return "rate_limited"

    if status_code in (401, 403):
        return "authentication_failed"
    if status_code == 402:
        return "insufficient_quota"
    if status_code == 429:
        return "rate_limited"
    if status_code >= 500:
        return "unavailable"
    return None


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what SQLite DateTime columns round-trip."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
