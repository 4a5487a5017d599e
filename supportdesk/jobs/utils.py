"""Shared helpers for worker job handlers."""

from __future__ import annotations

import hashlib
from urllib.parse import urlsplit

MAX_ERROR_LENGTH = 1000


def mask_email(email: str | None) -> str:
    if not email:
        return ""
    local, _, domain = email.partition("@")
    digest = hashlib.sha256(email.lower().encode()).hexdigest()[:8]
    prefix = local[:2] if local else ""
    return f"{prefix}...{digest}@{domain}" if domain else f"{prefix}...{digest}"


def safe_url(url: str | None) -> str:
    if not url:
        return ""
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}{parts.path}"


def format_error(exc: BaseException) -> str:
    """Render an exception for Job.last_error."""
    message = str(exc) or type(exc).__name__
    text = f"{type(exc).__name__}: {message}" if message != type(exc).__name__ else message
    return text[:MAX_ERROR_LENGTH]
