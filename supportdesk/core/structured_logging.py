"""Structured logging helpers (PII-safe)."""

from typing import Any


def build_log_context(
    *,
    job_id: str | None = None,
    job_type: str | None = None,
    owner_id: str | None = None,
    request_id: str | None = None,
    route: str | None = None,
    method: str | None = None,
) -> dict[str, Any]:
    """Return a PII-safe log context dict."""
    context: dict[str, Any] = {}
    if job_id:
        context["job_id"] = job_id
    if job_type:
        context["job_type"] = job_type
    if owner_id:
        context["owner_id"] = owner_id
    if request_id:
        context["request_id"] = request_id
    if route:
        context["route"] = route
    if method:
        context["method"] = method
    return context
