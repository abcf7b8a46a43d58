from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class SubmitJobRequest(BaseModel):
    query: str = Field(min_length=1)
    top_k: int = Field(default=5, ge=1, le=50)
    job_id: str | None = Field(default=None, min_length=1, max_length=64)
    metadata: dict[str, Any] = Field(default_factory=dict)


class DlqDiscardRequest(BaseModel):
    reason: str = ""
    reviewer_id: str = ""


def _envelope(trace_id: str, **body: Any) -> dict[str, Any]:
    return {**body, "meta": {"trace_id": trace_id}}


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return _envelope(trace_id, success=True, data=data, message=message)


def error_envelope(error: dict[str, Any], trace_id: str) -> dict[str, Any]:
    """Wrap an ``ApiError.as_dict()`` payload for the HTTP response body."""
    return _envelope(trace_id, success=False, error=error)
