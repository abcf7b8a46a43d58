from __future__ import annotations

import uuid

from fastapi import Request
from fastapi.responses import JSONResponse

from inference_pipeline.errors import ApiError
from inference_pipeline.runtime import PipelineRuntime
from inference_pipeline.schemas import error_envelope


def trace_id_from_request(request: Request) -> str:
    return getattr(request.state, "trace_id", None) or uuid.uuid4().hex


def get_runtime(request: Request) -> PipelineRuntime:
    return request.app.state.runtime


def api_error_response(request: Request, error: ApiError) -> JSONResponse:
    return JSONResponse(
        status_code=error.http_status,
        content=error_envelope(error.as_dict(), trace_id_from_request(request)),
    )
