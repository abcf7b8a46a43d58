from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from inference_pipeline.routes._deps import get_runtime, trace_id_from_request
from inference_pipeline.runtime import PipelineRuntime
from inference_pipeline.schemas import SubmitJobRequest, success_envelope

router = APIRouter(prefix="/api/v1/jobs", tags=["jobs"])


@router.post("")
def submit_job(
    payload: SubmitJobRequest,
    request: Request,
    runtime: PipelineRuntime = Depends(get_runtime),
):
    data = runtime.submit_job(payload.model_dump(mode="json", exclude={"job_id"}), job_id=payload.job_id)
    return JSONResponse(status_code=202, content=success_envelope(data, trace_id_from_request(request), message="accepted"))


@router.get("/{job_id}")
def get_job_status(job_id: str, request: Request, runtime: PipelineRuntime = Depends(get_runtime)):
    return success_envelope(runtime.get_job_status(job_id), trace_id_from_request(request))


@router.post("/{job_id}/cancel")
def cancel_job(job_id: str, request: Request, runtime: PipelineRuntime = Depends(get_runtime)):
    return success_envelope(runtime.cancel_job(job_id), trace_id_from_request(request))
