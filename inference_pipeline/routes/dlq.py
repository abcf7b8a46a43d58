from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from inference_pipeline.routes._deps import get_runtime, trace_id_from_request
from inference_pipeline.runtime import PipelineRuntime
from inference_pipeline.schemas import DlqDiscardRequest, success_envelope

router = APIRouter(prefix="/api/v1/dlq", tags=["dlq"])


@router.get("/items")
def list_dlq_items(
    request: Request,
    job_id: str | None = Query(default=None),
    status: str | None = Query(default=None),
    runtime: PipelineRuntime = Depends(get_runtime),
):
    items = runtime.dead_letters.list_items(job_id=job_id, status=status)
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))


@router.post("/items/{dlq_id}/requeue")
def requeue_dlq_item(dlq_id: str, request: Request, runtime: PipelineRuntime = Depends(get_runtime)):
    return success_envelope(runtime.dead_letters.requeue(dlq_id), trace_id_from_request(request))


@router.post("/items/{dlq_id}/discard")
def discard_dlq_item(
    dlq_id: str,
    payload: DlqDiscardRequest,
    request: Request,
    runtime: PipelineRuntime = Depends(get_runtime),
):
    data = runtime.dead_letters.discard(dlq_id, reason=payload.reason, reviewer_id=payload.reviewer_id)
    return success_envelope(data, trace_id_from_request(request))
