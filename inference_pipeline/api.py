from __future__ import annotations

import logging
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from inference_pipeline.errors import ApiError
from inference_pipeline.routes import dlq as dlq_routes
from inference_pipeline.routes import jobs as jobs_routes
from inference_pipeline.routes._deps import api_error_response, trace_id_from_request
from inference_pipeline.runtime import PipelineRuntime, create_runtime_from_env
from inference_pipeline.schemas import success_envelope

logger = logging.getLogger(__name__)

TRACE_HEADER = "x-trace-id"


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        logger.info("api_error path=%s code=%s status=%s", request.url.path, exc.code, exc.http_status)
        return api_error_response(request, exc)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        fields = ",".join(".".join(str(part) for part in err.get("loc", ())) for err in exc.errors())
        return api_error_response(
            request,
            ApiError(
                code="REQ_VALIDATION_FAILED",
                message=f"invalid payload: {fields}" if fields else "invalid payload",
                error_class="validation",
                retryable=False,
                http_status=400,
            ),
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        not_found = exc.status_code == 404
        return api_error_response(
            request,
            ApiError(
                code="REQ_NOT_FOUND" if not_found else "REQ_HTTP_ERROR",
                message="resource not found" if not_found else str(exc.detail),
                error_class="validation",
                retryable=False,
                http_status=exc.status_code,
            ),
        )


def create_app(runtime: PipelineRuntime | None = None) -> FastAPI:
    app = FastAPI(title="Inference Pipeline API", version="0.1.0")
    app.state.runtime = runtime if runtime is not None else create_runtime_from_env()

    @app.middleware("http")
    async def propagate_trace_id(request: Request, call_next):
        request.state.trace_id = request.headers.get(TRACE_HEADER, "").strip() or uuid.uuid4().hex
        response = await call_next(request)
        response.headers[TRACE_HEADER] = request.state.trace_id
        return response

    _install_error_handlers(app)

    @app.get("/healthz")
    def healthz(request: Request):
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    app.include_router(jobs_routes.router)
    app.include_router(dlq_routes.router)
    return app


app = create_app()
