from __future__ import annotations


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status

    def as_dict(self) -> dict[str, object]:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "class": self.error_class,
        }


class SchemaMismatchError(ApiError):
    """Envelope cannot be decoded under any supported schema version. Never retried."""

    def __init__(self, message: str, *, code: str = "EVENT_SCHEMA_MISMATCH") -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="validation",
            retryable=False,
            http_status=422,
        )


class PayloadTooLargeError(ApiError):
    def __init__(self, message: str) -> None:
        super().__init__(
            code="EVENT_PAYLOAD_TOO_LARGE",
            message=message,
            error_class="validation",
            retryable=False,
            http_status=413,
        )


class HandlerError(ApiError):
    def __init__(
        self,
        message: str,
        *,
        code: str,
        error_class: str,
        retryable: bool,
    ) -> None:
        super().__init__(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            http_status=500,
        )


class TransientHandlerError(HandlerError):
    """Handler failed for a reason expected to clear up; retried with backoff."""

    def __init__(self, message: str, *, code: str = "HANDLER_TRANSIENT_FAILURE") -> None:
        super().__init__(message, code=code, error_class="transient", retryable=True)


class PermanentHandlerError(HandlerError):
    """Handler failed for a reason retries cannot fix; routed to the dead-letter channel."""

    def __init__(self, message: str, *, code: str = "HANDLER_PERMANENT_FAILURE") -> None:
        super().__init__(message, code=code, error_class="business_rule", retryable=False)


class StageOrderError(ApiError):
    def __init__(self, message: str) -> None:
        super().__init__(
            code="JOB_STAGE_OUT_OF_ORDER",
            message=message,
            error_class="business_rule",
            retryable=False,
            http_status=409,
        )


def job_not_found(job_id: str) -> ApiError:
    return ApiError(
        code="JOB_NOT_FOUND",
        message=f"job not found: {job_id}",
        error_class="validation",
        retryable=False,
        http_status=404,
    )
