"""Saga coordinator for the staged inference pipeline.

Each stage event names the stage to run next. The coordinator executes that
stage, records its result on the job and emits the follow-up event:

    intermediate stages -> StageCompleted
    stage before last   -> PromptReady
    last stage          -> InferenceCompleted

When a stage event is dead-lettered the coordinator emits ``JobFailed``; handling
it runs the compensators of the completed stages in reverse order and then
marks the job failed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from inference_pipeline.errors import ApiError, PermanentHandlerError, StageOrderError
from inference_pipeline.events import Event, EventCodec, EventType
from inference_pipeline.job_store import (
    CANCELLED,
    COMPENSATING,
    FAILED,
    TERMINAL_STATUSES,
    JobStateStore,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StageContext:
    job_id: str
    stage: str
    input: dict[str, Any]
    job: dict[str, Any]


StageExecutor = Callable[[StageContext], Mapping[str, Any]]
StageCompensator = Callable[[StageContext], None]
StageReceipt = Callable[[Mapping[str, Any]], Mapping[str, Any]]


@dataclass(frozen=True)
class StageSpec:
    """One pipeline stage.

    ``receipt`` picks out of a stage result what ``compensate`` needs to undo
    the stage. The job keeps receipts until it is terminal, while full results
    are released as soon as the next stage has consumed them. A compensator
    receives its stage's receipt as ``StageContext.input``.
    """

    name: str
    execute: StageExecutor
    compensate: StageCompensator | None = None
    receipt: StageReceipt | None = None


def _error_payload(error: BaseException) -> dict[str, Any]:
    if isinstance(error, ApiError):
        return error.as_dict()
    return {
        "code": type(error).__name__,
        "message": str(error),
        "retryable": False,
        "class": "unclassified",
    }


class SagaCoordinator:
    def __init__(self, *, store: JobStateStore, codec: EventCodec, stages: list[StageSpec]) -> None:
        if not stages:
            raise ValueError("at least one stage is required")
        names = [spec.name for spec in stages]
        if len(set(names)) != len(names):
            raise ValueError("stage names must be unique")
        self.store = store
        self.codec = codec
        self.stage_names = names
        self._specs = {spec.name: spec for spec in stages}

    def handlers(self) -> dict[EventType, Callable[[Event], list[Event]]]:
        return {
            EventType.JOB_SUBMITTED: self.handle_stage_event,
            EventType.STAGE_COMPLETED: self.handle_stage_event,
            EventType.PROMPT_READY: self.handle_stage_event,
            EventType.INFERENCE_COMPLETED: self.handle_inference_completed,
            EventType.JOB_FAILED: self.handle_job_failed,
        }

    def _follow_up(self, job: dict[str, Any], stage: str, result: dict[str, Any]) -> Event:
        stages = job["stages"]
        index = stages.index(stage)
        if index == len(stages) - 1:
            return self.codec.build_event(EventType.INFERENCE_COMPLETED, job_id=job["job_id"], payload=result)
        event_type = EventType.PROMPT_READY if index == len(stages) - 2 else EventType.STAGE_COMPLETED
        return self.codec.build_event(
            event_type,
            job_id=job["job_id"],
            payload=result,
            stage=stages[index + 1],
        )

    def handle_stage_event(self, event: Event) -> list[Event]:
        job_id = event.job_id
        if event.type == EventType.JOB_SUBMITTED:
            job = self.store.create_job(
                job_id=job_id,
                request=self.codec.resolve_payload(event),
                stages=self.stage_names,
            )
        else:
            job = self.store.get_job(job_id)
            if job is None:
                raise PermanentHandlerError(f"unknown job: {job_id}", code="JOB_NOT_FOUND")
        stage = event.stage or job["current_stage"]

        if job["status"] in TERMINAL_STATUSES or job["status"] == COMPENSATING:
            logger.info("stage_event_ignored job_id=%s stage=%s status=%s", job_id, stage, job["status"])
            return []
        if stage in job["completed_stages"]:
            return self._replay_follow_up(job, stage, event)
        if stage != job["current_stage"]:
            raise StageOrderError(f"event for stage {stage} but job {job_id} is at {job['current_stage']}")
        spec = self._specs.get(stage)
        if spec is None:
            raise PermanentHandlerError(f"no stage named {stage}", code="STAGE_UNKNOWN")

        job = self.store.start_stage(job_id, stage)
        if job is None:
            logger.info("stage_event_ignored job_id=%s stage=%s status=cancelled", job_id, stage)
            return []
        logger.info("stage_started job_id=%s stage=%s attempt=%s", job_id, stage, job["attempts"][stage])
        context = StageContext(job_id=job_id, stage=stage, input=self.codec.resolve_payload(event), job=job)
        result = dict(spec.execute(context))
        receipt = spec.receipt(result) if spec.receipt is not None else None

        job = self.store.complete_stage(job_id, stage, result, receipt=receipt)
        if job["status"] == CANCELLED:
            logger.info("stage_result_discarded job_id=%s stage=%s reason=cancelled", job_id, stage)
            return []
        logger.info("stage_completed job_id=%s stage=%s", job_id, stage)
        return [self._follow_up(job, stage, result)]

    def _replay_follow_up(self, job: dict[str, Any], stage: str, event: Event) -> list[Event]:
        """Re-emit the follow-up of the newest completed stage for a redelivered event.

        The stage result is saved before its follow-up is published, so a
        redelivery may be the only way that follow-up ever gets out. Older
        stages were already consumed by their successor and emit nothing.
        """
        job_id = job["job_id"]
        result = job["stage_results"].get(stage)
        if job["completed_stages"][-1] != stage or result is None:
            logger.info("stage_event_duplicate job_id=%s stage=%s event_id=%s", job_id, stage, event.event_id)
            return []
        logger.info("stage_follow_up_replayed job_id=%s stage=%s event_id=%s", job_id, stage, event.event_id)
        return [self._follow_up(job, stage, result)]

    def handle_inference_completed(self, event: Event) -> list[Event]:
        job = self.store.get_job(event.job_id)
        if job is None:
            raise PermanentHandlerError(f"unknown job: {event.job_id}", code="JOB_NOT_FOUND")
        if job["status"] in TERMINAL_STATUSES or job["status"] == COMPENSATING:
            logger.info(
                "inference_completed_ignored job_id=%s stage=%s status=%s",
                event.job_id,
                job["current_stage"],
                job["status"],
            )
            return []
        self.store.mark_completed(event.job_id, output=self.codec.resolve_payload(event))
        logger.info("job_completed job_id=%s stage=%s", event.job_id, job["current_stage"])
        return []

    def handle_job_failed(self, event: Event) -> list[Event]:
        job = self.store.get_job(event.job_id)
        if job is None:
            raise PermanentHandlerError(f"unknown job: {event.job_id}", code="JOB_NOT_FOUND")
        if job["status"] in TERMINAL_STATUSES:
            logger.info("job_failed_ignored job_id=%s stage=%s status=%s", event.job_id, job["current_stage"], job["status"])
            return []
        payload = self.codec.resolve_payload(event)
        error = payload.get("error") or {"code": "JOB_FAILED", "message": "job failed", "retryable": False}
        self.compensate(event.job_id, error=error)
        return []

    def compensate(self, job_id: str, *, error: Mapping[str, Any]) -> dict[str, Any]:
        """Compensate every completed stage, last completed first, then fail the job.

        Stages already compensated by an earlier, interrupted run are skipped.
        """
        with self.store.job_lock(job_id):
            job = self.store.begin_compensation(job_id, error=error)
            if job is None:
                job = self.store.require_job(job_id)
                logger.info("compensation_skipped job_id=%s stage=%s status=%s", job_id, job["current_stage"], job["status"])
                return job
            receipts = job.get("stage_receipts") or {}
            for stage in reversed(list(job["completed_stages"])):
                if stage in job["compensated_stages"]:
                    continue
                spec = self._specs.get(stage)
                if spec is not None and spec.compensate is not None:
                    context = StageContext(job_id=job_id, stage=stage, input=dict(receipts.get(stage) or {}), job=job)
                    try:
                        spec.compensate(context)
                    except Exception as exc:
                        logger.exception("compensation_failed job_id=%s stage=%s", job_id, stage)
                        self.store.record_compensation_error(job_id, stage, _error_payload(exc))
                        continue
                self.store.mark_compensated(job_id, stage)
                logger.info("stage_compensated job_id=%s stage=%s", job_id, stage)
            job = self.store.transition_status(job_id, FAILED, error=error)
            logger.warning(
                "job_failed job_id=%s stage=%s code=%s compensated=%s",
                job_id,
                job["current_stage"],
                error.get("code"),
                ",".join(job["compensated_stages"]),
            )
            return job

    def on_dead_letter(self, event: Event, error: BaseException) -> list[Event]:
        """Turn a dead-lettered stage event into ``JobFailed`` for its job."""
        if event.type == EventType.JOB_FAILED:
            return []
        job = self.store.get_job(event.job_id)
        if job is None or job["status"] in TERMINAL_STATUSES or job["status"] == COMPENSATING:
            return []
        failed_stage = event.stage or job["current_stage"]
        return [
            self.codec.build_event(
                EventType.JOB_FAILED,
                job_id=event.job_id,
                payload={
                    "failed_stage": failed_stage,
                    "event_type": event.type.value,
                    "error": _error_payload(error),
                },
            )
        ]

