from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from inference_pipeline.broker import BrokerBackend, InMemoryBroker, create_broker_from_env
from inference_pipeline.bus import EventBus
from inference_pipeline.dispatcher import Dispatcher, create_dispatcher_from_env
from inference_pipeline.dlq import DeadLetterChannel, create_dlq_repository_from_env
from inference_pipeline.events import DEFAULT_INLINE_LIMIT_BYTES, EventCodec, EventType, create_codec_from_env
from inference_pipeline.job_store import JobStateStore, create_job_store_from_env
from inference_pipeline.object_storage import ObjectStorageBackend, create_object_storage_from_env
from inference_pipeline.repositories import InMemoryDlqItemsRepository
from inference_pipeline.retry_policy import RetryPolicy
from inference_pipeline.saga import SagaCoordinator, StageSpec
from inference_pipeline.settings import resolve_env, true_stack_required
from inference_pipeline.stages import default_stage_specs

logger = logging.getLogger(__name__)


@dataclass
class PipelineRuntime:
    broker: BrokerBackend
    storage: ObjectStorageBackend | None
    codec: EventCodec
    bus: EventBus
    store: JobStateStore
    retry_policy: RetryPolicy
    dead_letters: DeadLetterChannel
    saga: SagaCoordinator
    dispatcher: Dispatcher

    def submit_job(self, request: Mapping[str, Any], *, job_id: str | None = None) -> dict[str, Any]:
        """Create a pending job and publish its ``JobSubmitted`` event.

        Submitting a known job id publishes nothing and returns the current status.
        """
        if job_id is not None and self.store.get_job(job_id) is not None:
            return self.store.get_job_status(job_id)
        job = self.store.create_job(job_id=job_id, request=request, stages=self.saga.stage_names)
        event = self.codec.build_event(
            EventType.JOB_SUBMITTED,
            job_id=job["job_id"],
            payload=request,
            stage=job["stages"][0],
        )
        self.bus.publish(event)
        logger.info("job_submitted job_id=%s stage=%s event_id=%s", job["job_id"], job["current_stage"], event.event_id)
        return self.store.get_job_status(job["job_id"])

    def get_job_status(self, job_id: str) -> dict[str, Any]:
        return self.store.get_job_status(job_id)

    def cancel_job(self, job_id: str) -> dict[str, Any]:
        self.store.cancel_job(job_id)
        return self.store.get_job_status(job_id)

    def close(self) -> None:
        self.dispatcher.close()

    def reset(self) -> None:
        self.broker.reset()
        self.store.reset()
        self.retry_policy.reset()
        self.dead_letters.reset()


def _assemble(
    *,
    broker: BrokerBackend,
    storage: ObjectStorageBackend | None,
    codec: EventCodec,
    store: JobStateStore,
    retry_policy: RetryPolicy,
    dead_letters: DeadLetterChannel,
    stages: list[StageSpec],
    dispatcher_factory,
) -> PipelineRuntime:
    bus = EventBus(broker=broker, codec=codec)
    saga = SagaCoordinator(store=store, codec=codec, stages=stages)
    dispatcher = dispatcher_factory(bus)
    dispatcher.register_all(saga.handlers())
    dispatcher.set_failure_hook(saga.on_dead_letter)
    return PipelineRuntime(
        broker=broker,
        storage=storage,
        codec=codec,
        bus=bus,
        store=store,
        retry_policy=retry_policy,
        dead_letters=dead_letters,
        saga=saga,
        dispatcher=dispatcher,
    )


def build_runtime(
    *,
    broker: BrokerBackend | None = None,
    storage: ObjectStorageBackend | None = None,
    store: JobStateStore | None = None,
    stages: list[StageSpec] | None = None,
    retry_policy: RetryPolicy | None = None,
    inline_limit_bytes: int = DEFAULT_INLINE_LIMIT_BYTES,
    capacity: int = 2,
    max_messages_per_iteration: int = 20,
    poll_interval_ms: int = 200,
) -> PipelineRuntime:
    """Assemble a runtime from explicit parts, defaulting to in-memory backends."""
    stage_specs = stages if stages is not None else default_stage_specs({})
    broker = broker if broker is not None else InMemoryBroker()
    store = store if store is not None else JobStateStore(default_stages=[s.name for s in stage_specs])
    retry_policy = retry_policy if retry_policy is not None else RetryPolicy()
    dead_letters = DeadLetterChannel(
        broker=broker,
        repository=InMemoryDlqItemsRepository(),
        retry_policy=retry_policy,
        store=store,
    )
    return _assemble(
        broker=broker,
        storage=storage,
        codec=EventCodec(storage=storage, inline_limit_bytes=inline_limit_bytes),
        store=store,
        retry_policy=retry_policy,
        dead_letters=dead_letters,
        stages=stage_specs,
        dispatcher_factory=lambda bus: Dispatcher(
            bus=bus,
            store=store,
            retry_policy=retry_policy,
            dead_letters=dead_letters,
            capacity=capacity,
            max_messages_per_iteration=max_messages_per_iteration,
            poll_interval_ms=poll_interval_ms,
        ),
    )


def create_runtime_from_env(
    environ: Mapping[str, str] | None = None,
    *,
    stages: list[StageSpec] | None = None,
) -> PipelineRuntime:
    env = resolve_env(environ)
    if true_stack_required(env):
        queue_backend = env.get("INFER_QUEUE_BACKEND", "memory").strip().lower()
        store_backend = env.get("INFER_JOB_STORE_BACKEND", "memory").strip().lower()
        if queue_backend != "redis":
            raise RuntimeError("INFER_QUEUE_BACKEND must be redis when INFER_REQUIRE_TRUESTACK=true")
        if store_backend == "memory":
            raise RuntimeError("INFER_JOB_STORE_BACKEND must be persistent when INFER_REQUIRE_TRUESTACK=true")

    stage_specs = stages if stages is not None else default_stage_specs(env)
    broker = create_broker_from_env(env)
    storage = create_object_storage_from_env(env)
    store = create_job_store_from_env(env, stages=[s.name for s in stage_specs])
    retry_policy = RetryPolicy.from_env(env)
    dead_letters = DeadLetterChannel(
        broker=broker,
        repository=create_dlq_repository_from_env(env),
        retry_policy=retry_policy,
        store=store,
    )
    logger.info(
        "runtime_configured queue_backend=%s job_store=%s stages=%s",
        type(broker).__name__,
        type(store.repository).__name__,
        ",".join(s.name for s in stage_specs),
    )
    return _assemble(
        broker=broker,
        storage=storage,
        codec=create_codec_from_env(storage=storage, environ=env),
        store=store,
        retry_policy=retry_policy,
        dead_letters=dead_letters,
        stages=stage_specs,
        dispatcher_factory=lambda bus: create_dispatcher_from_env(
            bus=bus,
            store=store,
            retry_policy=retry_policy,
            dead_letters=dead_letters,
            environ=env,
        ),
    )
