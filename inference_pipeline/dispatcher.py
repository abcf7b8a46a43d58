from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, fields

from inference_pipeline.broker import BrokerMessage
from inference_pipeline.bus import EventBus
from inference_pipeline.dlq import DeadLetterChannel
from inference_pipeline.errors import ApiError, PermanentHandlerError, SchemaMismatchError
from inference_pipeline.events import Event, EventType
from inference_pipeline.job_store import TERMINAL_STATUSES, JobStateStore
from inference_pipeline.retry_policy import RETRY, SKIP, RetryPolicy
from inference_pipeline.settings import env_int, resolve_env

logger = logging.getLogger(__name__)

Handler = Callable[[Event], list[Event] | None]
FailureHook = Callable[[Event, BaseException], list[Event] | None]


@dataclass
class DispatchStats:
    processed: int = 0
    succeeded: int = 0
    retrying: int = 0
    dead_lettered: int = 0
    skipped: int = 0
    acked: int = 0
    requeued: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def incr(self, name: str, amount: int = 1) -> None:
        with self._lock:
            setattr(self, name, getattr(self, name) + amount)

    def merge(self, other: Mapping[str, int]) -> None:
        for name, value in other.items():
            self.incr(name, int(value))

    def as_dict(self) -> dict[str, int]:
        with self._lock:
            return {f.name: getattr(self, f.name) for f in fields(self) if not f.name.startswith("_")}


class Dispatcher:
    """Consumer loop: routes each received event to the one handler registered for its type.

    A message is acked only after its handler returned and the handler's follow-up
    events were published. Failures go through the retry policy, which either
    requeues the message with a backoff delay or sends it to the dead-letter
    channel. At most ``capacity`` messages are handled at the same time and
    messages of one job are handled under that job's lock.
    """

    def __init__(
        self,
        *,
        bus: EventBus,
        store: JobStateStore,
        retry_policy: RetryPolicy,
        dead_letters: DeadLetterChannel,
        capacity: int = 2,
        max_messages_per_iteration: int = 20,
        poll_interval_ms: int = 200,
    ) -> None:
        self.bus = bus
        self.store = store
        self.retry_policy = retry_policy
        self.dead_letters = dead_letters
        self.capacity = max(1, int(capacity))
        self.max_messages_per_iteration = max(1, int(max_messages_per_iteration))
        self.poll_interval_ms = max(1, int(poll_interval_ms))
        self._handlers: dict[EventType, Handler] = {}
        self._failure_hook: FailureHook | None = None
        self._slots = threading.BoundedSemaphore(self.capacity)
        self._executor = ThreadPoolExecutor(max_workers=self.capacity, thread_name_prefix="dispatch")
        self._cursor = 0

    def register(self, event_type: EventType, handler: Handler) -> None:
        event_type = EventType(event_type)
        if event_type in self._handlers:
            raise ValueError(f"handler already registered for {event_type.value}")
        self._handlers[event_type] = handler

    def register_all(self, handlers: Mapping[EventType, Handler]) -> None:
        for event_type, handler in handlers.items():
            self.register(event_type, handler)

    def set_failure_hook(self, hook: FailureHook) -> None:
        self._failure_hook = hook

    @property
    def channels(self) -> list[str]:
        return [event_type.channel for event_type in self._handlers]

    def _receive_next(self) -> BrokerMessage | None:
        channels = self.channels
        if not channels:
            return None
        for offset in range(len(channels)):
            channel = channels[(self._cursor + offset) % len(channels)]
            message = self.bus.broker.receive(channel=channel)
            if message is not None:
                self._cursor = (self._cursor + offset + 1) % len(channels)
                return message
        return None

    def _has_pending(self) -> bool:
        return any(self.bus.broker.pending_count(channel=channel) > 0 for channel in self.channels)

    def _ack(self, message: BrokerMessage, stats: DispatchStats) -> None:
        self.bus.broker.ack(message_id=message.message_id)
        stats.incr("acked")

    def _handle_message(self, message: BrokerMessage, stats: DispatchStats) -> None:
        stats.incr("processed")
        attempt = message.attempt + 1
        try:
            event = self.bus.codec.decode(message.body)
        except SchemaMismatchError as exc:
            job_id = self.bus.codec.peek_job_id(message.body)
            logger.error(
                "event_schema_mismatch job_id=%s stage=%s channel=%s code=%s message=%s",
                job_id,
                None,
                message.channel,
                exc.code,
                exc.message,
            )
            self.dead_letters.dead_letter(
                body=message.body,
                source_channel=message.channel,
                error=exc,
                attempts=attempt,
                job_id=job_id,
            )
            self._ack(message, stats)
            stats.incr("dead_lettered")
            return

        stage = event.stage or event.type.value
        handler = self._handlers.get(event.type)
        if handler is None:
            error = PermanentHandlerError(
                f"no handler registered for {event.type.value}",
                code="HANDLER_NOT_REGISTERED",
            )
            self._settle_failure(message, event, stage=stage, attempt=attempt, error=error, stats=stats)
            return

        with self.store.job_lock(event.job_id):
            try:
                follow_ups = handler(event) or []
                self.bus.publish_all(list(follow_ups))
            except Exception as exc:
                self._settle_failure(message, event, stage=stage, attempt=attempt, error=exc, stats=stats)
                return
            self.retry_policy.record_success(job_id=event.job_id, stage=stage)
            self._retire_if_terminal(event.job_id)
        self._ack(message, stats)
        stats.incr("succeeded")

    def _retire_if_terminal(self, job_id: str) -> None:
        # runs under the job lock, so no later success can re-add a state
        job = self.store.get_job(job_id)
        if job is not None and job["status"] in TERMINAL_STATUSES:
            self.retry_policy.forget_job(job_id=job_id)

    def _settle_failure(
        self,
        message: BrokerMessage,
        event: Event,
        *,
        stage: str,
        attempt: int,
        error: BaseException,
        stats: DispatchStats,
    ) -> None:
        code = error.code if isinstance(error, ApiError) else type(error).__name__
        traceback_info = None if isinstance(error, ApiError) else error
        decision = self.retry_policy.decide(job_id=event.job_id, stage=stage, attempt=attempt, error=error)
        if decision.action == RETRY:
            logger.warning(
                "handler_failed_retrying job_id=%s stage=%s attempt=%s delay_ms=%s code=%s",
                event.job_id,
                stage,
                attempt,
                decision.delay_ms,
                code,
                exc_info=traceback_info,
            )
            self.bus.broker.nack(message_id=message.message_id, requeue=True, delay_ms=decision.delay_ms)
            stats.incr("requeued")
            stats.incr("retrying")
            return
        if decision.action == SKIP:
            logger.warning(
                "handler_failed_already_dead_lettered job_id=%s stage=%s attempt=%s code=%s",
                event.job_id,
                stage,
                attempt,
                code,
            )
            self._ack(message, stats)
            stats.incr("skipped")
            return

        logger.error(
            "handler_failed_dead_lettering job_id=%s stage=%s attempt=%s code=%s reason=%s",
            event.job_id,
            stage,
            attempt,
            code,
            decision.reason,
            exc_info=traceback_info,
        )
        self.dead_letters.dead_letter(
            body=message.body,
            source_channel=message.channel,
            error=error,
            attempts=attempt,
            job_id=event.job_id,
            stage=stage,
            event_type=event.type.value,
        )
        if self._failure_hook is not None:
            try:
                self.bus.publish_all(list(self._failure_hook(event, error) or []))
            except Exception:
                logger.exception("failure_hook_failed job_id=%s stage=%s", event.job_id, stage)
        self._ack(message, stats)
        stats.incr("dead_lettered")

    def _run_slot(self, message: BrokerMessage, stats: DispatchStats) -> None:
        try:
            self._handle_message(message, stats)
        finally:
            self._slots.release()

    def run_once(self) -> dict[str, int]:
        stats = DispatchStats()
        futures: list[Future[None]] = []
        received = 0
        while received < self.max_messages_per_iteration:
            self._slots.acquire()
            message = self._receive_next()
            if message is None:
                self._slots.release()
                break
            received += 1
            futures.append(self._executor.submit(self._run_slot, message, stats))
        wait(futures)
        for future in futures:
            future.result()
        return stats.as_dict()

    def run_forever(self, *, stop_after_iterations: int | None = None) -> dict[str, int]:
        aggregate = DispatchStats()
        iterations = 0
        while True:
            current = self.run_once()
            aggregate.merge(current)
            iterations += 1
            if stop_after_iterations is not None and iterations >= max(1, stop_after_iterations):
                break
            if current["processed"] == 0:
                time.sleep(self.poll_interval_ms / 1000.0)
        return aggregate.as_dict()

    def run_until_idle(self, *, max_iterations: int = 1000) -> dict[str, int]:
        """Drain every subscribed channel, waiting out delayed redeliveries."""
        aggregate = DispatchStats()
        for _ in range(max(1, max_iterations)):
            current = self.run_once()
            aggregate.merge(current)
            if current["processed"] == 0:
                if not self._has_pending():
                    break
                time.sleep(self.poll_interval_ms / 1000.0)
        return aggregate.as_dict()

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    def __enter__(self) -> Dispatcher:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def create_dispatcher_from_env(
    *,
    bus: EventBus,
    store: JobStateStore,
    retry_policy: RetryPolicy,
    dead_letters: DeadLetterChannel,
    environ: Mapping[str, str] | None = None,
) -> Dispatcher:
    env = resolve_env(environ)
    return Dispatcher(
        bus=bus,
        store=store,
        retry_policy=retry_policy,
        dead_letters=dead_letters,
        capacity=env_int(env, "WORKER_CAPACITY", default=2, minimum=1),
        max_messages_per_iteration=env_int(env, "WORKER_MAX_MESSAGES_PER_ITERATION", default=20, minimum=1),
        poll_interval_ms=env_int(env, "WORKER_POLL_INTERVAL_MS", default=200, minimum=1),
    )
