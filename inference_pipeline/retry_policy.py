from __future__ import annotations

import hashlib
import threading
from collections.abc import Mapping
from dataclasses import dataclass

from inference_pipeline.errors import ApiError
from inference_pipeline.settings import env_int, resolve_env

PENDING = "pending"
RETRYING = "retrying"
SUCCEEDED = "succeeded"
DEAD_LETTERED = "dead_lettered"

RETRY = "retry"
DEAD_LETTER = "dead_letter"
SKIP = "skip"


@dataclass(frozen=True)
class RetryDecision:
    action: str
    attempt: int
    delay_ms: int = 0
    reason: str = ""


def is_retryable(error: BaseException) -> bool:
    if isinstance(error, ApiError):
        return bool(error.retryable)
    # unclassified failures are treated as transient
    return True


class RetryPolicy:
    """Per (job_id, stage) retry state machine.

    pending -> retrying (attempt < max_attempts) -> succeeded | dead_lettered.
    ``dead_lettered`` is sticky: a key is dead-lettered at most once.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 3,
        backoff_base_ms: int = 1000,
        backoff_max_ms: int = 30000,
        jitter_max_ms: int = 300,
    ) -> None:
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_base_ms = max(0, int(backoff_base_ms))
        self.backoff_max_ms = max(self.backoff_base_ms, int(backoff_max_ms))
        self.jitter_max_ms = max(0, int(jitter_max_ms))
        self._lock = threading.Lock()
        self._states: dict[tuple[str, str], str] = {}

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> RetryPolicy:
        env = resolve_env(environ)
        return cls(
            max_attempts=env_int(env, "WORKER_MAX_ATTEMPTS", default=3, minimum=1),
            backoff_base_ms=env_int(env, "WORKER_RETRY_BACKOFF_BASE_MS", default=1000, minimum=0),
            backoff_max_ms=env_int(env, "WORKER_RETRY_BACKOFF_MAX_MS", default=30000, minimum=0),
            jitter_max_ms=env_int(env, "WORKER_RETRY_JITTER_MAX_MS", default=300, minimum=0),
        )

    def _jitter_ms(self, *, job_id: str, attempt: int) -> int:
        if self.jitter_max_ms <= 0:
            return 0
        seed = f"{job_id}:{attempt}".encode("utf-8")
        digest = hashlib.sha256(seed).digest()
        return int.from_bytes(digest[:2], byteorder="big") % (self.jitter_max_ms + 1)

    def backoff_ms(self, *, job_id: str, attempt: int) -> int:
        normalized = max(1, int(attempt))
        exponential = self.backoff_base_ms * (2 ** (normalized - 1))
        return min(self.backoff_max_ms, exponential) + self._jitter_ms(job_id=job_id, attempt=normalized)

    def state_of(self, *, job_id: str, stage: str) -> str:
        with self._lock:
            return self._states.get((job_id, stage), PENDING)

    def decide(self, *, job_id: str, stage: str, attempt: int, error: BaseException) -> RetryDecision:
        key = (job_id, stage)
        with self._lock:
            if self._states.get(key) == DEAD_LETTERED:
                return RetryDecision(action=SKIP, attempt=attempt, reason="already dead-lettered")
            if not is_retryable(error):
                self._states[key] = DEAD_LETTERED
                return RetryDecision(action=DEAD_LETTER, attempt=attempt, reason="non-retryable error")
            if attempt >= self.max_attempts:
                self._states[key] = DEAD_LETTERED
                return RetryDecision(action=DEAD_LETTER, attempt=attempt, reason="max attempts exhausted")
            self._states[key] = RETRYING
        return RetryDecision(
            action=RETRY,
            attempt=attempt,
            delay_ms=self.backoff_ms(job_id=job_id, attempt=attempt),
            reason="retryable error",
        )

    def record_success(self, *, job_id: str, stage: str) -> None:
        with self._lock:
            if self._states.get((job_id, stage)) != DEAD_LETTERED:
                self._states[(job_id, stage)] = SUCCEEDED

    def forget(self, *, job_id: str, stage: str) -> None:
        with self._lock:
            self._states.pop((job_id, stage), None)

    def forget_job(self, *, job_id: str) -> None:
        """Drop every state of a job that reached a terminal status."""
        with self._lock:
            for key in [key for key in self._states if key[0] == job_id]:
                del self._states[key]

    def tracked_count(self) -> int:
        with self._lock:
            return len(self._states)

    def reset(self) -> None:
        with self._lock:
            self._states.clear()
