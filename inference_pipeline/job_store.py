"""Job state store.

Jobs are plain dict records persisted through a repository. Every mutation runs
under the job's record lock, so a record is never modified by two workers at
once. Lock entries exist only while some thread holds or waits on them.
Status transitions are validated against ``ALLOWED_TRANSITIONS`` and a repeated
transition to the current status is a no-op. Stage progression is monotonic:
``stage_index`` only ever grows.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Iterator, Mapping
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from inference_pipeline.errors import ApiError, StageOrderError, job_not_found
from inference_pipeline.repositories.jobs import InMemoryJobsRepository, SqliteJobsRepository
from inference_pipeline.settings import resolve_env

logger = logging.getLogger(__name__)

DEFAULT_STAGES: tuple[str, ...] = ("retrieve", "rerank", "generate")

PENDING = "pending"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"
FAILED = "failed"
COMPENSATING = "compensating"
CANCELLED = "cancelled"

TERMINAL_STATUSES = frozenset({COMPLETED, FAILED, CANCELLED})


@dataclass
class _JobLocks:
    handler: threading.RLock = field(default_factory=threading.RLock)
    record: threading.RLock = field(default_factory=threading.RLock)
    users: int = 0


class JobStateStore:
    ALLOWED_TRANSITIONS: dict[str, set[str]] = {
        PENDING: {IN_PROGRESS, COMPENSATING, CANCELLED},
        IN_PROGRESS: {COMPLETED, COMPENSATING, CANCELLED},
        COMPENSATING: {FAILED},
        COMPLETED: set(),
        FAILED: set(),
        CANCELLED: set(),
    }

    def __init__(
        self,
        *,
        repository: InMemoryJobsRepository | SqliteJobsRepository | None = None,
        default_stages: list[str] | tuple[str, ...] = DEFAULT_STAGES,
    ) -> None:
        self.repository = repository if repository is not None else InMemoryJobsRepository()
        self.default_stages = list(default_stages)
        if not self.default_stages:
            raise ValueError("at least one pipeline stage is required")
        self._locks: dict[str, _JobLocks] = {}
        self._locks_guard = threading.Lock()

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).isoformat()

    @staticmethod
    def new_job_id() -> str:
        return f"job_{uuid.uuid4().hex[:12]}"

    @contextmanager
    def _holding(self, job_id: str, kind: str) -> Iterator[None]:
        with self._locks_guard:
            locks = self._locks.get(job_id)
            if locks is None:
                locks = self._locks[job_id] = _JobLocks()
            locks.users += 1
        try:
            with getattr(locks, kind):
                yield
        finally:
            with self._locks_guard:
                locks.users -= 1
                # nobody holds or waits on this job's locks any more
                if locks.users == 0 and self._locks.get(job_id) is locks:
                    del self._locks[job_id]

    def job_lock(self, job_id: str) -> AbstractContextManager[None]:
        """Serialize the handling of one job's events across workers.

        Held for a whole handler run, stage execution included. Record updates
        take a separate, short-lived lock, so ``cancel_job`` never waits for a
        running stage.
        """
        return self._holding(job_id, "handler")

    def _record_lock(self, job_id: str) -> AbstractContextManager[None]:
        return self._holding(job_id, "record")

    def tracked_lock_count(self) -> int:
        with self._locks_guard:
            return len(self._locks)

    def _save(self, job: dict[str, Any]) -> dict[str, Any]:
        job["updated_at"] = self._utcnow_iso()
        return self.repository.upsert(job=job)

    def create_job(
        self,
        *,
        job_id: str | None = None,
        request: Mapping[str, Any] | None = None,
        stages: list[str] | None = None,
    ) -> dict[str, Any]:
        """Create a pending job, or return the existing record for a known job id."""
        job_id = job_id or self.new_job_id()
        with self._record_lock(job_id):
            existing = self.repository.get(job_id=job_id)
            if existing is not None:
                return existing
            ordered = list(stages or self.default_stages)
            if len(set(ordered)) != len(ordered):
                raise ApiError(
                    code="JOB_STAGES_INVALID",
                    message="stage names must be unique",
                    error_class="validation",
                    retryable=False,
                    http_status=400,
                )
            now = self._utcnow_iso()
            job = {
                "job_id": job_id,
                "status": PENDING,
                "stages": ordered,
                "stage_index": 0,
                "current_stage": ordered[0],
                "attempts": {stage: 0 for stage in ordered},
                "completed_stages": [],
                "compensated_stages": [],
                "compensation_errors": [],
                "stage_results": {},
                "stage_receipts": {},
                "request": dict(request or {}),
                "output": None,
                "last_error": None,
                "history": [PENDING],
                "created_at": now,
                "updated_at": now,
            }
            logger.info("job_created job_id=%s stages=%s", job_id, ",".join(ordered))
            return self._save(job)

    def get_job(self, job_id: str) -> dict[str, Any] | None:
        return self.repository.get(job_id=job_id)

    def require_job(self, job_id: str) -> dict[str, Any]:
        job = self.get_job(job_id)
        if job is None:
            raise job_not_found(job_id)
        return job

    def get_job_status(self, job_id: str) -> dict[str, Any]:
        job = self.require_job(job_id)
        return {"job_id": job_id, "stage": job["current_stage"], "status": job["status"]}

    def list_jobs(self, *, status: str | None = None) -> list[dict[str, Any]]:
        return self.repository.list(status=status)

    def transition_status(
        self,
        job_id: str,
        new_status: str,
        *,
        error: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        with self._record_lock(job_id):
            job = self.require_job(job_id)
            current_status = job["status"]
            if new_status == current_status:
                return job
            allowed = self.ALLOWED_TRANSITIONS.get(current_status, set())
            if new_status not in allowed:
                raise ApiError(
                    code="WF_STATE_TRANSITION_INVALID",
                    message=f"invalid transition: {current_status} -> {new_status}",
                    error_class="business_rule",
                    retryable=False,
                    http_status=409,
                )
            job["status"] = new_status
            job["history"].append(new_status)
            if error is not None:
                job["last_error"] = dict(error)
            if new_status in TERMINAL_STATUSES:
                job["terminal_at"] = self._utcnow_iso()
                job["stage_receipts"] = {}
                if new_status != COMPLETED:
                    job["stage_results"] = {}
            logger.info(
                "job_transition job_id=%s stage=%s from=%s to=%s",
                job_id,
                job["current_stage"],
                current_status,
                new_status,
            )
            return self._save(job)

    def record_attempt(self, job_id: str, stage: str) -> int:
        with self._record_lock(job_id):
            job = self.require_job(job_id)
            attempts = job["attempts"]
            attempts[stage] = int(attempts.get(stage, 0)) + 1
            self._save(job)
            return attempts[stage]

    def start_stage(self, job_id: str, stage: str) -> dict[str, Any] | None:
        """Move a pending job to ``in_progress`` and count an attempt of ``stage``.

        Returns None, changing nothing, when the job was cancelled or has
        otherwise left the running states in the meantime.
        """
        with self._record_lock(job_id):
            job = self.require_job(job_id)
            if job["status"] not in (PENDING, IN_PROGRESS):
                return None
            if job["status"] == PENDING:
                self.transition_status(job_id, IN_PROGRESS)
            self.record_attempt(job_id, stage)
            return self.require_job(job_id)

    def complete_stage(
        self,
        job_id: str,
        stage: str,
        result: Mapping[str, Any],
        *,
        receipt: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Record ``stage`` as done and advance to the next stage.

        ``receipt`` is what the stage's compensator needs later; unlike the
        result it is kept until the job is terminal. Completing an already
        completed stage, or any stage of a cancelled job, returns the record
        unchanged. Completing any stage other than the current one raises
        ``StageOrderError``.
        """
        with self._record_lock(job_id):
            job = self.require_job(job_id)
            if stage in job["completed_stages"] or job["status"] == CANCELLED:
                return job
            if job["status"] in TERMINAL_STATUSES:
                raise StageOrderError(f"job {job_id} is {job['status']}; stage {stage} cannot complete")
            stages = job["stages"]
            index = int(job["stage_index"])
            if index >= len(stages) or stages[index] != stage:
                raise StageOrderError(f"stage {stage} is not the current stage of job {job_id}")
            job["completed_stages"].append(stage)
            job["stage_results"][stage] = dict(result)
            job["stage_receipts"][stage] = dict(receipt or {})
            if index > 0:
                # the previous result has now been consumed by this stage
                job["stage_results"].pop(stages[index - 1], None)
            job["stage_index"] = index + 1
            if index + 1 < len(stages):
                job["current_stage"] = stages[index + 1]
            return self._save(job)

    def mark_completed(self, job_id: str, *, output: Mapping[str, Any]) -> dict[str, Any]:
        with self._record_lock(job_id):
            job = self.require_job(job_id)
            if job["status"] == COMPLETED:
                return job
            if int(job["stage_index"]) < len(job["stages"]):
                raise StageOrderError(f"job {job_id} still has stages to run")
            job["output"] = dict(output)
            job["stage_results"] = {}
            self._save(job)
            return self.transition_status(job_id, COMPLETED)

    def begin_compensation(self, job_id: str, *, error: Mapping[str, Any]) -> dict[str, Any] | None:
        """Move the job to ``compensating``; None when it is already terminal."""
        with self._record_lock(job_id):
            if self.require_job(job_id)["status"] in TERMINAL_STATUSES:
                return None
            return self.transition_status(job_id, COMPENSATING, error=error)

    def mark_compensated(self, job_id: str, stage: str) -> dict[str, Any]:
        with self._record_lock(job_id):
            job = self.require_job(job_id)
            if stage not in job["compensated_stages"]:
                job["compensated_stages"].append(stage)
            return self._save(job)

    def record_compensation_error(self, job_id: str, stage: str, error: Mapping[str, Any]) -> dict[str, Any]:
        with self._record_lock(job_id):
            job = self.require_job(job_id)
            job["compensation_errors"].append({"stage": stage, **dict(error)})
            return self._save(job)

    def cancel_job(self, job_id: str) -> dict[str, Any]:
        with self._record_lock(job_id):
            job = self.require_job(job_id)
            if job["status"] in TERMINAL_STATUSES or job["status"] == COMPENSATING:
                raise ApiError(
                    code="JOB_CANCEL_CONFLICT",
                    message=f"job cannot be cancelled from status: {job['status']}",
                    error_class="business_rule",
                    retryable=False,
                    http_status=409,
                )
            return self.transition_status(
                job_id,
                CANCELLED,
                error={
                    "code": "JOB_CANCELLED",
                    "message": "job cancelled by operator",
                    "retryable": False,
                    "class": "business_rule",
                },
            )

    def reset(self) -> None:
        self.repository.reset()
        with self._locks_guard:
            self._locks.clear()


def create_job_store_from_env(
    environ: Mapping[str, str] | None = None,
    *,
    stages: list[str] | tuple[str, ...] = DEFAULT_STAGES,
) -> JobStateStore:
    env = resolve_env(environ)
    backend = env.get("INFER_JOB_STORE_BACKEND", "memory").strip().lower()
    if backend == "memory":
        return JobStateStore(repository=InMemoryJobsRepository(), default_stages=stages)
    if backend == "sqlite":
        db_path = env.get("INFER_JOB_STORE_SQLITE_PATH", ".runtime/infer_jobs.sqlite3")
        return JobStateStore(repository=SqliteJobsRepository(db_path), default_stages=stages)
    raise RuntimeError(f"unsupported job store backend: {backend}")
