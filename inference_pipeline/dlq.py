from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from inference_pipeline.broker import BrokerBackend
from inference_pipeline.errors import ApiError
from inference_pipeline.events import DEAD_LETTER_CHANNEL
from inference_pipeline.job_store import TERMINAL_STATUSES, JobStateStore
from inference_pipeline.repositories.dlq_items import InMemoryDlqItemsRepository, SqliteDlqItemsRepository
from inference_pipeline.retry_policy import RetryPolicy
from inference_pipeline.settings import resolve_env

logger = logging.getLogger(__name__)


def _error_fields(error: BaseException) -> dict[str, Any]:
    if isinstance(error, ApiError):
        return {
            "error_class": error.error_class,
            "error_code": error.code,
            "message": error.message,
        }
    return {
        "error_class": "unclassified",
        "error_code": type(error).__name__,
        "message": str(error),
    }


class DeadLetterChannel:
    """Publishes dead-lettered events to their own channel and keeps an operator record of each."""

    def __init__(
        self,
        *,
        broker: BrokerBackend,
        repository: InMemoryDlqItemsRepository | SqliteDlqItemsRepository | None = None,
        retry_policy: RetryPolicy | None = None,
        store: JobStateStore | None = None,
        channel: str = DEAD_LETTER_CHANNEL,
    ) -> None:
        self.broker = broker
        self.repository = repository if repository is not None else InMemoryDlqItemsRepository()
        self.retry_policy = retry_policy
        self.store = store
        self.channel = channel

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).isoformat()

    def dead_letter(
        self,
        *,
        body: str,
        source_channel: str,
        error: BaseException,
        attempts: int,
        job_id: str | None = None,
        stage: str | None = None,
        event_type: str | None = None,
    ) -> dict[str, Any]:
        item = {
            "dlq_id": f"dlq_{uuid.uuid4().hex[:12]}",
            "job_id": job_id,
            "stage": stage,
            "event_type": event_type,
            "source_channel": source_channel,
            "attempts": int(attempts),
            "body": body,
            "status": "open",
            "created_at": self._utcnow_iso(),
            **_error_fields(error),
        }
        self.broker.publish(
            channel=self.channel,
            body=json.dumps(item, ensure_ascii=True, sort_keys=True),
        )
        self.repository.upsert(item=item)
        logger.error(
            "event_dead_lettered dlq_id=%s job_id=%s stage=%s event_type=%s attempts=%s code=%s",
            item["dlq_id"],
            job_id,
            stage,
            event_type,
            attempts,
            item["error_code"],
        )
        return item

    def list_items(self, *, job_id: str | None = None, status: str | None = None) -> list[dict[str, Any]]:
        return self.repository.list(job_id=job_id, status=status)

    def get_item(self, dlq_id: str) -> dict[str, Any]:
        item = self.repository.get(dlq_id=dlq_id)
        if item is None:
            raise ApiError(
                code="DLQ_ITEM_NOT_FOUND",
                message="dlq item not found",
                error_class="validation",
                retryable=False,
                http_status=404,
            )
        return item

    def _require_open(self, item: dict[str, Any], *, action: str) -> None:
        if item["status"] != "open":
            raise ApiError(
                code=f"DLQ_{action.upper()}_CONFLICT",
                message="dlq item is not open",
                error_class="business_rule",
                retryable=False,
                http_status=409,
            )

    def _require_live_job(self, item: dict[str, Any]) -> None:
        job_id = item.get("job_id")
        if self.store is None or not job_id:
            return
        job = self.store.get_job(job_id)
        if job is not None and job["status"] in TERMINAL_STATUSES:
            raise ApiError(
                code="DLQ_REQUEUE_JOB_TERMINAL",
                message=f"job {job_id} is {job['status']}; its events can no longer run",
                error_class="business_rule",
                retryable=False,
                http_status=409,
            )

    def requeue(self, dlq_id: str) -> dict[str, Any]:
        """Republish a dead-lettered event to its original channel.

        A dead-lettered stage event normally fails its job, and a terminal job
        never runs again, so requeueing is refused for items whose job is
        already terminal. Such items can only be discarded.
        """
        item = self.get_item(dlq_id)
        self._require_open(item, action="requeue")
        self._require_live_job(item)
        if self.retry_policy is not None and item.get("job_id") and item.get("stage"):
            self.retry_policy.forget(job_id=item["job_id"], stage=item["stage"])
        message = self.broker.publish(channel=item["source_channel"], body=item["body"])
        item["status"] = "requeued"
        item["requeued_message_id"] = message.message_id
        item["requeued_at"] = self._utcnow_iso()
        self.repository.upsert(item=item)
        logger.info(
            "dlq_requeued dlq_id=%s job_id=%s stage=%s channel=%s",
            dlq_id,
            item.get("job_id"),
            item.get("stage"),
            item["source_channel"],
        )
        return {"dlq_id": dlq_id, "status": "requeued", "message_id": message.message_id}

    def discard(self, dlq_id: str, *, reason: str, reviewer_id: str) -> dict[str, Any]:
        item = self.get_item(dlq_id)
        if not reason.strip() or not reviewer_id.strip():
            raise ApiError(
                code="APPROVAL_REQUIRED",
                message="discard requires reason and reviewer_id",
                error_class="business_rule",
                retryable=False,
                http_status=400,
            )
        self._require_open(item, action="discard")
        item["status"] = "discarded"
        item["discard_reason"] = reason.strip()
        item["reviewer_id"] = reviewer_id.strip()
        item["discarded_at"] = self._utcnow_iso()
        self.repository.upsert(item=item)
        logger.info("dlq_discarded dlq_id=%s job_id=%s reviewer_id=%s", dlq_id, item.get("job_id"), reviewer_id)
        return {"dlq_id": dlq_id, "status": "discarded"}

    def reset(self) -> None:
        self.repository.reset()


def create_dlq_repository_from_env(
    environ: Mapping[str, str] | None = None,
) -> InMemoryDlqItemsRepository | SqliteDlqItemsRepository:
    env = resolve_env(environ)
    backend = env.get("INFER_JOB_STORE_BACKEND", "memory").strip().lower()
    if backend == "sqlite":
        return SqliteDlqItemsRepository(env.get("INFER_JOB_STORE_SQLITE_PATH", ".runtime/infer_jobs.sqlite3"))
    return InMemoryDlqItemsRepository()
