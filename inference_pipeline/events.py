"""Event envelopes and their wire codec.

Every event travels as a JSON object::

    {"type": "PromptReady", "job_id": "job_...", "event_id": "evt_...",
     "schema_version": 1, "produced_at": "...", "stage": "generate",
     "payload": {...} | null, "payload_ref": "object://..." | null}

Exactly one of ``payload`` and ``payload_ref`` is set. Payloads larger than the
inline limit are written to object storage and carried by reference.
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from jsonschema import ValidationError, validate

from inference_pipeline.errors import PayloadTooLargeError, SchemaMismatchError
from inference_pipeline.object_storage import ObjectStorageBackend
from inference_pipeline.settings import env_int, resolve_env

CURRENT_SCHEMA_VERSION = 1
DEFAULT_INLINE_LIMIT_BYTES = 64 * 1024


class EventType(str, Enum):
    JOB_SUBMITTED = "JobSubmitted"
    STAGE_COMPLETED = "StageCompleted"
    PROMPT_READY = "PromptReady"
    INFERENCE_COMPLETED = "InferenceCompleted"
    JOB_FAILED = "JobFailed"

    @property
    def channel(self) -> str:
        return _CHANNELS[self]


_CHANNELS: dict[EventType, str] = {
    EventType.JOB_SUBMITTED: "jobs.submitted",
    EventType.STAGE_COMPLETED: "jobs.stage_completed",
    EventType.PROMPT_READY: "jobs.prompt_ready",
    EventType.INFERENCE_COMPLETED: "jobs.inference_completed",
    EventType.JOB_FAILED: "jobs.failed",
}

DEAD_LETTER_CHANNEL = "jobs.dead_letter"


ENVELOPE_SCHEMA_V1: dict[str, Any] = {
    "type": "object",
    "required": ["type", "job_id", "event_id", "schema_version", "produced_at"],
    "additionalProperties": False,
    "properties": {
        "type": {"enum": [t.value for t in EventType]},
        "job_id": {"type": "string", "minLength": 1},
        "event_id": {"type": "string", "minLength": 1},
        "schema_version": {"const": 1},
        "produced_at": {"type": "string", "minLength": 1},
        "stage": {"type": ["string", "null"]},
        "payload": {"type": ["object", "null"]},
        "payload_ref": {"type": ["string", "null"], "pattern": "^object://"},
    },
    "oneOf": [
        {
            "required": ["payload"],
            "properties": {"payload": {"type": "object"}, "payload_ref": {"type": "null"}},
        },
        {
            "required": ["payload_ref"],
            "properties": {"payload_ref": {"type": "string"}, "payload": {"type": "null"}},
        },
    ],
}

SUPPORTED_SCHEMAS: dict[int, dict[str, Any]] = {1: ENVELOPE_SCHEMA_V1}


@dataclass(frozen=True)
class Event:
    type: EventType
    job_id: str
    event_id: str
    produced_at: str
    schema_version: int = CURRENT_SCHEMA_VERSION
    stage: str | None = None
    payload: dict[str, Any] | None = None
    payload_ref: str | None = None

    @property
    def channel(self) -> str:
        return self.type.channel

    @property
    def is_reference(self) -> bool:
        return self.payload_ref is not None

    def as_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "job_id": self.job_id,
            "event_id": self.event_id,
            "schema_version": self.schema_version,
            "produced_at": self.produced_at,
            "stage": self.stage,
            "payload": self.payload,
            "payload_ref": self.payload_ref,
        }


def _canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, ensure_ascii=True, separators=(",", ":"))


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


class EventCodec:
    def __init__(
        self,
        *,
        storage: ObjectStorageBackend | None = None,
        inline_limit_bytes: int = DEFAULT_INLINE_LIMIT_BYTES,
    ) -> None:
        self.storage = storage
        self.inline_limit_bytes = max(1, int(inline_limit_bytes))

    def build_event(
        self,
        event_type: EventType,
        *,
        job_id: str,
        payload: Mapping[str, Any] | None = None,
        stage: str | None = None,
    ) -> Event:
        body = _canonical_json(dict(payload or {})).encode("utf-8")
        base = {
            "type": EventType(event_type),
            "job_id": job_id,
            "event_id": f"evt_{uuid.uuid4().hex[:12]}",
            "produced_at": _utcnow_iso(),
            "stage": stage,
        }
        if len(body) <= self.inline_limit_bytes:
            return Event(**base, payload=json.loads(body))
        if self.storage is None:
            raise PayloadTooLargeError(
                f"payload of {len(body)} bytes exceeds inline limit and no object storage is configured"
            )
        uri = self.storage.put(body, job_id=job_id)
        return Event(**base, payload_ref=uri)

    def encode(self, event: Event) -> str:
        if event.payload is not None:
            size = len(_canonical_json(event.payload).encode("utf-8"))
            if size > self.inline_limit_bytes:
                raise PayloadTooLargeError(
                    f"inline payload of {size} bytes exceeds limit {self.inline_limit_bytes}; pass it by reference"
                )
        raw = event.as_dict()
        schema = SUPPORTED_SCHEMAS.get(event.schema_version)
        if schema is None:
            raise SchemaMismatchError(f"unsupported schema_version: {event.schema_version!r}")
        try:
            validate(instance=raw, schema=schema)
        except ValidationError as exc:
            raise SchemaMismatchError(f"event does not match schema: {exc.message}") from exc
        return _canonical_json(raw)

    def decode(self, body: str | bytes) -> Event:
        try:
            raw = json.loads(body)
        except (TypeError, ValueError) as exc:
            raise SchemaMismatchError("event body is not valid json", code="EVENT_MALFORMED") from exc
        if not isinstance(raw, dict):
            raise SchemaMismatchError("event body must be a json object", code="EVENT_MALFORMED")
        version = raw.get("schema_version")
        schema = None
        if isinstance(version, int) and not isinstance(version, bool):
            schema = SUPPORTED_SCHEMAS.get(version)
        if schema is None:
            raise SchemaMismatchError(f"unsupported schema_version: {version!r}")
        try:
            validate(instance=raw, schema=schema)
        except ValidationError as exc:
            raise SchemaMismatchError(f"envelope invalid for schema_version {version}: {exc.message}") from exc
        return Event(
            type=EventType(raw["type"]),
            job_id=raw["job_id"],
            event_id=raw["event_id"],
            produced_at=raw["produced_at"],
            schema_version=version,
            stage=raw.get("stage"),
            payload=raw.get("payload"),
            payload_ref=raw.get("payload_ref"),
        )

    def resolve_payload(self, event: Event) -> dict[str, Any]:
        if event.payload_ref is None:
            return dict(event.payload or {})
        if self.storage is None:
            raise RuntimeError("object storage is required to resolve payload references")
        data = json.loads(self.storage.get(event.payload_ref))
        if not isinstance(data, dict):
            raise SchemaMismatchError("referenced payload must be a json object", code="EVENT_MALFORMED")
        return data

    def peek_job_id(self, body: str | bytes) -> str | None:
        """Best-effort job id of an undecodable body, for logging and dead-letter records."""
        try:
            raw = json.loads(body)
        except (TypeError, ValueError):
            return None
        if isinstance(raw, dict) and isinstance(raw.get("job_id"), str):
            return raw["job_id"]
        return None


def create_codec_from_env(
    *,
    storage: ObjectStorageBackend | None,
    environ: Mapping[str, str] | None = None,
) -> EventCodec:
    env = resolve_env(environ)
    limit = env_int(env, "EVENT_INLINE_PAYLOAD_LIMIT_BYTES", default=DEFAULT_INLINE_LIMIT_BYTES, minimum=1)
    return EventCodec(storage=storage, inline_limit_bytes=limit)
