from __future__ import annotations

import json

import pytest

from inference_pipeline.errors import PayloadTooLargeError, SchemaMismatchError
from inference_pipeline.events import Event, EventCodec, EventType, create_codec_from_env


def test_codec_decode_of_encoded_event_returns_equal_event():
    codec = EventCodec()
    event = codec.build_event(
        EventType.PROMPT_READY,
        job_id="job_1",
        payload={"query": "what is a saga", "items": [{"doc_id": "doc_1", "score": 0.5}]},
        stage="generate",
    )
    assert codec.decode(codec.encode(event)) == event


def test_codec_encodes_canonical_envelope_fields():
    codec = EventCodec()
    event = codec.build_event(EventType.JOB_SUBMITTED, job_id="job_1", payload={"query": "q"}, stage="retrieve")
    raw = json.loads(codec.encode(event))
    assert raw["type"] == "JobSubmitted"
    assert raw["schema_version"] == 1
    assert raw["payload"] == {"query": "q"}
    assert raw["payload_ref"] is None
    assert raw["event_id"].startswith("evt_")


def test_codec_rejects_unknown_schema_version():
    codec = EventCodec()
    event = codec.build_event(EventType.JOB_FAILED, job_id="job_1", payload={})
    raw = json.loads(codec.encode(event))
    raw["schema_version"] = 2
    with pytest.raises(SchemaMismatchError) as exc_info:
        codec.decode(json.dumps(raw))
    assert exc_info.value.code == "EVENT_SCHEMA_MISMATCH"
    assert exc_info.value.retryable is False


def test_codec_rejects_envelope_with_both_payload_and_ref():
    codec = EventCodec()
    event = codec.build_event(EventType.JOB_FAILED, job_id="job_1", payload={"a": 1})
    raw = json.loads(codec.encode(event))
    raw["payload_ref"] = "object://local/inference/jobs/job_1/payloads/x.json"
    with pytest.raises(SchemaMismatchError):
        codec.decode(json.dumps(raw))


def test_codec_rejects_unknown_fields_and_types():
    codec = EventCodec()
    event = codec.build_event(EventType.JOB_FAILED, job_id="job_1", payload={})
    raw = json.loads(codec.encode(event))
    with pytest.raises(SchemaMismatchError):
        codec.decode(json.dumps({**raw, "tenant_id": "t"}))
    with pytest.raises(SchemaMismatchError):
        codec.decode(json.dumps({**raw, "type": "JobExploded"}))


@pytest.mark.parametrize("body", ["not json", "[1, 2]", ""])
def test_codec_rejects_malformed_bodies(body):
    with pytest.raises(SchemaMismatchError) as exc_info:
        EventCodec().decode(body)
    assert exc_info.value.code in {"EVENT_MALFORMED", "EVENT_SCHEMA_MISMATCH"}


def test_codec_offloads_large_payload_to_object_storage(storage):
    codec = EventCodec(storage=storage, inline_limit_bytes=128)
    payload = {"text": "x" * 1024}
    event = codec.build_event(EventType.INFERENCE_COMPLETED, job_id="job_big", payload=payload)

    assert event.payload is None
    assert event.is_reference
    assert event.payload_ref.startswith("object://local/inference/jobs/job_big/payloads/payload-")
    decoded = codec.decode(codec.encode(event))
    assert codec.resolve_payload(decoded) == payload


def test_codec_without_storage_refuses_large_payload():
    codec = EventCodec(inline_limit_bytes=16)
    with pytest.raises(PayloadTooLargeError):
        codec.build_event(EventType.PROMPT_READY, job_id="job_1", payload={"text": "y" * 100})


def test_codec_refuses_to_encode_oversized_inline_payload():
    codec = EventCodec(inline_limit_bytes=16)
    event = Event(
        type=EventType.PROMPT_READY,
        job_id="job_1",
        event_id="evt_manual",
        produced_at="2026-01-01T00:00:00+00:00",
        payload={"text": "y" * 100},
    )
    with pytest.raises(PayloadTooLargeError) as exc_info:
        codec.encode(event)
    assert exc_info.value.http_status == 413


def test_codec_peek_job_id_is_best_effort():
    codec = EventCodec()
    assert codec.peek_job_id('{"job_id": "job_x", "schema_version": 9}') == "job_x"
    assert codec.peek_job_id("garbage") is None


def test_codec_reads_inline_limit_from_env():
    codec = create_codec_from_env(storage=None, environ={"EVENT_INLINE_PAYLOAD_LIMIT_BYTES": "2048"})
    assert codec.inline_limit_bytes == 2048


def test_event_types_map_to_distinct_channels():
    channels = {event_type.channel for event_type in EventType}
    assert len(channels) == len(EventType)
    assert EventType.JOB_SUBMITTED.channel == "jobs.submitted"
