from __future__ import annotations

from fastapi.testclient import TestClient

from conftest import fast_retry_policy
from inference_pipeline.api import create_app
from inference_pipeline.errors import PermanentHandlerError
from inference_pipeline.events import EventType
from inference_pipeline.runtime import build_runtime
from inference_pipeline.saga import StageSpec


def _failing_client():
    def broken(ctx):
        raise PermanentHandlerError("context window exceeded", code="PROMPT_TOO_LONG")

    rt = build_runtime(
        stages=[StageSpec(name="retrieve", execute=lambda ctx: {"query": "q"}), StageSpec(name="generate", execute=broken)],
        retry_policy=fast_retry_policy(),
        poll_interval_ms=5,
    )
    return rt, TestClient(create_app(runtime=rt))


def test_healthz_returns_success_envelope(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["data"] == {"status": "ok"}
    assert body["meta"]["trace_id"] == resp.headers["x-trace-id"]


def test_trace_id_header_is_echoed(client):
    resp = client.get("/healthz", headers={"x-trace-id": "trace_abc"})
    assert resp.headers["x-trace-id"] == "trace_abc"
    assert resp.json()["meta"]["trace_id"] == "trace_abc"


def test_submit_then_process_reports_completed_status(client, runtime):
    resp = client.post("/api/v1/jobs", json={"query": "what is a dead letter queue", "top_k": 3})
    assert resp.status_code == 202
    data = resp.json()["data"]
    assert data["status"] == "pending"
    assert data["stage"] == "retrieve"

    runtime.dispatcher.run_until_idle()

    status = client.get(f"/api/v1/jobs/{data['job_id']}")
    assert status.status_code == 200
    assert status.json()["data"] == {"job_id": data["job_id"], "stage": "generate", "status": "completed"}
    assert runtime.store.require_job(data["job_id"])["request"] == {"query": "what is a dead letter queue", "top_k": 3, "metadata": {}}


def test_submit_with_known_job_id_is_idempotent(client, runtime):
    first = client.post("/api/v1/jobs", json={"query": "q", "job_id": "job_fixed"})
    second = client.post("/api/v1/jobs", json={"query": "other", "job_id": "job_fixed"})
    assert first.status_code == 202
    assert second.status_code == 202
    assert second.json()["data"]["job_id"] == "job_fixed"
    assert runtime.bus.pending_count(EventType.JOB_SUBMITTED) == 1
    assert runtime.store.require_job("job_fixed")["request"]["query"] == "q"


def test_submit_rejects_invalid_payload(client):
    resp = client.post("/api/v1/jobs", json={"query": ""})
    assert resp.status_code == 400
    body = resp.json()
    assert body["success"] is False
    assert body["error"]["code"] == "REQ_VALIDATION_FAILED"
    assert body["error"]["class"] == "validation"


def test_unknown_job_returns_not_found_envelope(client):
    resp = client.get("/api/v1/jobs/job_missing")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "JOB_NOT_FOUND"


def test_unknown_route_returns_not_found_envelope(client):
    resp = client.get("/api/v1/nothing-here")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "REQ_NOT_FOUND"


def test_cancel_pending_job_then_conflict_on_repeat(client, runtime):
    job_id = client.post("/api/v1/jobs", json={"query": "q"}).json()["data"]["job_id"]

    resp = client.post(f"/api/v1/jobs/{job_id}/cancel")
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "cancelled"

    again = client.post(f"/api/v1/jobs/{job_id}/cancel")
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "JOB_CANCEL_CONFLICT"

    runtime.dispatcher.run_until_idle()
    assert client.get(f"/api/v1/jobs/{job_id}").json()["data"]["status"] == "cancelled"


def test_dlq_list_requeue_and_discard_flow():
    rt, client = _failing_client()
    job_a = client.post("/api/v1/jobs", json={"query": "a"}).json()["data"]["job_id"]
    job_b = client.post("/api/v1/jobs", json={"query": "b"}).json()["data"]["job_id"]
    rt.dispatcher.run_until_idle()

    listed = client.get("/api/v1/dlq/items", params={"status": "open"}).json()["data"]
    assert listed["total"] == 2
    assert {item["error_code"] for item in listed["items"]} == {"PROMPT_TOO_LONG"}
    assert client.get(f"/api/v1/jobs/{job_a}").json()["data"]["status"] == "failed"

    item_a = client.get("/api/v1/dlq/items", params={"job_id": job_a}).json()["data"]["items"][0]
    item_b = client.get("/api/v1/dlq/items", params={"job_id": job_b}).json()["data"]["items"][0]

    # both jobs failed, so their items can only be discarded
    refused = client.post(f"/api/v1/dlq/items/{item_a['dlq_id']}/requeue")
    assert refused.status_code == 409
    assert refused.json()["error"]["code"] == "DLQ_REQUEUE_JOB_TERMINAL"
    still_open = client.get("/api/v1/dlq/items", params={"job_id": job_a, "status": "open"}).json()["data"]
    assert still_open["total"] == 1

    missing_approval = client.post(f"/api/v1/dlq/items/{item_b['dlq_id']}/discard", json={"reason": "bad prompt"})
    assert missing_approval.status_code == 400
    assert missing_approval.json()["error"]["code"] == "APPROVAL_REQUIRED"

    discarded = client.post(
        f"/api/v1/dlq/items/{item_b['dlq_id']}/discard",
        json={"reason": "bad prompt", "reviewer_id": "ops_1"},
    )
    assert discarded.status_code == 200
    assert discarded.json()["data"] == {"dlq_id": item_b["dlq_id"], "status": "discarded"}
    conflict = client.post(f"/api/v1/dlq/items/{item_b['dlq_id']}/requeue")
    assert conflict.status_code == 409
    assert conflict.json()["error"]["code"] == "DLQ_REQUEUE_CONFLICT"

    not_found = client.post("/api/v1/dlq/items/dlq_missing/requeue")
    assert not_found.status_code == 404
    assert not_found.json()["error"]["code"] == "DLQ_ITEM_NOT_FOUND"
    rt.close()
