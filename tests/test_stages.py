from __future__ import annotations

import pytest

from inference_pipeline.errors import PermanentHandlerError
from inference_pipeline.saga import StageContext
from inference_pipeline.stages import (
    MOCK_MODEL_NAME,
    DefaultStages,
    build_prompt,
    default_stage_specs,
    mock_generate,
    rerank_items,
    retrieve_passages,
)


def _ctx(stage: str, payload: dict) -> StageContext:
    return StageContext(job_id="job_1", stage=stage, input=payload, job={})


def test_retrieve_prefers_passages_with_more_matching_terms():
    items = retrieve_passages("saga compensates failed stage", top_k=2)
    assert items[0]["doc_id"] == "doc_saga"
    assert "compensates" in items[0]["matched_terms"]
    assert len(items) <= 2


def test_retrieve_falls_back_to_a_placeholder_passage():
    items = retrieve_passages("zzz qqq")
    assert len(items) == 1
    assert items[0]["matched_terms"] == []
    assert items[0]["doc_id"].startswith("doc_")


def test_retrieve_tokenizes_cjk_characters():
    corpus = [{"doc_id": "doc_cn", "text": "重试策略", "score_raw": 0.9}]
    items = retrieve_passages("重试", corpus=corpus)
    assert items[0]["doc_id"] == "doc_cn"


def test_rerank_orders_by_combined_score_and_respects_top_k():
    items = [
        {"doc_id": "a", "text": "nothing relevant here", "score_raw": 0.5},
        {"doc_id": "b", "text": "retry backoff with jitter", "score_raw": 0.5},
        {"doc_id": "c", "text": "retry budget", "score_raw": 0.55},
    ]
    ranked = rerank_items("retry backoff jitter", items)
    assert [item["doc_id"] for item in ranked][0] == "b"
    assert ranked[-1]["doc_id"] == "a"
    assert ranked[-1]["score_rerank"] == 0.3
    assert all(0.0 <= item["score_rerank"] <= 1.0 for item in ranked)
    assert len(rerank_items("retry", items, top_k=1)) == 1
    assert rerank_items("retry", []) == []


def test_build_prompt_numbers_context_passages():
    prompt = build_prompt("what is a saga?", [{"doc_id": "doc_saga", "text": "A saga coordinates stages."}])
    assert "[1] (doc_saga) A saga coordinates stages." in prompt
    assert prompt.endswith("Question: what is a saga?\nAnswer:")


def test_mock_generate_is_deterministic():
    prompt = build_prompt("q", [{"doc_id": "d1", "text": "t"}])
    first = mock_generate(prompt, citations=["d1"])
    assert first == mock_generate(prompt, citations=["d1"])
    assert first["model"] == MOCK_MODEL_NAME
    assert first["text"] == "Based on d1: q"
    assert 0.6 <= first["confidence"] <= 0.95
    assert mock_generate(prompt)["citations"] == []


def test_default_stages_chain_retrieve_rerank_generate():
    stages = DefaultStages(rerank_top_k=2)
    retrieved = stages.retrieve(_ctx("retrieve", {"query": "broker retry backoff"}))
    reranked = stages.rerank(_ctx("rerank", retrieved))
    generated = stages.generate(_ctx("generate", reranked))

    assert len(reranked["items"]) <= 2
    assert generated["query"] == "broker retry backoff"
    assert generated["answer"] == generated["text"]
    assert generated["citations"] == [item["doc_id"] for item in reranked["items"]]
    assert DefaultStages.doc_ids_receipt(reranked) == {"doc_ids": generated["citations"]}


def test_retrieve_and_rerank_keep_doc_ids_for_their_compensators():
    specs = {spec.name: spec for spec in DefaultStages().specs()}
    assert specs["generate"].receipt is None
    assert specs["generate"].compensate is None
    receipt = specs["retrieve"].receipt({"items": [{"doc_id": "doc_dlq", "text": "long passage"}]})
    assert receipt == {"doc_ids": ["doc_dlq"]}
    assert specs["retrieve"].receipt({}) == {"doc_ids": []}


def test_retrieve_honours_request_top_k():
    stages = DefaultStages(retrieve_top_k=5)
    result = stages.retrieve(_ctx("retrieve", {"query": "the broker event stage", "top_k": 1}))
    assert len(result["items"]) == 1


def test_stage_without_query_fails_permanently():
    with pytest.raises(PermanentHandlerError) as exc_info:
        DefaultStages().retrieve(_ctx("retrieve", {"query": "   "}))
    assert exc_info.value.code == "JOB_REQUEST_INVALID"
    assert exc_info.value.retryable is False


def test_default_stage_specs_read_top_k_from_env():
    specs = default_stage_specs({"RETRIEVE_TOP_K": "2", "RERANK_TOP_K": "1"})
    assert [spec.name for spec in specs] == ["retrieve", "rerank", "generate"]
    assert specs[0].compensate is not None
    assert specs[2].compensate is None
    owner = specs[0].execute.__self__
    assert owner.retrieve_top_k == 2
    assert owner.rerank_top_k == 1
