"""Default retrieve / rerank / generate stages.

Retrieval runs over an in-memory corpus, reranking is a lightweight TF-IDF
scorer, and generation is a deterministic mock LLM: the same input always
produces the same output, which keeps pipelines reproducible end to end.
"""

from __future__ import annotations

import hashlib
import logging
import math
import re
from collections import Counter
from collections.abc import Mapping
from typing import Any

from inference_pipeline.errors import PermanentHandlerError
from inference_pipeline.saga import StageContext, StageSpec
from inference_pipeline.settings import env_int, resolve_env

logger = logging.getLogger(__name__)

MOCK_MODEL_NAME = "mock-llm-v1"
DEFAULT_SCORE_BASELINE = 0.7

DEFAULT_CORPUS: list[dict[str, Any]] = [
    {
        "doc_id": "doc_backoff",
        "text": "Retries use exponential backoff with jitter so that failing consumers do not hammer the broker.",
        "score_raw": 0.86,
    },
    {
        "doc_id": "doc_dlq",
        "text": "Events that exhaust their retry budget are moved to a dead letter queue for operator review.",
        "score_raw": 0.9,
    },
    {
        "doc_id": "doc_saga",
        "text": "A saga coordinates a multi stage transaction and compensates completed stages when a later stage fails.",
        "score_raw": 0.88,
    },
    {
        "doc_id": "doc_idempotency",
        "text": "Consumers must be idempotent because the broker delivers every event at least once.",
        "score_raw": 0.84,
    },
    {
        "doc_id": "doc_rerank",
        "text": "Reranking orders retrieved passages by relevance before they are packed into the prompt.",
        "score_raw": 0.8,
    },
    {
        "doc_id": "doc_storage",
        "text": "Large payloads are written to object storage and events carry a reference instead of the bytes.",
        "score_raw": 0.78,
    },
]

_TOKENIZE_RE = re.compile(r"[\u4e00-\u9fff\u3400-\u4dbf\uf900-\ufaff]|[a-zA-Z0-9]+")


def _tokenize(text: str) -> list[str]:
    return [t.lower() for t in _TOKENIZE_RE.findall(text)]


def _deterministic_float(seed: str, min_val: float = 0.0, max_val: float = 1.0) -> float:
    digest = hashlib.sha256(seed.encode("utf-8")).hexdigest()
    value = int(digest[:8], 16) / 0xFFFFFFFF
    return min_val + value * (max_val - min_val)


def retrieve_passages(
    query: str,
    *,
    corpus: list[dict[str, Any]] | None = None,
    top_k: int = 5,
) -> list[dict[str, Any]]:
    """Return corpus passages sharing at least one token with ``query``.

    When nothing matches a single generic passage is returned so that later
    stages always have context to work with.
    """
    docs = corpus if corpus is not None else DEFAULT_CORPUS
    query_tokens = set(_tokenize(query))
    matched: list[dict[str, Any]] = []
    for doc in docs:
        overlap = query_tokens & set(_tokenize(str(doc.get("text", ""))))
        if overlap:
            item = dict(doc)
            item["matched_terms"] = sorted(overlap)
            matched.append(item)
    matched.sort(key=lambda item: (-len(item["matched_terms"]), item["doc_id"]))
    if not matched:
        matched = [
            {
                "doc_id": f"doc_{hashlib.sha256(query.encode('utf-8')).hexdigest()[:12]}",
                "text": f"No indexed passage covers: {query[:40]}",
                "score_raw": DEFAULT_SCORE_BASELINE,
                "matched_terms": [],
            }
        ]
    return matched[: max(1, top_k)]


def rerank_items(query: str, items: list[dict[str, Any]], *, top_k: int = 0) -> list[dict[str, Any]]:
    """TF-IDF style reranker: ``score_rerank = 0.4 * tfidf + 0.6 * score_raw``."""
    if not items:
        return []
    query_tf = Counter(_tokenize(query))
    n_docs = len(items)
    doc_tokens_list = [_tokenize(str(item.get("text", ""))) for item in items]

    df: Counter[str] = Counter()
    for tokens in doc_tokens_list:
        df.update(set(tokens))
    max_possible = sum(q * (math.log((n_docs + 1) / 2) + 1.0) for q in query_tf.values())

    ranked: list[dict[str, Any]] = []
    for item, doc_tokens in zip(items, doc_tokens_list):
        tfidf_score = 0.0
        if doc_tokens and max_possible > 0:
            doc_tf = Counter(doc_tokens)
            score_sum = 0.0
            for term, q_count in query_tf.items():
                if term not in doc_tf:
                    continue
                tf = doc_tf[term] / len(doc_tokens)
                idf = math.log((n_docs + 1) / (df.get(term, 0) + 1)) + 1.0
                score_sum += q_count * tf * idf
            tfidf_score = score_sum / max_possible
        combined = 0.4 * tfidf_score + 0.6 * float(item.get("score_raw", 0.5))
        copied = dict(item)
        copied["score_rerank"] = round(min(1.0, combined), 4)
        ranked.append(copied)

    ranked.sort(key=lambda x: float(x["score_rerank"]), reverse=True)
    if top_k > 0:
        ranked = ranked[:top_k]
    return ranked


def build_prompt(query: str, items: list[dict[str, Any]]) -> str:
    lines = ["Answer the question using only the context below.", "", "Context:"]
    for index, item in enumerate(items, start=1):
        lines.append(f"[{index}] ({item.get('doc_id', 'unknown')}) {item.get('text', '')}")
    lines.extend(["", f"Question: {query}", "Answer:"])
    return "\n".join(lines)


def mock_generate(prompt: str, *, citations: list[str] | None = None) -> dict[str, Any]:
    """Deterministic stand-in for an LLM completion."""
    seed = hashlib.sha256(prompt.encode("utf-8")).hexdigest()
    cited = list(citations or [])
    if cited:
        text = f"Based on {', '.join(cited)}: " + prompt.rsplit("Question:", 1)[-1].split("\n", 1)[0].strip()
    else:
        text = "The available context does not answer the question."
    return {
        "model": MOCK_MODEL_NAME,
        "text": text,
        "citations": cited,
        "confidence": round(_deterministic_float(f"{seed}:confidence", 0.6, 0.95), 2),
        "prompt_tokens": len(_tokenize(prompt)),
        "completion_tokens": len(_tokenize(text)),
    }


def _require_query(context: StageContext) -> str:
    query = str(context.input.get("query") or "").strip()
    if not query:
        raise PermanentHandlerError(f"job {context.job_id} has no query", code="JOB_REQUEST_INVALID")
    return query


class DefaultStages:
    def __init__(self, *, corpus: list[dict[str, Any]] | None = None, retrieve_top_k: int = 5, rerank_top_k: int = 3) -> None:
        self.corpus = corpus
        self.retrieve_top_k = max(1, retrieve_top_k)
        self.rerank_top_k = max(0, rerank_top_k)

    def retrieve(self, context: StageContext) -> dict[str, Any]:
        query = _require_query(context)
        top_k = int(context.input.get("top_k") or self.retrieve_top_k)
        items = retrieve_passages(query, corpus=self.corpus, top_k=top_k)
        return {"query": query, "items": items}

    def rerank(self, context: StageContext) -> dict[str, Any]:
        query = _require_query(context)
        items = rerank_items(query, list(context.input.get("items") or []), top_k=self.rerank_top_k)
        return {"query": query, "items": items}

    def generate(self, context: StageContext) -> dict[str, Any]:
        query = _require_query(context)
        items = list(context.input.get("items") or [])
        prompt = build_prompt(query, items)
        completion = mock_generate(prompt, citations=[str(item.get("doc_id")) for item in items])
        return {"query": query, "answer": completion["text"], **completion}

    @staticmethod
    def doc_ids_receipt(result: Mapping[str, Any]) -> dict[str, Any]:
        return {"doc_ids": [str(item.get("doc_id")) for item in result.get("items") or []]}

    def release_context(self, context: StageContext) -> None:
        logger.info(
            "stage_context_released job_id=%s stage=%s doc_ids=%s",
            context.job_id,
            context.stage,
            ",".join(context.input.get("doc_ids") or []),
        )

    def specs(self) -> list[StageSpec]:
        return [
            StageSpec(name="retrieve", execute=self.retrieve, compensate=self.release_context, receipt=self.doc_ids_receipt),
            StageSpec(name="rerank", execute=self.rerank, compensate=self.release_context, receipt=self.doc_ids_receipt),
            StageSpec(name="generate", execute=self.generate),
        ]


def default_stage_specs(environ: Mapping[str, str] | None = None) -> list[StageSpec]:
    env = resolve_env(environ)
    stages = DefaultStages(
        retrieve_top_k=env_int(env, "RETRIEVE_TOP_K", default=5, minimum=1),
        rerank_top_k=env_int(env, "RERANK_TOP_K", default=3, minimum=0),
    )
    return stages.specs()
