"""
Hybrid Retrieval
================
Decides per query whether to run lexical (BM25-style) search, semantic
(vector) search, or both, runs the selected backends concurrently and merges
their hits into one ranked list.

Routing decision — route_query() is pure and deterministic:

    base score       from the search context (lexical, semantic)
                       recommendation   1 / 3
                       product_search   2 / 2
                       order_inquiry    3 / 1
                       ticket_lookup    2 / 1
                       general_support  2 / 2
    + 1 semantic     per vague/similarity phrase ("similar to", "recommend", ...)
    + 1 lexical      per identifier-like pattern ("#1234", "sku: X", "exact", ...)
    + 1 lexical      query of ≤ 2 words, or any digit in the query
    + 1 semantic     query of ≥ 5 words

  A strategy runs when its score is positive and at least half of the top
  score. If both scores are zero, lexical runs alone (semantic alone for the
  recommendation context).

Execution — asyncio.gather(return_exceptions=True): one backend failing or
timing out is logged and recorded in failed_sources; the other's hits are
still returned.

Merge — hits are deduplicated by (kind, id). A hit found by both backends
scores lexical*bm25_weight + semantic*vector_weight and is marked "hybrid";
a single-backend hit scores its own score times that backend's weight.
Semantic hits under the threshold are dropped before merging. The result is
sorted by descending score (stable) and cut to the limit.
"""
import asyncio
import logging
import re
import time
from typing import Literal, Optional, Protocol, Sequence

from pydantic import BaseModel, Field

from .errors import call_with_timeout

logger = logging.getLogger(__name__)

SearchContext = Literal[
    "recommendation", "product_search", "order_inquiry", "ticket_lookup", "general_support",
]
Strategy = Literal["lexical", "semantic"]
RoutingLabel = Literal[
    "lexical-only", "semantic-only", "hybrid-favor-lexical", "hybrid-favor-semantic", "empty-query",
]

# (lexical, semantic) base scores
CONTEXT_SCORES: dict[str, tuple[int, int]] = {
    "recommendation":  (1, 3),
    "product_search":  (2, 2),
    "order_inquiry":   (3, 1),
    "ticket_lookup":   (2, 1),
    "general_support": (2, 2),
}

SEMANTIC_PATTERNS: tuple[re.Pattern, ...] = tuple(re.compile(p, re.IGNORECASE) for p in (
    r"similar to",
    r"kind of",
    r"\blike\b",
    r"recommend",
    r"something",
    r"what'?s around",
    r"\bideas?\b",
    r"looking for",
))

LEXICAL_PATTERNS: tuple[re.Pattern, ...] = tuple(re.compile(p, re.IGNORECASE) for p in (
    r"#\d+",
    r"\b\d{4}[-\s]?\d{4}\b",
    r"\bexact(ly)?\b",
    r"\bspecific\b",
    r"\bmodel\s+\w+",
    r"\bsku[:\s]+\w+",
))

_DIGIT = re.compile(r"\d")


class SearchHit(BaseModel):
    id: str
    kind: str = "document"                 # product | order | ticket | ...
    title: str = ""
    content: str = ""
    score: float
    match_type: Literal["lexical", "semantic", "hybrid"] = "lexical"
    metadata: dict = Field(default_factory=dict)


class RoutingDecision(BaseModel):
    strategies: list[Strategy]
    lexical_score: float
    semantic_score: float
    label: RoutingLabel
    reasons: list[str] = Field(default_factory=list)


class SearchOptions(BaseModel):
    limit: int = Field(default=20, ge=1)
    vector_weight: float = Field(default=0.5, ge=0.0)
    bm25_weight: float = Field(default=0.5, ge=0.0)
    threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    owner_email: Optional[str] = None
    timeout_seconds: Optional[float] = 5.0


class SearchResponse(BaseModel):
    query: str
    results: list[SearchHit] = Field(default_factory=list)
    routing_decision: RoutingDecision
    used_sources: list[Strategy] = Field(default_factory=list)
    failed_sources: list[Strategy] = Field(default_factory=list)
    lexical_results: list[SearchHit] = Field(default_factory=list)
    semantic_results: list[SearchHit] = Field(default_factory=list)
    search_time_ms: float = 0.0


class SearchBackend(Protocol):
    async def search(
        self, query: str, *, limit: int, owner_email: Optional[str] = None,
    ) -> list[SearchHit]: ...


# ── Routing decision ────────────────────────────────────────────────────────

def route_query(query: str, context: Optional[str] = None) -> RoutingDecision:
    """Score both strategies for ``query`` and select one or both."""
    lexical, semantic = CONTEXT_SCORES.get(context or "", (0, 0))
    reasons = [f"context={context}"] if context in CONTEXT_SCORES else []

    for pattern in SEMANTIC_PATTERNS:
        if pattern.search(query):
            semantic += 1
            reasons.append(f"semantic pattern {pattern.pattern!r}")
    for pattern in LEXICAL_PATTERNS:
        if pattern.search(query):
            lexical += 1
            reasons.append(f"lexical pattern {pattern.pattern!r}")

    words = len(query.split())
    if words <= 2:
        lexical += 1
        reasons.append("short query")
    elif words >= 5:
        semantic += 1
        reasons.append("long query")
    if _DIGIT.search(query):
        lexical += 1
        reasons.append("contains digits")

    top = max(lexical, semantic)
    if top == 0:
        only: Strategy = "semantic" if context == "recommendation" else "lexical"
        return RoutingDecision(
            strategies=[only], lexical_score=0, semantic_score=0,
            label=f"{only}-only", reasons=reasons + ["no signal, default strategy"],
        )

    strategies: list[Strategy] = [
        name for name, score in (("lexical", lexical), ("semantic", semantic))
        if score > 0 and score >= top / 2
    ]
    if len(strategies) == 2:
        label = "hybrid-favor-semantic" if semantic > lexical else "hybrid-favor-lexical"
    else:
        label = f"{strategies[0]}-only"

    return RoutingDecision(
        strategies=strategies,
        lexical_score=lexical,
        semantic_score=semantic,
        label=label,
        reasons=reasons,
    )


# ── Merge ───────────────────────────────────────────────────────────────────

def _best_by_identity(hits: Sequence[SearchHit]) -> dict[tuple[str, str], SearchHit]:
    best: dict[tuple[str, str], SearchHit] = {}
    for hit in hits:
        key = (hit.kind, hit.id)
        if key not in best or hit.score > best[key].score:
            best[key] = hit
    return best


def merge_results(
    lexical: Sequence[SearchHit],
    semantic: Sequence[SearchHit],
    *,
    bm25_weight: float = 0.5,
    vector_weight: float = 0.5,
    threshold: float = 0.5,
    limit: int = 20,
) -> list[SearchHit]:
    lexical_by_id = _best_by_identity(lexical)
    semantic_by_id = _best_by_identity([h for h in semantic if h.score >= threshold])

    merged: list[SearchHit] = []
    for key, hit in lexical_by_id.items():
        other = semantic_by_id.get(key)
        if other is None:
            merged.append(hit.model_copy(update={
                "score": hit.score * bm25_weight, "match_type": "lexical",
            }))
        else:
            merged.append(hit.model_copy(update={
                "score": hit.score * bm25_weight + other.score * vector_weight,
                "match_type": "hybrid",
                "metadata": {**other.metadata, **hit.metadata},
            }))
    for key, hit in semantic_by_id.items():
        if key not in lexical_by_id:
            merged.append(hit.model_copy(update={
                "score": hit.score * vector_weight, "match_type": "semantic",
            }))

    merged.sort(key=lambda h: h.score, reverse=True)
    return merged[:limit]


# ── Retriever ───────────────────────────────────────────────────────────────

class HybridRetriever:
    """
    Runs route_query(), the selected backends and merge_results().

    A backend left as None counts as a failed source when selected.
    """

    def __init__(
        self,
        lexical: Optional[SearchBackend] = None,
        semantic: Optional[SearchBackend] = None,
    ):
        self._backends: dict[str, Optional[SearchBackend]] = {
            "lexical": lexical, "semantic": semantic,
        }

    async def _run(self, strategy: str, query: str, options: SearchOptions) -> list[SearchHit]:
        backend = self._backends[strategy]
        if backend is None:
            raise LookupError(f"no {strategy} backend configured")
        return await call_with_timeout(
            backend.search(query, limit=options.limit, owner_email=options.owner_email),
            options.timeout_seconds,
            f"search:{strategy}",
        )

    async def search(
        self,
        query: str,
        context: Optional[str] = None,
        options: Optional[SearchOptions] = None,
    ) -> SearchResponse:
        options = options or SearchOptions()
        started = time.perf_counter()

        if not query or not query.strip():
            return SearchResponse(
                query=query or "",
                routing_decision=RoutingDecision(
                    strategies=[], lexical_score=0, semantic_score=0,
                    label="empty-query", reasons=["empty query"],
                ),
            )

        decision = route_query(query, context)
        logger.info(
            "[retrieval] query=%r context=%s decision=%s (lexical=%s semantic=%s)",
            query, context, decision.label, decision.lexical_score, decision.semantic_score,
        )

        outcomes = await asyncio.gather(
            *(self._run(strategy, query, options) for strategy in decision.strategies),
            return_exceptions=True,
        )

        hits: dict[str, list[SearchHit]] = {"lexical": [], "semantic": []}
        used: list[Strategy] = []
        failed: list[Strategy] = []
        for strategy, outcome in zip(decision.strategies, outcomes):
            if isinstance(outcome, Exception):
                logger.warning("[retrieval] %s search failed: %s", strategy, outcome)
                failed.append(strategy)
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            hits[strategy] = list(outcome)
            used.append(strategy)

        results = merge_results(
            hits["lexical"],
            hits["semantic"],
            bm25_weight=options.bm25_weight,
            vector_weight=options.vector_weight,
            threshold=options.threshold,
            limit=options.limit,
        )
        elapsed = (time.perf_counter() - started) * 1000
        logger.info(
            "[retrieval] %d results (lexical=%d semantic=%d failed=%s) in %.1f ms",
            len(results), len(hits["lexical"]), len(hits["semantic"]), failed, elapsed,
        )

        return SearchResponse(
            query=query,
            results=results,
            routing_decision=decision,
            used_sources=used,
            failed_sources=failed,
            lexical_results=hits["lexical"],
            semantic_results=hits["semantic"],
            search_time_ms=elapsed,
        )
