"""Self-curating insight memory.

Writes pass through a quality gate and a similarity-based dedup check before
anything is persisted; reads run a vector query followed by a context rerank.
Metrics and usage counters are maintained as background side effects.

The dedup check and the insert are not transactional: two concurrent
``add_insight`` calls with near-identical content can both miss each other
and store two records.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from datetime import date, datetime, timezone
from typing import Any

from .catalog import ToolCatalog
from .embeddings import BedrockEmbeddingEngine, EmbeddingEngine
from .judge import Judge
from .metrics import MetricsStore
from .models import (
    AddInsightResult,
    Insight,
    InsightMetadata,
    InsightStatus,
    LearningMetrics,
    QueryPattern,
    RetrievalContext,
    ToolMetrics,
)
from .storage import InsightStore

logger = logging.getLogger(__name__)

DEDUP_THRESHOLD = 0.95
RELEVANCE_CUTOFF = 0.6
TOOL_FEEDBACK = "tool_feedback"
TOOL_USAGE = "tool_usage"

_METADATA_FIELDS = set(InsightMetadata.model_fields) - {
    "created_at", "updated_at", "last_used", "use_count", "confidence", "validated_by", "extra",
}


class InsightMemoryError(Exception):
    """Base class for insight memory errors."""


class InsightNotFound(InsightMemoryError):
    """No insight exists with the given id."""


class ToolNotFound(InsightMemoryError):
    """No catalog tool exists with the given id."""


def _split_metadata(metadata: dict[str, Any] | None) -> dict[str, Any]:
    """Known metadata keys become fields; anything else is kept under ``extra``."""
    metadata = dict(metadata or {})
    known = {k: metadata.pop(k) for k in list(metadata) if k in _METADATA_FIELDS}
    known["extra"] = metadata
    return known


async def rerank_by_context(
    judge: Judge,
    insights: list[Insight],
    query: str,
    context: RetrievalContext | None,
) -> list[Insight]:
    """Keep insights the judge scores above the relevance cutoff, best first.

    Raises whatever the judge raises; callers decide how to degrade.
    """
    rankings = await judge.rerank([i.content for i in insights], query, context)
    ranked = [
        insights[r.index - 1].model_copy(update={"relevance": r.relevance, "relevance_reason": r.reason})
        for r in rankings
        if r.relevance > RELEVANCE_CUTOFF
    ]
    ranked.sort(key=lambda i: i.relevance, reverse=True)
    return ranked


class InsightMemory:
    """Owns the insight collection: ingestion, retrieval and maintenance."""

    def __init__(
        self,
        store: InsightStore,
        embeddings: EmbeddingEngine | BedrockEmbeddingEngine,
        judge: Judge,
        metrics: MetricsStore | None = None,
        dedup_threshold: float = DEDUP_THRESHOLD,
        catalog: ToolCatalog | None = None,
    ):
        self.store = store
        self.embeddings = embeddings
        self.judge = judge
        self.metrics = metrics
        self.dedup_threshold = dedup_threshold
        self.catalog = catalog
        self._background: set[asyncio.Task] = set()

    async def _embed(self, text: str):
        return await asyncio.to_thread(self.embeddings.embed, text)

    def _spawn(self, coro: Coroutine, what: str) -> None:
        """Run a best-effort side effect without blocking the caller."""

        async def _guarded():
            try:
                await coro
            except Exception:
                logger.exception("Background %s failed", what)

        task = asyncio.create_task(_guarded())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Wait for outstanding background side effects."""
        while self._background:
            await asyncio.gather(*list(self._background))

    async def add_insight(
        self, content: str, type: str, metadata: dict[str, Any] | None = None
    ) -> AddInsightResult:
        content = (content or "").strip()
        type = (type or "").strip()
        if not content or not type:
            return AddInsightResult(
                status=InsightStatus.REJECTED, reason="Insight content and type are required"
            )

        try:
            verdict = await self.judge.check_quality(content, type)
        except Exception as exc:
            logger.warning("Quality check failed, rejecting insight: %s", exc)
            return AddInsightResult(status=InsightStatus.REJECTED, reason=f"Quality check failed: {exc}")
        if not verdict.is_qualified:
            logger.info("Insight rejected due to quality: %s", verdict.reason)
            return AddInsightResult(status=InsightStatus.REJECTED, reason=verdict.reason)

        similar = await self.find_similar(content)
        if similar is not None:
            await self.store.increment_usage([similar.id])
            existing = await self.store.get(similar.id)
            logger.info("Insight folded into near-duplicate %s", similar.id)
            return AddInsightResult(
                status=InsightStatus.DUPLICATE,
                insight=existing.model_copy(update={"score": similar.score}) if existing else similar,
            )

        fields = _split_metadata(metadata)
        text_for_embedding = " ".join([content, *fields.get("tags", [])])
        embedding = await self._embed(text_for_embedding)
        insight = Insight(
            content=content,
            type=type,
            metadata=InsightMetadata(**fields, confidence=verdict.confidence),
        )
        stored = await self.store.insert(insight, embedding)
        if self.metrics is not None:
            self._spawn(self.metrics.record_insight(stored), "metrics update")
        return AddInsightResult(status=InsightStatus.CREATED, insight=stored)

    async def find_similar(self, content: str, threshold: float | None = None) -> Insight | None:
        """The nearest stored insight if its similarity reaches the dedup threshold."""
        threshold = self.dedup_threshold if threshold is None else threshold
        embedding = await self._embed(content)
        hits = await self.store.vector_search(embedding, num_candidates=5, limit=1)
        if hits and hits[0][1] >= threshold:
            insight, score = hits[0]
            return insight.model_copy(update={"score": score})
        return None

    async def find_relevant(
        self,
        query: str,
        context: RetrievalContext | None = None,
        limit: int = 3,
    ) -> list[Insight]:
        embedding = await self._embed(query)
        hits = await self.store.vector_search(
            embedding, num_candidates=max(limit * 2, 10), limit=max(limit * 2, 10)
        )
        candidates = [insight.model_copy(update={"score": score}) for insight, score in hits]
        if not candidates:
            return []

        ranked = candidates
        if context is not None and not context.is_empty():
            try:
                ranked = await rerank_by_context(self.judge, candidates, query, context)
            except Exception as exc:
                logger.warning("Context rerank failed, using vector order: %s", exc)

        top = ranked[:limit]
        if top:
            self._spawn(self.store.increment_usage([i.id for i in top]), "usage tracking")
        return top

    async def summarize(self, query: str) -> str | None:
        """Condense the insights relevant to a query into a few key points.

        Returns None when nothing relevant is stored. If the judge cannot
        summarize, the formatted insight list is returned as is.
        """
        insights = await self.find_relevant(query, limit=5)
        if not insights:
            return None
        text = "\n".join(f"- {i.content} (Relevance: {i.score or 0.0:.2f})" for i in insights)
        try:
            return await self.judge.summarize(text)
        except Exception as exc:
            logger.warning("Summarization failed, returning raw insights: %s", exc)
            return text

    async def get(self, insight_id: str) -> Insight:
        insight = await self.store.get(insight_id)
        if insight is None:
            raise InsightNotFound(insight_id)
        return insight

    async def update(self, insight_id: str, content: str, type: str) -> Insight:
        """Replace content and type and re-embed. Bypasses the quality gate and dedup."""
        embedding = await self._embed(content)
        updated = await self.store.replace_content(insight_id, content, type, embedding)
        if updated is None:
            raise InsightNotFound(insight_id)
        return updated

    async def delete(self, insight_id: str) -> None:
        if not await self.store.delete(insight_id):
            raise InsightNotFound(insight_id)

    async def list_all(self, type: str | None = None, limit: int | None = None) -> list[Insight]:
        return await self.store.list_all(type=type, limit=limit)

    async def add_feedback(self, tool_id: str, success: bool, comment: str = "") -> AddInsightResult:
        content = comment or (
            f"Tool {tool_id} was {'successful' if success else 'unsuccessful'} for its intended use."
        )
        return await self.add_insight(
            content,
            TOOL_FEEDBACK,
            {
                "tool_id": tool_id,
                "success": success,
                "related_tools": [tool_id],
                "tags": ["feedback", "positive" if success else "negative"],
            },
        )

    async def record_tool_usage(
        self, tool_id: str, query_context: str, was_recommended: bool = False
    ) -> AddInsightResult:
        return await self.add_insight(
            f"Tool {tool_id} was used in research: {query_context}",
            TOOL_USAGE,
            {
                "tool_id": tool_id,
                "query_context": query_context,
                "related_tools": [tool_id],
                "was_recommended": was_recommended,
            },
        )

    async def tool_metrics(self, tool_id: str) -> ToolMetrics:
        if self.metrics is None:
            return ToolMetrics(tool_id=tool_id)
        return await self.metrics.tool_metrics(tool_id)

    async def learning_metrics(self, day: date | None = None) -> LearningMetrics | None:
        if self.metrics is None:
            return None
        return await self.metrics.learning_metrics(day or datetime.now(timezone.utc).date())

    async def rebuild_metrics(self) -> int:
        if self.metrics is None:
            return 0
        return await self.metrics.rebuild(await self.store.list_all())

    async def similar_query_patterns(
        self, query: str, num_candidates: int = 10, limit: int = 5
    ) -> list[QueryPattern]:
        """Tools previously used for queries like this one, most similar first."""
        embedding = await self._embed(query)
        hits = await self.store.vector_search(
            embedding, num_candidates=num_candidates, limit=limit, type=TOOL_USAGE
        )
        grouped: dict[str, list[tuple[Insight, float]]] = {}
        for insight, score in hits:
            if insight.metadata.tool_id:
                grouped.setdefault(insight.metadata.tool_id, []).append((insight, score))

        patterns = [
            QueryPattern(
                tool_id=tool_id,
                query_contexts=[i.metadata.query_context for i, _ in group],
                use_count=len(group),
                average_score=sum(s for _, s in group) / len(group),
            )
            for tool_id, group in grouped.items()
        ]
        patterns.sort(key=lambda p: p.average_score, reverse=True)
        return patterns

    async def tool_insights(self, tool_id: str, limit: int = 5) -> list[Insight]:
        """Insights relevant to a catalog tool, found by its name and description."""
        if self.catalog is None:
            raise InsightMemoryError("No tool catalog configured")
        tool = await self.catalog.get(tool_id)
        if tool is None:
            raise ToolNotFound(tool_id)
        return await self.find_relevant(f"{tool.name} {tool.description}", limit=limit)
