from __future__ import annotations

import asyncio
import logging

from .embeddings import BedrockEmbeddingEngine, EmbeddingEngine
from .judge import Judge
from .memory import rerank_by_context
from .models import Insight, RetrievalContext
from .storage import InsightStore

logger = logging.getLogger(__name__)

MAIN_CANDIDATES, MAIN_LIMIT = 20, 10
CONCEPT_CANDIDATES, CONCEPT_LIMIT = 10, 5
CONCEPT_HISTORY = 2


class KnowledgeRetriever:
    """Multi-stage insight retrieval steered by conversational context.

    The query is expanded into key concepts; the raw query and each concept are
    searched in parallel, the result sets unioned by id, and the union reranked
    against the query and context.
    """

    def __init__(
        self,
        store: InsightStore,
        embeddings: EmbeddingEngine | BedrockEmbeddingEngine,
        judge: Judge,
    ):
        self.store = store
        self.embeddings = embeddings
        self.judge = judge

    async def _embed(self, text: str):
        return await asyncio.to_thread(self.embeddings.embed, text)

    async def extract_concepts(self, query: str, context: RetrievalContext) -> list[str]:
        try:
            return await self.judge.extract_concepts(
                query, context.recent_messages[-CONCEPT_HISTORY:]
            )
        except Exception as exc:
            logger.warning("Concept extraction failed, searching with the query alone: %s", exc)
            return []

    async def _search(self, vector, num_candidates: int, limit: int, concept: str | None = None) -> list[Insight]:
        hits = await self.store.vector_search(vector, num_candidates=num_candidates, limit=limit)
        return [
            insight.model_copy(update={"score": score, "matched_concept": concept})
            for insight, score in hits
        ]

    async def multi_stage_retrieval(self, query: str, context: RetrievalContext) -> list[Insight]:
        main_vector, concepts = await asyncio.gather(
            self._embed(query), self.extract_concepts(query, context)
        )
        concept_vectors = await asyncio.gather(*[self._embed(c) for c in concepts])

        result_sets = await asyncio.gather(
            self._search(main_vector, MAIN_CANDIDATES, MAIN_LIMIT),
            *[
                self._search(vector, CONCEPT_CANDIDATES, CONCEPT_LIMIT, concept)
                for concept, vector in zip(concepts, concept_vectors)
            ],
        )

        # Later sets overwrite earlier ones: a concept hit replaces the main hit
        # for the same insight, keeping its matched_concept tag.
        union: dict[str, Insight] = {}
        for results in result_sets:
            for insight in results:
                union[insight.id] = insight
        logger.debug(
            "Multi-stage retrieval: %d concepts, %d unique insights", len(concepts), len(union)
        )
        return list(union.values())

    async def find_relevant_knowledge(
        self, query: str, context: RetrievalContext | None = None
    ) -> list[Insight]:
        context = context or RetrievalContext()
        results = await self.multi_stage_retrieval(query, context)
        if not results:
            return []
        try:
            return await rerank_by_context(self.judge, results, query, context)
        except Exception as exc:
            logger.warning("Contextual reranking failed, returning unranked results: %s", exc)
            return results
