from __future__ import annotations

import asyncio
import logging
import re
from collections import Counter

from .catalog import DEFAULT_TEXT_FIELDS, ToolCatalog
from .embeddings import BedrockEmbeddingEngine, EmbeddingEngine
from .merge import KEYWORD_WEIGHT, SEMANTIC_WEIGHT, merge_results, normalize_scores, validate_weights
from .models import SearchFilters, SearchOptions, SearchResult, SearchType, Tool

logger = logging.getLogger(__name__)

STOP_WORDS = frozenset(
    {"the", "and", "for", "that", "this", "with", "in", "on", "at", "to", "of", "is", "are"}
)
FUZZY_MAX_EDITS = 2
FUZZY_PREFIX_LENGTH = 1


def extract_keywords(text: str) -> list[str]:
    """Lowercased, punctuation-free keywords longer than two characters,
    stop words removed, unique, most frequent first."""
    words = re.sub(r"[^\w\s]", "", text.lower()).split()
    words = [w for w in words if len(w) > 2 and w not in STOP_WORDS]
    # Counter keeps first-seen order among equal counts
    return [word for word, _ in Counter(words).most_common()]


def _to_result(tool: Tool, score: float, search_type: SearchType) -> SearchResult:
    return SearchResult(
        id=tool.id or tool.name,
        name=tool.name,
        description=tool.description,
        score=score,
        search_type=search_type,
        record=tool,
    )


class HybridSearch:
    """Tool search over the catalog: semantic, keyword, or both merged."""

    def __init__(
        self,
        catalog: ToolCatalog,
        embeddings: EmbeddingEngine | BedrockEmbeddingEngine,
        semantic_weight: float = SEMANTIC_WEIGHT,
        keyword_weight: float = KEYWORD_WEIGHT,
    ):
        validate_weights([semantic_weight, keyword_weight])
        self.catalog = catalog
        self.embeddings = embeddings
        self.semantic_weight = semantic_weight
        self.keyword_weight = keyword_weight

    async def search(self, query: str, options: SearchOptions | None = None) -> list[SearchResult]:
        options = options or SearchOptions()
        if not query or not query.strip():
            raise ValueError("Search query must be non-empty")
        logger.debug("Searching %r (%s, limit=%d)", query, options.search_type.value, options.limit)

        if options.search_type == SearchType.SEMANTIC:
            results = await self.semantic_search(query, options.filters, options.limit)
        elif options.search_type == SearchType.KEYWORD:
            results = await self.keyword_search(query, options.filters, options.limit)
        else:
            results = await self.hybrid_search(query, options.filters, options.limit)

        filtered = [r for r in results if r.score >= options.threshold]
        logger.info(
            "%s search for %r: %d results, %d above threshold %.2f",
            options.search_type.value, query, len(results), len(filtered), options.threshold,
        )
        return filtered

    async def _vector_results(
        self, query: str, filters: SearchFilters, limit: int
    ) -> list[SearchResult]:
        embedding = await asyncio.to_thread(self.embeddings.embed, query)
        hits = await self.catalog.vector_search(
            embedding,
            num_candidates=max(limit * 4, 100),
            limit=limit,
            filters=filters,
        )
        return [_to_result(tool, score, SearchType.SEMANTIC) for tool, score in hits]

    async def _text_results(
        self, query: str, filters: SearchFilters, limit: int
    ) -> list[SearchResult]:
        hits = await self.catalog.text_search(
            query,
            fields=DEFAULT_TEXT_FIELDS,
            max_edits=FUZZY_MAX_EDITS,
            prefix_length=FUZZY_PREFIX_LENGTH,
            filters=filters,
            limit=limit,
        )
        return [_to_result(tool, score, SearchType.KEYWORD) for tool, score in hits]

    async def semantic_search(
        self, query: str, filters: SearchFilters, limit: int
    ) -> list[SearchResult]:
        results = await self._vector_results(query, filters, limit)
        return [r.model_copy(update={"score": s}) for r, s in normalize_scores(results)]

    async def keyword_search(
        self, query: str, filters: SearchFilters, limit: int
    ) -> list[SearchResult]:
        keywords = extract_keywords(query)
        if not keywords:
            return []
        results = await self._text_results(" ".join(keywords), filters, limit)
        return [r.model_copy(update={"score": s}) for r, s in normalize_scores(results)]

    async def hybrid_search(
        self, query: str, filters: SearchFilters, limit: int
    ) -> list[SearchResult]:
        vector_results, text_results = await asyncio.gather(
            self._vector_results(query, filters, limit * 2),
            self._text_results(query, filters, limit * 2),
        )
        return merge_results(
            [
                (vector_results, SearchType.SEMANTIC.value, self.semantic_weight),
                (text_results, SearchType.KEYWORD.value, self.keyword_weight),
            ],
            limit,
        )
