from __future__ import annotations

import json
import os

import anthropic
from mcp.server.fastmcp import FastMCP

from .actions import ActionProcessor, actions_from_analysis
from .catalog import ToolCatalog
from .embeddings import BedrockEmbeddingEngine, EmbeddingEngine, create_embedding_engine
from .judge import Judge
from .knowledge import KnowledgeRetriever
from .memory import DEDUP_THRESHOLD, InsightMemory, InsightNotFound, ToolNotFound
from .merge import KEYWORD_WEIGHT, SEMANTIC_WEIGHT
from .metrics import MetricsStore
from .models import Insight, SearchFilters, SearchOptions, SearchType
from .search import HybridSearch
from .sessions import DEFAULT_TTL_SECONDS, SessionStore
from .storage import InsightStore

ANALYSIS_HISTORY = 5


def _split(value: str) -> list[str]:
    return [v.strip() for v in value.split(",") if v.strip()] if value else []


def _insight_dict(insight: Insight) -> dict:
    out = {
        "id": insight.id,
        "type": insight.type,
        "content": insight.content,
        "use_count": insight.metadata.use_count,
        "confidence": round(insight.metadata.confidence, 3),
        "tags": insight.metadata.tags or None,
    }
    if insight.score is not None:
        out["score"] = round(insight.score, 3)
    if insight.relevance is not None:
        out["relevance"] = round(insight.relevance, 3)
    if insight.matched_concept:
        out["matched_concept"] = insight.matched_concept
    return out


class RecallApp:
    """Application wrapper holding shared state for MCP tool handlers."""

    def __init__(
        self,
        store: InsightStore,
        catalog: ToolCatalog,
        embeddings: EmbeddingEngine | BedrockEmbeddingEngine,
        judge: Judge,
        metrics: MetricsStore | None = None,
        sessions: SessionStore | None = None,
        dedup_threshold: float = DEDUP_THRESHOLD,
        semantic_weight: float = SEMANTIC_WEIGHT,
        keyword_weight: float = KEYWORD_WEIGHT,
    ):
        self.store = store
        self.catalog = catalog
        self.embeddings = embeddings
        self.judge = judge
        self.sessions = sessions or SessionStore()
        self.memory = InsightMemory(store, embeddings, judge, metrics, dedup_threshold, catalog=catalog)
        self.knowledge = KnowledgeRetriever(store, embeddings, judge)
        self.search = HybridSearch(catalog, embeddings, semantic_weight, keyword_weight)
        self.actions = ActionProcessor(self.memory)

    async def search_tools(
        self,
        query: str,
        search_type: str = "hybrid",
        type: str = "",
        pricing: str = "",
        tags: str = "",
        categories: str = "",
        limit: int = 5,
        threshold: float = 0.1,
    ) -> str:
        options = SearchOptions(
            search_type=SearchType(search_type),
            filters=SearchFilters(
                type=type or None,
                pricing=pricing or None,
                tags=_split(tags),
                categories=_split(categories),
            ),
            limit=limit,
            threshold=threshold,
        )
        results = await self.search.search(query, options)
        if not results:
            return "No matching tools found."
        output = []
        for r in results:
            output.append({
                "score": round(r.score, 3),
                "id": r.id,
                "name": r.name,
                "description": r.description,
                "match_details": {k: round(v, 3) for k, v in r.match_details.items()} or None,
            })
        return json.dumps(output, indent=2)

    async def add_insight(
        self, content: str, type: str, tags: str = "", source: str = "", related_tools: str = ""
    ) -> str:
        metadata = {"tags": _split(tags), "related_tools": _split(related_tools)}
        if source:
            metadata["source"] = source
        result = await self.memory.add_insight(content, type, metadata)
        return json.dumps({
            "status": result.status.value,
            "id": result.insight.id if result.insight else None,
            "use_count": result.insight.metadata.use_count if result.insight else None,
            "reason": result.reason or None,
        }, indent=2)

    async def find_insights(
        self, query: str, session_id: str = "", topic: str = "", limit: int = 3
    ) -> str:
        context = self.sessions.context(session_id, topic) if session_id or topic else None
        results = await self.memory.find_relevant(query, context, limit)
        if not results:
            return "No matching insights found."
        return json.dumps([_insight_dict(i) for i in results], indent=2)

    async def find_knowledge(self, query: str, session_id: str = "", topic: str = "") -> str:
        context = self.sessions.context(session_id, topic)
        results = await self.knowledge.find_relevant_knowledge(query, context)
        if not results:
            return "No relevant knowledge found."
        return json.dumps([_insight_dict(i) for i in results], indent=2)

    async def update_insight(self, insight_id: str, content: str, type: str) -> str:
        try:
            await self.memory.update(insight_id, content, type)
        except InsightNotFound:
            return f"Insight {insight_id} not found."
        return f"Updated insight {insight_id}."

    async def forget(self, insight_id: str) -> str:
        try:
            await self.memory.delete(insight_id)
        except InsightNotFound:
            return f"Insight {insight_id} not found."
        return f"Forgot insight {insight_id}."

    async def list_insights(self, type: str = "", limit: int = 0) -> str:
        results = await self.memory.list_all(type=type or None, limit=limit or None)
        if not results:
            return "No insights stored."
        return json.dumps([_insight_dict(i) for i in results], indent=2)

    async def add_feedback(self, tool_id: str, success: bool, comment: str = "") -> str:
        result = await self.memory.add_feedback(tool_id, success, comment)
        return json.dumps({"status": result.status.value, "reason": result.reason or None}, indent=2)

    async def tool_metrics(self, tool_id: str) -> str:
        metrics = await self.memory.tool_metrics(tool_id)
        return json.dumps({
            "tool_id": metrics.tool_id,
            "total_uses": metrics.total_uses,
            "successful_uses": metrics.successful_uses,
            "success_rate": round(metrics.success_rate * 100, 1),
        }, indent=2)

    async def remember_message(self, session_id: str, role: str, content: str) -> str:
        self.sessions.append(session_id, role, content)
        return f"Recorded {role} message for session {session_id}."

    async def process_intent(self, analysis: str) -> str:
        try:
            data = json.loads(analysis)
        except json.JSONDecodeError as e:
            return f"Invalid analysis JSON: {e}"
        results = await self.actions.process_all(actions_from_analysis(data))
        return json.dumps({
            "processed": len(results),
            "created": sum(1 for r in results if r.status.value == "created"),
        }, indent=2)


    async def similar_patterns(self, query: str, limit: int = 5) -> str:
        patterns = await self.memory.similar_query_patterns(query, limit=limit)
        if not patterns:
            return "No similar research queries recorded."
        return json.dumps([
            {
                "tool_id": p.tool_id,
                "use_count": p.use_count,
                "average_score": round(p.average_score, 3),
                "queries": p.query_contexts,
            }
            for p in patterns
        ], indent=2)

    async def tool_insights(self, tool_id: str, limit: int = 5) -> str:
        try:
            results = await self.memory.tool_insights(tool_id, limit)
        except ToolNotFound:
            return f"Tool {tool_id} not found."
        if not results:
            return f"No insights stored for {tool_id}."
        return json.dumps([_insight_dict(i) for i in results], indent=2)

    async def summarize_insights(self, query: str) -> str:
        summary = await self.memory.summarize(query)
        return summary or "No relevant insights to summarize."

    async def analyze_message(
        self, message: str, session_id: str = "", recommended_tools: str = ""
    ) -> str:
        history = self.sessions.history(session_id, limit=ANALYSIS_HISTORY) if session_id else []
        results = await self.actions.process_message(message, history, _split(recommended_tools))
        return json.dumps({
            "processed": len(results),
            "created": sum(1 for r in results if r.status.value == "created"),
        }, indent=2)

async def create_app(
    db_path: str | None = None,
    embedding_model: str | None = None,
    anthropic_client: anthropic.Anthropic | None = None,
    embedding_provider: str | None = None,
    llm_provider: str | None = None,
    embeddings: EmbeddingEngine | BedrockEmbeddingEngine | None = None,
) -> RecallApp:
    db_path = db_path or os.environ.get(
        "RECALL_DB_PATH",
        os.path.expanduser("~/.research-recall/recall.db"),
    )
    store = InsightStore(db_path)
    await store.initialize()
    catalog = ToolCatalog(db_path)
    await catalog.initialize()
    metrics = MetricsStore(db_path)

    embedding_provider = embedding_provider or os.environ.get("EMBEDDING_PROVIDER", "openai")
    llm_provider = llm_provider or os.environ.get("LLM_PROVIDER", "anthropic")
    if embeddings is None:
        kwargs = {}
        if embedding_model is not None:
            kwargs["model"] = embedding_model
        embeddings = create_embedding_engine(provider=embedding_provider, **kwargs)
    judge = Judge(client=anthropic_client, provider=llm_provider)
    sessions = SessionStore(
        ttl_seconds=float(os.environ.get("SESSION_TTL_SECONDS", DEFAULT_TTL_SECONDS))
    )
    return RecallApp(
        store=store,
        catalog=catalog,
        embeddings=embeddings,
        judge=judge,
        metrics=metrics,
        sessions=sessions,
        dedup_threshold=float(os.environ.get("INSIGHT_DEDUP_THRESHOLD", DEDUP_THRESHOLD)),
        semantic_weight=float(os.environ.get("SEMANTIC_WEIGHT", SEMANTIC_WEIGHT)),
        keyword_weight=float(os.environ.get("KEYWORD_WEIGHT", KEYWORD_WEIGHT)),
    )


def create_mcp_server() -> FastMCP:
    mcp = FastMCP("research-recall")
    app: RecallApp | None = None

    async def _app() -> RecallApp:
        nonlocal app
        if app is None:
            app = await create_app()
        return app

    @mcp.tool()
    async def search_tools(
        query: str,
        search_type: str = "hybrid",
        type: str = "",
        pricing: str = "",
        tags: str = "",
        categories: str = "",
        limit: int = 5,
        threshold: float = 0.1,
    ) -> str:
        """Search research tools. search_type is semantic, keyword or hybrid. Tags and categories are comma-separated and match if any value matches."""
        return await (await _app()).search_tools(
            query=query, search_type=search_type, type=type, pricing=pricing,
            tags=tags, categories=categories, limit=limit, threshold=threshold,
        )

    @mcp.tool()
    async def add_insight(
        content: str, type: str, tags: str = "", source: str = "", related_tools: str = ""
    ) -> str:
        """Propose a new insight. It is quality-checked, and folded into an existing insight if a near-duplicate is already stored."""
        return await (await _app()).add_insight(
            content=content, type=type, tags=tags, source=source, related_tools=related_tools
        )

    @mcp.tool()
    async def find_insights(query: str, session_id: str = "", topic: str = "", limit: int = 3) -> str:
        """Find insights relevant to a query, reranked by the session's recent conversation when one is given."""
        return await (await _app()).find_insights(query=query, session_id=session_id, topic=topic, limit=limit)

    @mcp.tool()
    async def find_knowledge(query: str, session_id: str = "", topic: str = "") -> str:
        """Multi-stage insight retrieval: expands the query into key concepts, searches each, and reranks the union by context."""
        return await (await _app()).find_knowledge(query=query, session_id=session_id, topic=topic)

    @mcp.tool()
    async def update_insight(insight_id: str, content: str, type: str) -> str:
        """Replace an insight's content and type."""
        return await (await _app()).update_insight(insight_id=insight_id, content=content, type=type)

    @mcp.tool()
    async def forget(insight_id: str) -> str:
        """Remove an insight from memory."""
        return await (await _app()).forget(insight_id=insight_id)

    @mcp.tool()
    async def list_insights(type: str = "", limit: int = 0) -> str:
        """List stored insights, newest first, optionally filtered by type."""
        return await (await _app()).list_insights(type=type, limit=limit)

    @mcp.tool()
    async def add_feedback(tool_id: str, success: bool, comment: str = "") -> str:
        """Record whether a tool worked for its intended use."""
        return await (await _app()).add_feedback(tool_id=tool_id, success=success, comment=comment)

    @mcp.tool()
    async def tool_metrics(tool_id: str) -> str:
        """Usage and success counters for a tool, derived from feedback insights."""
        return await (await _app()).tool_metrics(tool_id=tool_id)

    @mcp.tool()
    async def remember_message(session_id: str, role: str, content: str) -> str:
        """Append a chat message to a session's history so retrieval can use it as context."""
        return await (await _app()).remember_message(session_id=session_id, role=role, content=content)

    @mcp.tool()
    async def process_intent(analysis: str) -> str:
        """Store insights from an intent analysis JSON (toolFeedback, newKnowledge, researchPatterns, gaps)."""
        return await (await _app()).process_intent(analysis=analysis)

    @mcp.tool()
    async def similar_patterns(query: str, limit: int = 5) -> str:
        """Tools used for past research queries similar to this one, grouped by tool."""
        return await (await _app()).similar_patterns(query=query, limit=limit)

    @mcp.tool()
    async def tool_insights(tool_id: str, limit: int = 5) -> str:
        """Insights relevant to a catalog tool."""
        return await (await _app()).tool_insights(tool_id=tool_id, limit=limit)

    @mcp.tool()
    async def summarize_insights(query: str) -> str:
        """Condense the insights relevant to a query into a few key points."""
        return await (await _app()).summarize_insights(query=query)

    @mcp.tool()
    async def analyze_message(message: str, session_id: str = "", recommended_tools: str = "") -> str:
        """Detect tool feedback, new knowledge, research patterns and gaps in a user message and store them as insights."""
        return await (await _app()).analyze_message(
            message=message, session_id=session_id, recommended_tools=recommended_tools
        )

    return mcp


def main():
    mcp = create_mcp_server()
    mcp.run()


if __name__ == "__main__":
    main()
