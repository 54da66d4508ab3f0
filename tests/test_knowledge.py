import json
import pytest
from unittest.mock import AsyncMock, MagicMock

from anthropic.types import TextBlock

from research_recall.judge import Judge, JudgmentError
from research_recall.knowledge import KnowledgeRetriever
from research_recall.models import ChatMessage, Insight, Ranking, RetrievalContext
from research_recall.storage import InsightStore


def _judge(concepts=None):
    judge = MagicMock()
    judge.extract_concepts = AsyncMock(return_value=concepts or [])
    judge.rerank = AsyncMock(return_value=[])
    return judge


@pytest.fixture
async def store(tmp_db, fake_embeddings):
    s = InsightStore(tmp_db)
    await s.initialize()
    for text, vector in [("alpha", [1, 0, 0]), ("beta", [0.7, 0.7, 0]), ("gamma", [0, 1, 0])]:
        fake_embeddings.pin(text, vector)
        await s.insert(Insight(content=text, type="t"), fake_embeddings.embed(text))
    fake_embeddings.pin("main query", [1, 0, 0])
    fake_embeddings.pin("coding", [0, 1, 0])
    return s


def _context(n: int = 4):
    return RetrievalContext(
        recent_messages=[ChatMessage(role="user", content=f"turn {i}") for i in range(n)],
        current_topic="qualitative methods",
    )


class TestMultiStageRetrieval:
    async def test_concept_hits_overwrite_main_hits(self, store, fake_embeddings):
        retriever = KnowledgeRetriever(store, fake_embeddings, _judge(["coding"]))
        results = await retriever.multi_stage_retrieval("main query", _context())
        by_content = {i.content: i for i in results}
        assert [i.content for i in results] == ["alpha", "beta", "gamma"]
        assert all(i.matched_concept == "coding" for i in results)
        assert by_content["gamma"].score == pytest.approx(1.0, abs=1e-5)
        assert by_content["alpha"].score == pytest.approx(0.0, abs=1e-5)

    async def test_concepts_use_recent_history(self, store, fake_embeddings):
        judge = _judge(["coding"])
        retriever = KnowledgeRetriever(store, fake_embeddings, judge)
        await retriever.multi_stage_retrieval("main query", _context(4))
        query, history = judge.extract_concepts.call_args.args
        assert query == "main query"
        assert [m.content for m in history] == ["turn 2", "turn 3"]

    async def test_concept_failure_searches_query_alone(self, store, fake_embeddings):
        judge = _judge()
        judge.extract_concepts = AsyncMock(side_effect=JudgmentError("no json"))
        retriever = KnowledgeRetriever(store, fake_embeddings, judge)
        results = await retriever.multi_stage_retrieval("main query", _context())
        assert [i.content for i in results] == ["alpha", "beta", "gamma"]
        assert all(i.matched_concept is None for i in results)

    async def test_unique_ids(self, store, fake_embeddings):
        retriever = KnowledgeRetriever(store, fake_embeddings, _judge(["coding", "main query"]))
        results = await retriever.multi_stage_retrieval("main query", _context())
        assert len({i.id for i in results}) == len(results) == 3


class TestFindRelevantKnowledge:
    async def test_rerank_keeps_only_relevant(self, store, fake_embeddings):
        judge = _judge(["coding"])
        judge.rerank = AsyncMock(return_value=[
            Ranking(index=2, relevance=0.61, reason="close"),
            Ranking(index=1, relevance=0.6, reason="borderline"),
            Ranking(index=3, relevance=0.9, reason="exact"),
        ])
        retriever = KnowledgeRetriever(store, fake_embeddings, judge)
        results = await retriever.find_relevant_knowledge("main query", _context())
        assert [(i.content, i.relevance) for i in results] == [("gamma", 0.9), ("beta", 0.61)]
        items, query, context = judge.rerank.call_args.args
        assert items == ["alpha", "beta", "gamma"]
        assert context.current_topic == "qualitative methods"

    async def test_rerank_failure_returns_union(self, store, fake_embeddings):
        judge = _judge()
        judge.rerank = AsyncMock(side_effect=RuntimeError("provider down"))
        retriever = KnowledgeRetriever(store, fake_embeddings, judge)
        results = await retriever.find_relevant_knowledge("main query")
        assert [i.content for i in results] == ["alpha", "beta", "gamma"]
        assert all(i.relevance is None for i in results)

    async def test_empty_store_skips_rerank(self, tmp_db, fake_embeddings):
        empty = InsightStore(tmp_db)
        await empty.initialize()
        judge = _judge(["coding"])
        retriever = KnowledgeRetriever(empty, fake_embeddings, judge)
        assert await retriever.find_relevant_knowledge("anything", _context()) == []
        judge.rerank.assert_not_called()


def _llm_judge(*payloads):
    """A real Judge whose client replays canned JSON responses in order."""
    client = MagicMock()
    responses = []
    for payload in payloads:
        response = MagicMock()
        response.content = [TextBlock(type="text", text=json.dumps(payload))]
        responses.append(response)
    client.messages.create.side_effect = responses
    return Judge(client=client)


@pytest.fixture
async def single_insight_store(tmp_db, fake_embeddings):
    s = InsightStore(tmp_db)
    await s.initialize()
    fake_embeddings.pin("alpha", [1, 0, 0])
    fake_embeddings.pin("main query", [1, 0, 0])
    await s.insert(Insight(content="alpha", type="t"), fake_embeddings.embed("alpha"))
    return s


class TestJudgeResponseShapes:
    async def test_string_index_ranking_is_honoured(self, single_insight_store, fake_embeddings):
        judge = _llm_judge(
            {"concepts": []},
            {"rankings": [{"index": "1", "relevanceScore": 0.9}]},
        )
        retriever = KnowledgeRetriever(single_insight_store, fake_embeddings, judge)
        results = await retriever.find_relevant_knowledge("main query", _context())
        assert [(i.content, i.relevance) for i in results] == [("alpha", 0.9)]

    async def test_unusable_rankings_return_union(self, single_insight_store, fake_embeddings):
        judge = _llm_judge(
            {"concepts": []},
            {"rankings": [{"index": "first", "relevanceScore": 0.9}, {"index": 1}]},
        )
        retriever = KnowledgeRetriever(single_insight_store, fake_embeddings, judge)
        results = await retriever.find_relevant_knowledge("main query", _context())
        assert [i.content for i in results] == ["alpha"]
        assert results[0].relevance is None
