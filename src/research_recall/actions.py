"""Turn conversational intent analysis into insight candidates."""

from __future__ import annotations

import logging
from typing import Any

from .memory import TOOL_FEEDBACK, InsightMemory
from .models import AddInsightResult, ChatMessage

logger = logging.getLogger(__name__)

FEEDBACK_MIN_CONFIDENCE = 0.7
KNOWLEDGE_MIN_RELIABILITY = 0.6
PATTERN_MIN_EFFECTIVENESS = 0.7


def _above(item: dict, key: str, threshold: float) -> bool:
    value = item.get(key)
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value > threshold


def actions_from_analysis(analysis: dict[str, Any] | None) -> list[dict[str, Any]]:
    """Select the signals of an intent analysis that are strong enough to act on."""
    if not isinstance(analysis, dict):
        return []
    actions = []
    for feedback in analysis.get("toolFeedback") or []:
        if isinstance(feedback, dict) and _above(feedback, "confidence", FEEDBACK_MIN_CONFIDENCE):
            actions.append({"type": "TOOL_FEEDBACK", "data": feedback})
    for knowledge in analysis.get("newKnowledge") or []:
        if isinstance(knowledge, dict) and _above(knowledge, "reliability", KNOWLEDGE_MIN_RELIABILITY):
            actions.append({"type": "NEW_KNOWLEDGE", "data": knowledge})
    for pattern in analysis.get("researchPatterns") or []:
        if isinstance(pattern, dict) and _above(pattern, "effectiveness", PATTERN_MIN_EFFECTIVENESS):
            actions.append({"type": "RESEARCH_PATTERN", "data": pattern})
    if analysis.get("gaps"):
        actions.append({"type": "GAPS", "data": analysis["gaps"]})
    return actions


class ActionProcessor:
    """Routes intent actions into the insight memory's ingestion pipeline."""

    def __init__(self, memory: InsightMemory):
        self.memory = memory

    async def process(self, action: dict[str, Any]) -> list[AddInsightResult] | None:
        kind = str(action.get("type") or "").upper()
        data = action.get("data")
        handlers = {
            "TOOL_FEEDBACK": self._feedback,
            "NEW_KNOWLEDGE": self._knowledge,
            "RESEARCH_PATTERN": self._pattern,
            "GAPS": self._gaps,
            "GAP": self._gaps,
        }
        handler = handlers.get(kind)
        if handler is None:
            logger.warning("Skipping unknown action type: %s", action.get("type"))
            return None
        try:
            return await handler(data)
        except Exception:
            logger.exception("Error processing action %s", kind)
            return None

    async def process_all(self, actions: list[dict[str, Any]]) -> list[AddInsightResult]:
        results = []
        for action in actions:
            results.extend(await self.process(action) or [])
        return results

    async def process_message(
        self,
        message: str,
        recent_messages: list[ChatMessage] | None = None,
        recommended_tools: list[str] | None = None,
    ) -> list[AddInsightResult]:
        """Analyze a user message and store whatever it teaches."""
        analysis = await self.memory.judge.analyze_intent(message, recent_messages, recommended_tools)
        actions = actions_from_analysis(analysis)
        logger.debug("Intent analysis produced %d actions", len(actions))
        return await self.process_all(actions)

    async def _feedback(self, data) -> list[AddInsightResult]:
        if not isinstance(data, dict) or not data.get("toolName"):
            return []
        specifics = data.get("specifics")
        content = (
            ". ".join(str(s) for s in specifics)
            if isinstance(specifics, list) and specifics
            else f"Feedback received for {data['toolName']}"
        )
        sentiment = data.get("sentiment") or "neutral"
        metadata = {
            "tool_id": data["toolName"],
            "related_tools": [data["toolName"]],
            "tags": ["feedback", sentiment],
            "query_context": str(data.get("context") or ""),
            "sentiment": sentiment,
        }
        if sentiment in ("positive", "negative"):
            metadata["success"] = sentiment == "positive"
        return [await self.memory.add_insight(content, TOOL_FEEDBACK, metadata)]

    async def _knowledge(self, data) -> list[AddInsightResult]:
        if not isinstance(data, dict) or not data.get("content"):
            return []
        return [
            await self.memory.add_insight(
                data["content"],
                data.get("type") or "insight",
                {"related_tools": data.get("relatedTools") or [], "reliability": data.get("reliability")},
            )
        ]

    async def _pattern(self, data) -> list[AddInsightResult]:
        if not isinstance(data, dict) or not data.get("pattern"):
            return []
        return [
            await self.memory.add_insight(
                data["pattern"],
                "research_pattern",
                {"related_tools": data.get("tools") or [], "effectiveness": data.get("effectiveness")},
            )
        ]

    async def _gaps(self, data) -> list[AddInsightResult]:
        gaps = data if isinstance(data, list) else [data]
        results = []
        for gap in gaps:
            if not isinstance(gap, dict) or not gap.get("description"):
                continue
            gap_type = gap.get("type") or "knowledge"
            results.append(
                await self.memory.add_insight(
                    gap["description"],
                    f"gap_{gap_type}",
                    {"urgency": gap.get("urgency"), "gap_type": gap_type},
                )
            )
        return results
