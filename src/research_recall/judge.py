import asyncio
import json
import logging
import os
import re

import anthropic
from anthropic.types import TextBlock

from .models import ChatMessage, QualityVerdict, Ranking, RetrievalContext

logger = logging.getLogger(__name__)

MAX_CONCEPTS = 5

QUALITY_PROMPT = """\
Evaluate this potential insight for quality and usefulness.

Content: "{content}"
Type: {type}

Criteria:
1. Specificity: is it specific and actionable?
2. Novelty: does it provide new information?
3. Reusability: can it be applied to future research situations?
4. Clarity: is it well-expressed and unambiguous?

Return JSON: {{"isQualified": <true|false>, "confidence": <0-1>, "reason": "<short reason>"}}
Return ONLY valid JSON, no explanation."""

CONCEPT_PROMPT = """\
Extract the key concepts from this query in the context of research and research tools.
Focus on research methodology, tool usage, and specific requirements.

Query: "{query}"
{history}
Return JSON: {{"concepts": ["<concept1>", "<concept2>", ...]}} with at most {max_concepts} short concepts.
Return ONLY valid JSON, no explanation."""

RERANK_PROMPT = """\
Rerank these knowledge items by their relevance to the current context.

Current query: "{query}"
{history}{topic}
Knowledge items:
{items}

Return JSON: {{"rankings": [{{"index": <1-based item number>, "relevanceScore": <0-1>, "reason": "<why>"}}, ...]}}
Only include items with relevance > 0.6.
Return ONLY valid JSON, no explanation."""

SUMMARY_PROMPT = """\
Summarize these research insights into 2-3 key points:

{insights}

Focus on practical, actionable takeaways."""

INTENT_PROMPT = """\
As a research assistant's intent analyzer, examine this conversation carefully.
Only include information that is clearly indicated in the message. Do not speculate.

Recent conversation context:
{history}

Tools recently recommended:
{tools}

Latest user message: "{message}"

Look for satisfaction with tools, new knowledge the user shares, research
workflows or tool combinations they describe, and capabilities they miss.

Return JSON with this structure:
{{"toolFeedback": [{{"toolName": str, "sentiment": "positive"|"negative"|"neutral", "confidence": 0-1, "specifics": [str], "context": str}}],
 "newKnowledge": [{{"type": "insight"|"methodology"|"use_case", "content": str, "reliability": 0-1, "relatedTools": [str]}}],
 "researchPatterns": [{{"pattern": str, "tools": [str], "effectiveness": 0-1}}],
 "gaps": [{{"type": "tool"|"knowledge"|"feature", "description": str, "urgency": 0-1}}]}}
Use null for any category with no clear signal.
Return ONLY valid JSON, no explanation."""

INTENT_CATEGORIES = ("toolFeedback", "newKnowledge", "researchPatterns", "gaps")


class JudgmentError(ValueError):
    """The judgment provider returned a response of the wrong shape."""


def _parse_json(text: str):
    """Parse JSON from LLM response, stripping markdown fences if present."""
    text = text.strip()
    if text.startswith("```"):
        text = re.sub(r"^```(?:json)?\s*\n?", "", text)
        text = re.sub(r"\n?```\s*$", "", text)
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise JudgmentError(f"Unparseable judgment: {exc}") from exc


def clamp(value, low: float = 0.0, high: float = 1.0) -> float:
    """Coerce an untrusted numeric field into [low, high]."""
    if isinstance(value, bool):
        raise JudgmentError(f"Expected a number, got {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise JudgmentError(f"Expected a number, got {value!r}") from exc
    if number != number:
        raise JudgmentError("Expected a number, got NaN")
    return max(low, min(high, number))


def _as_index(value) -> int | None:
    """Accept ints, integral floats and digit strings as a 1-based item index."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _format_history(messages: list[ChatMessage], label: str) -> str:
    if not messages:
        return ""
    return f"{label}: " + " ".join(m.content for m in messages) + "\n"


class Judge:
    """Structured judgments about insights and knowledge items, backed by an LLM."""

    def __init__(
        self,
        client: anthropic.Anthropic | None = None,
        model: str | None = None,
        provider: str | None = None,
    ):
        provider = provider or os.environ.get("LLM_PROVIDER", "anthropic")
        if client:
            self.client = client
        elif provider == "bedrock":
            self.client = anthropic.AnthropicBedrock(
                aws_region=os.environ.get("AWS_REGION", "us-east-1"),
                aws_profile=os.environ.get("AWS_PROFILE"),
            )
        else:
            self.client = anthropic.Anthropic()
        if model:
            self.model = model
        elif provider == "bedrock":
            self.model = os.environ.get(
                "BEDROCK_LLM_MODEL", "us.anthropic.claude-haiku-4-5-20251001-v1:0"
            )
        else:
            self.model = "claude-haiku-4-5-20251001"

    async def _complete_text(self, prompt: str, max_tokens: int) -> str:
        response = await asyncio.to_thread(
            self.client.messages.create,
            model=self.model,
            max_tokens=max_tokens,
            messages=[{"role": "user", "content": prompt}],
        )
        if not response.content or not isinstance(response.content[0], TextBlock):
            raise JudgmentError("Judgment response has no text block")
        return response.content[0].text

    async def _complete(self, prompt: str, max_tokens: int):
        return _parse_json(await self._complete_text(prompt, max_tokens))

    async def check_quality(self, content: str, type: str) -> QualityVerdict:
        data = await self._complete(QUALITY_PROMPT.format(content=content, type=type), 256)
        if not isinstance(data, dict) or not isinstance(data.get("isQualified"), bool):
            raise JudgmentError(f"Malformed quality verdict: {data!r}")
        return QualityVerdict(
            is_qualified=data["isQualified"],
            confidence=clamp(data.get("confidence", 0.0)),
            reason=str(data.get("reason", "")),
        )

    async def extract_concepts(
        self, query: str, recent_messages: list[ChatMessage] | None = None
    ) -> list[str]:
        prompt = CONCEPT_PROMPT.format(
            query=query,
            history=_format_history(recent_messages or [], "Recent context"),
            max_concepts=MAX_CONCEPTS,
        )
        data = await self._complete(prompt, 256)
        concepts = data.get("concepts") if isinstance(data, dict) else None
        if not isinstance(concepts, list):
            raise JudgmentError(f"Malformed concept list: {data!r}")
        cleaned = [c.strip() for c in concepts if isinstance(c, str) and c.strip()]
        return cleaned[:MAX_CONCEPTS]

    async def rerank(
        self, items: list[str], query: str, context: RetrievalContext | None = None
    ) -> list[Ranking]:
        """Judge the relevance of each item.

        Entries that do not validate are dropped. If the response lists entries
        but none of them validate, the whole judgment is unusable and
        ``JudgmentError`` is raised so callers fall back to their own order.
        """
        context = context or RetrievalContext()
        prompt = RERANK_PROMPT.format(
            query=query,
            history=_format_history(context.recent_messages[-2:], "Recent messages"),
            topic=f"Current topic: {context.current_topic}\n" if context.current_topic else "",
            items="\n".join(f"{i}. {text}" for i, text in enumerate(items, 1)),
        )
        data = await self._complete(prompt, 1024)
        if isinstance(data, dict):
            data = data.get("rankings")
        if not isinstance(data, list):
            raise JudgmentError(f"Malformed rankings: {data!r}")

        rankings = []
        seen = set()
        for entry in data:
            if not isinstance(entry, dict):
                continue
            index = _as_index(entry.get("index"))
            if index is None or not 1 <= index <= len(items) or index in seen:
                continue
            raw = entry.get("relevanceScore", entry.get("relevance"))
            try:
                relevance = clamp(raw)
            except JudgmentError:
                logger.debug("Dropping ranking with bad relevance: %r", entry)
                continue
            seen.add(index)
            rankings.append(Ranking(index=index, relevance=relevance, reason=str(entry.get("reason", ""))))

        if data and not rankings:
            raise JudgmentError(f"No usable entries in rankings: {data!r}")
        return rankings

    async def summarize(self, insight_text: str) -> str:
        summary = (await self._complete_text(SUMMARY_PROMPT.format(insights=insight_text), 512)).strip()
        if not summary:
            raise JudgmentError("Empty summary")
        return summary

    async def analyze_intent(
        self,
        message: str,
        recent_messages: list[ChatMessage] | None = None,
        recommended_tools: list[str] | None = None,
    ) -> dict:
        """Classify a user message into tool feedback, new knowledge, research
        patterns and gaps. Any failure yields every category as None."""
        prompt = INTENT_PROMPT.format(
            history="\n".join(f"{m.role}: {m.content}" for m in recent_messages or [])
            or "No recent messages",
            tools=", ".join(recommended_tools or []) or "No tools recommended",
            message=message,
        )
        try:
            data = await self._complete(prompt, 1024)
        except Exception as exc:
            logger.warning("Intent analysis failed: %s", exc)
            return dict.fromkeys(INTENT_CATEGORIES)
        if not isinstance(data, dict):
            logger.warning("Intent analysis returned %s, expected an object", type(data).__name__)
            return dict.fromkeys(INTENT_CATEGORIES)
        return {
            key: data[key] if isinstance(data.get(key), list) else None
            for key in INTENT_CATEGORIES
        }
