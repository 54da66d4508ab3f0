from enum import Enum
from datetime import date, datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class SearchType(str, Enum):
    """Search strategies available for tool search."""

    SEMANTIC = "semantic"
    KEYWORD = "keyword"
    HYBRID = "hybrid"


class InsightStatus(str, Enum):
    """Outcome of an insight ingestion attempt."""

    CREATED = "created"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"


class UseCase(BaseModel):
    description: str = ""
    method: str = ""


class Tool(BaseModel):
    """A research tool in the recommendation catalog."""

    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = None
    name: str
    description: str = ""
    type: str = ""
    pricing: str = ""
    url: str = ""
    tags: list[str] = Field(default_factory=list)
    categories: list[str] = Field(default_factory=list)
    use_cases: list[UseCase] = Field(default_factory=list, alias="useCases")


class SearchFilters(BaseModel):
    """Equality and set-membership constraints applied to every search source."""

    type: Optional[str] = None
    pricing: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    categories: list[str] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.type or self.pricing or self.tags or self.categories)

    def matches(self, tool: Tool) -> bool:
        if self.type and tool.type != self.type:
            return False
        if self.pricing and tool.pricing != self.pricing:
            return False
        if self.tags and not set(self.tags) & set(tool.tags):
            return False
        if self.categories and not set(self.categories) & set(tool.categories):
            return False
        return True


class SearchOptions(BaseModel):
    search_type: SearchType = SearchType.HYBRID
    filters: SearchFilters = Field(default_factory=SearchFilters)
    limit: int = Field(default=5, ge=1)
    threshold: float = 0.1


class SearchResult(BaseModel):
    """A tool with its score from one search source or a merged list."""

    id: str
    name: str
    description: str = ""
    score: float
    match_details: dict[str, float] = Field(default_factory=dict)
    search_type: SearchType = SearchType.HYBRID
    record: Optional[Tool] = None


class InsightMetadata(BaseModel):
    tags: list[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_used: Optional[datetime] = None
    use_count: int = 0
    confidence: float = 0.0
    validated_by: list[str] = Field(default_factory=list)
    source: str = "system"
    related_tools: list[str] = Field(default_factory=list)
    tool_id: Optional[str] = None
    success: Optional[bool] = None
    query_context: str = ""
    extra: dict[str, Any] = Field(default_factory=dict)


class Insight(BaseModel):
    """A durable, reusable piece of derived knowledge."""

    id: Optional[str] = None
    content: str
    type: str
    metadata: InsightMetadata = Field(default_factory=InsightMetadata)
    # Retrieval annotations, never persisted
    score: Optional[float] = None
    matched_concept: Optional[str] = None
    relevance: Optional[float] = None
    relevance_reason: Optional[str] = None


class QualityVerdict(BaseModel):
    is_qualified: bool
    confidence: float = 0.0
    reason: str = ""


class Ranking(BaseModel):
    """One judged position in a rerank response. Index is 1-based."""

    index: int
    relevance: float
    reason: str = ""


class AddInsightResult(BaseModel):
    status: InsightStatus
    insight: Optional[Insight] = None
    reason: str = ""


class ChatMessage(BaseModel):
    role: str
    content: str


class RetrievalContext(BaseModel):
    """Conversational context used to steer insight retrieval."""

    recent_messages: list[ChatMessage] = Field(default_factory=list)
    current_topic: str = ""

    def is_empty(self) -> bool:
        return not self.recent_messages and not self.current_topic


class InsightReference(BaseModel):
    id: str
    type: str
    timestamp: datetime


class LearningMetrics(BaseModel):
    """Daily aggregate over insight creation. Derived, rebuildable."""

    date: date
    insights_by_type: dict[str, int] = Field(default_factory=dict)
    total_insights: int = 0
    recent_insights: list[InsightReference] = Field(default_factory=list)
    last_update: Optional[datetime] = None


class ToolFeedback(BaseModel):
    success: Optional[bool] = None
    timestamp: datetime
    context: str = ""


class ToolMetrics(BaseModel):
    tool_id: str
    total_uses: int = 0
    successful_uses: int = 0
    recent_feedback: list[ToolFeedback] = Field(default_factory=list)

    @property
    def success_rate(self) -> float:
        return self.successful_uses / max(self.total_uses, 1)


class QueryPattern(BaseModel):
    """Past research queries that led to the same tool, aggregated."""

    tool_id: str
    query_contexts: list[str] = Field(default_factory=list)
    use_count: int = 0
    average_score: float = 0.0
