from __future__ import annotations

import asyncio
import json
from datetime import date, datetime, timezone

from .models import Insight, InsightReference, LearningMetrics, ToolFeedback, ToolMetrics
from .orm_models import LearningMetricsModel, ToolMetricsModel, database, init_metrics_database

RECENT_INSIGHTS_WINDOW = 100
RECENT_FEEDBACK_WINDOW = 10
TOOL_FEEDBACK = "tool_feedback"


class MetricsStore:
    """Async facade over sync Peewee operations for the derived learning metrics."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        init_metrics_database(db_path)

    async def _run(self, func, *args, **kwargs):
        return await asyncio.to_thread(func, *args, **kwargs)

    def _apply_insight(self, insight: Insight, at: datetime) -> None:
        """Fold one insight into the aggregates. The caller owns the transaction."""
        row, _ = LearningMetricsModel.get_or_create(day=at.date().isoformat())
        by_type = json.loads(row.insights_by_type)
        by_type[insight.type] = by_type.get(insight.type, 0) + 1
        recent = json.loads(row.recent_insights)
        recent.append({"id": insight.id, "type": insight.type, "timestamp": at.isoformat()})
        row.insights_by_type = json.dumps(by_type)
        row.total_insights += 1
        row.recent_insights = json.dumps(recent[-RECENT_INSIGHTS_WINDOW:])
        row.last_update = at.isoformat()
        row.save()

        meta = insight.metadata
        if insight.type == TOOL_FEEDBACK and meta.tool_id:
            tool, _ = ToolMetricsModel.get_or_create(tool_id=meta.tool_id)
            feedback = json.loads(tool.recent_feedback)
            feedback.append({
                "success": meta.success,
                "timestamp": at.isoformat(),
                "context": meta.query_context,
            })
            tool.total_uses += 1
            tool.successful_uses += 1 if meta.success else 0
            tool.recent_feedback = json.dumps(feedback[-RECENT_FEEDBACK_WINDOW:])
            tool.updated_at = at.isoformat()
            tool.save()

    def _record_insight_sync(self, insight: Insight, at: datetime | None = None) -> None:
        at = at or datetime.now(timezone.utc)
        with database.connection_context():
            with database.atomic("IMMEDIATE"):
                self._apply_insight(insight, at)

    async def record_insight(self, insight: Insight) -> None:
        """Fold a newly created insight into today's aggregate and its tool's counters."""
        await self._run(self._record_insight_sync, insight)

    def _learning_metrics_sync(self, day: date) -> LearningMetrics | None:
        with database.connection_context():
            row = LearningMetricsModel.get_or_none(LearningMetricsModel.day == day.isoformat())
            if row is None:
                return None
            return LearningMetrics(
                date=day,
                insights_by_type=json.loads(row.insights_by_type),
                total_insights=row.total_insights,
                recent_insights=[InsightReference(**r) for r in json.loads(row.recent_insights)],
                last_update=row.last_update,
            )

    async def learning_metrics(self, day: date | None = None) -> LearningMetrics | None:
        return await self._run(self._learning_metrics_sync, day or datetime.now(timezone.utc).date())

    def _tool_metrics_sync(self, tool_id: str) -> ToolMetrics:
        with database.connection_context():
            row = ToolMetricsModel.get_or_none(ToolMetricsModel.tool_id == tool_id)
            if row is None:
                return ToolMetrics(tool_id=tool_id)
            return ToolMetrics(
                tool_id=tool_id,
                total_uses=row.total_uses,
                successful_uses=row.successful_uses,
                recent_feedback=[ToolFeedback(**f) for f in json.loads(row.recent_feedback)],
            )

    async def tool_metrics(self, tool_id: str) -> ToolMetrics:
        return await self._run(self._tool_metrics_sync, tool_id)

    def _rebuild_sync(self, insights: list[Insight]) -> int:
        ordered = sorted(
            (i for i in insights if i.metadata.created_at),
            key=lambda i: i.metadata.created_at,
        )
        with database.connection_context():
            with database.atomic("IMMEDIATE"):
                LearningMetricsModel.delete().execute()
                ToolMetricsModel.delete().execute()
                for insight in ordered:
                    self._apply_insight(insight, insight.metadata.created_at)
        return len(ordered)

    async def rebuild(self, insights: list[Insight]) -> int:
        """Recompute every aggregate from the insight collection. Returns insights replayed."""
        return await self._run(self._rebuild_sync, insights)
