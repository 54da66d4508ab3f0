import json
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite
import numpy as np

from .models import Insight, InsightMetadata

SCHEMA = """\
CREATE TABLE IF NOT EXISTS insights (
    id TEXT PRIMARY KEY,
    content TEXT NOT NULL,
    type TEXT NOT NULL,
    tags TEXT NOT NULL DEFAULT '[]',
    related_tools TEXT NOT NULL DEFAULT '[]',
    validated_by TEXT NOT NULL DEFAULT '[]',
    extra TEXT NOT NULL DEFAULT '{}',
    tool_id TEXT,
    success INTEGER,
    query_context TEXT NOT NULL DEFAULT '',
    source TEXT NOT NULL DEFAULT 'system',
    confidence REAL NOT NULL DEFAULT 0.0,
    use_count INTEGER NOT NULL DEFAULT 0,
    embedding BLOB,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    last_used TEXT
);
CREATE INDEX IF NOT EXISTS idx_insights_type ON insights(type);
"""

SCHEMA_VERSIONS = """\
CREATE TABLE IF NOT EXISTS schema_versions (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL,
    description TEXT NOT NULL
);
"""


async def _migrate_001_tool_index(db: aiosqlite.Connection) -> str:
    """Index tool feedback lookups."""
    await db.execute("CREATE INDEX IF NOT EXISTS idx_insights_tool_id ON insights(tool_id)")
    await db.commit()
    return "Add tool_id index on insights"


def cosine_similarity(query: np.ndarray, stored: np.ndarray) -> float | None:
    """Cosine similarity, or None when either vector is empty or mismatched."""
    if query.shape != stored.shape:
        return None
    norm_q = np.linalg.norm(query)
    norm_s = np.linalg.norm(stored)
    if norm_q == 0 or norm_s == 0:
        return None
    return float(np.dot(query, stored) / (norm_q * norm_s))


def nearest(
    query_embedding: np.ndarray,
    rows: Iterable,
    to_record: Callable,
    num_candidates: int,
    limit: int,
    predicate: Callable | None = None,
) -> list[tuple]:
    """Exhaustive nearest-neighbour search over rows carrying an ``embedding`` blob.

    Mirrors an ANN index contract: the best ``num_candidates`` by similarity form
    the candidate pool, ``predicate`` filters that pool, and ``limit`` caps the rest.
    """
    query = np.asarray(query_embedding, dtype=np.float32)
    scored = []
    for row in rows:
        stored = np.frombuffer(row["embedding"], dtype=np.float32)
        score = cosine_similarity(query, stored)
        if score is None:
            continue
        scored.append((row, score))

    scored.sort(key=lambda pair: pair[1], reverse=True)
    results = []
    for row, score in scored[: max(num_candidates, limit)]:
        record = to_record(row)
        if predicate is not None and not predicate(record):
            continue
        results.append((record, score))
        if len(results) >= limit:
            break
    return results


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class InsightStore:
    """SQLite-backed insight collection with an embedding index."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._migrations: list = [(1, _migrate_001_tool_index)]

    async def initialize(self):
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(self.db_path) as db:
            await db.executescript(SCHEMA)
            await db.executescript(SCHEMA_VERSIONS)
            await db.commit()

            cursor = await db.execute("SELECT MAX(version) FROM schema_versions")
            row = await cursor.fetchone()
            current_version = row[0] if row[0] is not None else 0

            for version, migrate_fn in sorted(self._migrations):
                if version > current_version:
                    description = await migrate_fn(db)
                    await db.execute(
                        "INSERT INTO schema_versions (version, applied_at, description) VALUES (?, ?, ?)",
                        (version, _now(), description or f"migration {version}"),
                    )
                    await db.commit()

    async def insert(self, insight: Insight, embedding: np.ndarray | None = None) -> Insight:
        insight_id = insight.id or str(uuid.uuid4())
        now = _now()
        meta = insight.metadata
        embedding_bytes = (
            np.asarray(embedding, dtype=np.float32).tobytes() if embedding is not None else None
        )

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """INSERT INTO insights
                   (id, content, type, tags, related_tools, validated_by, extra, tool_id, success,
                    query_context, source, confidence, use_count, embedding, created_at, updated_at, last_used)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    insight_id,
                    insight.content,
                    insight.type,
                    json.dumps(meta.tags),
                    json.dumps(meta.related_tools),
                    json.dumps(meta.validated_by),
                    json.dumps(meta.extra, default=str),
                    meta.tool_id,
                    None if meta.success is None else int(meta.success),
                    meta.query_context,
                    meta.source,
                    meta.confidence,
                    meta.use_count,
                    embedding_bytes,
                    meta.created_at.isoformat() if meta.created_at else now,
                    now,
                    meta.last_used.isoformat() if meta.last_used else None,
                ),
            )
            await db.commit()
        return await self.get(insight_id)

    async def get(self, insight_id: str) -> Insight | None:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM insights WHERE id = ?", (insight_id,))
            row = await cursor.fetchone()
            if row is None:
                return None
            return _row_to_insight(row)

    async def increment_usage(self, insight_ids: list[str]) -> int:
        """Bump use_count and last_used. Returns the number of rows touched."""
        if not insight_ids:
            return 0
        now = _now()
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.executemany(
                "UPDATE insights SET use_count = use_count + 1, last_used = ? WHERE id = ?",
                [(now, insight_id) for insight_id in insight_ids],
            )
            await db.commit()
            return cursor.rowcount

    async def replace_content(
        self, insight_id: str, content: str, type: str, embedding: np.ndarray
    ) -> Insight | None:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "UPDATE insights SET content = ?, type = ?, embedding = ?, updated_at = ? WHERE id = ?",
                (content, type, np.asarray(embedding, dtype=np.float32).tobytes(), _now(), insight_id),
            )
            await db.commit()
            if cursor.rowcount == 0:
                return None
        return await self.get(insight_id)

    async def delete(self, insight_id: str) -> bool:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("DELETE FROM insights WHERE id = ?", (insight_id,))
            await db.commit()
            return cursor.rowcount > 0

    async def vector_search(
        self,
        query_embedding: np.ndarray,
        num_candidates: int = 10,
        limit: int = 5,
        type: str | None = None,
    ) -> list[tuple[Insight, float]]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM insights WHERE embedding IS NOT NULL")
            rows = await cursor.fetchall()

        predicate = (lambda insight: insight.type == type) if type else None
        return nearest(query_embedding, rows, _row_to_insight, num_candidates, limit, predicate)

    async def list_all(self, type: str | None = None, limit: int | None = None) -> list[Insight]:
        conditions = []
        params: list = []
        if type:
            conditions.append("type = ?")
            params.append(type)
        where = f" WHERE {' AND '.join(conditions)}" if conditions else ""
        query = f"SELECT * FROM insights{where} ORDER BY created_at DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            return [_row_to_insight(row) for row in rows]


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _row_to_insight(row) -> Insight:
    return Insight(
        id=row["id"],
        content=row["content"],
        type=row["type"],
        metadata=InsightMetadata(
            tags=json.loads(row["tags"]),
            related_tools=json.loads(row["related_tools"]),
            validated_by=json.loads(row["validated_by"]),
            extra=json.loads(row["extra"]) if row["extra"] else {},
            tool_id=row["tool_id"],
            success=None if row["success"] is None else bool(row["success"]),
            query_context=row["query_context"],
            source=row["source"],
            confidence=row["confidence"],
            use_count=row["use_count"],
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
            last_used=_parse_ts(row["last_used"]),
        ),
    )
