from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite
import numpy as np

from .models import SearchFilters, Tool, UseCase
from .storage import nearest

SCHEMA = """\
CREATE TABLE IF NOT EXISTS tools (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    type TEXT NOT NULL DEFAULT '',
    pricing TEXT NOT NULL DEFAULT '',
    url TEXT NOT NULL DEFAULT '',
    tags TEXT NOT NULL DEFAULT '[]',
    categories TEXT NOT NULL DEFAULT '[]',
    use_cases TEXT NOT NULL DEFAULT '[]',
    embedding BLOB,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_tools_type ON tools(type);
CREATE INDEX IF NOT EXISTS idx_tools_pricing ON tools(pricing);
CREATE VIRTUAL TABLE IF NOT EXISTS tools_fts USING fts5(
    id UNINDEXED, name, description, tags, use_case_description, use_case_method
);
CREATE VIRTUAL TABLE IF NOT EXISTS tools_vocab USING fts5vocab(tools_fts, 'row');
"""

# Document field paths -> FTS5 columns
TEXT_FIELDS = {
    "name": "name",
    "description": "description",
    "tags": "tags",
    "use_cases.description": "use_case_description",
    "use_cases.method": "use_case_method",
}
DEFAULT_TEXT_FIELDS = list(TEXT_FIELDS)

_TOKEN = re.compile(r"[^\W_]+")


def edit_distance_within(a: str, b: str, max_edits: int) -> bool:
    """True if a and b differ by at most max_edits insertions, deletions,
    substitutions or adjacent transpositions."""
    if abs(len(a) - len(b)) > max_edits:
        return False
    prev2: list[int] | None = None
    prev = list(range(len(b) + 1))
    for i in range(1, len(a) + 1):
        cur = [i] + [0] * len(b)
        for j in range(1, len(b) + 1):
            cost = 0 if a[i - 1] == b[j - 1] else 1
            cur[j] = min(prev[j] + 1, cur[j - 1] + 1, prev[j - 1] + cost)
            if (
                prev2 is not None
                and i > 1
                and j > 1
                and a[i - 1] == b[j - 2]
                and a[i - 2] == b[j - 1]
            ):
                cur[j] = min(cur[j], prev2[j - 2] + 1)
        if min(cur) > max_edits:
            return False
        prev2, prev = prev, cur
    return prev[-1] <= max_edits


def fuzzy_expand(
    token: str, vocabulary: list[str], max_edits: int = 2, prefix_length: int = 1
) -> list[str]:
    """Vocabulary terms within max_edits of token that share its first prefix_length characters."""
    prefix = token[:prefix_length]
    return [
        term
        for term in vocabulary
        if term.startswith(prefix) and edit_distance_within(token, term, max_edits)
    ]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ToolCatalog:
    """Tool records with a vector index and an FTS5 lexical index."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)

    async def initialize(self):
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(self.db_path) as db:
            await db.executescript(SCHEMA)
            await db.commit()

    async def upsert(self, tool: Tool, embedding: np.ndarray | None = None) -> str:
        tool_id = tool.id or re.sub(r"[^a-z0-9]+", "-", tool.name.lower()).strip("-")
        now = _now()
        embedding_bytes = (
            np.asarray(embedding, dtype=np.float32).tobytes() if embedding is not None else None
        )
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("SELECT created_at FROM tools WHERE id = ?", (tool_id,))
            existing = await cursor.fetchone()
            await db.execute(
                """INSERT OR REPLACE INTO tools
                   (id, name, description, type, pricing, url, tags, categories, use_cases,
                    embedding, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    tool_id,
                    tool.name,
                    tool.description,
                    tool.type,
                    tool.pricing,
                    tool.url,
                    json.dumps(tool.tags),
                    json.dumps(tool.categories),
                    json.dumps([u.model_dump() for u in tool.use_cases]),
                    embedding_bytes,
                    existing[0] if existing else now,
                    now,
                ),
            )
            await db.execute("DELETE FROM tools_fts WHERE id = ?", (tool_id,))
            await db.execute(
                """INSERT INTO tools_fts
                   (id, name, description, tags, use_case_description, use_case_method)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    tool_id,
                    tool.name,
                    tool.description,
                    " ".join(tool.tags),
                    " ".join(u.description for u in tool.use_cases),
                    " ".join(u.method for u in tool.use_cases),
                ),
            )
            await db.commit()
        return tool_id

    async def get(self, tool_id: str) -> Tool | None:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM tools WHERE id = ?", (tool_id,))
            row = await cursor.fetchone()
            return _row_to_tool(row) if row else None

    async def delete(self, tool_id: str) -> bool:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("DELETE FROM tools WHERE id = ?", (tool_id,))
            await db.execute("DELETE FROM tools_fts WHERE id = ?", (tool_id,))
            await db.commit()
            return cursor.rowcount > 0

    async def count(self) -> int:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("SELECT COUNT(*) FROM tools")
            row = await cursor.fetchone()
            return row[0]

    async def vector_search(
        self,
        query_embedding: np.ndarray,
        num_candidates: int = 100,
        limit: int = 10,
        filters: SearchFilters | None = None,
    ) -> list[tuple[Tool, float]]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM tools WHERE embedding IS NOT NULL")
            rows = await cursor.fetchall()

        predicate = filters.matches if filters and not filters.is_empty() else None
        return nearest(query_embedding, rows, _row_to_tool, num_candidates, limit, predicate)

    async def text_search(
        self,
        query: str,
        fields: list[str] | None = None,
        max_edits: int = 2,
        prefix_length: int = 1,
        filters: SearchFilters | None = None,
        limit: int = 10,
    ) -> list[tuple[Tool, float]]:
        """BM25 full-text search; each query token also matches vocabulary terms
        within ``max_edits`` that share its first ``prefix_length`` characters."""
        tokens = list(dict.fromkeys(_TOKEN.findall(query.lower())))
        if not tokens:
            return []
        columns = [TEXT_FIELDS[f] for f in (fields or DEFAULT_TEXT_FIELDS)]

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT term FROM tools_vocab")
            vocabulary = [row["term"] for row in await cursor.fetchall()]

            terms: list[str] = []
            for token in tokens:
                terms.extend(fuzzy_expand(token, vocabulary, max_edits, prefix_length))
            terms = list(dict.fromkeys(terms))
            if not terms:
                return []

            match = "{%s} : (%s)" % (" ".join(columns), " OR ".join(f'"{t}"' for t in terms))
            cursor = await db.execute(
                """SELECT tools.*, -bm25(tools_fts) AS text_score
                   FROM tools_fts JOIN tools ON tools.id = tools_fts.id
                   WHERE tools_fts MATCH ?
                   ORDER BY bm25(tools_fts)""",
                (match,),
            )
            rows = await cursor.fetchall()

        results = []
        for row in rows:
            tool = _row_to_tool(row)
            if filters and not filters.matches(tool):
                continue
            results.append((tool, float(row["text_score"])))
            if len(results) >= limit:
                break
        return results


def _row_to_tool(row) -> Tool:
    return Tool(
        id=row["id"],
        name=row["name"],
        description=row["description"],
        type=row["type"],
        pricing=row["pricing"],
        url=row["url"],
        tags=json.loads(row["tags"]),
        categories=json.loads(row["categories"]),
        use_cases=[UseCase(**u) for u in json.loads(row["use_cases"])],
    )
