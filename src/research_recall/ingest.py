from __future__ import annotations

import json
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .catalog import ToolCatalog
from .embeddings import BedrockEmbeddingEngine, EmbeddingEngine
from .models import Tool

logger = logging.getLogger(__name__)


def tool_embedding_text(tool: Tool) -> str:
    return " ".join([tool.name, tool.description, *tool.tags]).strip()


def read_tools(path: str | Path) -> list[Tool]:
    """Read tools from a JSON file holding either ``{"tools": [...]}`` or a bare list.

    Entries that fail validation are skipped with a warning.
    """
    data = json.loads(Path(path).read_text())
    entries = data.get("tools", []) if isinstance(data, dict) else data
    tools = []
    for i, entry in enumerate(entries):
        try:
            tools.append(Tool.model_validate(entry))
        except ValidationError as e:
            logger.warning("Skipping tool #%d in %s: %s", i, path, e)
    return tools


async def load_tools(
    catalog: ToolCatalog,
    embeddings: EmbeddingEngine | BedrockEmbeddingEngine,
    path: str | Path,
    on_progress: Callable[..., Any] | None = None,
) -> int:
    """Embed every tool in the file in one batch and upsert it into the catalog.

    Returns the number of tools stored.
    """
    tools = read_tools(path)
    if not tools:
        return 0

    vectors = embeddings.embed_batch([tool_embedding_text(t) for t in tools])
    for i, (tool, vector) in enumerate(zip(tools, vectors)):
        tool_id = await catalog.upsert(tool, vector)
        if on_progress:
            on_progress(i + 1, len(tools), tool_id)
    logger.info("Loaded %d tools from %s", len(tools), path)
    return len(tools)
