import re
import sys
import zlib
from pathlib import Path

import numpy as np
import pytest

# Add src to path for imports to work with src/ layout
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

DIM = 64


class FakeEmbeddings:
    """Deterministic bag-of-words embeddings. Explicit vectors can be pinned per text."""

    def __init__(self):
        self.pinned: dict[str, np.ndarray] = {}
        self.calls: list[str] = []

    def pin(self, text: str, vector) -> None:
        vec = np.asarray(vector, dtype=np.float32)
        self.pinned[text] = vec / np.linalg.norm(vec)

    def embed(self, text: str) -> np.ndarray:
        self.calls.append(text)
        if text in self.pinned:
            return self.pinned[text]
        vec = np.zeros(DIM, dtype=np.float32)
        for word in re.findall(r"\w+", text.lower()):
            vec[zlib.crc32(word.encode()) % DIM] += 1.0
        norm = np.linalg.norm(vec)
        return vec / norm if norm > 0 else vec

    def embed_batch(self, texts: list[str]) -> np.ndarray:
        return np.array([self.embed(t) for t in texts], dtype=np.float32)


@pytest.fixture
def tmp_db(tmp_path):
    """Provide a temporary SQLite database path."""
    return str(tmp_path / "test_recall.db")


@pytest.fixture
def fake_embeddings():
    return FakeEmbeddings()
