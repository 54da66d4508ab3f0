"""Text embedding providers.

Both engines hand back float32 unit vectors, so a dot product between any two
of them is their cosine similarity. Blank input is refused before any network
call is made.
"""

import json
import os
from concurrent.futures import ThreadPoolExecutor

import boto3
import numpy as np
import openai

OPENAI_MODEL = "text-embedding-3-small"
TITAN_MODEL = "amazon.titan-embed-text-v2:0"
OPENAI_BATCH_SIZE = 512


def _validated(texts: list[str]) -> list[str]:
    for text in texts:
        if not isinstance(text, str) or not text.strip():
            raise ValueError("Embedding input must be a non-empty string")
    return texts


class _UnitVectorEngine:
    """Shared front end: providers implement ``_vectors`` for a non-empty batch."""

    def _vectors(self, texts: list[str]) -> list[list[float]]:
        raise NotImplementedError

    def embed_batch(self, texts: list[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, 0), dtype=np.float32)
        matrix = np.array(self._vectors(_validated(list(texts))), dtype=np.float32)
        norms = np.linalg.norm(matrix, axis=1, keepdims=True)
        return matrix / np.where(norms == 0, 1, norms)

    def embed(self, text: str) -> np.ndarray:
        return self.embed_batch([text])[0]


class EmbeddingEngine(_UnitVectorEngine):
    """OpenAI embeddings. Large batches are split into ``batch_size`` requests."""

    def __init__(self, model: str = OPENAI_MODEL, batch_size: int = OPENAI_BATCH_SIZE):
        self._client: openai.OpenAI | None = None
        self._model = model
        self.batch_size = batch_size

    @property
    def client(self) -> openai.OpenAI:
        if self._client is None:
            self._client = openai.OpenAI(api_key=os.environ.get("OPENAI_API_KEY"))
        return self._client

    def _vectors(self, texts):
        vectors = []
        for start in range(0, len(texts), self.batch_size):
            response = self.client.embeddings.create(
                input=texts[start:start + self.batch_size], model=self._model
            )
            vectors.extend(item.embedding for item in response.data)
        return vectors


class BedrockEmbeddingEngine(_UnitVectorEngine):
    """Amazon Titan embeddings through the Bedrock runtime.

    Titan takes one text per request, so batches fan out over a thread pool.
    """

    def __init__(
        self,
        model: str | None = None,
        aws_region: str | None = None,
        aws_profile: str | None = None,
        max_workers: int = 10,
    ):
        self._client = None
        self._model = model or os.environ.get("BEDROCK_EMBEDDING_MODEL", TITAN_MODEL)
        self._aws_region = aws_region or os.environ.get("AWS_REGION", "us-east-1")
        self._aws_profile = aws_profile or os.environ.get("AWS_PROFILE")
        self._max_workers = max_workers

    @property
    def client(self):
        if self._client is None:
            session = boto3.Session(region_name=self._aws_region, profile_name=self._aws_profile)
            self._client = session.client("bedrock-runtime")
        return self._client

    def _titan(self, text: str) -> list[float]:
        response = self.client.invoke_model(
            modelId=self._model,
            contentType="application/json",
            accept="application/json",
            body=json.dumps({"inputText": text}),
        )
        return json.loads(response["body"].read())["embedding"]

    def _vectors(self, texts):
        if len(texts) == 1:
            return [self._titan(texts[0])]
        with ThreadPoolExecutor(max_workers=self._max_workers) as pool:
            return list(pool.map(self._titan, texts))


PROVIDERS = {
    "openai": EmbeddingEngine,
    "bedrock": BedrockEmbeddingEngine,
}


def create_embedding_engine(
    provider: str | None = None, **kwargs
) -> EmbeddingEngine | BedrockEmbeddingEngine:
    """Build the engine for ``provider``, defaulting to ``EMBEDDING_PROVIDER`` then OpenAI."""
    provider = provider or os.environ.get("EMBEDDING_PROVIDER", "openai")
    try:
        engine_cls = PROVIDERS[provider]
    except KeyError:
        raise ValueError(f"Unknown embedding provider: {provider}") from None
    return engine_cls(**kwargs)
