import json

import numpy as np
import pytest
from unittest.mock import MagicMock, patch
from research_recall.embeddings import EmbeddingEngine, BedrockEmbeddingEngine, create_embedding_engine


def _mock_embedding_response(embeddings: list[list[float]]):
    """Create a mock OpenAI embeddings response."""
    mock_response = MagicMock()
    mock_response.data = []
    for emb in embeddings:
        mock_datum = MagicMock()
        mock_datum.embedding = emb
        mock_response.data.append(mock_datum)
    return mock_response


def _mock_bedrock_response(embedding: list[float]):
    """Create a mock Bedrock invoke_model response."""
    body = MagicMock()
    body.read.return_value = json.dumps({"embedding": embedding}).encode()
    return {"body": body}


class TestEmbeddingEngine:
    def test_embed_returns_normalized_float32(self):
        engine = EmbeddingEngine()
        mock_client = MagicMock()
        mock_client.embeddings.create.return_value = _mock_embedding_response([[3.0, 4.0]])
        engine._client = mock_client

        result = engine.embed("citation manager for PDFs")
        assert result.dtype == np.float32
        assert result.shape == (2,)
        assert abs(np.linalg.norm(result) - 1.0) < 1e-5

    def test_embed_batch_rows_are_normalized(self):
        engine = EmbeddingEngine()
        mock_client = MagicMock()
        mock_client.embeddings.create.return_value = _mock_embedding_response(
            [[1.0, 0.0], [0.0, 2.0], [1.0, 1.0]]
        )
        engine._client = mock_client

        results = engine.embed_batch(["zotero", "mendeley", "endnote"])
        assert results.shape == (3, 2)
        for row in results:
            assert abs(np.linalg.norm(row) - 1.0) < 1e-5

    def test_embed_calls_configured_model(self):
        engine = EmbeddingEngine(model="text-embedding-3-large")
        mock_client = MagicMock()
        mock_client.embeddings.create.return_value = _mock_embedding_response([[0.5, 0.5]])
        engine._client = mock_client

        engine.embed("survey design")
        mock_client.embeddings.create.assert_called_once_with(
            input=["survey design"], model="text-embedding-3-large"
        )

    def test_empty_text_rejected_before_calling_provider(self):
        engine = EmbeddingEngine()
        engine._client = MagicMock()
        with pytest.raises(ValueError):
            engine.embed("   ")
        engine._client.embeddings.create.assert_not_called()

    def test_empty_batch_skips_provider(self):
        engine = EmbeddingEngine()
        engine._client = MagicMock()
        assert engine.embed_batch([]).shape == (0, 0)
        engine._client.embeddings.create.assert_not_called()

    def test_large_batch_is_split_into_requests(self):
        engine = EmbeddingEngine(batch_size=2)
        mock_client = MagicMock()
        mock_client.embeddings.create.side_effect = [
            _mock_embedding_response([[1.0, 0.0], [0.0, 1.0]]),
            _mock_embedding_response([[2.0, 0.0]]),
        ]
        engine._client = mock_client

        results = engine.embed_batch(["a", "b", "c"])
        assert results.shape == (3, 2)
        np.testing.assert_allclose(results[2], [1.0, 0.0])
        inputs = [c.kwargs["input"] for c in mock_client.embeddings.create.call_args_list]
        assert inputs == [["a", "b"], ["c"]]

    def test_blank_entry_rejects_whole_batch(self):
        engine = EmbeddingEngine()
        engine._client = MagicMock()
        with pytest.raises(ValueError):
            engine.embed_batch(["zotero", ""])
        engine._client.embeddings.create.assert_not_called()

    def test_provider_error_propagates(self):
        engine = EmbeddingEngine()
        engine._client = MagicMock()
        engine._client.embeddings.create.side_effect = RuntimeError("rate limited")
        with pytest.raises(RuntimeError, match="rate limited"):
            engine.embed("anything")


class TestBedrockEmbeddingEngine:
    def test_embed_is_normalized(self):
        engine = BedrockEmbeddingEngine()
        mock_client = MagicMock()
        mock_client.invoke_model.return_value = _mock_bedrock_response([3.0, 4.0])
        engine._client = mock_client

        result = engine.embed("qualitative coding")
        assert result.dtype == np.float32
        assert abs(np.linalg.norm(result) - 1.0) < 1e-5

    def test_embed_batch(self):
        engine = BedrockEmbeddingEngine(max_workers=1)
        mock_client = MagicMock()
        mock_client.invoke_model.side_effect = [
            _mock_bedrock_response([1.0, 0.0]),
            _mock_bedrock_response([0.0, 1.0]),
            _mock_bedrock_response([1.0, 1.0]),
        ]
        engine._client = mock_client

        results = engine.embed_batch(["nvivo", "atlas", "dedoose"])
        assert results.shape == (3, 2)
        np.testing.assert_allclose(results[0], [1.0, 0.0])
        for row in results:
            assert abs(np.linalg.norm(row) - 1.0) < 1e-5

    def test_invoke_model_called_with_correct_params(self):
        engine = BedrockEmbeddingEngine(model="amazon.titan-embed-text-v2:0")
        mock_client = MagicMock()
        mock_client.invoke_model.return_value = _mock_bedrock_response([0.5, 0.5])
        engine._client = mock_client

        engine.embed("test")
        mock_client.invoke_model.assert_called_once_with(
            modelId="amazon.titan-embed-text-v2:0",
            contentType="application/json",
            accept="application/json",
            body=json.dumps({"inputText": "test"}),
        )

    def test_settings_from_env(self):
        with patch.dict("os.environ", {"BEDROCK_EMBEDDING_MODEL": "custom-model", "AWS_REGION": "eu-west-1"}):
            engine = BedrockEmbeddingEngine()
            assert engine._model == "custom-model"
            assert engine._aws_region == "eu-west-1"

    def test_client_built_from_session(self):
        with patch("research_recall.embeddings.boto3") as mock_boto3:
            engine = BedrockEmbeddingEngine(aws_region="eu-west-1", aws_profile="research")
            assert engine.client is mock_boto3.Session.return_value.client.return_value
            mock_boto3.Session.assert_called_once_with(region_name="eu-west-1", profile_name="research")
            mock_boto3.Session.return_value.client.assert_called_once_with("bedrock-runtime")


class TestCreateEmbeddingEngine:
    def test_openai_provider(self):
        assert isinstance(create_embedding_engine(provider="openai"), EmbeddingEngine)

    def test_bedrock_provider(self):
        assert isinstance(create_embedding_engine(provider="bedrock"), BedrockEmbeddingEngine)

    def test_env_var_selects_provider(self):
        with patch.dict("os.environ", {"EMBEDDING_PROVIDER": "bedrock"}):
            assert isinstance(create_embedding_engine(), BedrockEmbeddingEngine)

    def test_explicit_provider_overrides_env(self):
        with patch.dict("os.environ", {"EMBEDDING_PROVIDER": "bedrock"}):
            assert isinstance(create_embedding_engine(provider="openai"), EmbeddingEngine)

    def test_unknown_provider_rejected(self):
        with pytest.raises(ValueError, match="Unknown embedding provider"):
            create_embedding_engine(provider="cohere")
