from unittest.mock import Mock, patch

import numpy as np
import pytest

from indexer.embeddings import SentenceTransformerEmbeddings
from indexer.errors import EmbeddingError, NotInitialized


@pytest.fixture
def mock_sentence_transformer():
    """Mock SentenceTransformer model."""
    model = Mock()
    model.get_sentence_embedding_dimension.return_value = 3
    model.encode.side_effect = lambda texts, **kwargs: np.ones((len(texts), 3))
    return model


@pytest.mark.asyncio
async def test_initialize_loads_model(mock_sentence_transformer):
    with patch("sentence_transformers.SentenceTransformer", return_value=mock_sentence_transformer) as mock_st:
        provider = SentenceTransformerEmbeddings(model_name="test-model", device="cpu")
        await provider.initialize()

    mock_st.assert_called_once_with("test-model", device="cpu")
    assert provider.dimension == 3


@pytest.mark.asyncio
async def test_embed_documents_and_query(mock_sentence_transformer):
    provider = SentenceTransformerEmbeddings(batch_size=8)
    provider.model = mock_sentence_transformer
    provider._dimension = 3

    vectors = await provider.embed_documents(["  first  ", "second"])
    assert len(vectors) == 2
    assert vectors[0].dtype == np.float32
    args, kwargs = mock_sentence_transformer.encode.call_args
    assert args[0] == ["first", "second"]
    assert kwargs["batch_size"] == 8
    assert kwargs["normalize_embeddings"] is True

    query = await provider.embed_query("what is it?")
    assert query.shape == (3,)
    assert await provider.embed_documents([]) == []


@pytest.mark.asyncio
async def test_empty_query_is_rejected(mock_sentence_transformer):
    provider = SentenceTransformerEmbeddings()
    provider.model = mock_sentence_transformer
    with pytest.raises(EmbeddingError):
        await provider.embed_query("   ")


@pytest.mark.asyncio
async def test_use_before_initialize_raises():
    provider = SentenceTransformerEmbeddings()
    with pytest.raises(NotInitialized):
        await provider.embed_documents(["text"])
    with pytest.raises(NotInitialized):
        provider.dimension


@pytest.mark.asyncio
async def test_encode_failure_is_wrapped(mock_sentence_transformer):
    mock_sentence_transformer.encode.side_effect = RuntimeError("CUDA out of memory")
    provider = SentenceTransformerEmbeddings()
    provider.model = mock_sentence_transformer
    with pytest.raises(EmbeddingError, match="CUDA out of memory"):
        await provider.embed_documents(["text"])


@pytest.mark.asyncio
async def test_load_failure_is_wrapped():
    with patch("sentence_transformers.SentenceTransformer", side_effect=OSError("no such model")):
        provider = SentenceTransformerEmbeddings(model_name="missing")
        with pytest.raises(EmbeddingError):
            await provider.initialize()
