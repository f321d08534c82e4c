import numpy as np
import pytest

from indexer.errors import DimensionMismatch, NotInitialized
from indexer.vector_store import InMemoryVectorStore, cosine_similarity
from pipelines.chunker import TextChunker


def make_chunks(job_id, url, texts):
    chunker = TextChunker()
    chunks = []
    for order, text in enumerate(texts):
        chunk = chunker.chunk_text(text, job_id=job_id, url=url)[0]
        chunk.order = order
        chunk.id = f"c{order}"
        chunks.append(chunk)
    return chunks


def test_cosine_similarity_basics():
    v = [1.0, 2.0, 3.0]
    assert cosine_similarity(v, v) == pytest.approx(1.0)
    assert cosine_similarity(v, [0.0, 0.0, 0.0]) == 0.0
    assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)
    assert cosine_similarity([1, 0], [-1, 0]) == pytest.approx(-1.0)


def test_cosine_similarity_dimension_mismatch():
    with pytest.raises(DimensionMismatch):
        cosine_similarity([1, 2], [1, 2, 3])


@pytest.mark.asyncio
async def test_search_orders_by_descending_score():
    store = InMemoryVectorStore()
    await store.initialize()
    chunks = make_chunks("job", "https://a.example.com/", ["one", "two", "three"])
    await store.add_chunks("job", "https://a.example.com/", chunks,
                           [[1, 0, 0], [0.6, 0.8, 0], [0, 1, 0]])

    hits = await store.search([1, 0, 0], limit=3)

    assert [hit.document.text for hit in hits] == ["one", "two", "three"]
    assert [hit.score for hit in hits] == sorted((hit.score for hit in hits), reverse=True)
    assert hits[0].score == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_ties_keep_insertion_order():
    store = InMemoryVectorStore()
    await store.initialize()
    chunks = make_chunks("job", "https://a.example.com/", ["first", "second", "third"])
    await store.add_chunks("job", "https://a.example.com/", chunks, [[1, 1], [1, 1], [1, 1]])

    hits = await store.search([1, 1], limit=10)
    assert [hit.document.text for hit in hits] == ["first", "second", "third"]


@pytest.mark.asyncio
async def test_limit_and_job_filter():
    store = InMemoryVectorStore()
    await store.initialize()
    await store.add_chunks("a", "https://a.example.com/", make_chunks("a", "https://a.example.com/", ["x", "y"]),
                           [[1, 0], [0.9, 0.1]])
    await store.add_chunks("b", "https://b.example.com/", make_chunks("b", "https://b.example.com/", ["z"]),
                           [[1, 0]])

    assert len(await store.search([1, 0], limit=1)) == 1
    only_b = await store.search([1, 0], limit=10, job_ids=["b"])
    assert [hit.document.job_id for hit in only_b] == ["b"]
    assert await store.search([1, 0], limit=0) == []


@pytest.mark.asyncio
async def test_dimension_checks():
    store = InMemoryVectorStore()
    await store.initialize()
    chunks = make_chunks("job", "https://a.example.com/", ["one", "two"])

    with pytest.raises(DimensionMismatch):
        await store.add_chunks("job", "https://a.example.com/", chunks, [[1, 0]])

    await store.add_chunks("job", "https://a.example.com/", chunks, [[1, 0], [0, 1]])
    assert store.dimension == 2

    with pytest.raises(DimensionMismatch):
        await store.add_chunks("job", "https://a.example.com/", chunks[:1], [[1, 0, 0]])
    with pytest.raises(DimensionMismatch):
        await store.search([1, 0, 0])


@pytest.mark.asyncio
async def test_zero_query_vector_scores_zero():
    store = InMemoryVectorStore()
    await store.initialize()
    await store.add_chunks("job", "https://a.example.com/", make_chunks("job", "https://a.example.com/", ["one"]),
                           [[1, 0]])
    hits = await store.search([0, 0])
    assert hits[0].score == 0.0


@pytest.mark.asyncio
async def test_readding_a_chunk_replaces_it():
    store = InMemoryVectorStore()
    await store.initialize()
    chunks = make_chunks("job", "https://a.example.com/", ["one"])
    await store.add_chunks("job", "https://a.example.com/", chunks, [[1, 0]])
    await store.add_chunks("job", "https://a.example.com/", chunks, [[0, 1]])

    info = await store.get_info()
    assert info["count"] == 1
    hits = await store.search([0, 1])
    assert hits[0].score == pytest.approx(1.0)
    assert hits[0].document.id == "job_c0"


@pytest.mark.asyncio
async def test_clear_job_and_info():
    store = InMemoryVectorStore()
    await store.initialize("/tmp/index")
    await store.add_chunks("a", "https://a.example.com/", make_chunks("a", "https://a.example.com/", ["x", "y"]),
                           np.eye(2))
    await store.add_chunks("b", "https://b.example.com/", make_chunks("b", "https://b.example.com/", ["z"]),
                           [[1, 0]])

    info = await store.get_info()
    assert info["count"] == 3
    assert info["metadata"]["job_ids"] == ["a", "b"]
    assert info["metadata"]["storage_path"] == "/tmp/index"

    assert await store.clear_job("a") == 2
    assert await store.clear_job("missing") == 0
    assert (await store.get_info())["count"] == 1


@pytest.mark.asyncio
async def test_use_before_initialize_raises():
    store = InMemoryVectorStore()
    with pytest.raises(NotInitialized):
        await store.search([1, 0])
