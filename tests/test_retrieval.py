"""Retrieval engine tests with fake embeddings and a scripted LLM pipeline."""

import asyncio

import pytest

from conftest import FakeEmbeddings, FakeLLM
from config.settings import RetrievalSettings
from indexer.errors import NotInitialized
from indexer.retrieval import RetrievalEngine
from indexer.vector_store import InMemoryVectorStore
from pipelines.chunker import TextChunker
from server.caching import QueryCache

DOCS = {
    "https://docs.example.com/install": "install the package with pip install alpha then run alpha setup",
    "https://docs.example.com/config": "configure alpha with a yaml file and environment variables",
    "https://docs.example.com/deploy": "deploy the service behind a reverse proxy with docker",
    "https://docs.example.com/code": "call ```python alpha.run() ``` or use `alpha.stop()` `alpha.wait()` `alpha.reset()`",
}


def make_engine(llm=None, settings=None):
    return RetrievalEngine(
        embeddings=FakeEmbeddings(),
        vector_store=InMemoryVectorStore(),
        llm=llm or FakeLLM(),
        cache=QueryCache(),
        settings=settings,
    )


async def index_docs(engine, job_id="job"):
    chunker = TextChunker()
    for url, text in DOCS.items():
        await engine.index_chunks(job_id, url, chunker.chunk_text(text, job_id=job_id, url=url))


@pytest.mark.asyncio
async def test_retrieve_returns_scored_chunks():
    engine = make_engine()
    await engine.initialize()
    await index_docs(engine)

    result = await engine.retrieve("alpha install", limit=2)

    assert len(result.chunks) == 2
    assert result.total_found == 2
    assert result.chunks[0].url == "https://docs.example.com/install"
    assert result.chunks[0].score >= result.chunks[1].score
    assert result.query_time >= 0


@pytest.mark.asyncio
async def test_threshold_drops_weak_matches():
    engine = make_engine()
    await engine.initialize()
    await index_docs(engine)

    result = await engine.retrieve("reverse proxy docker", limit=10, threshold=0.3)
    assert [chunk.url for chunk in result.chunks] == ["https://docs.example.com/deploy"]


@pytest.mark.asyncio
async def test_job_filter():
    engine = make_engine()
    await engine.initialize()
    await index_docs(engine, "a")
    await index_docs(engine, "b")

    result = await engine.retrieve("alpha", limit=20, job_ids=["b"])
    assert result.chunks
    assert {chunk.chunk.job_id for chunk in result.chunks} == {"b"}


@pytest.mark.asyncio
async def test_intelligent_retrieve_enriches_chunks():
    llm = FakeLLM(answers={"pip": 0.9})
    engine = make_engine(llm)
    await engine.initialize()
    await index_docs(engine)

    result = await engine.intelligent_retrieve("alpha install", limit=3)

    assert not result.from_cache
    assert not result.degraded
    assert result.total_found >= len(result.chunks)
    assert all(chunk.rerank_score is not None for chunk in result.chunks)
    assert all(chunk.summary for chunk in result.chunks)
    install = [chunk for chunk in result.chunks if chunk.url.endswith("/install")][0]
    assert install.answer.answer == "pip"


@pytest.mark.asyncio
async def test_code_blocks_are_attached():
    engine = make_engine()
    await engine.initialize()
    await index_docs(engine)

    result = await engine.intelligent_retrieve("alpha run stop wait reset", limit=5)
    code_chunk = [chunk for chunk in result.chunks if chunk.url.endswith("/code")][0]

    languages = [block.language for block in code_chunk.code_blocks]
    assert languages == ["python", "text"]
    assert code_chunk.code_blocks[0].code == "alpha.run()"
    assert code_chunk.code_blocks[1].synthetic


@pytest.mark.asyncio
async def test_second_identical_query_is_served_from_cache():
    llm = FakeLLM()
    engine = make_engine(llm)
    await engine.initialize()
    await index_docs(engine)

    first = await engine.intelligent_retrieve("alpha install", limit=3)
    second = await engine.intelligent_retrieve("  Alpha   INSTALL ", limit=3)

    assert second.from_cache
    assert llm.rerank_calls == 1
    assert [chunk.to_dict() for chunk in second.chunks] == [chunk.to_dict() for chunk in first.chunks]
    assert engine.get_cache_stats()["hits"] == 1


@pytest.mark.asyncio
async def test_concurrent_identical_queries_compute_once():
    llm = FakeLLM(rerank_delay=0.05)
    engine = make_engine(llm)
    await engine.initialize()
    await index_docs(engine)

    results = await asyncio.gather(
        engine.intelligent_retrieve("alpha install", limit=3),
        engine.intelligent_retrieve("alpha install", limit=3),
    )

    assert llm.rerank_calls == 1
    assert sorted(result.from_cache for result in results) == [False, True]
    assert engine._flights == {}


@pytest.mark.asyncio
async def test_stage_callbacks_fire_for_fresh_and_cached_queries():
    engine = make_engine()
    await engine.initialize()
    await index_docs(engine)

    stages = []
    await engine.intelligent_retrieve("alpha", limit=2, on_stage=lambda stage, details: stages.append(stage))
    await engine.intelligent_retrieve("alpha", limit=2, on_stage=lambda stage, details: stages.append(stage))

    assert stages == ["retrieving", "scoring", "retrieving", "scoring"]


@pytest.mark.asyncio
async def test_failing_stage_degrades_to_plain_retrieval():
    llm = FakeLLM(rerank_error=RuntimeError("reranker crashed"))
    engine = make_engine(llm)
    await engine.initialize()
    await index_docs(engine)

    plain = await engine.retrieve("alpha install", limit=3)
    result = await engine.intelligent_retrieve("alpha install", limit=3)

    assert result.degraded
    assert result.error == "reranker crashed"
    assert [chunk.chunk.id for chunk in result.chunks] == [chunk.chunk.id for chunk in plain.chunks]
    assert all(chunk.answer is None and chunk.summary is None for chunk in result.chunks)

    # Degraded results are not cached
    again = await engine.intelligent_retrieve("alpha install", limit=3)
    assert not again.from_cache
    assert llm.rerank_calls == 2


@pytest.mark.asyncio
async def test_poor_answers_are_dropped_only_when_a_good_one_exists():
    llm = FakeLLM(answers={"pip": 0.9, "yaml": 0.01})
    engine = make_engine(llm)
    await engine.initialize()
    await index_docs(engine)

    result = await engine.intelligent_retrieve("alpha install configure", limit=4)
    urls = [chunk.url for chunk in result.chunks]
    assert "https://docs.example.com/install" in urls
    assert "https://docs.example.com/config" not in urls

    weak = make_engine(FakeLLM(answers={"yaml": 0.01}))
    await weak.initialize()
    await index_docs(weak)
    kept = await weak.intelligent_retrieve("alpha install configure", limit=4)
    assert "https://docs.example.com/config" in [chunk.url for chunk in kept.chunks]


@pytest.mark.asyncio
async def test_delete_job_clears_vectors_and_cache():
    engine = make_engine()
    await engine.initialize()
    await index_docs(engine)
    await engine.intelligent_retrieve("alpha", limit=2)
    assert engine.get_cache_stats()["size"] == 1

    removed = await engine.delete_job("job")

    assert removed == len(DOCS)
    assert engine.get_cache_stats()["size"] == 0
    assert (await engine.get_stats())["total_chunks"] == 0


@pytest.mark.asyncio
async def test_default_limits_come_from_settings():
    engine = make_engine(settings=RetrievalSettings(default_limit=1, intelligent_limit=2))
    await engine.initialize()
    await index_docs(engine)

    assert len((await engine.retrieve("alpha")).chunks) == 1
    assert len((await engine.intelligent_retrieve("alpha")).chunks) <= 2


@pytest.mark.asyncio
async def test_use_before_initialize_raises():
    engine = make_engine()
    with pytest.raises(NotInitialized):
        await engine.retrieve("alpha")


@pytest.mark.asyncio
async def test_changing_a_returned_result_does_not_touch_the_cache():
    engine = make_engine()
    await engine.initialize()
    await index_docs(engine)

    first = await engine.intelligent_retrieve("alpha", limit=2)
    expected = [chunk.to_dict() for chunk in first.chunks]
    first.chunks[0].summary = "edited"
    first.chunks.clear()

    second = await engine.intelligent_retrieve("alpha", limit=2)
    assert second.from_cache
    assert [chunk.to_dict() for chunk in second.chunks] == expected

    second.chunks.pop()
    third = await engine.intelligent_retrieve("alpha", limit=2)
    assert [chunk.to_dict() for chunk in third.chunks] == expected
