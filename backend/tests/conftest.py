from __future__ import annotations

"""Shared pytest fixtures and test environment defaults."""

import os
import sys
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

os.environ["GRAPHRAG_STORAGE"] = "memory"
os.environ["GRAPHRAG_PROBE_ON_STARTUP"] = "0"
os.environ["OLLAMA_BASE_URL"] = "http://ollama.invalid:11434"
os.environ.pop("GRAPHRAG_STRATEGY", None)
os.environ.pop("GRAPHRAG_PERFORMANCE_MODE", None)
for _flag in ("GRAPHRAG_HYDE", "GRAPHRAG_PAGERANK", "GRAPHRAG_RERANKING", "GRAPHRAG_SYNTHESIS"):
    os.environ.pop(_flag, None)

from graphrag_local.engine import GraphRAGEngine  # noqa: E402
from graphrag_local.persistence import MemoryBackend  # noqa: E402
from graphrag_local.settings import EngineConfig  # noqa: E402


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def config() -> EngineConfig:
    return EngineConfig(chunk_window=200, chunk_overlap=20, yield_every=4)


@pytest.fixture
def backend() -> MemoryBackend:
    return MemoryBackend()


@pytest.fixture
def engine(config: EngineConfig, backend: MemoryBackend) -> GraphRAGEngine:
    return GraphRAGEngine(config=config, backend=backend)


def assert_no_dangling(engine: GraphRAGEngine) -> None:
    """Every graph reference points at a live chunk, entity or document."""

    documents, chunks = engine.store.tables()
    graph = engine.graph
    for entity in graph.entities.values():
        assert entity.source_chunk_ids, entity.id
        for cid in entity.source_chunk_ids:
            assert cid in chunks, (entity.id, cid)
    for rel in graph.relations():
        assert rel.subject_entity_id in graph.entities
        assert rel.object_entity_id in graph.entities
        assert rel.subject_entity_id < rel.object_entity_id
        assert rel.co_occurrence_weight > 0
    for doc_id in graph.indexed_documents():
        assert doc_id in documents
