from __future__ import annotations

"""Graph index tests: incremental rebuilds, neighbours, communities."""

import pytest

from conftest import assert_no_dangling
from graphrag_local.documents import DocumentStore
from graphrag_local.engine import GraphRAGEngine
from graphrag_local.errors import CorruptionError, NotFoundError
from graphrag_local.graph import KnowledgeGraph

pytestmark = pytest.mark.anyio


def _graph() -> tuple[DocumentStore, KnowledgeGraph]:
    store = DocumentStore(window=200, overlap=20)
    graph = KnowledgeGraph(chunk_source=store.get_chunks, yield_every=2)
    return store, graph


async def _add(store: DocumentStore, graph: KnowledgeGraph, text: str) -> str:
    doc = store.add_document("", text)
    await graph.rebuild_incremental(added=[doc.id], removed=[])
    return doc.id


async def _remove(store: DocumentStore, graph: KnowledgeGraph, doc_id: str) -> None:
    store.remove_document(doc_id)
    await graph.rebuild_incremental(added=[], removed=[doc_id])


async def test_relation_weight_tracks_co_occurring_chunks() -> None:
    store, graph = _graph()
    first = await _add(store, graph, "Paris and Berlin are capitals.")
    assert graph.relation_weight("ent:paris", "ent:berlin") == 1

    second = await _add(store, graph, "Paris and Berlin again.")
    assert graph.relation_weight("ent:berlin", "ent:paris") == 2
    assert graph.get_entity("ent:paris").mention_count == 2

    await _remove(store, graph, first)
    assert graph.relation_weight("ent:paris", "ent:berlin") == 1
    assert graph.get_entity("ent:paris").source_chunk_ids == frozenset({f"{second}:0"})

    await _remove(store, graph, second)
    assert graph.entities == {}
    assert graph.relations() == []
    with pytest.raises(NotFoundError):
        graph.get_entity("ent:paris")


async def test_version_bumps_only_on_change() -> None:
    store, graph = _graph()
    assert graph.version == 0
    await _add(store, graph, "Paris meets Berlin.")
    assert graph.version == 1
    changed = await graph.rebuild_incremental(added=[], removed=[])
    assert changed is False
    assert graph.version == 1


async def test_neighbors_expand_by_depth() -> None:
    store, graph = _graph()
    await _add(store, graph, "Paris meets Berlin.")
    await _add(store, graph, "Berlin meets Vienna.")
    await _add(store, graph, "Vienna meets Prague.")

    assert graph.neighbors("ent:paris", depth=1) == ["ent:berlin"]
    assert graph.neighbors("ent:paris", depth=2) == ["ent:berlin", "ent:vienna"]
    assert graph.neighbors("ent:paris", depth=3) == ["ent:berlin", "ent:vienna", "ent:prague"]
    assert graph.neighbors("ent:paris", depth=0) == []
    assert graph.neighbors("ent:unknown", depth=2) == []


async def test_neighbors_depth_is_capped() -> None:
    store = DocumentStore(window=200, overlap=20)
    graph = KnowledgeGraph(chunk_source=store.get_chunks, max_depth=1)
    await _add(store, graph, "Paris meets Berlin.")
    await _add(store, graph, "Berlin meets Vienna.")
    assert graph.neighbors("ent:paris", depth=5) == ["ent:berlin"]


async def test_communities_follow_threshold_and_cache_by_version() -> None:
    store, graph = _graph()
    await _add(store, graph, "Paris meets Berlin.")
    await _add(store, graph, "Vienna meets Prague.")

    communities = graph.community_detection()
    members = sorted(sorted(c.entity_ids) for c in communities)
    assert members == [["ent:berlin", "ent:paris"], ["ent:prague", "ent:vienna"]]
    assert graph.community_detection() is communities

    singletons = graph.community_detection(threshold=2.0)
    assert all(len(c.entity_ids) == 1 for c in singletons)

    await _add(store, graph, "Berlin meets Vienna.")
    merged = graph.community_detection()
    assert merged is not communities
    assert len(merged) == 1
    assert merged[0].entity_ids == frozenset({"ent:paris", "ent:berlin", "ent:vienna", "ent:prague"})
    assert merged[0].weight == 3.0


async def test_async_communities_match_sync() -> None:
    store, graph = _graph()
    await _add(store, graph, "Paris meets Berlin.")
    await _add(store, graph, "Vienna meets Prague.")
    view = graph.view()
    from_async = await view.communities_async()
    graph.communities_cache.drop_older_than(graph.version + 1)
    assert graph.community_detection() == from_async


async def test_old_view_communities_are_not_cached() -> None:
    store, graph = _graph()
    await _add(store, graph, "Paris meets Berlin.")
    old = graph.view()
    await _add(store, graph, "Vienna meets Prague.")
    old.communities()
    assert all(version == graph.version for (version, _thr), _ in graph.communities_cache.items())


async def test_prune_chunks_removes_postings() -> None:
    store, graph = _graph()
    doc_id = await _add(store, graph, "Paris meets Berlin.")
    assert graph.prune_chunks([f"{doc_id}:0"]) == 1
    assert graph.entities == {}
    assert graph.relations() == []
    assert graph.prune_chunks([f"{doc_id}:0"]) == 0


async def test_prune_reference_drops_the_dangling_chunk() -> None:
    store, graph = _graph()
    doc_id = await _add(store, graph, "Paris meets Berlin.")
    assert graph.prune_reference("ent:rome", f"{doc_id}:0") is False
    assert graph.prune_reference("ent:paris", f"{doc_id}:9") is False
    assert graph.prune_reference("ent:paris", f"{doc_id}:0") is True
    assert graph.entities == {}


async def test_compact_evicts_a_cached_community() -> None:
    store, graph = _graph()
    await _add(store, graph, "Paris meets Berlin.")
    graph.community_detection()
    assert graph.compact() == {"relations_dropped": 0, "communities_evicted": 1}
    assert len(graph.communities_cache) == 0
    assert graph.relation_weight("ent:paris", "ent:berlin") == 1


async def test_payload_round_trip() -> None:
    store, graph = _graph()
    await _add(store, graph, "Paris meets Berlin.")
    await _add(store, graph, "Berlin meets Vienna.")
    graph.community_detection()

    copy = KnowledgeGraph()
    copy.load_payload(graph.to_payload())
    assert copy.version == graph.version
    assert copy.entities == graph.entities
    assert copy.relations() == graph.relations()
    assert copy.indexed_documents() == graph.indexed_documents()
    assert len(copy.communities_cache) == 1
    assert copy.community_detection() == graph.community_detection()


def test_load_payload_rejects_bad_input() -> None:
    graph = KnowledgeGraph()
    with pytest.raises(CorruptionError):
        graph.load_payload({"version": 1})
    bad_weight = {
        "version": 1,
        "entities": [],
        "relations": [{"subject_entity_id": "ent:a", "object_entity_id": "ent:b", "co_occurrence_weight": -1}],
        "chunk_entities": {},
        "doc_chunks": {},
    }
    with pytest.raises(CorruptionError):
        graph.load_payload(bad_weight)


async def test_full_rebuild_matches_incremental(engine: GraphRAGEngine) -> None:
    await engine.add_document("", "Paris meets Berlin. Paris is old.")
    await engine.add_document("", "Berlin meets Vienna and Prague.")
    entities = dict(engine.graph.entities)
    relations = engine.graph.relations()

    await engine.full_rebuild()
    assert dict(engine.graph.entities) == entities
    assert engine.graph.relations() == relations


async def test_no_dangling_references_after_mixed_mutations(engine: GraphRAGEngine) -> None:
    texts = [
        "Marie Curie studied radium in Paris. Radium glows.",
        "Pierre Curie and Marie Curie shared a laboratory in Paris.",
        "Albert Einstein visited Paris and met Marie Curie.",
        "Niels Bohr argued with Albert Einstein about quantum theory.",
        "quantum quantum physics physics in Copenhagen with Niels Bohr.",
    ]
    ids = []
    for text in texts:
        ids.append((await engine.add_document("", text)).id)
        assert_no_dangling(engine)

    for doc_id in (ids[1], ids[3]):
        await engine.remove_document(doc_id)
        assert_no_dangling(engine)

    await engine.add_document("", "Pierre Curie returned to Paris.")
    assert_no_dangling(engine)
    await engine.remove_document(ids[0])
    assert_no_dangling(engine)
    assert "ent:niels bohr" in engine.graph.entities
