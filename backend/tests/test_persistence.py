from __future__ import annotations

"""Snapshot encoding, migration and backend tests."""

import errno
import json
from pathlib import Path

import pytest

from graphrag_local.engine import GraphRAGEngine
from graphrag_local.errors import CorruptionError, QuotaExceededError, UnsupportedVersionError
from graphrag_local.persistence import (
    SCHEMA_VERSION,
    SNAPSHOT_KEY,
    FileBackend,
    MemoryBackend,
    PersistenceLayer,
    PersistenceState,
    Snapshot,
    _checksum,
    decode_snapshot,
    encode_snapshot,
    migrate,
)
from graphrag_local.settings import EngineConfig, Strategy

pytestmark = pytest.mark.anyio

LEGACY = {
    "schema_version": 1,
    "documents": [
        {
            "id": "legacy-a",
            "title": "Curie",
            "content": "Marie Curie studied radium in Paris. Marie Curie won prizes.",
            "created_at": 1_700_000_000_000.0,
            "size_bytes": 61,
        },
        {
            "id": "legacy-b",
            "title": "",
            "content": "Pierre Curie met Marie Curie in Paris.",
            "created_at": 1_700_000_100_000.0,
            "size_bytes": 38,
        },
    ],
}


async def _filled_engine(config: EngineConfig, backend: MemoryBackend) -> GraphRAGEngine:
    engine = GraphRAGEngine(config=config, backend=backend)
    await engine.add_document("Curie", "Marie Curie studied radium in Paris.")
    await engine.add_document("Einstein", "Albert Einstein lived in Bern and Berlin.")
    engine.graph.community_detection()
    return engine


async def test_save_load_round_trip(config: EngineConfig, backend: MemoryBackend) -> None:
    engine = await _filled_engine(config, backend)
    assert await engine.save()
    assert engine.persistence.state is PersistenceState.SAVED

    restored = GraphRAGEngine(config=config, backend=backend)
    await restored.start()

    assert restored.persistence.state is PersistenceState.LOADED
    assert restored.store.list_documents() == engine.store.list_documents()
    assert restored.store.all_chunks() == engine.store.all_chunks()
    assert restored.graph.entities == engine.graph.entities
    assert restored.graph.relations() == engine.graph.relations()
    assert restored.graph.version == engine.graph.version
    assert restored.graph.community_detection() == engine.graph.community_detection()
    for strategy in Strategy:
        assert await restored.query("Marie Curie Paris", strategy=strategy) == await engine.query(
            "Marie Curie Paris", strategy=strategy
        )


async def test_envelope_layout(config: EngineConfig, backend: MemoryBackend) -> None:
    engine = await _filled_engine(config, backend)
    await engine.save()
    raw = backend.get(SNAPSHOT_KEY)
    assert raw is not None
    record = json.loads(raw)
    assert list(record)[0] == "schema_version"
    assert record["schema_version"] == SCHEMA_VERSION
    assert len(record["checksum"]) == 64
    assert {"documents", "chunks", "graph", "saved_at"} <= set(record["payload"])


async def test_state_machine(config: EngineConfig, backend: MemoryBackend) -> None:
    engine = GraphRAGEngine(config=EngineConfig(autosave=False), backend=backend)
    assert engine.persistence.state is PersistenceState.EMPTY
    await engine.add_document("", "Some text to persist.")
    assert engine.persistence.state is PersistenceState.DIRTY
    await engine.save()
    assert engine.persistence.state is PersistenceState.SAVED
    await engine.add_document("", "More text.")
    assert engine.persistence.state is PersistenceState.DIRTY


async def test_load_without_snapshot_is_none(backend: MemoryBackend) -> None:
    layer = PersistenceLayer(backend)
    assert await layer.load() is None
    assert layer.state is PersistenceState.EMPTY


async def test_checksum_mismatch_is_corruption(config: EngineConfig, backend: MemoryBackend) -> None:
    engine = await _filled_engine(config, backend)
    await engine.save()
    record = json.loads(backend.get(SNAPSHOT_KEY))
    record["payload"]["documents"][0]["title"] = "tampered"
    with pytest.raises(CorruptionError):
        decode_snapshot(json.dumps(record).encode("utf-8"))


@pytest.mark.parametrize(
    "data",
    [
        b"\xff\xfe not utf8",
        b"{not json",
        b"[]",
        b'{"checksum": "x", "payload": {}}',
        b'{"schema_version": 2, "payload": {}}',
    ],
)
def test_malformed_snapshots_are_corruption(data: bytes) -> None:
    with pytest.raises(CorruptionError):
        decode_snapshot(data)


def test_structurally_invalid_payload_is_corruption() -> None:
    payload = {"saved_at": 0.0, "documents": [{"id": "x"}], "chunks": [], "graph": {"version": 0}}
    record = {"schema_version": SCHEMA_VERSION, "checksum": _checksum(payload), "payload": payload}
    with pytest.raises(CorruptionError):
        decode_snapshot(json.dumps(record).encode("utf-8"))


def test_newer_schema_is_unsupported() -> None:
    record = {"schema_version": SCHEMA_VERSION + 1, "checksum": "0" * 64, "payload": {}}
    with pytest.raises(UnsupportedVersionError) as exc:
        decode_snapshot(json.dumps(record).encode("utf-8"))
    assert exc.value.found == SCHEMA_VERSION + 1
    assert exc.value.supported == SCHEMA_VERSION


def test_migrate_v1_is_pure_and_deterministic() -> None:
    before = json.dumps(LEGACY, sort_keys=True)
    first = migrate(LEGACY)
    second = migrate(LEGACY)
    assert json.dumps(LEGACY, sort_keys=True) == before
    assert first["schema_version"] == SCHEMA_VERSION
    assert first["payload"]["graph"] == second["payload"]["graph"]
    assert first["checksum"] == second["checksum"]


def test_migrate_current_version_is_identity() -> None:
    record = {"schema_version": SCHEMA_VERSION, "checksum": "0" * 64, "payload": {}}
    assert migrate(record) == record


async def test_v1_snapshot_loads_through_migration(config: EngineConfig, backend: MemoryBackend) -> None:
    backend.put(SNAPSHOT_KEY, json.dumps(LEGACY).encode("utf-8"))
    engine = GraphRAGEngine(config=config, backend=backend)
    await engine.start()

    assert not engine.status.degraded_start
    docs = {d.id: d for d in engine.store.list_documents()}
    assert set(docs) == {"legacy-a", "legacy-b"}
    assert docs["legacy-a"].created_at == pytest.approx(1_700_000_000.0)
    assert docs["legacy-b"].title == "Pierre Curie met Marie Curie in Paris."
    assert engine.graph.relation_weight("ent:marie curie", "ent:paris") == 2
    results = await engine.query("radium", strategy=Strategy.NAIVE)
    assert [r.chunk_id for r in results] == ["legacy-a:0"]


def test_memory_backend_quota() -> None:
    backend = MemoryBackend(quota_bytes=10)
    backend.put("a", b"12345")
    backend.put("a", b"1234567890")
    with pytest.raises(QuotaExceededError):
        backend.put("b", b"1")
    backend.delete("a")
    backend.put("b", b"1")
    assert backend.used_bytes() == 1


def test_file_backend_atomic_write(tmp_path: Path) -> None:
    backend = FileBackend(tmp_path / "kb")
    assert backend.get("graphrag_knowledge_base") is None
    backend.put("graphrag_knowledge_base", b'{"a": 1}')
    assert backend.get("graphrag_knowledge_base") == b'{"a": 1}'
    assert not list((tmp_path / "kb").glob("*.tmp"))
    backend.delete("graphrag_knowledge_base")
    assert backend.get("graphrag_knowledge_base") is None


def test_file_backend_quota(tmp_path: Path) -> None:
    backend = FileBackend(tmp_path, quota_bytes=8)
    backend.put("k", b"1234")
    with pytest.raises(QuotaExceededError):
        backend.put("other", b"123456")


def test_file_backend_maps_enospc(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    backend = FileBackend(tmp_path)

    def full(self: Path, data: bytes) -> int:
        raise OSError(errno.ENOSPC, "No space left on device")

    monkeypatch.setattr(Path, "write_bytes", full)
    with pytest.raises(QuotaExceededError):
        backend.put("k", b"data")


def test_encode_is_stable(config: EngineConfig) -> None:
    snap = Snapshot(documents=(), chunks=(), graph={"version": 0}, saved_at=1.0)
    assert encode_snapshot(snap) == encode_snapshot(snap)
    decoded = decode_snapshot(encode_snapshot(snap), config=config)
    assert decoded.documents == () and decoded.chunks == ()
    assert decoded.graph["version"] == 0
