from __future__ import annotations

"""Recovery policy tests: quota pressure, degraded start, connectivity."""

import json

import pytest

from graphrag_local.engine import GraphRAGEngine
from graphrag_local.errors import QuotaExceededError
from graphrag_local.graph import KnowledgeGraph
from graphrag_local.metrics import get_metrics
from graphrag_local.persistence import (
    SCHEMA_VERSION,
    SNAPSHOT_KEY,
    MemoryBackend,
    PersistenceState,
    Snapshot,
    decode_snapshot,
    encode_snapshot,
)
from graphrag_local.resilience import ConnectivityMonitor, EngineStatus
from graphrag_local.settings import EngineConfig, Strategy

pytestmark = pytest.mark.anyio


class FlakyBackend(MemoryBackend):
    """Memory backend that fails a number of snapshot writes or reads."""

    def __init__(self) -> None:
        super().__init__()
        self.failing_puts = 0
        self.failing_gets = 0
        self.puts = 0

    def put(self, key: str, data: bytes) -> None:
        if key == SNAPSHOT_KEY:
            self.puts += 1
            if self.failing_puts:
                self.failing_puts -= 1
                raise QuotaExceededError("quota exceeded")
        super().put(key, data)

    def get(self, key: str) -> bytes | None:
        if key == SNAPSHOT_KEY and self.failing_gets:
            self.failing_gets -= 1
            raise OSError("transient read failure")
        return super().get(key)


def _error_count(stage: str, code: str) -> float:
    value = get_metrics().registry.get_sample_value("graphrag_errors_total", {"stage": stage, "code": code})
    return value or 0.0


async def _engine(backend: FlakyBackend) -> GraphRAGEngine:
    engine = GraphRAGEngine(config=EngineConfig(chunk_window=200, chunk_overlap=20, autosave=False), backend=backend)
    await engine.add_document("", "Marie Curie studied radium in Paris.")
    await engine.add_document("", "Pierre Curie met Marie Curie in Paris.")
    return engine


async def test_quota_exceeded_then_recovered_keeps_content() -> None:
    backend = FlakyBackend()
    engine = await _engine(backend)
    engine.graph.community_detection()
    before = {s: await engine.query("Marie Curie", strategy=s) for s in Strategy}
    errors_before = _error_count("save", "STORAGE_QUOTA_EXCEEDED")

    backend.failing_puts = 1
    assert await engine.save() is True

    assert backend.puts == 2
    assert not engine.status.storage_exhausted
    assert engine.status.last_error is not None
    assert engine.status.last_error.code == "STORAGE_QUOTA_EXCEEDED"
    assert _error_count("save", "STORAGE_QUOTA_EXCEEDED") == errors_before + 1
    assert {s: await engine.query("Marie Curie", strategy=s) for s in Strategy} == before

    saved = decode_snapshot(backend.get(SNAPSHOT_KEY))
    assert {d.id for d in saved.documents} == {d.id for d in engine.store.list_documents()}


async def test_unrecoverable_save_exhausts_storage_until_resolved() -> None:
    backend = FlakyBackend()
    engine = await _engine(backend)

    backend.failing_puts = 2
    assert await engine.save() is False
    assert engine.status.storage_exhausted
    assert engine.status.last_error.code == "STORAGE_EXHAUSTED"
    assert get_metrics().registry.get_sample_value("graphrag_storage_exhausted") == 1.0

    puts = backend.puts
    assert await engine.save() is False
    assert backend.puts == puts

    # In-memory data is untouched.
    assert len(engine.store.list_documents()) == 2
    assert await engine.query("radium", strategy=Strategy.NAIVE)

    engine.resolve_storage()
    assert not engine.status.storage_exhausted
    assert await engine.save() is True
    assert backend.get(SNAPSHOT_KEY) is not None


async def test_corrupt_snapshot_starts_degraded() -> None:
    backend = FlakyBackend()
    backend.put(SNAPSHOT_KEY, b"this is not a snapshot")
    before = _error_count("load", "SNAPSHOT_CORRUPT")

    engine = GraphRAGEngine(config=EngineConfig(), backend=backend)
    await engine.start()

    assert engine.status.degraded_start
    assert engine.store.list_documents() == []
    assert _error_count("load", "SNAPSHOT_CORRUPT") == before + 2
    assert await engine.query("anything") == []


async def test_unsupported_snapshot_starts_degraded_without_retry() -> None:
    backend = FlakyBackend()
    record = {"schema_version": SCHEMA_VERSION + 5, "checksum": "0" * 64, "payload": {}}
    backend.put(SNAPSHOT_KEY, json.dumps(record).encode("utf-8"))
    before = _error_count("load", "SNAPSHOT_VERSION_UNSUPPORTED")

    engine = GraphRAGEngine(config=EngineConfig(), backend=backend)
    await engine.start()

    assert engine.status.degraded_start
    assert engine.status.last_error.detail == {"found": SCHEMA_VERSION + 5, "supported": SCHEMA_VERSION}
    assert _error_count("load", "SNAPSHOT_VERSION_UNSUPPORTED") == before + 1


async def test_newer_snapshot_is_not_overwritten_until_resolved() -> None:
    backend = FlakyBackend()
    record = {"schema_version": SCHEMA_VERSION + 1, "checksum": "0" * 64, "payload": {}}
    original = json.dumps(record).encode("utf-8")
    backend.put(SNAPSHOT_KEY, original)

    engine = GraphRAGEngine(config=EngineConfig(autosave=True), backend=backend)
    await engine.start()
    assert engine.status.snapshot_locked
    assert engine.status.as_dict()["snapshot_locked"] is True

    await engine.add_document("", "Grace Hopper wrote the first compiler.")
    assert backend.get(SNAPSHOT_KEY) == original
    assert await engine.save() is False
    assert backend.get(SNAPSHOT_KEY) == original
    assert await engine.query("compiler", strategy=Strategy.NAIVE)

    engine.resolve_storage()
    assert not engine.status.snapshot_locked
    assert await engine.save() is True
    assert json.loads(backend.get(SNAPSHOT_KEY))["schema_version"] == SCHEMA_VERSION


async def test_corrupt_snapshot_does_not_lock_storage() -> None:
    backend = FlakyBackend()
    backend.put(SNAPSHOT_KEY, b"this is not a snapshot")
    engine = GraphRAGEngine(config=EngineConfig(), backend=backend)
    await engine.start()
    assert engine.status.degraded_start
    assert not engine.status.snapshot_locked


async def test_transient_read_failure_is_retried() -> None:
    backend = FlakyBackend()
    engine = await _engine(backend)
    assert await engine.save()

    backend.failing_gets = 1
    restored = GraphRAGEngine(config=engine.config, backend=backend)
    await restored.start()

    assert not restored.status.degraded_start
    assert len(restored.store.list_documents()) == 2


async def test_degraded_engine_accepts_new_documents() -> None:
    backend = FlakyBackend()
    backend.put(SNAPSHOT_KEY, b"{}")
    engine = GraphRAGEngine(config=EngineConfig(autosave=True), backend=backend)
    await engine.start()
    assert engine.status.degraded_start

    await engine.add_document("", "Fresh start with Grace Hopper.")
    assert decode_snapshot(backend.get(SNAPSHOT_KEY)).documents


async def test_connectivity_monitor_notifies_on_change() -> None:
    answers = iter([True, True, False])

    async def probe() -> bool:
        return next(answers)

    status = EngineStatus()
    monitor = ConnectivityMonitor(probe, status=status)
    seen: list[bool] = []
    unsubscribe = monitor.subscribe(seen.append)

    assert await monitor.probe() is True
    assert await monitor.probe() is True
    assert status.online is True
    assert await monitor.probe() is False

    assert seen == [True, False]
    assert status.online is False

    unsubscribe()
    monitor.set_online(True)
    assert seen == [True, False]
    assert get_metrics().registry.get_sample_value("graphrag_completion_online") == 1.0


async def test_monitor_without_probe_keeps_its_value() -> None:
    monitor = ConnectivityMonitor(online=True)
    assert await monitor.probe() is True


async def test_snapshot_repairs_mark_dirty_and_are_written_back() -> None:
    backend = FlakyBackend()
    source = await _engine(backend)
    snap = source._snapshot()
    # Documents and chunks intact, graph index missing.
    unindexed = Snapshot(
        documents=snap.documents,
        chunks=snap.chunks,
        graph=KnowledgeGraph().to_payload(),
        saved_at=snap.saved_at,
    )
    backend.put(SNAPSHOT_KEY, encode_snapshot(unindexed))
    puts = backend.puts

    manual = GraphRAGEngine(config=EngineConfig(chunk_window=200, chunk_overlap=20, autosave=False), backend=backend)
    await manual.start()
    assert manual.persistence.state is PersistenceState.DIRTY
    assert manual.graph.indexed_documents() == {d.id for d in snap.documents}
    assert backend.puts == puts

    auto = GraphRAGEngine(config=EngineConfig(chunk_window=200, chunk_overlap=20, autosave=True), backend=backend)
    await auto.start()
    assert auto.persistence.state is PersistenceState.SAVED
    assert backend.puts == puts + 1

    reloaded = GraphRAGEngine(config=EngineConfig(chunk_window=200, chunk_overlap=20, autosave=True), backend=backend)
    await reloaded.start()
    assert reloaded.persistence.state is PersistenceState.LOADED
    assert reloaded.graph.indexed_documents() == {d.id for d in snap.documents}
    assert backend.puts == puts + 1
