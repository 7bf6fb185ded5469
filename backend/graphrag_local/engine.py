"""The knowledge base facade used by the HTTP layer.

Wires the document store, graph index, retrieval engine, persistence and
resilience layers together. Document mutations are serialized by one
``asyncio.Lock``: a store change and the graph rebuild it triggers are
published to readers together as a new ``KnowledgeView``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, AsyncIterator, List, Mapping, Sequence, Set

import httpx

from .completion import OllamaCompletionClient
from .documents import Chunk, Document, DocumentsChanged, DocumentStore
from .errors import CorruptionError
from .extractor import EntityExtractor
from .graph import KnowledgeGraph
from .logging_utils import operation_scope
from .metrics import get_metrics, update_kb_gauges
from .persistence import KeyValueBackend, MemoryBackend, PersistenceLayer, PersistenceState, Snapshot
from .resilience import ConnectivityMonitor, EngineStatus, ResilienceSupervisor
from .retrieval import KnowledgeView, RetrievalEngine, RetrievalResult, assemble_context
from .scheduler import QueryScheduler
from .settings import EngineConfig, PerformanceMode, SettingsController, StageToggles, Strategy

logger = logging.getLogger(__name__)


class GraphRAGEngine:
    def __init__(
        self,
        *,
        config: EngineConfig | None = None,
        backend: KeyValueBackend | None = None,
        settings: SettingsController | None = None,
        completion: OllamaCompletionClient | None = None,
    ) -> None:
        self.config = config or EngineConfig.from_env()
        self.backend: KeyValueBackend = backend if backend is not None else MemoryBackend()
        self.settings = settings or SettingsController(self.backend)

        self.store = DocumentStore(
            window=self.config.chunk_window,
            overlap=self.config.chunk_overlap,
            max_document_bytes=self.config.max_document_bytes,
        )
        self.graph = KnowledgeGraph(
            chunk_source=self.store.get_chunks,
            extractor=EntityExtractor(repeat_threshold=self.config.repeat_threshold),
            community_threshold=self.config.community_threshold,
            community_cache_size=self.config.community_cache_size,
            default_depth=self.config.default_neighbor_depth,
            max_depth=self.config.max_neighbor_depth,
            yield_every=self.config.yield_every,
        )
        self.retrieval = RetrievalEngine(self.config, on_dangling=self._on_dangling)
        self.scheduler = QueryScheduler()

        self.status = EngineStatus()
        self.persistence = PersistenceLayer(self.backend, config=self.config)
        self.resilience = ResilienceSupervisor(self.persistence, self.status)
        self.completion = completion
        self.connectivity = ConnectivityMonitor(
            completion.probe if completion is not None else None,
            status=self.status,
        )

        self._mutation_lock = asyncio.Lock()
        self._pending_added: Set[str] = set()
        self._pending_removed: Set[str] = set()
        self.store.subscribe(self._on_documents_changed)
        self._view = self._make_view()

    # -- lifecycle -----------------------------------------------------

    async def start(self, *, probe: bool = False) -> None:
        """Restore the last snapshot (or start empty) and publish it.

        Repairs made to a loaded snapshot mark the knowledge base dirty and
        are written back at once when autosave is on.
        """

        async with self._mutation_lock:
            with operation_scope(logger=logger, operation="load") as extra:
                snapshot = await self.resilience.load()
                if snapshot is not None:
                    self._restore(snapshot)
                    await self._reindex_missing()
                extra["documents"] = len(self.store.list_documents())
                extra["degraded_start"] = self.status.degraded_start
                extra["repaired"] = self.persistence.state is PersistenceState.DIRTY
                self._publish()
            if extra["repaired"] and self.config.autosave:
                await self.resilience.save(self._snapshot, reclaim=self._reclaim)
        if probe:
            await self.connectivity.probe()

    def _restore(self, snapshot: Snapshot) -> None:
        if self.store.restore(snapshot.documents, snapshot.chunks):
            self.persistence.mark_dirty()
        try:
            self.graph.load_payload(snapshot.graph)
        except CorruptionError as e:
            self.resilience.record(e, stage="load")
            self.store.restore((), ())
            self.status.degraded_start = True
            self.persistence.mark_dirty()
            return
        _documents, chunks = self.store.tables()
        if self.graph.prune_dangling(chunks.keys()):
            self.persistence.mark_dirty()

    async def _reindex_missing(self) -> None:
        documents, _chunks = self.store.tables()
        indexed = self.graph.indexed_documents()
        missing = set(documents) - indexed
        stale = indexed - set(documents)
        if missing or stale:
            logger.warning(
                "snapshot_index_repaired",
                extra={"fields": {"missing": sorted(missing), "stale": sorted(stale)}},
            )
            await self.graph.rebuild_incremental(added=missing, removed=stale)
            self.persistence.mark_dirty()

    # -- mutations -----------------------------------------------------

    def _on_documents_changed(self, event: DocumentsChanged) -> None:
        for doc_id in event.removed:
            self._pending_added.discard(doc_id)
            self._pending_removed.add(doc_id)
        self._pending_added.update(event.added)
        self.persistence.mark_dirty()

    async def add_document(self, title: str, raw_text: str) -> Document:
        async with self._mutation_lock:
            with operation_scope(logger=logger, operation="add_document") as extra:
                doc = self.store.add_document(title, raw_text)
                extra["document_id"] = doc.id
                await self._apply_pending()
        await self._autosave()
        return doc

    async def remove_document(self, document_id: str) -> None:
        async with self._mutation_lock:
            with operation_scope(logger=logger, operation="remove_document", document_id=document_id):
                self.store.remove_document(document_id)
                await self._apply_pending()
        await self._autosave()

    async def full_rebuild(self) -> None:
        async with self._mutation_lock:
            with operation_scope(logger=logger, operation="full_rebuild"):
                documents, _chunks = self.store.tables()
                await self.graph.full_rebuild(documents.keys())
                self._pending_added.clear()
                self._pending_removed.clear()
                self.persistence.mark_dirty()
                self._publish()
        await self._autosave()

    async def _apply_pending(self) -> None:
        added, removed = self._pending_added, self._pending_removed
        self._pending_added, self._pending_removed = set(), set()
        try:
            await self.graph.rebuild_incremental(added=added, removed=removed)
        except BaseException:
            # Keep the delta so the next rebuild still applies it.
            self._pending_added |= added - self._pending_removed
            self._pending_removed |= removed
            raise
        self._publish()

    # -- persistence ---------------------------------------------------

    async def save(self) -> bool:
        async with self._mutation_lock:
            return await self.resilience.save(self._snapshot, reclaim=self._reclaim)

    async def _autosave(self) -> None:
        if self.config.autosave:
            await self.save()

    def resolve_storage(self) -> None:
        self.resilience.resolve_storage()

    def _snapshot(self) -> Snapshot:
        return Snapshot(
            documents=tuple(sorted(self.store.list_documents(), key=lambda d: (d.created_at, d.id))),
            chunks=tuple(self.store.all_chunks()),
            graph=self.graph.to_payload(),
            saved_at=time.time(),
        )

    def _reclaim(self) -> None:
        self.graph.compact()
        self._publish()

    # -- queries -------------------------------------------------------

    def view(self) -> KnowledgeView:
        return self._view

    async def query(
        self,
        text: str,
        *,
        turn_id: str | None = None,
        strategy: Strategy | str | None = None,
        performance_mode: PerformanceMode | str | None = None,
        top_k: int | None = None,
        stages: StageToggles | None = None,
    ) -> List[RetrievalResult]:
        """Retrieve chunks for ``text``.

        Strategy, performance mode and the optional stages come from the
        settings controller unless given. With a ``turn_id`` a newer query
        for the same turn cancels this one, which then raises
        ``QuerySuperseded``.
        """

        strat = Strategy(strategy) if strategy is not None else self.settings.current_strategy()
        mode = (
            PerformanceMode(performance_mode)
            if performance_mode is not None
            else self.settings.current_performance_mode()
        )
        coro = self._run_query(self._view, text, strat, mode, top_k, stages or self.settings.current_stages())
        if turn_id is None:
            return await coro
        return await self.scheduler.run(turn_id, coro)

    async def _run_query(
        self,
        view: KnowledgeView,
        text: str,
        strategy: Strategy,
        mode: PerformanceMode,
        top_k: int | None,
        stages: StageToggles,
    ) -> List[RetrievalResult]:
        m = get_metrics()
        started = time.perf_counter()
        with operation_scope(
            logger=logger,
            operation="query",
            strategy=strategy.value,
            mode=mode.value,
            version=view.version,
            stages=stages.enabled(),
        ) as extra:
            results = await self.retrieval.query(view, text, strategy, mode, top_k=top_k, stages=stages)
            extra["results"] = len(results)
        m.queries_total.labels(strategy=strategy.value, mode=mode.value).inc()
        m.query_seconds.labels(strategy=strategy.value).observe(time.perf_counter() - started)
        return results

    def context_for(self, results: Sequence[RetrievalResult], view: KnowledgeView | None = None) -> List[str]:
        return assemble_context(
            view or self._view,
            results,
            max_chars_per_chunk=self.config.context_max_chars_per_chunk,
            max_total_chars=self.config.context_max_total_chars,
        )

    def summary_for(self, results: Sequence[RetrievalResult], view: KnowledgeView | None = None) -> str | None:
        """Extractive summary of the top results, or None when synthesis is off."""

        if not self.settings.current_stages().synthesis:
            return None
        return self.retrieval.summarize(view or self._view, results)

    async def answer_context(self, message: str, *, turn_id: str | None = None) -> List[str]:
        """Retrieve and assemble the prompt context for a chat message."""

        view = self._view
        results = await self.query(message, turn_id=turn_id)
        return self.context_for(results, view)

    async def stream_completion(
        self,
        context: Sequence[str],
        message: str,
        *,
        history: Sequence[Mapping[str, str]] = (),
    ) -> AsyncIterator[str]:
        if self.completion is None:
            raise RuntimeError("No completion service configured")
        try:
            async for token in self.completion.stream(context, history, message):
                yield token
        except httpx.HTTPError as e:
            self.resilience.record(e, stage="completion")
            self.connectivity.set_online(False)
            raise
        self.connectivity.set_online(True)

    async def stream_answer(
        self,
        message: str,
        *,
        history: Sequence[Mapping[str, str]] = (),
        turn_id: str | None = None,
    ) -> AsyncIterator[str]:
        """Retrieve context for ``message`` and stream the completion tokens."""

        if self.completion is None:
            raise RuntimeError("No completion service configured")
        context = await self.answer_context(message, turn_id=turn_id)
        async for token in self.stream_completion(context, message, history=history):
            yield token

    # -- reads ---------------------------------------------------------

    def list_documents(self) -> List[Document]:
        return self.store.list_documents()

    def get_document(self, document_id: str) -> Document:
        return self.store.get_document(document_id)

    def get_chunks(self, document_id: str) -> List[Chunk]:
        return self.store.get_chunks(document_id)

    def stats(self) -> dict[str, Any]:
        return {
            **self.store.stats(),
            "graph": self.graph.stats(),
            "persistence": self.persistence.state.value,
            "status": self.status.as_dict(),
            "settings": self.settings.as_dict(),
            "queries_in_flight": self.scheduler.in_flight(),
        }

    # -- internals -----------------------------------------------------

    def _make_view(self) -> KnowledgeView:
        documents, chunks = self.store.tables()
        return KnowledgeView(documents=documents, chunks=chunks, graph=self.graph.view())

    def _publish(self) -> None:
        self._view = self._make_view()
        g = self.graph.stats()
        update_kb_gauges(
            documents=len(self._view.documents),
            chunks=len(self._view.chunks),
            entities=g["entities"],
            relations=g["relations"],
        )

    def _on_dangling(self, chunk_ids: Sequence[str]) -> None:
        if self.graph.prune_chunks(chunk_ids):
            self.persistence.mark_dirty()
            # Keep the published document tables; only the graph moved.
            self._view = KnowledgeView(
                documents=self._view.documents, chunks=self._view.chunks, graph=self.graph.view()
            )
