from __future__ import annotations

from dataclasses import dataclass

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Gauge, Histogram, generate_latest
from prometheus_client import Counter


@dataclass
class Metrics:
    registry: CollectorRegistry
    errors_total: Counter
    queries_total: Counter
    query_seconds: Histogram
    retrieval_stage_seconds: Histogram
    queries_cancelled_total: Counter
    rebuild_seconds: Histogram
    dangling_pruned_total: Counter
    kb_documents: Gauge
    kb_chunks: Gauge
    kb_entities: Gauge
    kb_relations: Gauge
    storage_exhausted: Gauge
    completion_online: Gauge

    def render(self) -> tuple[bytes, str]:
        return generate_latest(self.registry), CONTENT_TYPE_LATEST


_metrics_singleton: Metrics | None = None


def get_metrics() -> Metrics:
    global _metrics_singleton
    if _metrics_singleton is not None:
        return _metrics_singleton

    # Dedicated registry so repeated app construction (tests, uvicorn reload) never collides.
    registry = CollectorRegistry(auto_describe=True)

    _metrics_singleton = Metrics(
        registry=registry,
        errors_total=Counter(
            "graphrag_errors_total",
            "Total classified errors",
            ["stage", "code"],
            registry=registry,
        ),
        queries_total=Counter(
            "graphrag_queries_total",
            "Retrieval queries by strategy and performance mode",
            ["strategy", "mode"],
            registry=registry,
        ),
        query_seconds=Histogram(
            "graphrag_query_seconds",
            "Retrieval query latency",
            ["strategy"],
            registry=registry,
        ),
        retrieval_stage_seconds=Histogram(
            "graphrag_retrieval_stage_seconds",
            "Time spent in each retrieval stage (hyde, strategy, pagerank, reranking, synthesis)",
            ["stage"],
            registry=registry,
        ),
        queries_cancelled_total=Counter(
            "graphrag_queries_cancelled_total",
            "Queries superseded by a newer query for the same turn",
            registry=registry,
        ),
        rebuild_seconds=Histogram(
            "graphrag_rebuild_seconds",
            "Graph index rebuild duration",
            ["kind"],
            registry=registry,
        ),
        dangling_pruned_total=Counter(
            "graphrag_dangling_pruned_total",
            "Dangling entity -> chunk references pruned by self-healing",
            registry=registry,
        ),
        kb_documents=Gauge("graphrag_kb_documents", "Documents in the knowledge base", registry=registry),
        kb_chunks=Gauge("graphrag_kb_chunks", "Chunks in the knowledge base", registry=registry),
        kb_entities=Gauge("graphrag_kb_entities", "Entities in the knowledge graph", registry=registry),
        kb_relations=Gauge("graphrag_kb_relations", "Relations in the knowledge graph", registry=registry),
        storage_exhausted=Gauge(
            "graphrag_storage_exhausted",
            "1 while persistence is disabled after an unrecoverable save",
            registry=registry,
        ),
        completion_online=Gauge(
            "graphrag_completion_online",
            "1 when the completion service answered the last probe",
            registry=registry,
        ),
    )
    return _metrics_singleton


def inc_error(*, stage: str, code: str) -> None:
    try:
        m = get_metrics()
        m.errors_total.labels(stage=str(stage), code=str(code)).inc()
    except Exception:
        return


def update_kb_gauges(*, documents: int, chunks: int, entities: int, relations: int) -> None:
    """Best-effort refresh of the knowledge base size gauges."""

    try:
        m = get_metrics()
        m.kb_documents.set(float(documents))
        m.kb_chunks.set(float(chunks))
        m.kb_entities.set(float(entities))
        m.kb_relations.set(float(relations))
    except Exception:
        return


def observe_stage(*, stage: str, seconds: float) -> None:
    try:
        get_metrics().retrieval_stage_seconds.labels(stage=str(stage)).observe(float(seconds))
    except Exception:
        return
