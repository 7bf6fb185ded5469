"""GraphRAG knowledge base backend.

FastAPI surface over :class:`graphrag_local.engine.GraphRAGEngine`:
- Document management (add text or upload a file, list, inspect chunks, delete)
- Retrieval with naive / local / global / hybrid strategies
- Chat completion streamed from Ollama with retrieved context
- Settings, status, health and Prometheus metrics
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, AsyncIterator

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import Response, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from graphrag_local.completion import OllamaCompletionClient
from graphrag_local.engine import GraphRAGEngine
from graphrag_local.error_codes import ErrorStage, classify_error
from graphrag_local.errors import GraphRAGError, NotFoundError, QuerySuperseded, ValidationError
from graphrag_local.loaders import document_title, load_document_text
from graphrag_local.logging_utils import REQUEST_ID_HEADER, configure_json_logging, current_operation, operation_scope
from graphrag_local.metrics import get_metrics, inc_error
from graphrag_local.persistence import FileBackend, KeyValueBackend, MemoryBackend
from graphrag_local.settings import EngineConfig, PerformanceMode, RetrievalStage, Strategy

DATA_DIR = os.getenv("GRAPHRAG_DATA_DIR", str(Path(__file__).with_name("data") / "kb"))
STORAGE = os.getenv("GRAPHRAG_STORAGE", "file").strip().lower()
STORAGE_QUOTA_BYTES = int(os.getenv("GRAPHRAG_STORAGE_QUOTA_BYTES", "0")) or None
PROBE_ON_STARTUP = os.getenv("GRAPHRAG_PROBE_ON_STARTUP", "1") == "1"


class AddDocumentRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str = Field("", max_length=200)
    text: str = Field(..., min_length=1)


class QueryRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    question: str = Field(..., min_length=1)
    strategy: Strategy | None = None
    performance_mode: PerformanceMode | None = None
    top_k: int | None = Field(None, ge=1, le=50)
    turn_id: str | None = None
    include_context: bool = False


class ChatTurn(BaseModel):
    role: str
    content: str


class ChatRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    message: str = Field(..., min_length=1)
    history: list[ChatTurn] = Field(default_factory=list)
    turn_id: str | None = None


class SettingsUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    search_strategy: Strategy | None = None
    performance_mode: PerformanceMode | None = None
    hyde_enabled: bool | None = None
    pagerank_enabled: bool | None = None
    reranking_enabled: bool | None = None
    synthesis_enabled: bool | None = None


def _backend() -> KeyValueBackend:
    if STORAGE == "memory":
        return MemoryBackend(quota_bytes=STORAGE_QUOTA_BYTES)
    return FileBackend(Path(DATA_DIR), quota_bytes=STORAGE_QUOTA_BYTES)


def build_engine() -> GraphRAGEngine:
    return GraphRAGEngine(
        config=EngineConfig.from_env(),
        backend=_backend(),
        completion=OllamaCompletionClient(),
    )


app = FastAPI(title="GraphRAG Knowledge Base", version="0.2.0")
engine = build_engine()
logger = logging.getLogger("graphrag_local.api")


def reset_engine(new_engine: GraphRAGEngine | None = None) -> GraphRAGEngine:
    """Swap the module engine (tests, reload)."""

    global engine
    engine = new_engine or build_engine()
    return engine


@app.on_event("startup")
async def _startup() -> None:
    configure_json_logging(level=logging.INFO)
    await engine.start(probe=PROBE_ON_STARTUP)


@app.middleware("http")
async def operation_middleware(request, call_next):  # type: ignore[no-untyped-def]
    client = getattr(request.client, "host", None) if request.client is not None else None
    with operation_scope(
        logger=logger,
        operation="http",
        operation_id=request.headers.get(REQUEST_ID_HEADER),
        method=str(request.method),
        path=str(request.url.path),
        client=client,
    ) as extra:
        response = await call_next(request)
        extra["status_code"] = int(response.status_code)
        op = current_operation()
        if op is not None:
            response.headers[REQUEST_ID_HEADER] = op.id
    return response


def _http_error(e: BaseException, *, stage: ErrorStage) -> HTTPException:
    coded = classify_error(e=e, stage=stage)
    inc_error(stage=coded.stage, code=coded.code)
    if isinstance(e, NotFoundError):
        status = 404
    elif isinstance(e, ValidationError):
        status = 400
    else:
        status = 409
    return HTTPException(status_code=status, detail={"error_code": coded.code, "message": coded.message})


def _document_out(doc: Any) -> dict[str, Any]:
    out = doc.as_dict()
    out["chunks"] = len(engine.get_chunks(doc.id))
    return out


@app.get("/health")
def health() -> dict[str, Any]:
    stats = engine.store.stats()
    return {
        "status": "ok",
        "documents": stats["documents"],
        "chunks": stats["chunks"],
        "persistence": engine.persistence.state.value,
        "online": engine.connectivity.online,
    }


@app.get("/metrics")
def metrics() -> Any:
    body, content_type = get_metrics().render()
    return Response(content=body, media_type=content_type)


@app.get("/status")
def status() -> dict[str, Any]:
    return engine.stats()


@app.post("/status/probe")
async def probe() -> dict[str, Any]:
    return {"online": await engine.connectivity.probe()}


@app.post("/storage/resolve")
def resolve_storage() -> dict[str, Any]:
    engine.resolve_storage()
    return engine.status.as_dict()


@app.post("/save")
async def save() -> dict[str, Any]:
    ok = await engine.save()
    return {"saved": ok, "persistence": engine.persistence.state.value, "status": engine.status.as_dict()}


@app.post("/documents")
async def add_document(req: AddDocumentRequest) -> dict[str, Any]:
    try:
        doc = await engine.add_document(req.title, req.text)
    except GraphRAGError as e:
        raise _http_error(e, stage="ingest")
    return _document_out(doc)


@app.post("/documents/upload")
async def upload_document(request: Request, filename: str, title: str = "") -> dict[str, Any]:
    data = await request.body()
    try:
        text = load_document_text(filename, data)
        doc = await engine.add_document(title or document_title(filename), text)
    except GraphRAGError as e:
        raise _http_error(e, stage="ingest")
    return _document_out(doc)


@app.get("/documents")
def list_documents() -> dict[str, Any]:
    docs = [_document_out(d) for d in engine.list_documents()]
    return {"documents": docs, "count": len(docs)}


@app.get("/documents/{document_id}")
def get_document(document_id: str) -> dict[str, Any]:
    try:
        doc = engine.get_document(document_id)
    except NotFoundError as e:
        raise _http_error(e, stage="query")
    out = _document_out(doc)
    out["text"] = doc.raw_text
    return out


@app.get("/documents/{document_id}/chunks")
def get_chunks(document_id: str) -> dict[str, Any]:
    try:
        chunks = engine.get_chunks(document_id)
    except NotFoundError as e:
        raise _http_error(e, stage="query")
    return {
        "document_id": document_id,
        "chunks": [
            {
                "id": c.id,
                "sequence_index": c.sequence_index,
                "start": c.start,
                "token_estimate": c.token_estimate,
                "text": c.text,
            }
            for c in chunks
        ],
    }


@app.delete("/documents/{document_id}")
async def delete_document(document_id: str) -> dict[str, Any]:
    try:
        await engine.remove_document(document_id)
    except GraphRAGError as e:
        raise _http_error(e, stage="ingest")
    return {"deleted": document_id}


@app.post("/rebuild")
async def rebuild() -> dict[str, Any]:
    await engine.full_rebuild()
    return {"graph": engine.graph.stats()}


@app.post("/query")
async def query(req: QueryRequest) -> dict[str, Any]:
    view = engine.view()
    try:
        results = await engine.query(
            req.question,
            turn_id=req.turn_id,
            strategy=req.strategy,
            performance_mode=req.performance_mode,
            top_k=req.top_k,
        )
    except (QuerySuperseded, ValidationError) as e:
        raise _http_error(e, stage="query")

    items: list[dict[str, Any]] = []
    for r in results:
        out = r.as_dict()
        chunk = view.chunks.get(r.chunk_id)
        if chunk is not None:
            doc = view.documents.get(chunk.document_id)
            out["document_id"] = chunk.document_id
            out["title"] = doc.title if doc else None
            out["text"] = chunk.text
        items.append(out)
    body: dict[str, Any] = {"question": req.question, "results": items}
    summary = engine.summary_for(results, view)
    if summary is not None:
        body["summary"] = summary
    if req.include_context:
        body["context"] = engine.context_for(results, view)
    return body


async def _chain(first: str | None, rest: AsyncIterator[str]) -> AsyncIterator[str]:
    if first:
        yield first
    async for token in rest:
        yield token


@app.post("/chat")
async def chat(req: ChatRequest) -> StreamingResponse:
    if engine.completion is None:
        raise HTTPException(
            status_code=503, detail={"error_code": "COMPLETION_OFFLINE", "message": "No completion service"}
        )
    try:
        context = await engine.answer_context(req.message, turn_id=req.turn_id)
    except (QuerySuperseded, ValidationError) as e:
        raise _http_error(e, stage="query")

    history = [t.model_dump() for t in req.history]
    tokens = engine.stream_completion(context, req.message, history=history)
    # Pull the first token before the status line goes out.
    try:
        first = await tokens.__anext__()
    except StopAsyncIteration:
        first = None
    except httpx.HTTPError as e:
        coded = engine.status.last_error
        raise HTTPException(
            status_code=503,
            detail={"error_code": coded.code if coded else "COMPLETION_OFFLINE", "message": str(e)},
        )
    return StreamingResponse(_chain(first, tokens), media_type="text/plain; charset=utf-8")


@app.get("/graph/entities")
def list_entities(limit: int = 100) -> dict[str, Any]:
    view = engine.view().graph
    top = sorted(view.entities.values(), key=lambda e: (-e.mention_count, e.id))[: max(1, limit)]
    return {
        "entities": [
            {"id": e.id, "label": e.label, "mention_count": e.mention_count, "chunks": len(e.source_chunk_ids)}
            for e in top
        ],
        "count": len(view.entities),
    }


@app.get("/graph/entities/{entity_id}/neighbors")
def entity_neighbors(entity_id: str, depth: int | None = None) -> dict[str, Any]:
    try:
        entity = engine.graph.get_entity(entity_id)
    except NotFoundError as e:
        raise _http_error(e, stage="query")
    return {"entity": entity.id, "label": entity.label, "neighbors": engine.graph.neighbors(entity_id, depth)}


@app.get("/graph/communities")
async def communities() -> dict[str, Any]:
    found = await engine.view().graph.communities_async()
    return {"communities": [c.as_dict() for c in found], "count": len(found)}


@app.get("/settings")
def get_settings() -> dict[str, Any]:
    return engine.settings.as_dict()


@app.put("/settings")
def update_settings(req: SettingsUpdate) -> dict[str, Any]:
    if req.search_strategy is not None:
        engine.settings.set_strategy(req.search_strategy)
    if req.performance_mode is not None:
        engine.settings.set_performance_mode(req.performance_mode)
    for stage in RetrievalStage:
        enabled = getattr(req, f"{stage.value}_enabled")
        if enabled is not None:
            engine.settings.set_stage(stage, enabled)
    return engine.settings.as_dict()


@app.get("/settings/export")
def export_settings() -> Response:
    return Response(content=engine.settings.export_json(), media_type="application/json")


@app.post("/settings/import")
async def import_settings(request: Request) -> dict[str, Any]:
    raw = (await request.body()).decode("utf-8", errors="replace")
    try:
        engine.settings.import_json(raw)
    except ValidationError as e:
        raise _http_error(e, stage="settings")
    return engine.settings.as_dict()


@app.post("/settings/reset")
def reset_settings() -> dict[str, Any]:
    engine.settings.reset_to_defaults()
    return engine.settings.as_dict()
