"""Document store: raw documents, metadata and their chunks.

Tables are id-keyed dicts and are replaced (copy-on-write) rather than
mutated, so a reader holding an earlier table keeps a consistent view while
a later mutation is applied.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Iterable

from .chunker import TextChunker, estimate_tokens
from .errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Document:
    id: str
    title: str
    raw_text: str
    created_at: float
    byte_size: int

    def as_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "title": self.title,
            "created_at": self.created_at,
            "byte_size": self.byte_size,
        }


@dataclass(frozen=True)
class Chunk:
    id: str
    document_id: str
    sequence_index: int
    text: str
    token_estimate: int
    start: int


@dataclass(frozen=True)
class DocumentsChanged:
    added: frozenset[str] = field(default_factory=frozenset)
    removed: frozenset[str] = field(default_factory=frozenset)


Listener = Callable[[DocumentsChanged], None]


def chunk_id_for(document_id: str, sequence_index: int) -> str:
    return f"{document_id}:{sequence_index}"


def segment(document_id: str, text: str, chunker: TextChunker) -> tuple[Chunk, ...]:
    return tuple(
        Chunk(
            id=chunk_id_for(document_id, idx),
            document_id=document_id,
            sequence_index=idx,
            text=span.text,
            token_estimate=estimate_tokens(span.text),
            start=span.start,
        )
        for idx, span in enumerate(chunker.chunk(text))
    )


class DocumentStore:
    def __init__(
        self,
        *,
        window: int = 800,
        overlap: int = 100,
        max_document_bytes: int = 5 * 1024 * 1024,
        clock: Callable[[], float] = time.time,
    ) -> None:
        try:
            self.chunker = TextChunker(window=window, overlap=overlap)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        self.max_document_bytes = max_document_bytes
        self._clock = clock
        self._last_created_at = 0.0
        self._documents: dict[str, Document] = {}
        self._chunks: dict[str, tuple[Chunk, ...]] = {}
        self._chunk_index: dict[str, Chunk] = {}
        self._listeners: list[Listener] = []

    # -- notifications -------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: DocumentsChanged) -> None:
        for listener in list(self._listeners):
            listener(event)

    # -- mutations -----------------------------------------------------

    def add_document(self, title: str, raw_text: str) -> Document:
        if raw_text is None or not raw_text.strip():
            raise ValidationError("Document text is empty")
        byte_size = len(raw_text.encode("utf-8"))
        if byte_size > self.max_document_bytes:
            raise ValidationError(
                f"Document is {byte_size} bytes, larger than the {self.max_document_bytes} byte limit"
            )
        title = (title or "").strip() or raw_text.strip().splitlines()[0][:80]

        doc = Document(
            id=uuid.uuid4().hex,
            title=title,
            raw_text=raw_text,
            created_at=self._next_created_at(),
            byte_size=byte_size,
        )
        chunks = segment(doc.id, raw_text, self.chunker)

        self._documents = {**self._documents, doc.id: doc}
        self._chunks = {**self._chunks, doc.id: chunks}
        index = dict(self._chunk_index)
        for c in chunks:
            index[c.id] = c
        self._chunk_index = index

        logger.info(
            "document_added",
            extra={"fields": {"document_id": doc.id, "bytes": byte_size, "chunks": len(chunks)}},
        )
        self._emit(DocumentsChanged(added=frozenset({doc.id})))
        return doc

    def remove_document(self, document_id: str) -> None:
        if document_id not in self._documents:
            raise NotFoundError(f"Document not found: {document_id}")
        documents = dict(self._documents)
        del documents[document_id]
        chunks = dict(self._chunks)
        removed = chunks.pop(document_id, ())
        index = dict(self._chunk_index)
        for c in removed:
            index.pop(c.id, None)

        self._documents = documents
        self._chunks = chunks
        self._chunk_index = index

        logger.info("document_removed", extra={"fields": {"document_id": document_id, "chunks": len(removed)}})
        self._emit(DocumentsChanged(removed=frozenset({document_id})))

    def restore(self, documents: Iterable[Document], chunks: Iterable[Chunk]) -> int:
        """Replace the whole store, used when a snapshot is loaded. No notification.

        Returns the number of orphan chunks dropped.
        """

        docs = {d.id: d for d in documents}
        grouped: dict[str, list[Chunk]] = {doc_id: [] for doc_id in docs}
        dropped = 0
        for c in chunks:
            if c.document_id not in docs:
                logger.warning("orphan_chunk_dropped", extra={"fields": {"chunk_id": c.id}})
                dropped += 1
                continue
            grouped[c.document_id].append(c)
        self._documents = docs
        self._chunks = {
            doc_id: tuple(sorted(items, key=lambda c: c.sequence_index)) for doc_id, items in grouped.items()
        }
        self._chunk_index = {c.id: c for items in self._chunks.values() for c in items}
        self._last_created_at = max((d.created_at for d in docs.values()), default=0.0)
        return dropped

    # -- reads ---------------------------------------------------------

    def list_documents(self) -> list[Document]:
        return sorted(self._documents.values(), key=lambda d: (-d.created_at, d.id))

    def get_document(self, document_id: str) -> Document:
        try:
            return self._documents[document_id]
        except KeyError:
            raise NotFoundError(f"Document not found: {document_id}") from None

    def get_chunks(self, document_id: str) -> list[Chunk]:
        if document_id not in self._documents:
            raise NotFoundError(f"Document not found: {document_id}")
        return list(self._chunks.get(document_id, ()))

    def get_chunk(self, chunk_id: str) -> Chunk:
        try:
            return self._chunk_index[chunk_id]
        except KeyError:
            raise NotFoundError(f"Chunk not found: {chunk_id}") from None

    def all_chunks(self) -> list[Chunk]:
        return [c for doc_id in sorted(self._chunks) for c in self._chunks[doc_id]]

    def tables(self) -> tuple[dict[str, Document], dict[str, Chunk]]:
        """Current document and chunk tables. Callers must not mutate them."""

        return self._documents, self._chunk_index

    def stats(self) -> dict[str, int]:
        return {"documents": len(self._documents), "chunks": len(self._chunk_index)}

    def _next_created_at(self) -> float:
        # Strictly increasing so ordering by created_at is total.
        now = float(self._clock())
        if now <= self._last_created_at:
            now = self._last_created_at + 1e-6
        self._last_created_at = now
        return now
