"""Versioned snapshots of the knowledge base on a key-value substrate.

A snapshot is one JSON record stored under ``SNAPSHOT_KEY``::

    {"schema_version": 2, "checksum": "<sha256 of payload>", "payload": {...}}

``schema_version`` always comes first so older readers can reject a newer
layout before touching the payload. Older layouts are upgraded by
``migrate``; a newer one raises ``UnsupportedVersionError``.
"""

from __future__ import annotations

import asyncio
import enum
import hashlib
import json
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Protocol, Tuple

from pydantic import ValidationError as PydanticValidationError

from .chunker import TextChunker
from .documents import Chunk, Document, segment
from .error_codes import QUOTA_ERRNOS
from .errors import CorruptionError, QuotaExceededError, UnsupportedVersionError
from .extractor import EntityExtractor
from .graph import KnowledgeGraph
from .schemas import LegacySnapshot, SnapshotEnvelope, SnapshotPayload
from .settings import EngineConfig

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2
SNAPSHOT_KEY = "graphrag_knowledge_base"


class KeyValueBackend(Protocol):
    def get(self, key: str) -> bytes | None: ...

    def put(self, key: str, data: bytes) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryBackend:
    """In-process substrate with an optional byte quota over all keys."""

    def __init__(self, quota_bytes: int | None = None) -> None:
        self.quota_bytes = quota_bytes
        self._data: Dict[str, bytes] = {}

    def get(self, key: str) -> bytes | None:
        return self._data.get(key)

    def put(self, key: str, data: bytes) -> None:
        if self.quota_bytes is not None:
            used = sum(len(v) for k, v in self._data.items() if k != key)
            if used + len(data) > self.quota_bytes:
                raise QuotaExceededError(
                    f"Writing {len(data)} bytes under {key!r} exceeds the {self.quota_bytes} byte quota"
                )
        self._data[key] = bytes(data)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def used_bytes(self) -> int:
        return sum(len(v) for v in self._data.values())


class FileBackend:
    """One ``<key>.json`` file per key in a directory."""

    def __init__(self, root: Path, quota_bytes: int | None = None) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.quota_bytes = quota_bytes

    def _path(self, key: str) -> Path:
        safe = "".join(ch if ch.isalnum() or ch in "-_." else "_" for ch in key)
        return self.root / f"{safe}.json"

    def get(self, key: str) -> bytes | None:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_bytes()

    def put(self, key: str, data: bytes) -> None:
        path = self._path(key)
        if self.quota_bytes is not None:
            used = sum(p.stat().st_size for p in self.root.glob("*.json") if p != path)
            if used + len(data) > self.quota_bytes:
                raise QuotaExceededError(
                    f"Writing {len(data)} bytes under {key!r} exceeds the {self.quota_bytes} byte quota"
                )
        tmp = path.with_suffix(path.suffix + ".tmp")
        try:
            tmp.write_bytes(data)
            os.replace(tmp, path)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            if e.errno in QUOTA_ERRNOS:
                raise QuotaExceededError(f"No space left writing {key!r}: {e}") from e
            raise

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)


@dataclass(frozen=True)
class Snapshot:
    documents: Tuple[Document, ...]
    chunks: Tuple[Chunk, ...]
    graph: Mapping[str, Any]
    saved_at: float = field(default=0.0)


def _canonical(payload: Mapping[str, Any]) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _checksum(payload: Mapping[str, Any]) -> str:
    return hashlib.sha256(_canonical(payload)).hexdigest()


def _envelope(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {"schema_version": SCHEMA_VERSION, "checksum": _checksum(payload), "payload": payload}


def snapshot_payload(snapshot: Snapshot) -> Dict[str, Any]:
    return {
        "saved_at": snapshot.saved_at,
        "documents": [
            {
                "id": d.id,
                "title": d.title,
                "raw_text": d.raw_text,
                "created_at": d.created_at,
                "byte_size": d.byte_size,
            }
            for d in snapshot.documents
        ],
        "chunks": [
            {
                "id": c.id,
                "document_id": c.document_id,
                "sequence_index": c.sequence_index,
                "text": c.text,
                "token_estimate": c.token_estimate,
                "start": c.start,
            }
            for c in snapshot.chunks
        ],
        "graph": dict(snapshot.graph),
    }


def encode_snapshot(snapshot: Snapshot) -> bytes:
    return json.dumps(_envelope(snapshot_payload(snapshot)), ensure_ascii=False).encode("utf-8")


def decode_snapshot(data: bytes, *, config: EngineConfig | None = None) -> Snapshot:
    try:
        raw = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise CorruptionError(f"Snapshot is not valid JSON: {e}") from e
    if not isinstance(raw, dict):
        raise CorruptionError("Snapshot root is not an object")

    raw = migrate(raw, config=config)

    try:
        envelope = SnapshotEnvelope.model_validate(raw)
    except PydanticValidationError as e:
        raise CorruptionError(f"Snapshot envelope is invalid: {e.errors()[0].get('msg', 'invalid')}") from e
    if _checksum(envelope.payload) != envelope.checksum:
        raise CorruptionError("Snapshot checksum mismatch")
    try:
        payload = SnapshotPayload.model_validate(envelope.payload)
    except PydanticValidationError as e:
        raise CorruptionError(f"Snapshot payload is invalid: {e.errors()[0].get('msg', 'invalid')}") from e

    return Snapshot(
        documents=tuple(Document(**d.model_dump()) for d in payload.documents),
        chunks=tuple(Chunk(**c.model_dump()) for c in payload.chunks),
        graph=payload.graph.model_dump(),
        saved_at=payload.saved_at,
    )


# --- Migrations ---


def _schema_version(raw: Mapping[str, Any]) -> int:
    version = raw.get("schema_version")
    if isinstance(version, bool) or not isinstance(version, int):
        raise CorruptionError("Snapshot has no integer schema_version")
    return version


def _legacy_created_at(value: float) -> float:
    # Legacy records stored milliseconds since the epoch.
    return value / 1000.0 if value > 1e11 else value


def _migrate_v1(raw: Mapping[str, Any], config: EngineConfig) -> Dict[str, Any]:
    """Legacy document index -> v2: re-chunk and re-extract every document."""

    try:
        legacy = LegacySnapshot.model_validate(raw)
    except PydanticValidationError as e:
        raise CorruptionError(f"Legacy snapshot is invalid: {e.errors()[0].get('msg', 'invalid')}") from e

    chunker = TextChunker(window=config.chunk_window, overlap=config.chunk_overlap)
    documents: list[Document] = []
    chunks: list[Chunk] = []
    seen: set[str] = set()
    for item in legacy.documents:
        if item.id in seen or not item.content.strip():
            continue
        seen.add(item.id)
        content = item.content
        documents.append(
            Document(
                id=item.id,
                title=item.title.strip() or content.strip().splitlines()[0][:80],
                raw_text=content,
                created_at=_legacy_created_at(item.created_at),
                byte_size=len(content.encode("utf-8")),
            )
        )
        chunks.extend(segment(item.id, content, chunker))

    graph = KnowledgeGraph(
        extractor=EntityExtractor(repeat_threshold=config.repeat_threshold),
        community_threshold=config.community_threshold,
        community_cache_size=config.community_cache_size,
        default_depth=config.default_neighbor_depth,
        max_depth=config.max_neighbor_depth,
    )
    graph.build_from_chunks(chunks)

    snapshot = Snapshot(
        documents=tuple(documents),
        chunks=tuple(chunks),
        graph=graph.to_payload(),
        saved_at=max((d.created_at for d in documents), default=0.0),
    )
    return _envelope(snapshot_payload(snapshot))


_MIGRATIONS: Dict[int, Callable[[Mapping[str, Any], EngineConfig], Dict[str, Any]]] = {
    1: _migrate_v1,
}


def migrate(raw: Mapping[str, Any], *, config: EngineConfig | None = None) -> Dict[str, Any]:
    """Upgrade a decoded snapshot record to ``SCHEMA_VERSION``.

    Pure: the input is not modified and the result depends only on the
    record and the chunking/extraction config.
    """

    version = _schema_version(raw)
    if version > SCHEMA_VERSION:
        raise UnsupportedVersionError(found=version, supported=SCHEMA_VERSION)
    cfg = config or EngineConfig()
    out: Dict[str, Any] = dict(raw)
    while version < SCHEMA_VERSION:
        step = _MIGRATIONS.get(version)
        if step is None:
            raise UnsupportedVersionError(found=version, supported=SCHEMA_VERSION)
        out = step(out, cfg)
        new_version = _schema_version(out)
        logger.info("snapshot_migrated", extra={"fields": {"from": version, "to": new_version}})
        version = new_version
    return out


# --- Persistence layer ---


class PersistenceState(str, enum.Enum):
    EMPTY = "empty"
    LOADED = "loaded"
    DIRTY = "dirty"
    SAVED = "saved"


class PersistenceLayer:
    """Saves and loads snapshots; one save or load runs at a time."""

    def __init__(
        self,
        backend: KeyValueBackend,
        *,
        config: EngineConfig | None = None,
        key: str = SNAPSHOT_KEY,
    ) -> None:
        self.backend = backend
        self.config = config or EngineConfig()
        self.key = key
        self.state = PersistenceState.EMPTY
        self.last_saved_bytes = 0
        self._lock = asyncio.Lock()

    def mark_dirty(self) -> None:
        self.state = PersistenceState.DIRTY

    async def save(self, snapshot: Snapshot) -> int:
        async with self._lock:
            started = time.perf_counter()
            data = encode_snapshot(snapshot)
            self.backend.put(self.key, data)
            self.state = PersistenceState.SAVED
            self.last_saved_bytes = len(data)
            logger.info(
                "snapshot_saved",
                extra={
                    "fields": {
                        "bytes": len(data),
                        "documents": len(snapshot.documents),
                        "duration_ms": round((time.perf_counter() - started) * 1000.0, 3),
                    }
                },
            )
            return len(data)

    async def load(self) -> Snapshot | None:
        async with self._lock:
            data = self.backend.get(self.key)
            if data is None:
                logger.info("snapshot_absent", extra={"fields": {"key": self.key}})
                return None
            snapshot = decode_snapshot(data, config=self.config)
            self.state = PersistenceState.LOADED
            logger.info(
                "snapshot_loaded",
                extra={"fields": {"bytes": len(data), "documents": len(snapshot.documents)}},
            )
            return snapshot
