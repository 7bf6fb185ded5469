from __future__ import annotations

from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field


class DocumentRecord(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    title: str
    raw_text: str
    created_at: float
    byte_size: int = Field(ge=0)


class ChunkRecord(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    document_id: str = Field(min_length=1)
    sequence_index: int = Field(ge=0)
    text: str
    token_estimate: int = Field(ge=0)
    start: int = Field(ge=0)


class EntityRecord(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    label: str
    mention_count: int = Field(ge=0)
    source_chunk_ids: List[str]


class RelationRecord(BaseModel):
    model_config = ConfigDict(extra="forbid")

    subject_entity_id: str
    object_entity_id: str
    co_occurrence_weight: int = Field(ge=0)


class CommunityRecord(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    entity_ids: List[str]
    weight: float


class CommunityBlock(BaseModel):
    model_config = ConfigDict(extra="forbid")

    threshold: float
    communities: List[CommunityRecord]


class GraphRecord(BaseModel):
    model_config = ConfigDict(extra="forbid")

    version: int = Field(ge=0)
    entities: List[EntityRecord] = Field(default_factory=list)
    relations: List[RelationRecord] = Field(default_factory=list)
    chunk_entities: Dict[str, Dict[str, int]] = Field(default_factory=dict)
    doc_chunks: Dict[str, List[str]] = Field(default_factory=dict)
    communities: List[CommunityBlock] = Field(default_factory=list)


class SnapshotPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    saved_at: float
    documents: List[DocumentRecord] = Field(default_factory=list)
    chunks: List[ChunkRecord] = Field(default_factory=list)
    graph: GraphRecord


class SnapshotEnvelope(BaseModel):
    model_config = ConfigDict(extra="forbid")

    schema_version: int = Field(ge=1)
    checksum: str = Field(min_length=64, max_length=64)
    payload: Dict[str, Any]


# --- Legacy layout (schema_version 1) ---


class LegacyDocument(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    title: str = ""
    content: str
    created_at: float = 0.0
    size_bytes: int | None = None


class LegacySnapshot(BaseModel):
    model_config = ConfigDict(extra="ignore")

    schema_version: int = 1
    documents: List[LegacyDocument] = Field(default_factory=list)
