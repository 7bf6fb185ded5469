"""Knowledge graph built from document chunks.

The graph keeps four flat id-keyed tables:

* ``chunk_entities``: chunk id -> {entity id: mentions in that chunk}
* ``doc_chunks``: document id -> chunk ids the graph has indexed
* ``entities``: entity id -> ``Entity``
* ``relations``: (subject id, object id) -> co-occurrence weight, with
  ``subject < object``; ``adjacency`` mirrors it in both directions.

Rebuilds run in two phases. The compute phase extracts entities from added
chunks and yields to the event loop periodically; it never touches the
tables. The commit phase is synchronous and installs fresh tables
(copy-on-write), so a ``GraphView`` taken before the commit stays consistent.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from functools import cached_property
from typing import Any, Callable, Dict, Iterable, List, Mapping, Sequence, Set, Tuple

from .community import Community, CommunityCache, detect_communities, detect_communities_async
from .documents import Chunk
from .errors import CorruptionError, NotFoundError
from .extractor import EntityExtractor, normalize_label
from .metrics import get_metrics
from .scheduler import checkpoint

logger = logging.getLogger(__name__)

Pair = Tuple[str, str]


@dataclass(frozen=True)
class Entity:
    id: str
    label: str
    mention_count: int
    source_chunk_ids: frozenset[str]


@dataclass(frozen=True)
class Relation:
    subject_entity_id: str
    object_entity_id: str
    co_occurrence_weight: int


@dataclass(frozen=True)
class _ChunkExtraction:
    chunk_id: str
    mentions: Dict[str, int]
    labels: Dict[str, str]


def _pair(a: str, b: str) -> Pair:
    return (a, b) if a < b else (b, a)


def _pairs(entity_ids: Iterable[str]) -> List[Pair]:
    ids = sorted(entity_ids)
    return [(ids[i], ids[j]) for i in range(len(ids)) for j in range(i + 1, len(ids))]


def _document_of(chunk_id: str) -> str:
    return chunk_id.rsplit(":", 1)[0]


def bfs_neighbors(adjacency: Mapping[str, Mapping[str, int]], start: str, depth: int) -> List[str]:
    """Entities within ``depth`` hops of ``start``, in visiting order.

    Each node's neighbours are expanded by descending relation weight, then
    by entity id, so the order is deterministic.
    """

    if depth <= 0 or start not in adjacency:
        return []
    seen: Set[str] = {start}
    out: List[str] = []
    queue: deque[Tuple[str, int]] = deque([(start, 0)])
    while queue:
        node, d = queue.popleft()
        if d >= depth:
            continue
        ranked = sorted(adjacency.get(node, {}).items(), key=lambda kv: (-kv[1], kv[0]))
        for other, _weight in ranked:
            if other in seen:
                continue
            seen.add(other)
            out.append(other)
            queue.append((other, d + 1))
    return out


@dataclass(frozen=True)
class GraphView:
    """Immutable read view of the graph at one version."""

    version: int
    entities: Mapping[str, Entity]
    relations: Mapping[Pair, int]
    adjacency: Mapping[str, Mapping[str, int]]
    chunk_entities: Mapping[str, Mapping[str, int]]
    max_depth: int
    graph: "KnowledgeGraph" = field(repr=False, compare=False)

    def neighbors(self, entity_id: str, depth: int) -> List[str]:
        return bfs_neighbors(self.adjacency, entity_id, min(depth, self.max_depth))

    def communities(self) -> List[Community]:
        return self.graph.communities_for(self)

    async def communities_async(self) -> List[Community]:
        return await self.graph.communities_for_async(self)

    @cached_property
    def label_tokens(self) -> Dict[str, Tuple[str, ...]]:
        return {eid: tuple(normalize_label(e.label).split(" ")) for eid, e in self.entities.items()}

    @cached_property
    def _first_token_index(self) -> Dict[str, List[str]]:
        index: Dict[str, List[str]] = {}
        for eid, toks in self.label_tokens.items():
            index.setdefault(toks[0], []).append(eid)
        return index

    def entities_in(self, tokens: Sequence[str]) -> List[str]:
        """Entity ids whose label appears as a contiguous token run in ``tokens``."""

        found: Set[str] = set()
        n = len(tokens)
        for i, tok in enumerate(tokens):
            for eid in self._first_token_index.get(tok, ()):
                label = self.label_tokens[eid]
                if tuple(tokens[i : i + len(label)]) == label and i + len(label) <= n:
                    found.add(eid)
        return sorted(found)


class KnowledgeGraph:
    def __init__(
        self,
        *,
        chunk_source: Callable[[str], Sequence[Chunk]] | None = None,
        extractor: EntityExtractor | None = None,
        community_threshold: float = 1.0,
        community_cache_size: int = 4,
        default_depth: int = 2,
        max_depth: int = 4,
        yield_every: int = 64,
    ) -> None:
        self.chunk_source = chunk_source
        self.extractor = extractor or EntityExtractor()
        self.community_threshold = community_threshold
        self.default_depth = default_depth
        self.max_depth = max_depth
        self.yield_every = yield_every
        self.communities_cache = CommunityCache(community_cache_size)

        self.version = 0
        self._chunk_entities: Dict[str, Dict[str, int]] = {}
        self._doc_chunks: Dict[str, Tuple[str, ...]] = {}
        self._entities: Dict[str, Entity] = {}
        self._labels: Dict[str, str] = {}
        self._relations: Dict[Pair, int] = {}
        self._adjacency: Dict[str, Dict[str, int]] = {}

    # -- reads ---------------------------------------------------------

    def view(self) -> GraphView:
        return GraphView(
            version=self.version,
            entities=self._entities,
            relations=self._relations,
            adjacency=self._adjacency,
            chunk_entities=self._chunk_entities,
            max_depth=self.max_depth,
            graph=self,
        )

    @property
    def entities(self) -> Mapping[str, Entity]:
        return self._entities

    def relations(self) -> List[Relation]:
        return [
            Relation(subject_entity_id=a, object_entity_id=b, co_occurrence_weight=w)
            for (a, b), w in sorted(self._relations.items())
        ]

    def relation_weight(self, a: str, b: str) -> int:
        return self._relations.get(_pair(a, b), 0)

    def get_entity(self, entity_id: str) -> Entity:
        try:
            return self._entities[entity_id]
        except KeyError:
            raise NotFoundError(f"Entity not found: {entity_id}") from None

    def neighbors(self, entity_id: str, depth: int | None = None) -> List[str]:
        d = self.default_depth if depth is None else depth
        return bfs_neighbors(self._adjacency, entity_id, min(d, self.max_depth))

    def indexed_documents(self) -> Set[str]:
        return set(self._doc_chunks)

    def stats(self) -> Dict[str, int]:
        return {
            "version": self.version,
            "entities": len(self._entities),
            "relations": len(self._relations),
            "indexed_chunks": sum(len(ids) for ids in self._doc_chunks.values()),
            "cached_communities": len(self.communities_cache),
        }

    # -- communities ---------------------------------------------------

    def community_detection(self, threshold: float | None = None) -> List[Community]:
        return self.communities_for(self.view(), threshold)

    def communities_for(self, view: GraphView, threshold: float | None = None) -> List[Community]:
        thr = self.community_threshold if threshold is None else threshold
        cached = self.communities_cache.get(view.version, thr)
        if cached is not None:
            return cached
        communities = detect_communities(view.entities.keys(), view.relations, threshold=thr)
        # Views of an older version are served but never cached.
        if view.version == self.version:
            self.communities_cache.put(view.version, thr, communities)
        return communities

    async def communities_for_async(self, view: GraphView, threshold: float | None = None) -> List[Community]:
        thr = self.community_threshold if threshold is None else threshold
        cached = self.communities_cache.get(view.version, thr)
        if cached is not None:
            return cached
        communities = await detect_communities_async(
            view.entities.keys(), view.relations, threshold=thr, yield_every=self.yield_every
        )
        if view.version == self.version:
            self.communities_cache.put(view.version, thr, communities)
        return communities

    # -- rebuilds ------------------------------------------------------

    async def rebuild_incremental(self, added: Iterable[str], removed: Iterable[str]) -> bool:
        """Apply a document delta. Returns True when the graph changed."""

        started = time.perf_counter()
        added_ids = sorted(set(added))
        removed_ids = sorted(set(removed))
        extracted = await self._extract_documents(added_ids)
        changed = self._commit(removed_docs=removed_ids, added=extracted)
        get_metrics().rebuild_seconds.labels(kind="incremental").observe(time.perf_counter() - started)
        logger.info(
            "graph_rebuilt",
            extra={
                "fields": {
                    "kind": "incremental",
                    "added": len(added_ids),
                    "removed": len(removed_ids),
                    "version": self.version,
                    "entities": len(self._entities),
                    "relations": len(self._relations),
                }
            },
        )
        return changed

    async def full_rebuild(self, document_ids: Iterable[str]) -> None:
        started = time.perf_counter()
        extracted = await self._extract_documents(sorted(set(document_ids)))
        self._install_full(extracted)
        get_metrics().rebuild_seconds.labels(kind="full").observe(time.perf_counter() - started)
        logger.info("graph_rebuilt", extra={"fields": {"kind": "full", "version": self.version}})

    def build_from_chunks(self, chunks: Iterable[Chunk]) -> None:
        """Synchronous full build, used by snapshot migration."""

        grouped: Dict[str, List[_ChunkExtraction]] = {}
        for chunk in chunks:
            grouped.setdefault(chunk.document_id, []).append(self._extract_chunk(chunk))
        self._install_full(sorted(grouped.items()))

    async def _extract_documents(self, doc_ids: Sequence[str]) -> List[Tuple[str, List[_ChunkExtraction]]]:
        if doc_ids and self.chunk_source is None:
            raise RuntimeError("KnowledgeGraph has no chunk source")
        out: List[Tuple[str, List[_ChunkExtraction]]] = []
        step = 0
        for doc_id in doc_ids:
            try:
                chunks = self.chunk_source(doc_id)  # type: ignore[misc]
            except NotFoundError:
                # Removed again before this rebuild ran.
                continue
            items: List[_ChunkExtraction] = []
            for chunk in chunks:
                items.append(self._extract_chunk(chunk))
                step += 1
                await checkpoint(step, self.yield_every)
            out.append((doc_id, items))
        return out

    def _extract_chunk(self, chunk: Chunk) -> _ChunkExtraction:
        mentions: Dict[str, int] = {}
        labels: Dict[str, str] = {}
        for label in self.extractor.extract_labels(chunk.text):
            norm = normalize_label(label)
            if not norm:
                continue
            eid = "ent:" + norm
            mentions[eid] = mentions.get(eid, 0) + 1
            labels.setdefault(eid, label)
        return _ChunkExtraction(chunk_id=chunk.id, mentions=mentions, labels=labels)

    def _install_full(self, extracted: Sequence[Tuple[str, List[_ChunkExtraction]]]) -> None:
        self._chunk_entities = {}
        self._doc_chunks = {}
        self._entities = {}
        self._labels = {}
        self._relations = {}
        self._adjacency = {}
        self._commit(removed_docs=(), added=extracted)
        self.version += 1
        self.communities_cache.drop_older_than(self.version)

    def prune_chunks(self, chunk_ids: Iterable[str]) -> int:
        """Drop chunk postings that no longer have a live chunk behind them."""

        ids = [
            cid
            for cid in set(chunk_ids)
            if cid in self._chunk_entities or cid in self._doc_chunks.get(_document_of(cid), ())
        ]
        if not ids:
            return 0
        self._commit(removed_docs=(), added=(), removed_chunks=ids)
        get_metrics().dangling_pruned_total.inc(len(ids))
        logger.warning("dangling_chunks_pruned", extra={"fields": {"chunk_ids": sorted(ids)}})
        return len(ids)

    def prune_reference(self, entity_id: str, chunk_id: str) -> bool:
        """Drop a dangling ``chunk_id`` found among ``entity_id``'s sources.

        Postings are per chunk, so the chunk is removed for every entity
        that mentions it.
        """

        entity = self._entities.get(entity_id)
        if entity is None or chunk_id not in entity.source_chunk_ids:
            return False
        return self.prune_chunks([chunk_id]) > 0

    def prune_dangling(self, live_chunk_ids: Iterable[str]) -> int:
        live = set(live_chunk_ids)
        return self.prune_chunks(cid for cid in self._chunk_entities if cid not in live)

    def compact(self) -> Dict[str, int]:
        """Drop redundant relation entries and the LRU community computation."""

        relations = {
            pair: w
            for pair, w in self._relations.items()
            if w > 0 and pair[0] in self._entities and pair[1] in self._entities and pair[0] != pair[1]
        }
        dropped = len(self._relations) - len(relations)
        if dropped:
            adjacency: Dict[str, Dict[str, int]] = {}
            for (a, b), w in relations.items():
                adjacency.setdefault(a, {})[b] = w
                adjacency.setdefault(b, {})[a] = w
            self._relations = relations
            self._adjacency = adjacency
        evicted = self.communities_cache.evict_lru()
        logger.info("graph_compacted", extra={"fields": {"relations_dropped": dropped, "community_evicted": evicted}})
        return {"relations_dropped": dropped, "communities_evicted": int(evicted)}

    def _commit(
        self,
        *,
        removed_docs: Iterable[str],
        added: Iterable[Tuple[str, List[_ChunkExtraction]]],
        removed_chunks: Iterable[str] = (),
    ) -> bool:
        chunk_entities = dict(self._chunk_entities)
        doc_chunks = dict(self._doc_chunks)
        labels = dict(self._labels)

        lost: Dict[str, Set[str]] = {}
        gained: Dict[str, Set[str]] = {}
        mention_delta: Dict[str, int] = {}
        pairs: Set[Pair] = set()
        changed = False

        def drop_chunk(cid: str) -> None:
            mentions = chunk_entities.pop(cid, None)
            if not mentions:
                return
            for eid, cnt in mentions.items():
                lost.setdefault(eid, set()).add(cid)
                mention_delta[eid] = mention_delta.get(eid, 0) - cnt
            pairs.update(_pairs(mentions))

        for doc_id in removed_docs:
            for cid in doc_chunks.pop(doc_id, ()):
                drop_chunk(cid)
                changed = True

        for cid in removed_chunks:
            drop_chunk(cid)
            doc_id = _document_of(cid)
            if doc_id in doc_chunks:
                doc_chunks[doc_id] = tuple(c for c in doc_chunks[doc_id] if c != cid)
            changed = True

        for doc_id, items in added:
            for cid in doc_chunks.pop(doc_id, ()):
                drop_chunk(cid)
            doc_chunks[doc_id] = tuple(item.chunk_id for item in items)
            changed = True
            for item in items:
                if not item.mentions:
                    continue
                chunk_entities[item.chunk_id] = dict(item.mentions)
                for eid, cnt in item.mentions.items():
                    gained.setdefault(eid, set()).add(item.chunk_id)
                    lost.get(eid, set()).discard(item.chunk_id)
                    mention_delta[eid] = mention_delta.get(eid, 0) + cnt
                    labels.setdefault(eid, item.labels[eid])
                pairs.update(_pairs(item.mentions))

        entities = dict(self._entities)
        for eid in set(lost) | set(gained):
            old = entities.get(eid)
            sources = set(old.source_chunk_ids) if old else set()
            sources -= lost.get(eid, set())
            sources |= gained.get(eid, set())
            if not sources:
                entities.pop(eid, None)
                labels.pop(eid, None)
                continue
            count = (old.mention_count if old else 0) + mention_delta.get(eid, 0)
            entities[eid] = Entity(
                id=eid,
                label=labels.get(eid, eid[4:]),
                mention_count=max(count, len(sources)),
                source_chunk_ids=frozenset(sources),
            )

        relations = dict(self._relations)
        adjacency = dict(self._adjacency)
        copied: Set[str] = set()

        def adj(eid: str) -> Dict[str, int]:
            if eid not in copied:
                adjacency[eid] = dict(adjacency.get(eid, {}))
                copied.add(eid)
            return adjacency[eid]

        for a, b in pairs:
            ea, eb = entities.get(a), entities.get(b)
            weight = len(ea.source_chunk_ids & eb.source_chunk_ids) if ea and eb else 0
            if weight > 0:
                relations[(a, b)] = weight
                adj(a)[b] = weight
                adj(b)[a] = weight
            else:
                relations.pop((a, b), None)
                adj(a).pop(b, None)
                adj(b).pop(a, None)
        for eid in copied:
            if not adjacency[eid]:
                del adjacency[eid]

        self._chunk_entities = chunk_entities
        self._doc_chunks = doc_chunks
        self._labels = labels
        self._entities = entities
        self._relations = relations
        self._adjacency = adjacency
        if changed:
            self.version += 1
            self.communities_cache.drop_older_than(self.version)
        return changed

    # -- serialization -------------------------------------------------

    def to_payload(self) -> Dict[str, Any]:
        communities = [
            {"threshold": thr, "communities": [c.as_dict() for c in items]}
            for (version, thr), items in self.communities_cache.items()
            if version == self.version
        ]
        return {
            "version": self.version,
            "entities": [
                {
                    "id": e.id,
                    "label": e.label,
                    "mention_count": e.mention_count,
                    "source_chunk_ids": sorted(e.source_chunk_ids),
                }
                for e in sorted(self._entities.values(), key=lambda e: e.id)
            ],
            "relations": [
                {"subject_entity_id": a, "object_entity_id": b, "co_occurrence_weight": w}
                for (a, b), w in sorted(self._relations.items())
            ],
            "chunk_entities": {cid: dict(sorted(m.items())) for cid, m in sorted(self._chunk_entities.items())},
            "doc_chunks": {doc_id: list(ids) for doc_id, ids in sorted(self._doc_chunks.items())},
            "communities": communities,
        }

    def load_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            entities = {
                e["id"]: Entity(
                    id=e["id"],
                    label=e["label"],
                    mention_count=int(e["mention_count"]),
                    source_chunk_ids=frozenset(e["source_chunk_ids"]),
                )
                for e in payload["entities"]
            }
            relations: Dict[Pair, int] = {}
            adjacency: Dict[str, Dict[str, int]] = {}
            for r in payload["relations"]:
                a, b = _pair(r["subject_entity_id"], r["object_entity_id"])
                w = int(r["co_occurrence_weight"])
                if w < 0:
                    raise CorruptionError(f"Negative relation weight for {a} - {b}")
                relations[(a, b)] = w
                adjacency.setdefault(a, {})[b] = w
                adjacency.setdefault(b, {})[a] = w
            chunk_entities = {cid: {eid: int(n) for eid, n in m.items()} for cid, m in payload["chunk_entities"].items()}
            doc_chunks = {doc_id: tuple(ids) for doc_id, ids in payload["doc_chunks"].items()}
            version = int(payload["version"])
        except (KeyError, TypeError, ValueError) as e:
            raise CorruptionError(f"Malformed graph payload: {e}") from e

        self._entities = entities
        self._labels = {eid: e.label for eid, e in entities.items()}
        self._relations = relations
        self._adjacency = adjacency
        self._chunk_entities = chunk_entities
        self._doc_chunks = doc_chunks
        self.version = version
        self.communities_cache = CommunityCache(self.communities_cache.capacity)
        for block in payload.get("communities", ()):
            items = [
                Community(id=c["id"], entity_ids=frozenset(c["entity_ids"]), weight=float(c["weight"]))
                for c in block["communities"]
            ]
            self.communities_cache.put(version, float(block["threshold"]), items)
