"""Multi-strategy retrieval over a consistent knowledge view.

Four strategies share one contract, ``query(view, text, strategy, mode)``:

* naive: summed TF-IDF term overlap, no graph.
* local: cosine similarity, then candidates whose entities sit near the
  query's entities in the graph are boosted.
* global: the query picks the best matching communities; only chunks that
  source their entities are scored.
* hybrid: local and global merged by mode-specific weights.

Results are ordered by score, then chunk sequence index, then document
creation time, then chunk id, so identical queries give identical output.

Optional stages wrap the strategy and are toggled per query:

* hyde: the query is expanded with the concatenation of adjacent tokens,
  so "graph rag" also matches "graphrag".
* pagerank: ranked chunks are boosted by their token-set Jaccard
  centrality among the other ranked chunks.
* reranking: ranked chunks are boosted by the share of query terms they
  contain.
* synthesis: an extractive summary is built from the top chunks.

Each stage is timed into ``graphrag_retrieval_stage_seconds``.
"""

from __future__ import annotations

import contextlib
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterable, Iterator, List, Mapping, Sequence, Set, Tuple

from .documents import Chunk, Document
from .graph import GraphView
from .metrics import observe_stage
from .scheduler import checkpoint
from .settings import EngineConfig, PerformanceMode, PerformanceProfile, StageToggles, Strategy
from .tfidf import TfidfIndex, tokenize

logger = logging.getLogger(__name__)

SCORE_PRECISION = 9
SUMMARY_CHUNKS = 3
SUMMARY_MAX_CHARS = 512


@dataclass(frozen=True)
class RetrievalResult:
    chunk_id: str
    score: float
    strategy_used: Strategy
    rank: int

    def as_dict(self) -> dict[str, object]:
        return {
            "chunk_id": self.chunk_id,
            "score": self.score,
            "strategy_used": self.strategy_used.value,
            "rank": self.rank,
        }


class KnowledgeView:
    """Documents, chunks and graph tables as of one committed rebuild."""

    def __init__(
        self,
        *,
        documents: Mapping[str, Document],
        chunks: Mapping[str, Chunk],
        graph: GraphView,
    ) -> None:
        self.documents = documents
        self.chunks = chunks
        self.graph = graph
        self._tfidf: TfidfIndex | None = None

    @property
    def version(self) -> int:
        return self.graph.version

    async def tfidf(self, *, yield_every: int = 64) -> TfidfIndex:
        if self._tfidf is None:
            texts = {cid: c.text for cid, c in self.chunks.items()}
            self._tfidf = await TfidfIndex.build(texts, yield_every=yield_every)
        return self._tfidf

    def order_key(self, chunk_id: str, score: float) -> Tuple[float, int, float, str]:
        chunk = self.chunks.get(chunk_id)
        seq = chunk.sequence_index if chunk else 0
        doc = self.documents.get(chunk.document_id) if chunk else None
        created = doc.created_at if doc else 0.0
        return (-round(score, SCORE_PRECISION), seq, created, chunk_id)


Scores = Dict[str, float]
Ranked = List[Tuple[str, float]]
Handler = Callable[[KnowledgeView, str, PerformanceProfile], Awaitable[Scores]]


@contextlib.contextmanager
def _stage(name: str) -> Iterator[None]:
    started = time.perf_counter()
    try:
        yield
    finally:
        observe_stage(stage=name, seconds=time.perf_counter() - started)


def expand_query(text: str) -> str:
    """Append the concatenation of each pair of adjacent query tokens."""

    tokens = tokenize(text)
    joined = [a + b for a, b in zip(tokens, tokens[1:])]
    if not joined:
        return text
    return f"{text} {' '.join(joined)}"


def jaccard(a: Set[str], b: Set[str]) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def synthesize_summary(
    view: KnowledgeView,
    results: Sequence[RetrievalResult],
    *,
    max_chunks: int = SUMMARY_CHUNKS,
    max_chars: int = SUMMARY_MAX_CHARS,
) -> str:
    """First sentence of each top chunk, joined into one short extract."""

    sentences: List[str] = []
    for r in results[:max_chunks]:
        chunk = view.chunks.get(r.chunk_id)
        if chunk is None:
            continue
        first = chunk.text.strip().split(".", 1)[0].strip()
        if first:
            sentences.append(first)
    if not sentences:
        return ""
    summary = ". ".join(sentences) + "."
    return summary[:max_chars]


class RetrievalEngine:
    def __init__(
        self,
        config: EngineConfig,
        *,
        on_dangling: Callable[[Iterable[str]], None] | None = None,
    ) -> None:
        self.config = config
        self.on_dangling = on_dangling
        self._handlers: Dict[Strategy, Handler] = {
            Strategy.NAIVE: self._naive,
            Strategy.LOCAL: self._local,
            Strategy.GLOBAL: self._global,
            Strategy.HYBRID: self._hybrid,
        }
        missing = set(Strategy) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No retrieval handler for: {sorted(s.value for s in missing)}")

    async def query(
        self,
        view: KnowledgeView,
        text: str,
        strategy: Strategy,
        performance_mode: PerformanceMode,
        *,
        top_k: int | None = None,
        stages: StageToggles | None = None,
    ) -> List[RetrievalResult]:
        if not view.chunks or not (text or "").strip():
            return []
        stages = stages or StageToggles()
        profile = self.config.profile(performance_mode)

        expanded = text
        if stages.hyde:
            with _stage("hyde"):
                expanded = expand_query(text)
        with _stage("strategy"):
            scores = await self._handlers[strategy](view, expanded, profile)
        ranked = self._order(view, scores)[: top_k or self.config.top_k]

        if stages.pagerank and len(ranked) > 1:
            with _stage("pagerank"):
                ranked = await self._centrality_boost(view, ranked)
        if stages.reranking and ranked:
            with _stage("reranking"):
                ranked = await self._coverage_boost(view, text, ranked)

        return [
            RetrievalResult(chunk_id=cid, score=float(score), strategy_used=strategy, rank=i)
            for i, (cid, score) in enumerate(ranked, start=1)
        ]

    def summarize(self, view: KnowledgeView, results: Sequence[RetrievalResult]) -> str:
        with _stage("synthesis"):
            return synthesize_summary(view, results)

    @staticmethod
    def _order(view: KnowledgeView, scores: Mapping[str, float]) -> Ranked:
        live = [(cid, s) for cid, s in scores.items() if s > 0 and cid in view.chunks]
        live.sort(key=lambda kv: view.order_key(kv[0], kv[1]))
        return live

    # -- optional stages -----------------------------------------------

    async def _centrality_boost(self, view: KnowledgeView, ranked: Ranked) -> Ranked:
        index = await view.tfidf(yield_every=self.config.yield_every)
        token_sets = [set(index.tf.get(cid, {})) for cid, _ in ranked]
        centrality: List[float] = []
        for i, own in enumerate(token_sets):
            total = sum(jaccard(own, other) for j, other in enumerate(token_sets) if j != i)
            centrality.append(total / (len(token_sets) - 1))
            await checkpoint(i + 1, self.config.yield_every)
        top = max(centrality)
        if top <= 0:
            return ranked
        boosted = {
            cid: s * (1.0 + self.config.centrality_boost * (c / top)) for (cid, s), c in zip(ranked, centrality)
        }
        return self._order(view, boosted)

    async def _coverage_boost(self, view: KnowledgeView, text: str, ranked: Ranked) -> Ranked:
        terms = set(tokenize(text))
        if not terms:
            return ranked
        index = await view.tfidf(yield_every=self.config.yield_every)
        boosted: Scores = {}
        for cid, s in ranked:
            covered = len(terms & set(index.tf.get(cid, {})))
            boosted[cid] = s * (1.0 + self.config.coverage_boost * (covered / len(terms)))
        return self._order(view, boosted)

    # -- strategies ----------------------------------------------------

    async def _naive(self, view: KnowledgeView, text: str, profile: PerformanceProfile) -> Scores:
        index = await view.tfidf(yield_every=self.config.yield_every)
        q_tokens = tokenize(text)
        scores: Scores = {}
        for step, cid in enumerate(view.chunks, start=1):
            s = index.overlap(q_tokens, cid)
            if s > 0:
                scores[cid] = s
            await checkpoint(step, self.config.yield_every)
        return scores

    async def _cosine(self, view: KnowledgeView, text: str, candidates: Iterable[str]) -> Scores:
        index = await view.tfidf(yield_every=self.config.yield_every)
        q_vec = index.vectorise_query(text)
        scores: Scores = {}
        for step, cid in enumerate(candidates, start=1):
            s = index.cosine(q_vec, cid)
            if s > 0:
                scores[cid] = s
            await checkpoint(step, self.config.yield_every)
        return scores

    async def _local(self, view: KnowledgeView, text: str, profile: PerformanceProfile) -> Scores:
        scores = await self._cosine(view, text, view.chunks)
        if not scores:
            return scores
        pool = sorted(scores.items(), key=lambda kv: view.order_key(kv[0], kv[1]))[: profile.candidate_pool]

        q_entities = view.graph.entities_in(tokenize(text))
        neighbourhood: Set[str] = set(q_entities)
        for eid in q_entities:
            neighbourhood.update(view.graph.neighbors(eid, profile.traversal_depth))

        boosted: Scores = {}
        for cid, s in pool:
            chunk_entities = view.graph.chunk_entities.get(cid, {})
            if neighbourhood and chunk_entities:
                matched = sum(1 for eid in chunk_entities if eid in neighbourhood)
                s *= 1.0 + self.config.local_boost * (matched / len(chunk_entities))
            boosted[cid] = s
        return boosted

    async def _global(self, view: KnowledgeView, text: str, profile: PerformanceProfile) -> Scores:
        q_entities = set(view.graph.entities_in(tokenize(text)))
        selected: List[Tuple[float, str, frozenset[str]]] = []
        if q_entities:
            for community in await view.graph.communities_async():
                hits = community.entity_ids & q_entities
                if not hits:
                    continue
                weight = sum(view.graph.entities[eid].mention_count for eid in hits if eid in view.graph.entities)
                if weight > 0:
                    selected.append((float(weight), community.id, community.entity_ids))
        selected.sort(key=lambda t: (-t[0], t[1]))
        selected = selected[: profile.max_communities]

        if not selected:
            return await self._cosine(view, text, view.chunks)

        candidates: Set[str] = set()
        dangling: Set[str] = set()
        for _weight, _cid, members in selected:
            for eid in members:
                entity = view.graph.entities.get(eid)
                if entity is None:
                    continue
                for chunk_id in entity.source_chunk_ids:
                    if chunk_id in view.chunks:
                        candidates.add(chunk_id)
                    else:
                        dangling.add(chunk_id)
        if dangling:
            self._report_dangling(dangling)
        return await self._cosine(view, text, sorted(candidates))

    async def _hybrid(self, view: KnowledgeView, text: str, profile: PerformanceProfile) -> Scores:
        local = await self._local(view, text, profile)
        glob = await self._global(view, text, profile)
        merged: Scores = {}
        for scores, weight in ((local, profile.hybrid_local_weight), (glob, profile.hybrid_global_weight)):
            top = max(scores.values(), default=0.0)
            if top <= 0:
                continue
            for cid, s in scores.items():
                value = weight * (s / top)
                if value > merged.get(cid, 0.0):
                    merged[cid] = value
        return merged

    def _report_dangling(self, chunk_ids: Set[str]) -> None:
        logger.warning("dangling_references", extra={"fields": {"chunk_ids": sorted(chunk_ids)}})
        if self.on_dangling is not None:
            self.on_dangling(sorted(chunk_ids))


def assemble_context(
    view: KnowledgeView,
    results: Iterable[RetrievalResult],
    *,
    max_chars_per_chunk: int = 1200,
    max_total_chars: int = 8000,
) -> List[str]:
    """Chunk texts for the prompt, in rank order, within character budgets."""

    context: List[str] = []
    used = 0
    for r in results:
        chunk = view.chunks.get(r.chunk_id)
        if chunk is None:
            continue
        txt = chunk.text.strip()
        if max_chars_per_chunk and len(txt) > max_chars_per_chunk:
            txt = txt[:max_chars_per_chunk]
        # Always keep the first chunk, even when it alone exceeds the budget.
        if max_total_chars and used + len(txt) > max_total_chars and context:
            break
        used += len(txt)
        context.append(txt)
    return context
