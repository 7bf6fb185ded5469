"""TF-IDF scoring over chunks.

A dependency-free TF-IDF index keyed by chunk id. It serves two scorers:
summed term overlap (``overlap``) for naive search and cosine similarity
(``cosine``) for the graph-aware strategies.
"""

from __future__ import annotations

import math
import re
from typing import Dict, Iterable, List, Mapping, Tuple

from .scheduler import checkpoint

_LATIN_RE = re.compile(r"[A-Za-z0-9]+")
_CJK_RE = re.compile(r"[\u4e00-\u9fff]+")


def tokenize(text: str) -> List[str]:
    """Tokenize text into lowercase latin words and CJK character bigrams."""

    if not text:
        return []

    tokens: List[str] = [w.lower() for w in _LATIN_RE.findall(text)]

    # CJK sequences -> bigrams (two-character sequences kept whole)
    for seq in _CJK_RE.findall(text):
        if len(seq) < 2:
            continue
        if len(seq) == 2:
            tokens.append(seq)
            continue
        for i in range(0, len(seq) - 1):
            tokens.append(seq[i : i + 2])

    return tokens


def _term_freq(tokens: Iterable[str]) -> Dict[str, int]:
    tf: Dict[str, int] = {}
    for token in tokens:
        tf[token] = tf.get(token, 0) + 1
    return tf


class TfidfIndex:
    def __init__(self) -> None:
        self.tf: Dict[str, Dict[str, int]] = {}
        self.doc_freq: Dict[str, int] = {}
        self.idf: Dict[str, float] = {}
        self.vectors: Dict[str, Dict[str, float]] = {}

    @classmethod
    async def build(cls, texts: Mapping[str, str], *, yield_every: int = 64) -> "TfidfIndex":
        index = cls()
        step = 0
        for chunk_id, text in texts.items():
            tf = _term_freq(tokenize(text))
            index.tf[chunk_id] = tf
            for token in tf:
                index.doc_freq[token] = index.doc_freq.get(token, 0) + 1
            step += 1
            await checkpoint(step, yield_every)
        n = len(texts)
        for token, df in index.doc_freq.items():
            index.idf[token] = math.log((n + 1) / (df + 1)) + 1
        for chunk_id, tf in index.tf.items():
            index.vectors[chunk_id] = index._normalise(tf)
            step += 1
            await checkpoint(step, yield_every)
        return index

    def __len__(self) -> int:
        return len(self.tf)

    def _normalise(self, tf: Mapping[str, int]) -> Dict[str, float]:
        vec: Dict[str, float] = {}
        norm = 0.0
        for token, freq in tf.items():
            weight = freq * self.idf.get(token, 0.0)
            if weight:
                vec[token] = weight
                norm += weight * weight
        norm = math.sqrt(norm) or 1.0
        for token in vec:
            vec[token] /= norm
        return vec

    def vectorise_query(self, query: str) -> Dict[str, float]:
        return self._normalise(_term_freq(tokenize(query)))

    def cosine(self, q_vec: Mapping[str, float], chunk_id: str) -> float:
        vec = self.vectors.get(chunk_id)
        if not q_vec or not vec:
            return 0.0
        a, b = (q_vec, vec) if len(q_vec) <= len(vec) else (vec, q_vec)
        score = 0.0
        for token, weight in a.items():
            other = b.get(token)
            if other is not None:
                score += weight * other
        return score

    def overlap(self, query_tokens: Iterable[str], chunk_id: str) -> float:
        tf = self.tf.get(chunk_id)
        if not tf:
            return 0.0
        score = 0.0
        for token in query_tokens:
            freq = tf.get(token)
            if freq:
                score += freq * self.idf.get(token, 0.0)
        return score

    def rank(self, query: str, chunk_ids: Iterable[str]) -> List[Tuple[str, float]]:
        q_vec = self.vectorise_query(query)
        scores = [(cid, self.cosine(q_vec, cid)) for cid in chunk_ids]
        return [(cid, s) for cid, s in scores if s > 0]
