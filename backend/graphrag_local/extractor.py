"""Heuristic entity extraction.

Identifies multi-word proper nouns, all-caps abbreviations, capitalised
single words and lowercase words repeated inside a chunk. No NLP model is
required; extraction quality is tuned through the thresholds below rather
than being a correctness property of the index.
"""

from __future__ import annotations

import re
from collections import Counter
from typing import Dict, List

STOPWORDS = {
    "The", "A", "An", "And", "Or", "In", "Of", "To", "For", "On",
    "This", "That", "As", "At", "By", "With", "From", "Into", "It",
    "If", "But", "When", "Then", "There", "These", "Those", "We", "They",
}

LOWER_STOPWORDS = {
    "the", "a", "an", "and", "or", "in", "of", "to", "for", "on",
    "this", "that", "as", "at", "by", "with", "from", "into", "is",
    "are", "was", "were", "be", "has", "have", "it", "its", "their",
    "they", "we", "our", "which", "these", "those", "been", "being",
    "than", "then", "them", "there", "what", "when", "where", "will",
    "would", "should", "could", "also", "such", "some", "more", "most",
    "other", "only", "very", "just", "about", "over", "each", "your",
}

_TOKEN_RE = re.compile(r"[A-Za-z0-9]+")
_SPACE_RE = re.compile(r"\s+")


def normalize_label(label: str) -> str:
    """Case-fold and collapse whitespace; equal results mean the same entity."""

    return _SPACE_RE.sub(" ", label).strip().casefold()


def entity_id_for(label: str) -> str:
    return "ent:" + normalize_label(label)


class EntityExtractor:
    """Extract candidate entity labels from a text chunk."""

    def __init__(
        self,
        *,
        min_single_len: int = 3,
        min_repeated_len: int = 4,
        repeat_threshold: int = 2,
    ) -> None:
        self.min_single_len = min_single_len
        self.min_repeated_len = min_repeated_len
        self.repeat_threshold = repeat_threshold

    def _tokenize(self, text: str) -> List[str]:
        return _TOKEN_RE.findall(text)

    def _proper_nouns(self, tokens: List[str]) -> List[str]:
        entities: List[str] = []
        i = 0
        n = len(tokens)
        while i < n:
            token = tokens[i]
            if token in STOPWORDS:
                i += 1
                continue
            if token[0].isupper() and not token.isupper():
                phrase_tokens = [token]
                j = i + 1
                while j < n and tokens[j][0].isupper() and not tokens[j].isupper() and tokens[j] not in STOPWORDS:
                    phrase_tokens.append(tokens[j])
                    j += 1
                if len(phrase_tokens) >= 2:
                    entities.append(" ".join(phrase_tokens))
                    i = j
                    continue
            if token.isupper() and len(token) >= 2 and not token.isdigit():
                entities.append(token)
            i += 1
        for token in tokens:
            if token[0].isupper() and token not in STOPWORDS and not token.isupper():
                if len(token) >= self.min_single_len:
                    entities.append(token)
        return entities

    def _repeated_terms(self, tokens: List[str]) -> List[str]:
        counts = Counter(
            t.lower()
            for t in tokens
            if t.islower() and len(t) >= self.min_repeated_len and t not in LOWER_STOPWORDS
        )
        out: List[str] = []
        for term, freq in counts.items():
            if freq >= self.repeat_threshold:
                out.extend([term] * freq)
        return out

    def extract(self, chunk: str) -> Dict[str, int]:
        """Return ``{normalized label: mentions}`` for one chunk.

        The display label of each entity is its first spelling; callers that
        need it can use ``extract_labels``.
        """
        counts: Dict[str, int] = {}
        for label in self.extract_labels(chunk):
            key = normalize_label(label)
            counts[key] = counts.get(key, 0) + 1
        return counts

    def extract_labels(self, chunk: str) -> List[str]:
        tokens = self._tokenize(chunk or "")
        if not tokens:
            return []
        return self._proper_nouns(tokens) + self._repeated_terms(tokens)
