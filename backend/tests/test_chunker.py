from __future__ import annotations

"""Chunking tests."""

import pytest

from graphrag_local.chunker import TextChunker, estimate_tokens, merge_chunks

TEXT = (
    "Graph retrieval augments a language model with passages from a local corpus. "
    "Entities are extracted from every chunk and linked when they co-occur.\n\n"
    "Communities group strongly connected entities so broad questions can be answered."
)


@pytest.mark.parametrize("window,overlap", [(40, 0), (40, 10), (64, 16), (500, 50)])
def test_chunks_reconstruct_the_document(window: int, overlap: int) -> None:
    spans = list(TextChunker(window=window, overlap=overlap).chunk(TEXT))
    assert merge_chunks(spans) == TEXT
    assert all(len(s.text) <= window for s in spans)
    assert all(TEXT[s.start : s.end] == s.text for s in spans)


def test_boundaries_do_not_split_tokens() -> None:
    spans = list(TextChunker(window=30, overlap=8).chunk(TEXT))
    for s in spans:
        assert s.start == 0 or TEXT[s.start - 1].isspace()
        assert s.end == len(TEXT) or TEXT[s.end - 1].isspace()


def test_consecutive_chunks_overlap() -> None:
    spans = list(TextChunker(window=40, overlap=15).chunk(TEXT))
    assert len(spans) > 2
    assert any(nxt.start < cur.end for cur, nxt in zip(spans, spans[1:]))
    assert all(nxt.start > cur.start for cur, nxt in zip(spans, spans[1:]))


def test_token_longer_than_window_is_cut_hard() -> None:
    text = "x" * 25 + " tail"
    spans = list(TextChunker(window=10, overlap=2).chunk(text))
    assert spans[0].text == "x" * 10
    assert merge_chunks(spans) == text


def test_short_text_is_one_chunk() -> None:
    spans = list(TextChunker(window=800, overlap=100).chunk("hello world"))
    assert [(s.start, s.text) for s in spans] == [(0, "hello world")]


def test_merge_accepts_offset_tuples() -> None:
    spans = TextChunker(window=32, overlap=8).chunk(TEXT)
    assert merge_chunks([(s.start, s.text) for s in spans]) == TEXT


@pytest.mark.parametrize("window,overlap", [(0, 0), (10, 10), (10, -1)])
def test_invalid_parameters(window: int, overlap: int) -> None:
    with pytest.raises(ValueError):
        TextChunker(window=window, overlap=overlap)


def test_estimate_tokens() -> None:
    assert estimate_tokens("") == 1
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2
