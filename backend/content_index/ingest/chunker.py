"""Chunking utilities."""

from __future__ import annotations

import re
from typing import Iterator, Sequence

from content_index.ingest.types import TextChunk
from content_index.utils.text import count_words, normalize

_PARAGRAPH_RE = re.compile(r"\n\s*\n")
_SENTENCE_RE = re.compile(r"[^.!?。！？\n]+[.!?。！？]*")


class TextChunker:
    """Split page text into ordered, word-budgeted chunks.

    Paragraphs are kept whole when they fit; longer ones fall back to
    sentences, and sentences that still overflow are cut on word boundaries.
    Pieces are then packed greedily up to ``max_tokens`` words, carrying up to
    ``overlap_tokens`` trailing words into the next chunk.
    """

    def __init__(self, max_tokens: int = 120, min_tokens: int = 20, overlap_tokens: int = 20) -> None:
        if max_tokens <= 0:
            raise ValueError("max_tokens must be positive")
        self.max_tokens = max_tokens
        self.min_tokens = min(min_tokens, max_tokens)
        self.overlap_tokens = min(overlap_tokens, max_tokens - 1) if max_tokens > 1 else 0

    def chunk_text(self, text: str, title: str = "") -> list[TextChunk]:
        cleaned = normalize(text)
        if not cleaned:
            return []
        pieces = [piece for paragraph in _paragraphs(cleaned) for piece in self._fit(paragraph)]
        chunks: list[TextChunk] = []
        for body in self._pack(pieces):
            chunks.append(TextChunk(index=len(chunks), text=body, source_label=title))
        return chunks

    def _fit(self, paragraph: str) -> list[str]:
        if count_words(paragraph) <= self.max_tokens:
            return [paragraph]
        pieces: list[str] = []
        for sentence in _sentences(paragraph):
            if count_words(sentence) <= self.max_tokens:
                pieces.append(sentence)
            else:
                pieces.extend(_split_words(sentence, self.max_tokens))
        return pieces

    def _pack(self, pieces: Sequence[str]) -> Iterator[str]:
        current: list[str] = []
        current_tokens = 0
        for piece in pieces:
            piece_tokens = count_words(piece)
            if not current or current_tokens + piece_tokens <= self.max_tokens:
                current.append(piece)
                current_tokens += piece_tokens
                continue
            if current_tokens < self.min_tokens and current_tokens + piece_tokens <= self.max_tokens * 2:
                current.append(piece)
                current_tokens += piece_tokens
                continue
            yield " ".join(current)
            current = self._overlap(current, self.max_tokens - piece_tokens)
            current.append(piece)
            current_tokens = sum(count_words(item) for item in current)
        if current:
            yield " ".join(current)

    def _overlap(self, pieces: Sequence[str], room: int) -> list[str]:
        limit = min(self.overlap_tokens, room)
        if limit <= 0:
            return []
        retained: list[str] = []
        budget = 0
        for piece in reversed(pieces):
            tokens = count_words(piece)
            if budget + tokens > limit:
                break
            retained.insert(0, piece)
            budget += tokens
        return retained


def _paragraphs(text: str) -> Iterator[str]:
    for block in _PARAGRAPH_RE.split(text):
        block = " ".join(block.split())
        if block:
            yield block


def _sentences(paragraph: str) -> Iterator[str]:
    for match in _SENTENCE_RE.finditer(paragraph):
        sentence = match.group().strip()
        if sentence:
            yield sentence


def _split_words(sentence: str, max_tokens: int) -> list[str]:
    words = sentence.split()
    return [" ".join(words[start : start + max_tokens]) for start in range(0, len(words), max_tokens)]


__all__ = ["TextChunker"]
