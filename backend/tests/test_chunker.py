"""Tests for chunker."""

from content_index.ingest.chunker import TextChunker


def test_paragraphs_pack_into_ordered_chunks(sample_text: str) -> None:
    chunks = TextChunker(max_tokens=6, min_tokens=1, overlap_tokens=0).chunk_text(sample_text, title="Pets")
    assert [chunk.index for chunk in chunks] == [0, 1, 2]
    assert chunks[0].text == "The cat sat on the mat."
    assert chunks[2].text == "Dogs bark loudly."
    assert all(chunk.source_label == "Pets" for chunk in chunks)


def test_chunks_respect_word_budget() -> None:
    text = " ".join(f"word{n}" for n in range(250)) + ".\n\n" + "Short tail paragraph."
    chunks = TextChunker(max_tokens=40, min_tokens=5, overlap_tokens=10).chunk_text(text)
    assert len(chunks) > 5
    assert all(len(chunk.text.split()) <= 40 for chunk in chunks)
    assert chunks[-1].text.endswith("Short tail paragraph.")


def test_overlap_carries_trailing_sentences() -> None:
    text = "Alpha beta gamma. Delta epsilon zeta. Eta theta iota. Kappa lambda mu."
    chunks = TextChunker(max_tokens=7, min_tokens=1, overlap_tokens=3).chunk_text(text)
    assert len(chunks) >= 2
    assert chunks[1].text.startswith("Delta epsilon zeta.")


def test_empty_text_yields_nothing() -> None:
    assert TextChunker().chunk_text("   \n\n  ") == []
