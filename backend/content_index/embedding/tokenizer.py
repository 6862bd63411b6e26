"""Tokenizers feeding the inference worker."""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from typing import Sequence

import numpy as np
from tokenizers import Tokenizer

_TOKEN_RE = re.compile(r"\w+")


@dataclass(slots=True)
class TokenizedText:
    """Token ids for a single text, unpadded."""

    input_ids: list[int]
    attention_mask: list[int]
    token_type_ids: list[int]

    def __len__(self) -> int:
        return len(self.input_ids)


@dataclass(slots=True)
class TokenizedBatch:
    """Padded ``(batch, seq)`` int64 arrays ready for inference."""

    input_ids: np.ndarray
    attention_mask: np.ndarray
    token_type_ids: np.ndarray

    @property
    def dims(self) -> tuple[int, int]:
        return (int(self.input_ids.shape[0]), int(self.input_ids.shape[1]))


def pad_batch(items: Sequence[TokenizedText], pad_id: int = 0) -> TokenizedBatch:
    """Right-pad tokenized texts to the longest one in the batch."""
    seq_len = max((len(item) for item in items), default=0)
    seq_len = max(seq_len, 1)
    shape = (len(items), seq_len)
    input_ids = np.full(shape, pad_id, dtype=np.int64)
    attention_mask = np.zeros(shape, dtype=np.int64)
    token_type_ids = np.zeros(shape, dtype=np.int64)
    for row, item in enumerate(items):
        length = len(item)
        input_ids[row, :length] = item.input_ids
        attention_mask[row, :length] = item.attention_mask
        token_type_ids[row, :length] = item.token_type_ids
    return TokenizedBatch(input_ids=input_ids, attention_mask=attention_mask, token_type_ids=token_type_ids)


class HFTokenizer:
    """Wrapper over a Hugging Face ``tokenizer.json`` definition."""

    def __init__(self, tokenizer: Tokenizer, max_length: int) -> None:
        self._tokenizer = tokenizer
        self._tokenizer.enable_truncation(max_length=max_length)
        self._tokenizer.no_padding()
        self.max_length = max_length
        pad_id = tokenizer.token_to_id("<pad>")
        self.pad_id = pad_id if pad_id is not None else 0

    @classmethod
    def from_bytes(cls, data: bytes, max_length: int) -> "HFTokenizer":
        return cls(Tokenizer.from_str(data.decode("utf-8")), max_length)

    def encode(self, text: str) -> TokenizedText:
        encoding = self._tokenizer.encode(text)
        return TokenizedText(
            input_ids=list(encoding.ids),
            attention_mask=list(encoding.attention_mask),
            token_type_ids=list(encoding.type_ids),
        )


class WordTokenizer:
    """Lower-cased ``\\w+`` words hashed into a fixed vocabulary."""

    def __init__(self, vocab_size: int, max_length: int) -> None:
        self.vocab_size = vocab_size
        self.max_length = max_length
        self.pad_id = 0

    def encode(self, text: str) -> TokenizedText:
        ids = [hash_token(token, self.vocab_size) for token in _TOKEN_RE.findall(text.lower())]
        ids = ids[: self.max_length]
        return TokenizedText(input_ids=ids, attention_mask=[1] * len(ids), token_type_ids=[0] * len(ids))


def hash_token(token: str, buckets: int) -> int:
    digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big") % buckets


__all__ = ["TokenizedText", "TokenizedBatch", "pad_batch", "HFTokenizer", "WordTokenizer", "hash_token"]
