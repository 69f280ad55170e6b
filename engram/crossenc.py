"""Cross-encoder reranker input encoding.

The cross-encoder needs a model runtime that this package does not ship, so
the reranker itself reports that it is unavailable; the tokenizer and the
BERT-style input builder are complete.
"""

from __future__ import annotations

from typing import NamedTuple, Sequence

from engram.rerank import Candidate, RerankError

MAX_SEQ_LEN = 512
CLS_TOKEN = 101
SEP_TOKEN = 102
PAD_TOKEN = 0

_FNV_OFFSET = 0x811C9DC5
_FNV_PRIME = 0x01000193
_NOT_BUILT = "cross-encoder not available: install a crossenc model runtime to enable it"


class CrossEncoderNotBuiltError(RerankError):
    """Raised when the cross-encoder is used without a model runtime."""

    def __init__(self, message: str = _NOT_BUILT) -> None:
        super().__init__(message)


class EncodedPair(NamedTuple):
    """The three tensors a BERT-style cross-encoder takes."""

    input_ids: list[int]
    attention_mask: list[int]
    token_type_ids: list[int]


def _fnv1a_32(data: bytes) -> int:
    value = _FNV_OFFSET
    for byte in data:
        value ^= byte
        value = (value * _FNV_PRIME) & 0xFFFFFFFF
    return value


def tokenize(text: str) -> list[int]:
    """Map each whitespace-separated, lower-cased word to an id in [1000, 30000)."""
    return [_fnv1a_32(word.lower().encode("utf-8")) % 29000 + 1000 for word in text.split()]


def build_input(query: str, doc: str) -> EncodedPair:
    """Lay out ``[CLS] query [SEP] doc [SEP]`` padded to MAX_SEQ_LEN."""
    available = MAX_SEQ_LEN - 3
    query_ids = tokenize(query)[:available]
    doc_ids = tokenize(doc)[: available - len(query_ids)]

    ids = [CLS_TOKEN, *query_ids, SEP_TOKEN, *doc_ids, SEP_TOKEN]
    types = [0] * (len(query_ids) + 2) + [1] * (len(doc_ids) + 1)
    padding = MAX_SEQ_LEN - len(ids)
    return EncodedPair(
        input_ids=ids + [PAD_TOKEN] * padding,
        attention_mask=[1] * len(ids) + [0] * padding,
        token_type_ids=types + [0] * padding,
    )


class CrossEncoderReranker:
    """Cross-encoder reranker; unavailable without a model runtime."""

    def __init__(self, model_path: str, timeout: float) -> None:
        raise CrossEncoderNotBuiltError()

    def rerank(self, query: str, candidates: Sequence[Candidate]) -> list[Candidate]:
        """Always raises CrossEncoderNotBuiltError."""
        raise CrossEncoderNotBuiltError()