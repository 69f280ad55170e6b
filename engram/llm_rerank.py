"""Reranker that asks an Ollama-compatible chat model to score candidates."""

from __future__ import annotations

import dataclasses
import json
import logging
from dataclasses import dataclass
from typing import Sequence

import httpx

from engram.rerank import Candidate

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 1.5


@dataclass
class LLMConfig:
    """Settings for the LLM reranker. ``timeout`` is in seconds; non-positive selects the default."""

    base_url: str = ""
    model: str = ""
    timeout: float = DEFAULT_TIMEOUT


class LLMReranker:
    """Reranks candidates by scores an LLM assigns them.

    Any failure (network, timeout, unparsable reply, wrong number of scores)
    leaves the candidates in their original order.
    """

    def __init__(self, config: LLMConfig, client: httpx.Client | None = None) -> None:
        timeout = config.timeout if config.timeout > 0 else DEFAULT_TIMEOUT
        self.config = dataclasses.replace(config, timeout=timeout)
        self._owns_client = client is None
        self._client = client if client is not None else httpx.Client(timeout=timeout)

    def __enter__(self) -> LLMReranker:
        return self

    def __exit__(self, *exc_info) -> None:
        if self._owns_client:
            self._client.close()

    def rerank(self, query: str, candidates: Sequence[Candidate]) -> list[Candidate]:
        """Return the candidates sorted by LLM score, highest first."""
        items = list(candidates)
        if not items:
            return items
        try:
            scores = self._fetch_scores(build_prompt(query, items), len(items))
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as exc:
            logger.warning("llm reranker: falling back to fused order: %s", exc)
            return items
        order = sorted(range(len(items)), key=lambda i: -scores[i])
        return [items[i] for i in order]

    def _fetch_scores(self, prompt: str, n: int) -> list[float]:
        response = self._client.post(
            f"{self.config.base_url}/api/chat",
            json={
                "model": self.config.model,
                "stream": False,
                "messages": [{"role": "user", "content": prompt}],
            },
            timeout=self.config.timeout,
        )
        return parse_scores(_message_content(response.content), n)


def _message_content(body: bytes) -> str:
    data = json.loads(body)
    if not isinstance(data, dict):
        raise ValueError("chat response is not an object")
    message = data.get("message")
    if message is None:
        return ""
    if not isinstance(message, dict):
        raise ValueError("chat response message is not an object")
    content = message.get("content")
    if content is None:
        return ""
    if not isinstance(content, str):
        raise ValueError("chat response content is not a string")
    return content


def build_prompt(query: str, candidates: Sequence[Candidate]) -> str:
    """Build the relevance-scoring prompt for the query and candidates."""
    lines = [
        "You are a relevance scoring assistant. Score each document's relevance "
        "to the query on a scale of 0-10.\n",
        f"\nQuery: {query}\n\n",
        "Documents:\n",
    ]
    lines.extend(f"{number}. {candidate.content}\n" for number, candidate in enumerate(candidates, 1))
    lines.append(
        "\nRespond with ONLY a JSON array of scores in document order, e.g.: [8, 3, 7]\n"
        "Do not include any other text."
    )
    return "".join(lines)


def _reject_constant(name: str) -> float:
    raise ValueError(f"invalid number {name}")


def parse_scores(content: str, n: int) -> list[float]:
    """Extract ``n`` scores from an LLM reply, stripping code fences and clamping to [0, 10].

    Raises ValueError when the reply is not a JSON array of ``n`` numbers.
    """
    text = content.strip()
    if text.startswith("```"):
        newline = text.find("\n")
        if newline != -1:
            text = text[newline + 1:]
        fence = text.rfind("```")
        if fence != -1:
            text = text[:fence]
        text = text.strip()

    try:
        raw = json.loads(text, parse_constant=_reject_constant)
    except ValueError as exc:
        raise ValueError(f"parse scores array: {exc}") from exc
    if not isinstance(raw, list):
        raise ValueError("parse scores array: not a JSON array")
    if len(raw) != n:
        raise ValueError(f"expected {n} scores, got {len(raw)}")

    scores = []
    for index, value in enumerate(raw):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"score[{index}] not a number: {value!r}")
        scores.append(min(max(float(value), 0.0), 10.0))
    return scores