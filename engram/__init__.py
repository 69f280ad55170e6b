"""Memory store building blocks: ingestion, hybrid retrieval, graph expansion and reranking."""

__version__ = "0.1.0"