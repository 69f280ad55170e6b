"""Background retry of vector indexing for chunks that failed during ingestion."""

from __future__ import annotations

import dataclasses
import logging
import threading
from dataclasses import dataclass
from typing import Callable

from engram.postgres import MetaStore
from engram.qdrant import VectorStore

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 30.0
DEFAULT_BATCH_SIZE = 10
DEFAULT_MAX_ATTEMPTS = 5


@dataclass
class ReconcilerConfig:
    """Tuning for the reconciler; non-positive values select the defaults.

    ``interval`` is in seconds. A row whose attempt count has reached
    ``max_attempts`` is dropped without retrying. The reconciler itself does not
    increment attempts, so a row is retried until it succeeds unless the count
    was set elsewhere.
    """

    interval: float = DEFAULT_INTERVAL
    batch_size: int = DEFAULT_BATCH_SIZE
    max_attempts: int = DEFAULT_MAX_ATTEMPTS


def _with_defaults(config: ReconcilerConfig) -> ReconcilerConfig:
    return dataclasses.replace(
        config,
        interval=config.interval if config.interval > 0 else DEFAULT_INTERVAL,
        batch_size=config.batch_size if config.batch_size > 0 else DEFAULT_BATCH_SIZE,
        max_attempts=config.max_attempts if config.max_attempts > 0 else DEFAULT_MAX_ATTEMPTS,
    )


class Reconciler:
    """Periodically drains the pending-vector queue and retries each chunk.

    ``retry_fn`` is called with the chunk id; if it returns without raising, the
    row is removed from the queue. ``vec`` is kept for callers that need it but is
    not used by the retry path.
    """

    def __init__(
        self,
        meta: MetaStore,
        vec: VectorStore,
        config: ReconcilerConfig | None,
        retry_fn: Callable[[str], None],
    ) -> None:
        self.meta = meta
        self.vec = vec
        self.config = _with_defaults(config if config is not None else ReconcilerConfig())
        self.retry_fn = retry_fn
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def __enter__(self) -> Reconciler:
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()

    def start(self) -> None:
        """Start the background thread and return immediately."""
        if self._thread is not None:
            raise RuntimeError("reconciler already started")
        self._thread = threading.Thread(target=self._run, name="reconciler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Signal the background thread to stop and wait for it to exit."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join()

    def _run(self) -> None:
        while not self._stop.wait(self.config.interval):
            self.tick()

    def tick(self) -> None:
        """Run one drain-and-retry cycle."""
        try:
            rows = self.meta.drain_pending(self.config.batch_size)
        except Exception as exc:
            logger.warning("reconciler: drain_pending failed: %s", exc)
            return

        for row in rows:
            if row.attempts >= self.config.max_attempts:
                logger.warning(
                    "reconciler: chunk exceeded max attempts, dropping "
                    "chunk_id=%s attempts=%d last_error=%s",
                    row.chunk_id,
                    row.attempts,
                    row.last_error,
                )
                self._delete(row.chunk_id, "delete_pending failed")
                continue

            try:
                self.retry_fn(row.chunk_id)
            except Exception as exc:
                # Leave the row queued; the next cycle picks it up again.
                logger.warning("reconciler: retry failed chunk_id=%s err=%s", row.chunk_id, exc)
                continue

            self._delete(row.chunk_id, "delete_pending after success failed")

    def _delete(self, chunk_id: str, message: str) -> None:
        try:
            self.meta.delete_pending(chunk_id)
        except Exception as exc:
            logger.warning("reconciler: %s chunk_id=%s err=%s", message, chunk_id, exc)