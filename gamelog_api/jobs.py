from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Sequence

from gamelog_api.ingest import IngestionService, IngestResult, LogFileNotFound

logger = logging.getLogger("gamelog")


class IngestJobQueue:
    """In-process background ingestion: the upload endpoint enqueues, workers run.

    Each attempt is bounded by ``timeout_seconds``; failed attempts are retried
    up to ``max_tries`` times, sleeping ``backoff_seconds[attempt - 1]`` between
    them (the last value repeats). Re-running a file is safe because ingestion
    is idempotent.
    """

    def __init__(
        self,
        service: IngestionService,
        *,
        workers: int = 1,
        timeout_seconds: float = 300.0,
        max_tries: int = 3,
        backoff_seconds: Sequence[float] = (30.0, 60.0, 120.0),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._service = service
        self._workers = max(1, int(workers))
        self._timeout = float(timeout_seconds)
        self._max_tries = max(1, int(max_tries))
        self._backoff = tuple(float(b) for b in backoff_seconds) or (0.0,)
        self._sleep = sleep
        self._queue: "asyncio.Queue[int]" = asyncio.Queue()
        self._tasks: List[asyncio.Task] = []

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def backoff_for(self, attempt: int) -> float:
        idx = min(max(attempt, 1), len(self._backoff)) - 1
        return self._backoff[idx]

    async def start(self) -> None:
        if self._tasks:
            return
        for n in range(self._workers):
            self._tasks.append(asyncio.create_task(self._worker(n), name=f"ingest-worker-{n}"))
        logger.info("Started %d ingestion worker(s)", self._workers)

    async def stop(self) -> None:
        for t in self._tasks:
            t.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    async def submit(self, uploaded_file_id: int) -> None:
        await self._queue.put(int(uploaded_file_id))

    async def join(self) -> None:
        await self._queue.join()

    async def _worker(self, n: int) -> None:
        while True:
            file_id = await self._queue.get()
            try:
                await self.run_job(file_id)
            except Exception:
                logger.exception("Worker %d crashed on upload #%d", n, file_id)
            finally:
                self._queue.task_done()

    async def run_job(self, uploaded_file_id: int) -> Optional[IngestResult]:
        uploaded = await self._service.get_upload(uploaded_file_id)
        if uploaded is None:
            logger.warning("Upload #%d not found; dropping job", uploaded_file_id)
            return None

        last_exc: Exception | None = None
        for attempt in range(1, self._max_tries + 1):
            try:
                return await asyncio.wait_for(
                    self._service.ingest_file(uploaded.file_path, name=uploaded.name),
                    timeout=self._timeout,
                )
            except LogFileNotFound as e:
                # A retry will not bring the file back.
                last_exc = e
                break
            except asyncio.TimeoutError as e:
                last_exc = e
                # Cancellation bypasses the service's own failure handling.
                await self._service.mark_failed(uploaded_file_id)
                logger.warning(
                    "Upload #%d timed out after %.0fs (attempt %d/%d)",
                    uploaded_file_id,
                    self._timeout,
                    attempt,
                    self._max_tries,
                )
            except Exception as e:
                last_exc = e
                logger.warning(
                    "Upload #%d failed (attempt %d/%d): %s",
                    uploaded_file_id,
                    attempt,
                    self._max_tries,
                    e,
                )

            if attempt < self._max_tries:
                await self._sleep(self.backoff_for(attempt))

        await self._service.mark_failed(uploaded_file_id)
        logger.error("Upload #%d failed definitively: %s", uploaded_file_id, last_exc)
        return None
