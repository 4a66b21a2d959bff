from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from gamelog_api.eventlog.dedupe import DuplicateDetector
from gamelog_api.eventlog.entities import EntityUpserter, actor_id
from gamelog_api.eventlog.hashing import compute_event_hash, compute_file_hash
from gamelog_api.eventlog.models import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PROCESSING,
    UploadedFile,
    utcnow,
)
from gamelog_api.eventlog.parser import iter_events
from gamelog_api.eventlog.stats import Recalculator, touched_entities

logger = logging.getLogger("gamelog")


class IngestError(RuntimeError):
    """A run failed; the upload is marked failed and nothing from the run was kept."""


class LogFileNotFound(IngestError, FileNotFoundError):
    pass


@dataclass(frozen=True)
class IngestResult:
    uploaded_file_id: int
    events_processed: int
    events_skipped: int
    duplicate_file: bool
    status: str

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class IngestionService:
    """Drives one log file through parse -> dedupe -> persist -> recompute.

    A run is a single transaction: either every new event, entity upsert and
    aggregate of the file is committed together with the ``completed`` status,
    or nothing is and the upload ends up ``failed``.
    """

    def __init__(
        self,
        db,
        *,
        upload_dir: Union[str, Path] = ".",
        recent_hash_window_days: int = 7,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self._upload_dir = Path(upload_dir)
        self._window = timedelta(days=max(0, int(recent_hash_window_days)))
        self._clock = clock

    def resolve_path(self, file_path: str) -> Path:
        p = Path(file_path)
        if p.is_absolute():
            return p
        return self._upload_dir / p

    async def ingest_file(self, file_path: str, *, name: Optional[str] = None) -> IngestResult:
        path = self.resolve_path(file_path)
        if not path.is_file():
            raise LogFileNotFound(f"log file not found: {file_path}")

        content_hash = compute_file_hash(path)
        display_name = name or path.name

        async with self._db.acquire() as store:
            existing = await store.find_completed_file_by_hash(content_hash)
            if existing is not None:
                own = await store.find_file_by_path(file_path)
                if own is not None and own.id != existing.id and own.status in (STATUS_PENDING, STATUS_PROCESSING):
                    # Same bytes uploaded again: close this record instead of leaving it pending.
                    await store.update_file(
                        own.id, status=STATUS_COMPLETED, events_count=0, processed_at=self._clock()
                    )
                logger.info(
                    "Skipping %s: content already ingested as upload #%d (%d events)",
                    display_name,
                    existing.id,
                    existing.events_count,
                )
                return IngestResult(
                    uploaded_file_id=existing.id,
                    events_processed=0,
                    events_skipped=existing.events_count,
                    duplicate_file=True,
                    status=STATUS_COMPLETED,
                )

            uploaded = await store.find_file_by_path(file_path)
            if uploaded is None or uploaded.status == STATUS_COMPLETED:
                # A completed record stays closed; new content at the same path is a new upload.
                uploaded = await store.create_file(
                    file_path=file_path,
                    name=display_name,
                    content_hash=content_hash,
                    status=STATUS_PROCESSING,
                )
            else:
                await store.update_file(uploaded.id, content_hash=content_hash, status=STATUS_PROCESSING)

        logger.info("Ingesting %s (upload #%d)", display_name, uploaded.id)
        try:
            result = await self._run(uploaded.id, path)
        except Exception as e:
            await self.mark_failed(uploaded.id)
            logger.exception("Ingestion of %s (upload #%d) failed", display_name, uploaded.id)
            raise IngestError(f"failed to ingest {display_name}: {e}") from e

        logger.info(
            "Ingested %s: %d new events, %d duplicates skipped",
            display_name,
            result.events_processed,
            result.events_skipped,
        )
        return result

    async def _run(self, file_id: int, path: Path) -> IngestResult:
        now = self._clock()

        async with self._db.transaction() as tx:
            known = await tx.recent_event_hashes(now - self._window)
            detector = DuplicateDetector(tx, known)
            upserter = EntityUpserter(tx, now=now)

            with open(path, "r", encoding="utf-8", errors="replace") as f:
                for event in iter_events(f):
                    event_hash = compute_event_hash(event)
                    if await detector.is_duplicate(event, event_hash):
                        continue

                    await upserter.upsert_for_event(event)
                    await tx.insert_event(
                        timestamp=event.timestamp,
                        category=event.category,
                        event_type=event.event_type,
                        player_id=actor_id(event),
                        payload=event.payload,
                        source_file_id=file_id,
                        event_hash=event_hash,
                    )
                    detector.accept(event_hash)

            touched = touched_entities(await tx.events_for_file(file_id))
            if not touched.is_empty():
                await Recalculator(tx).recalculate(touched)

            await tx.update_file(
                file_id,
                status=STATUS_COMPLETED,
                events_count=detector.processed,
                processed_at=self._clock(),
            )

        logger.debug(
            "Upload #%d dedupe: %d hash hits, %d field hits, cache %d",
            file_id,
            detector.hash_hits,
            detector.field_hits,
            detector.cache_size,
        )
        return IngestResult(
            uploaded_file_id=file_id,
            events_processed=detector.processed,
            events_skipped=detector.skipped,
            duplicate_file=False,
            status=STATUS_COMPLETED,
        )

    async def mark_failed(self, file_id: int) -> None:
        # Separate connection: the run's transaction is already rolled back.
        try:
            async with self._db.acquire() as store:
                await store.update_file(file_id, status=STATUS_FAILED)
        except Exception:
            logger.exception("Could not mark upload #%d as failed", file_id)

    # ---- status surface ----
    async def get_upload(self, file_id: int) -> Optional[UploadedFile]:
        async with self._db.acquire() as store:
            return await store.get_file(file_id)

    async def get_status(self, file_id: int) -> Optional[Dict[str, object]]:
        uploaded = await self.get_upload(file_id)
        return uploaded.status_view() if uploaded is not None else None

    async def list_uploads(self, *, status: Optional[str] = None, limit: int = 20) -> List[Dict[str, object]]:
        limit = max(1, min(int(limit), 100))
        async with self._db.acquire() as store:
            files = await store.list_files(status=status, limit=limit)
        return [f.status_view() for f in files]
