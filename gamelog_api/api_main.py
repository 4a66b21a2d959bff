# api_main.py
# FastAPI service for game log ingestion
# - Upload endpoint stores the file and queues a background ingestion job
# - Status endpoints read the upload records
# - Player and item routes read the recomputed aggregates

from __future__ import annotations

import logging
import os
import uuid
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import date as Date, datetime
from pathlib import Path
from typing import List, Optional

from fastapi import FastAPI, File, HTTPException, Query, Request, UploadFile
from pydantic import BaseModel

from gamelog_api.config import Settings
from gamelog_api.db import Db
from gamelog_api.eventlog.hashing import compute_bytes_hash
from gamelog_api.eventlog.models import FILE_STATUSES, STATUS_COMPLETED, STATUS_PENDING
from gamelog_api.eventlog.selftest import run_parser_selftest
from gamelog_api.ingest import IngestionService
from gamelog_api.jobs import IngestJobQueue

logger = logging.getLogger("gamelog")

UPLOAD_SUBDIR = "uploaded_logs"
UPLOAD_CHUNK_BYTES = 64 * 1024


# ---------- models ----------
class UploadResponse(BaseModel):
    uploaded_file_id: int
    filename: str
    path: Optional[str] = None
    status: str
    duplicate_file: bool = False
    events_processed: int = 0
    events_skipped: int = 0


class UploadStatus(BaseModel):
    id: int
    filename: str
    status: str
    events_count: int
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None


class PlayerOut(BaseModel):
    player_id: str
    name: str
    level: int
    current_zone: Optional[str] = None
    total_score: int
    total_xp: int
    total_gold: int
    deaths: int
    kills: int
    bosses_defeated: int
    quests_completed: int
    last_seen: Optional[datetime] = None


class DailyStatsOut(BaseModel):
    date: Date
    score_gained: int
    xp_gained: int
    gold_gained: int
    deaths_count: int
    kills_count: int
    bosses_defeated_count: int
    quests_completed_count: int
    items_picked_count: int
    messages_sent: int


class PlayerStatsResponse(BaseModel):
    player: PlayerOut
    daily: List[DailyStatsOut]


class LeaderboardEntry(BaseModel):
    rank: int
    player_id: str
    name: str
    level: int
    total_score: int


class ItemOut(BaseModel):
    name: str
    total_pickups: int
    total_quantity: int


# ---------- app ----------
def create_app(settings: Optional[Settings] = None, db=None) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        database = db or Db(settings.database_url, min_size=settings.db_pool_min, max_size=settings.db_pool_max)
        await database.start()

        if settings.selftest_enabled:
            run_parser_selftest()

        service = IngestionService(
            database,
            upload_dir=settings.upload_dir,
            recent_hash_window_days=settings.recent_hash_window_days,
        )
        jobs = IngestJobQueue(
            service,
            workers=settings.job_workers,
            timeout_seconds=settings.job_timeout_seconds,
            max_tries=settings.job_max_tries,
            backoff_seconds=settings.job_backoff_seconds,
        )
        await jobs.start()

        app.state.db = database
        app.state.service = service
        app.state.jobs = jobs
        try:
            yield
        finally:
            await jobs.stop()
            await database.close()

    app = FastAPI(title="Game Log Ingestion API", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings

    @app.get("/healthz")
    async def healthz():
        return {"ok": True, "env": settings.environment}

    @app.post("/uploads", response_model=UploadResponse)
    async def upload_log(request: Request, file: UploadFile = File(...)):
        filename = file.filename or "upload.txt"
        if not filename.lower().endswith(".txt"):
            raise HTTPException(status_code=400, detail="Only .txt log files are accepted.")

        chunks: List[bytes] = []
        size = 0
        while True:
            chunk = await file.read(UPLOAD_CHUNK_BYTES)
            if not chunk:
                break
            size += len(chunk)
            if size > settings.max_upload_bytes:
                raise HTTPException(status_code=413, detail=f"File exceeds {settings.max_upload_bytes} bytes.")
            chunks.append(chunk)
        data = b"".join(chunks)

        content_hash = compute_bytes_hash(data)
        database = request.app.state.db

        async with database.acquire() as store:
            existing = await store.find_completed_file_by_hash(content_hash)
            if existing is not None:
                return UploadResponse(
                    uploaded_file_id=existing.id,
                    filename=filename,
                    status=STATUS_COMPLETED,
                    duplicate_file=True,
                    events_processed=0,
                    events_skipped=existing.events_count,
                )

            rel_path = f"{UPLOAD_SUBDIR}/{uuid.uuid4().hex}.txt"
            target = Path(settings.upload_dir) / rel_path
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

            uploaded = await store.create_file(
                file_path=rel_path,
                name=filename,
                content_hash=content_hash,
                status=STATUS_PENDING,
            )

        await request.app.state.jobs.submit(uploaded.id)
        logger.info("Queued upload #%d (%s, %d bytes)", uploaded.id, filename, len(data))
        return UploadResponse(
            uploaded_file_id=uploaded.id,
            filename=filename,
            path=rel_path,
            status=STATUS_PENDING,
        )

    @app.get("/uploads/{uploaded_file_id}", response_model=UploadStatus)
    async def upload_status(request: Request, uploaded_file_id: int):
        view = await request.app.state.service.get_status(uploaded_file_id)
        if view is None:
            raise HTTPException(status_code=404, detail="Upload not found")
        return UploadStatus(**view)

    @app.get("/uploads", response_model=List[UploadStatus])
    async def list_uploads(
        request: Request,
        status: Optional[str] = None,
        limit: int = Query(20, ge=1, le=100),
    ):
        if status is not None and status not in FILE_STATUSES:
            raise HTTPException(status_code=400, detail=f"Unknown status: {status}")
        views = await request.app.state.service.list_uploads(status=status, limit=limit)
        return [UploadStatus(**v) for v in views]

    # ---------- aggregates (read-only) ----------
    @app.get("/players", response_model=List[PlayerOut])
    async def list_players(request: Request, limit: int = Query(50, ge=1, le=500)):
        async with request.app.state.db.acquire() as store:
            players = await store.list_players(limit=limit)
        return [PlayerOut(**asdict(p)) for p in players]

    @app.get("/players/{player_id}/stats", response_model=PlayerStatsResponse)
    async def player_stats(request: Request, player_id: str):
        async with request.app.state.db.acquire() as store:
            player = await store.get_player(player_id)
            if player is None:
                raise HTTPException(status_code=404, detail="Player not found")
            daily = await store.player_daily_stats(player_id)
        return PlayerStatsResponse(
            player=PlayerOut(**asdict(player)),
            daily=[DailyStatsOut(**asdict(d)) for d in daily],
        )

    @app.get("/leaderboard", response_model=List[LeaderboardEntry])
    async def leaderboard(request: Request, limit: int = Query(10, ge=1, le=100)):
        async with request.app.state.db.acquire() as store:
            players = await store.list_players(limit=limit, by_score=True)
        return [
            LeaderboardEntry(rank=n, player_id=p.player_id, name=p.name, level=p.level, total_score=p.total_score)
            for n, p in enumerate(players, start=1)
        ]

    @app.get("/items", response_model=List[ItemOut])
    async def list_items(request: Request, limit: int = Query(50, ge=1, le=500)):
        async with request.app.state.db.acquire() as store:
            rows = await store.list_entities("item", limit=limit)
        return [ItemOut(**r) for r in rows]

    @app.get("/items/{item_name}/stats", response_model=ItemOut)
    async def item_stats(request: Request, item_name: str):
        async with request.app.state.db.acquire() as store:
            row = await store.get_entity("item", item_name)
        if row is None:
            raise HTTPException(status_code=404, detail="Item not found")
        return ItemOut(**row)

    return app


app = create_app()


# ---------- uvicorn entry ----------
if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=app.state.settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    port = int(os.getenv("PORT", "8080"))
    uvicorn.run("gamelog_api.api_main:app", host="0.0.0.0", port=port, reload=False)
