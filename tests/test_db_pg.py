# tests/test_db_pg.py
# Round trip against a real PostgreSQL; runs only when TEST_DATABASE_URL is set.
import os
import random
import uuid

import pytest

from gamelog_api.db import Db
from gamelog_api.ingest import IngestionService

DSN = os.getenv("TEST_DATABASE_URL", "")

pytestmark = pytest.mark.skipif(not DSN, reason="TEST_DATABASE_URL not set")


@pytest.mark.asyncio
async def test_ingest_round_trip(tmp_path):
    pid = f"p{random.randint(10**8, 10**9)}"
    boss = f"Dragon {uuid.uuid4().hex[:8]}"
    log = tmp_path / "pg.txt"
    log.write_text(
        "\n".join(
            [
                f'2025-08-09 10:00:00 [combat] BOSS_DEFEAT boss_name="{boss}" defeated_by={pid} xp=100 gold=20',
                f'2025-08-09 10:00:05 [game] ITEM_PICKUP player_id={pid} item="{boss} Scale" qty=2 location=(10,20)',
                f"2025-08-09 10:00:06 [game] SCORE player_id={pid} points=2.5",
            ]
        )
        + "\n",
        encoding="utf-8",
    )

    db = Db(DSN, min_size=1, max_size=2)
    await db.start()
    try:
        service = IngestionService(db, upload_dir=tmp_path)
        first = await service.ingest_file(str(log))
        assert (first.events_processed, first.events_skipped) == (3, 0)

        again = await service.ingest_file(str(log))
        assert again.duplicate_file is True

        async with db.acquire() as store:
            player = await store.get_player(pid)
            assert (player.total_xp, player.total_gold, player.bosses_defeated) == (100, 20, 1)
            assert player.total_score == 2

            assert (await store.get_entity("boss", boss))["total_defeats"] == 1
            item = await store.get_entity("item", f"{boss} Scale")
            assert (item["total_pickups"], item["total_quantity"]) == (1, 2)

            events = await store.events_for_file(first.uploaded_file_id)
            assert events[1].payload["location"] == "(10,20)"
            assert await store.event_exists_matching(
                events[1].timestamp,
                "ITEM_PICKUP",
                {"player_id": pid, "item": f"{boss} Scale", "location": "(10,20)"},
            )
            assert not await store.event_exists_matching(
                events[1].timestamp,
                "ITEM_PICKUP",
                {"player_id": pid, "item": f"{boss} Scale", "location": "(11,21)"},
            )
            assert len(await store.player_daily_stats(pid)) == 1

            assert pid in [p.player_id for p in await store.list_players(limit=1000)]
            ranked = await store.list_players(limit=1000, by_score=True)
            scores = [p.total_score for p in ranked]
            assert scores == sorted(scores, reverse=True)
            assert f"{boss} Scale" in [r["name"] for r in await store.list_entities("item", limit=100000)]
    finally:
        await db.close()
