# tests/test_entities.py
import pytest

from gamelog_api.eventlog.entities import (
    EntityUpserter,
    actor_id,
    looks_like_player_id,
    new_player,
    player_updates,
    referenced_player_ids,
)
from gamelog_api.eventlog.models import ParsedEvent, Player
from gamelog_api.eventlog.parser import parse_line

from conftest import MemoryStore, ts

NOW = ts("2025-08-10 12:00:00")
LATER = ts("2025-08-10 13:00:00")


@pytest.mark.parametrize(
    "value, expected",
    [("p1", True), ("p42", True), ("party", False), ("P1", False), ("p", False), (1, False), (None, False)],
)
def test_looks_like_player_id(value, expected):
    assert looks_like_player_id(value) is expected


def test_actor_falls_back_per_event_type():
    boss = parse_line('2025-08-09 10:00:00 [combat] BOSS_DEFEAT boss_name="Dragon" defeated_by=p1 xp=100')
    join = parse_line('2025-08-09 10:00:00 [system] PLAYER_JOIN id=p3 name="Alice"')
    death = parse_line("2025-08-09 10:00:00 [combat] DEATH victim_id=p2 killer_id=p1")
    score = parse_line("2025-08-09 10:00:00 [game] SCORE player_id=p4 points=1")
    assert actor_id(boss) == "p1"
    assert actor_id(join) == "p3"
    assert actor_id(death) is None
    assert actor_id(score) == "p4"


def test_actor_fallback_ignores_non_player_values():
    ev = ParsedEvent(timestamp=NOW, category="combat", event_type="BOSS_DEFEAT", payload={"defeated_by": "Guards"})
    assert actor_id(ev) is None


def test_referenced_player_ids_actor_first_without_repeats():
    payload = {"player_id": "p1", "killer_id": "p1", "victim_id": "p2", "id": "door-7"}
    assert referenced_player_ids(payload) == ["p1", "p2"]


def test_new_player_defaults():
    p = new_player("p5", {}, NOW)
    assert p.name == "Player p5"
    assert p.level == 1
    assert p.current_zone is None
    assert p.last_seen == NOW


def test_player_updates_merge_rules():
    placeholder = Player(player_id="p1", name="Player p1", level=5, current_zone="Town")
    up = player_updates(placeholder, {"name": "Alice", "level": 3, "zone": "Forest"}, LATER)
    assert up == {"name": "Alice", "current_zone": "Forest", "last_seen": LATER}

    named = Player(player_id="p1", name="Alice", level=5)
    up = player_updates(named, {"name": "Mallory", "level": 7}, LATER)
    assert up == {"level": 7, "last_seen": LATER}


@pytest.mark.asyncio
async def test_upsert_creates_every_referenced_entity(memdb):
    store = MemoryStore(memdb)
    upserter = EntityUpserter(store, now=NOW)

    await upserter.upsert_for_event(
        parse_line('2025-08-09 10:00:00 [combat] BOSS_DEFEAT boss_name="Dragon" defeated_by=p1 xp=100 zone="Lair"')
    )
    await upserter.upsert_for_event(
        parse_line('2025-08-09 10:00:01 [game] ITEM_PICKUP player_id=p2 item="Potion" qty=1 location=(1,2)')
    )
    await upserter.upsert_for_event(
        parse_line('2025-08-09 10:00:02 [quest] QUEST_START player_id=p2 quest_id=q7')
    )

    assert memdb.player("p1").name == "Player p1"
    assert memdb.player("p1").current_zone == "Lair"
    assert memdb.player("p2").last_seen == NOW
    assert memdb.entity("bosses", "Dragon") is not None
    assert memdb.entity("zones", "Lair") is not None
    assert memdb.entity("items", "Potion") is not None
    assert memdb.entity("quests", "q7") == {"name": "Quest q7"}


@pytest.mark.asyncio
async def test_death_event_creates_victim_and_killer(memdb):
    upserter = EntityUpserter(MemoryStore(memdb), now=NOW)
    await upserter.upsert_for_event(parse_line("2025-08-09 10:00:00 [combat] DEATH victim_id=p2 killer_id=p9"))
    assert memdb.player("p2") is not None
    assert memdb.player("p9") is not None


@pytest.mark.asyncio
async def test_non_player_reference_does_not_create_player(memdb):
    upserter = EntityUpserter(MemoryStore(memdb), now=NOW)
    await upserter.upsert_for_event(parse_line("2025-08-09 10:00:00 [combat] DEATH victim_id=p2 killer_id=wolf"))
    assert memdb.player("p2") is not None
    assert memdb.player("wolf") is None


@pytest.mark.asyncio
async def test_existing_player_keeps_real_name_and_higher_level(memdb):
    store = MemoryStore(memdb)
    await EntityUpserter(store, now=NOW).upsert_for_event(
        parse_line('2025-08-09 10:00:00 [system] PLAYER_JOIN id=p3 name="Alice" level=10')
    )
    await EntityUpserter(store, now=LATER).upsert_for_event(
        parse_line('2025-08-09 11:00:00 [system] PLAYER_JOIN id=p3 name="Impostor" level=4 zone="Town"')
    )
    p = memdb.player("p3")
    assert p.name == "Alice"
    assert p.level == 10
    assert p.current_zone == "Town"
    assert p.last_seen == LATER


@pytest.mark.asyncio
async def test_entity_existence_is_not_overwritten(memdb):
    store = MemoryStore(memdb)
    upserter = EntityUpserter(store, now=NOW)
    await upserter.upsert_for_event(parse_line('2025-08-09 10:00:00 [quest] QUEST_START player_id=p1 quest_id=q1 name="Rats"'))
    await upserter.upsert_for_event(parse_line('2025-08-09 10:05:00 [quest] QUEST_START player_id=p1 quest_id=q1 name="Other"'))
    assert memdb.entity("quests", "q1")["name"] == "Rats"
