from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, Iterable, List, Sequence

from gamelog_api.eventlog.entities import referenced_player_ids
from gamelog_api.eventlog.models import GameEvent, PlayerDailyStats, TouchedEntities

logger = logging.getLogger("gamelog")


REWARD_EVENT_TYPES = ("BOSS_DEFEAT", "QUEST_COMPLETE")
BOSS_EVENT_TYPES = ("BOSS_DEFEAT", "BOSS_DAMAGE", "BOSS_FIGHT_START")
ITEM_EVENT_TYPES = ("ITEM_PICKUP",)
ZONE_EVENT_TYPES = ("ZONE_ENTER",)
QUEST_EVENT_TYPES = ("QUEST_START", "QUEST_COMPLETE")


def _num(value: Any) -> float:
    # Non-numeric payload values count as zero.
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return value
    return 0


def _sum(events: Iterable[GameEvent], key: str) -> int:
    return int(sum(_num(e.payload.get(key)) for e in events))


def _same(value: Any, key: str) -> bool:
    return value is not None and str(value) == key


# -----------------------------
# Per-entity formulas (pure)
# -----------------------------
def player_totals(player_id: str, events: Sequence[GameEvent]) -> Dict[str, Any]:
    """Recompute a player's counters from their complete event history.

    ``events`` is every event the player takes part in (as actor, victim,
    killer, defeater or join id); score/xp/gold/quests only count events the
    player is credited with.
    """
    own = [e for e in events if e.player_id == player_id]
    rewards = [e for e in own if e.event_type in REWARD_EVENT_TYPES]
    deaths_events = [e for e in events if e.event_type == "DEATH"]

    totals: Dict[str, Any] = {
        "total_score": _sum((e for e in own if e.event_type == "SCORE"), "points"),
        "total_xp": _sum(rewards, "xp"),
        "total_gold": _sum(rewards, "gold"),
        "deaths": sum(1 for e in deaths_events if _same(e.payload.get("victim_id"), player_id)),
        "kills": sum(1 for e in deaths_events if _same(e.payload.get("killer_id"), player_id)),
        "bosses_defeated": sum(
            1 for e in events
            if e.event_type == "BOSS_DEFEAT" and _same(e.payload.get("defeated_by"), player_id)
        ),
        "quests_completed": sum(1 for e in own if e.event_type == "QUEST_COMPLETE"),
    }
    if events:
        totals["last_seen"] = max(e.timestamp for e in events)
    return totals


def player_daily_stats(player_id: str, events: Sequence[GameEvent]) -> List[PlayerDailyStats]:
    """Per calendar day rollup of the same history ``player_totals`` reads."""
    days: Dict[date, PlayerDailyStats] = {}
    for e in events:
        d = e.timestamp.date()
        row = days.get(d)
        if row is None:
            row = days[d] = PlayerDailyStats(player_id=player_id, date=d)

        own = e.player_id == player_id
        p = e.payload
        if own and e.event_type == "SCORE":
            row.score_gained += int(_num(p.get("points")))
        if own and e.event_type in REWARD_EVENT_TYPES:
            row.xp_gained += int(_num(p.get("xp")))
            row.gold_gained += int(_num(p.get("gold")))
        if e.event_type == "DEATH":
            if _same(p.get("victim_id"), player_id):
                row.deaths_count += 1
            if _same(p.get("killer_id"), player_id):
                row.kills_count += 1
        if e.event_type == "BOSS_DEFEAT" and _same(p.get("defeated_by"), player_id):
            row.bosses_defeated_count += 1
        if own and e.event_type == "QUEST_COMPLETE":
            row.quests_completed_count += 1
        if own and e.event_type == "ITEM_PICKUP":
            row.items_picked_count += 1
        if own and e.event_type == "MESSAGE":
            row.messages_sent += 1
    return [days[d] for d in sorted(days)]


def boss_totals(name: str, events: Sequence[GameEvent]) -> Dict[str, int]:
    mine = [e for e in events if _same(e.payload.get("boss_name"), name)]
    return {
        "total_defeats": sum(1 for e in mine if e.event_type == "BOSS_DEFEAT"),
        "total_damage_taken": _sum((e for e in mine if e.event_type == "BOSS_DAMAGE"), "damage"),
        "times_spawned": sum(1 for e in mine if e.event_type == "BOSS_FIGHT_START"),
    }


def item_totals(name: str, events: Sequence[GameEvent]) -> Dict[str, int]:
    pickups = [e for e in events if e.event_type == "ITEM_PICKUP" and _same(e.payload.get("item"), name)]
    return {
        "total_pickups": len(pickups),
        "total_quantity": _sum(pickups, "qty"),
    }


def zone_visits(name: str, events: Sequence[GameEvent]) -> int:
    return sum(1 for e in events if e.event_type == "ZONE_ENTER" and _same(e.payload.get("zone"), name))


def quest_totals(quest_id: str, events: Sequence[GameEvent]) -> Dict[str, int]:
    mine = [e for e in events if _same(e.payload.get("quest_id"), quest_id)]
    return {
        "times_started": sum(1 for e in mine if e.event_type == "QUEST_START"),
        "times_completed": sum(1 for e in mine if e.event_type == "QUEST_COMPLETE"),
    }


def touched_entities(events: Iterable[GameEvent]) -> TouchedEntities:
    """Natural keys referenced by a set of persisted events."""
    touched = TouchedEntities()
    for e in events:
        if e.player_id:
            touched.players.add(e.player_id)
        touched.players.update(referenced_player_ids(e.payload))

        p = e.payload
        for key, bucket in (
            ("boss_name", touched.bosses),
            ("item", touched.items),
            ("zone", touched.zones),
            ("quest_id", touched.quests),
        ):
            v = p.get(key)
            if v is not None and str(v).strip():
                bucket.add(str(v).strip())
    return touched


class Recalculator:
    """Full recompute of derived counters for the entities one run touched.

    Every entity is recomputed from its entire stored history, so running it
    twice (or concurrently with another run) converges on the same values.
    """

    def __init__(self, store) -> None:
        self._store = store

    async def recalculate(self, touched: TouchedEntities) -> Dict[str, int]:
        counts = {"players": 0, "bosses": 0, "items": 0, "zones": 0, "quests": 0}

        for pid in sorted(touched.players):
            if await self.recalculate_player(pid):
                counts["players"] += 1

        for name in sorted(touched.bosses):
            events = await self._store.events_with_value(BOSS_EVENT_TYPES, "boss_name", name)
            await self._store.update_entity("boss", name, boss_totals(name, events))
            counts["bosses"] += 1

        for name in sorted(touched.items):
            events = await self._store.events_with_value(ITEM_EVENT_TYPES, "item", name)
            await self._store.update_entity("item", name, item_totals(name, events))
            counts["items"] += 1

        # Zones last: current_players reads player rows updated above.
        for name in sorted(touched.zones):
            events = await self._store.events_with_value(ZONE_EVENT_TYPES, "zone", name)
            current = await self._store.count_players_in_zone(name)
            await self._store.update_entity(
                "zone", name, {"total_visits": zone_visits(name, events), "current_players": current}
            )
            counts["zones"] += 1

        for quest_id in sorted(touched.quests):
            events = await self._store.events_with_value(QUEST_EVENT_TYPES, "quest_id", quest_id)
            await self._store.update_entity("quest", quest_id, quest_totals(quest_id, events))
            counts["quests"] += 1

        logger.debug("Recalculated aggregates: %s", counts)
        return counts

    async def recalculate_player(self, player_id: str) -> bool:
        player = await self._store.get_player(player_id)
        if player is None:
            # No row to update.
            return False
        events = await self._store.events_for_player(player_id)
        await self._store.update_entity("player", player_id, player_totals(player_id, events))
        await self._store.replace_player_daily_stats(player_id, player_daily_stats(player_id, events))
        return True
