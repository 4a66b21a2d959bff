from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from gamelog_api.eventlog.models import ParsedEvent, Player


# Player ids in the logs look like p1, p42 ...
_RX_PLAYER_ID = re.compile(r"^p\d+$")

# Payload fields that may reference another player, besides player_id.
PLAYER_REFERENCE_FIELDS = ("defeated_by", "victim_id", "killer_id", "id")

# Event types whose actor is not carried in player_id.
_ACTOR_FALLBACK = {
    "BOSS_DEFEAT": "defeated_by",
    "PLAYER_JOIN": "id",
}


def placeholder_name(player_id: str) -> str:
    return f"Player {player_id}"


def looks_like_player_id(value: Any) -> bool:
    return isinstance(value, str) and bool(_RX_PLAYER_ID.match(value))


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def _as_level(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


def actor_id(event: ParsedEvent) -> Optional[str]:
    """Player credited with the event; stored in the event's player_id column."""
    pid = _text(event.payload.get("player_id"))
    if pid:
        return pid
    fallback = _ACTOR_FALLBACK.get(event.event_type)
    if fallback:
        v = event.payload.get(fallback)
        if looks_like_player_id(v):
            return v
    return None


def referenced_player_ids(payload: Mapping[str, Any]) -> List[str]:
    """Every player id an event mentions, actor first, without repeats."""
    out: List[str] = []
    pid = _text(payload.get("player_id"))
    if pid:
        out.append(pid)
    for f in PLAYER_REFERENCE_FIELDS:
        v = payload.get(f)
        if looks_like_player_id(v) and v not in out:
            out.append(v)
    return out


def new_player(player_id: str, payload: Mapping[str, Any], now: datetime) -> Player:
    level = _as_level(payload.get("level"))
    return Player(
        player_id=player_id,
        name=_text(payload.get("name")) or placeholder_name(player_id),
        level=level if level is not None else 1,
        current_zone=_text(payload.get("zone")),
        last_seen=now,
    )


def player_updates(player: Player, payload: Mapping[str, Any], now: datetime) -> Dict[str, Any]:
    """Field merge for an existing player without overwriting better data.

    - name: only replaces the synthesized placeholder, never a real name
    - level: monotonic, strictly greater wins
    - current_zone: whatever the latest event says
    - last_seen: always the ingestion time
    """
    placeholder = placeholder_name(player.player_id)
    updates: Dict[str, Any] = {}

    name = _text(payload.get("name"))
    if name and name != placeholder and player.name == placeholder:
        updates["name"] = name

    level = _as_level(payload.get("level"))
    if level is not None and level > player.level:
        updates["level"] = level

    zone = _text(payload.get("zone"))
    if zone:
        updates["current_zone"] = zone

    updates["last_seen"] = now
    return updates


class EntityUpserter:
    """Makes sure every entity an accepted event references exists.

    Runs on the store of the ingestion transaction, so upserts commit or roll
    back together with the event rows.
    """

    def __init__(self, store, *, now: datetime) -> None:
        self._store = store
        self._now = now

    async def upsert_for_event(self, event: ParsedEvent) -> None:
        payload = event.payload

        for pid in referenced_player_ids(payload):
            await self.ensure_player(pid, payload)

        boss = _text(payload.get("boss_name"))
        if boss:
            await self._store.ensure_entity("boss", boss)

        zone = _text(payload.get("zone"))
        if zone:
            await self._store.ensure_entity("zone", zone)

        item = _text(payload.get("item"))
        if item:
            await self._store.ensure_entity("item", item)

        quest_id = _text(payload.get("quest_id"))
        if quest_id:
            name = _text(payload.get("name")) or f"Quest {quest_id}"
            await self._store.ensure_entity("quest", quest_id, {"name": name})

    async def ensure_player(self, player_id: str, payload: Mapping[str, Any]) -> Player:
        player = await self._store.get_player(player_id)
        if player is None:
            player = await self._store.insert_player(new_player(player_id, payload, self._now))

        updates = player_updates(player, payload, self._now)
        if updates:
            await self._store.update_entity("player", player_id, updates)
            for k, v in updates.items():
                setattr(player, k, v)
        return player
