from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Set, Tuple

from gamelog_api.eventlog.entities import actor_id
from gamelog_api.eventlog.models import ParsedEvent

logger = logging.getLogger("gamelog")


# Natural-key fields per event type, on top of timestamp + event_type.
# "player_id" is the event's player column; the rest are payload fields.
NATURAL_KEY_FIELDS: Dict[str, Tuple[str, ...]] = {
    "BOSS_DEFEAT": ("boss_name", "defeated_by"),
    "QUEST_COMPLETE": ("player_id", "quest_id"),
    "QUEST_START": ("player_id", "quest_id"),
    "DEATH": ("victim_id", "killer_id"),
    "ITEM_PICKUP": ("player_id", "item", "location"),
    "MESSAGE": ("player_id", "message"),
    "PLAYER_JOIN": ("id", "name"),
    "ZONE_ENTER": ("player_id", "zone"),
    "ZONE_EXIT": ("player_id", "zone"),
    "SCORE": ("player_id", "points"),
}
DEFAULT_KEY_FIELDS: Tuple[str, ...] = ("player_id",)


def natural_key_criteria(event: ParsedEvent) -> Dict[str, Any]:
    fields = NATURAL_KEY_FIELDS.get(event.event_type, DEFAULT_KEY_FIELDS)
    out: Dict[str, Any] = {}
    for f in fields:
        if f == "player_id":
            out[f] = actor_id(event)
        else:
            out[f] = event.payload.get(f)
    return out


class DuplicateDetector:
    """Decides keep/skip for each event of one ingestion run.

    Tier 1 is the event hash: an in-memory set seeded with recent hashes, then
    a direct lookup in storage (hits are promoted into the set). Tier 2 checks
    stored events sharing timestamp + event_type + the type's natural key, which
    catches re-emitted events whose payload differs only cosmetically.

    The hash set belongs to the run that created the detector.
    """

    def __init__(self, store, known_hashes: Optional[Set[str]] = None) -> None:
        self._store = store
        self._seen: Set[str] = set(known_hashes or ())
        self.processed = 0
        self.skipped = 0
        self.hash_hits = 0
        self.field_hits = 0

    @property
    def cache_size(self) -> int:
        return len(self._seen)

    async def is_duplicate(self, event: ParsedEvent, event_hash: str) -> bool:
        """Return True (and count a skip) when the event was already ingested."""
        if event_hash in self._seen:
            self.hash_hits += 1
            self.skipped += 1
            return True

        if await self._store.event_hash_exists(event_hash):
            self._seen.add(event_hash)
            self.hash_hits += 1
            self.skipped += 1
            return True

        criteria = natural_key_criteria(event)
        if await self._store.event_exists_matching(event.timestamp, event.event_type, criteria):
            logger.debug(
                "Field-level duplicate at line %d (%s %s)",
                event.line_number,
                event.event_type,
                event.timestamp,
            )
            self.field_hits += 1
            self.skipped += 1
            return True

        return False

    def accept(self, event_hash: str) -> None:
        """Record a persisted event so later lines of the same run see it."""
        self._seen.add(event_hash)
        self.processed += 1
