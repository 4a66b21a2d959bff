from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Dict, Optional, Union

# Parsed payload values. Numeric-looking tokens are coerced, everything else stays text.
PayloadValue = Union[int, float, str]
Payload = Dict[str, PayloadValue]


# Upload lifecycle: pending -> processing -> completed | failed
STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

FILE_STATUSES = (STATUS_PENDING, STATUS_PROCESSING, STATUS_COMPLETED, STATUS_FAILED)


def utcnow() -> datetime:
    """Naive UTC now; every stored timestamp is naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class ParsedEvent:
    timestamp: datetime
    category: str  # e.g. combat, game, chat
    event_type: str  # e.g. BOSS_DEFEAT
    payload: Payload
    raw_line: str = ""
    line_number: int = 0


@dataclass(frozen=True)
class GameEvent:
    id: int
    timestamp: datetime
    category: str
    event_type: str
    player_id: Optional[str]
    payload: Payload
    source_file_id: Optional[int]
    event_hash: Optional[str]
    created_at: Optional[datetime] = None


@dataclass
class Player:
    player_id: str
    name: str
    level: int = 1
    current_zone: Optional[str] = None
    total_score: int = 0
    total_xp: int = 0
    total_gold: int = 0
    deaths: int = 0
    kills: int = 0
    bosses_defeated: int = 0
    quests_completed: int = 0
    last_seen: Optional[datetime] = None


@dataclass
class PlayerDailyStats:
    player_id: str
    date: date
    score_gained: int = 0
    xp_gained: int = 0
    gold_gained: int = 0
    deaths_count: int = 0
    kills_count: int = 0
    bosses_defeated_count: int = 0
    quests_completed_count: int = 0
    items_picked_count: int = 0
    messages_sent: int = 0


@dataclass
class UploadedFile:
    id: int
    file_path: str
    name: str
    content_hash: str
    status: str = STATUS_PENDING
    events_count: int = 0
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    def status_view(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "filename": self.name,
            "status": self.status,
            "events_count": self.events_count,
            "created_at": self.created_at,
            "processed_at": self.processed_at,
        }


@dataclass
class TouchedEntities:
    """Natural keys referenced by the events persisted during one run."""

    players: set = field(default_factory=set)
    bosses: set = field(default_factory=set)
    items: set = field(default_factory=set)
    zones: set = field(default_factory=set)
    quests: set = field(default_factory=set)

    def is_empty(self) -> bool:
        return not (self.players or self.bosses or self.items or self.zones or self.quests)
