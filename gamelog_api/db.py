from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Optional, Set

import asyncpg

from gamelog_api.eventlog.entities import PLAYER_REFERENCE_FIELDS
from gamelog_api.eventlog.models import (
    FILE_STATUSES,
    STATUS_PENDING,
    GameEvent,
    Payload,
    Player,
    PlayerDailyStats,
    UploadedFile,
)


# -----------------------------
# Schema
# -----------------------------
_CREATE_UPLOADED_FILES_TABLE = """
CREATE TABLE IF NOT EXISTS uploaded_files (
  id BIGSERIAL PRIMARY KEY,
  created_at TIMESTAMP NOT NULL DEFAULT (now() AT TIME ZONE 'utc'),
  file_path TEXT NOT NULL,
  name TEXT NOT NULL,
  content_hash TEXT NOT NULL,
  status TEXT NOT NULL DEFAULT 'pending',
  events_count INTEGER NOT NULL DEFAULT 0,
  processed_at TIMESTAMP,
  CONSTRAINT uploaded_files_status_chk
    CHECK (status IN ('pending', 'processing', 'completed', 'failed'))
);
"""

_CREATE_GAME_EVENTS_TABLE = """
CREATE TABLE IF NOT EXISTS game_events (
  id BIGSERIAL PRIMARY KEY,
  created_at TIMESTAMP NOT NULL DEFAULT (now() AT TIME ZONE 'utc'),
  "timestamp" TIMESTAMP NOT NULL,
  category TEXT NOT NULL,
  event_type TEXT NOT NULL,
  player_id TEXT,
  payload JSONB NOT NULL DEFAULT '{}'::jsonb,
  source_file_id BIGINT REFERENCES uploaded_files (id),
  event_hash TEXT
);
"""

_CREATE_PLAYERS_TABLE = """
CREATE TABLE IF NOT EXISTS players (
  id BIGSERIAL PRIMARY KEY,
  created_at TIMESTAMP NOT NULL DEFAULT (now() AT TIME ZONE 'utc'),
  player_id TEXT NOT NULL UNIQUE,
  name TEXT NOT NULL,
  level INTEGER NOT NULL DEFAULT 1,
  current_zone TEXT,
  total_score BIGINT NOT NULL DEFAULT 0,
  total_xp BIGINT NOT NULL DEFAULT 0,
  total_gold BIGINT NOT NULL DEFAULT 0,
  deaths INTEGER NOT NULL DEFAULT 0,
  kills INTEGER NOT NULL DEFAULT 0,
  bosses_defeated INTEGER NOT NULL DEFAULT 0,
  quests_completed INTEGER NOT NULL DEFAULT 0,
  last_seen TIMESTAMP
);
"""

_CREATE_BOSSES_TABLE = """
CREATE TABLE IF NOT EXISTS bosses (
  id BIGSERIAL PRIMARY KEY,
  name TEXT NOT NULL UNIQUE,
  total_defeats INTEGER NOT NULL DEFAULT 0,
  total_damage_taken BIGINT NOT NULL DEFAULT 0,
  times_spawned INTEGER NOT NULL DEFAULT 0
);
"""

_CREATE_ITEMS_TABLE = """
CREATE TABLE IF NOT EXISTS items (
  id BIGSERIAL PRIMARY KEY,
  name TEXT NOT NULL UNIQUE,
  total_pickups INTEGER NOT NULL DEFAULT 0,
  total_quantity BIGINT NOT NULL DEFAULT 0
);
"""

_CREATE_ZONES_TABLE = """
CREATE TABLE IF NOT EXISTS zones (
  id BIGSERIAL PRIMARY KEY,
  name TEXT NOT NULL UNIQUE,
  total_visits INTEGER NOT NULL DEFAULT 0,
  current_players INTEGER NOT NULL DEFAULT 0
);
"""

_CREATE_QUESTS_TABLE = """
CREATE TABLE IF NOT EXISTS quests (
  id BIGSERIAL PRIMARY KEY,
  quest_id TEXT NOT NULL UNIQUE,
  name TEXT NOT NULL,
  times_started INTEGER NOT NULL DEFAULT 0,
  times_completed INTEGER NOT NULL DEFAULT 0
);
"""

_CREATE_PLAYER_STATS_TABLE = """
CREATE TABLE IF NOT EXISTS player_stats (
  id BIGSERIAL PRIMARY KEY,
  player_id TEXT NOT NULL,
  date DATE NOT NULL,
  score_gained BIGINT NOT NULL DEFAULT 0,
  xp_gained BIGINT NOT NULL DEFAULT 0,
  gold_gained BIGINT NOT NULL DEFAULT 0,
  deaths_count INTEGER NOT NULL DEFAULT 0,
  kills_count INTEGER NOT NULL DEFAULT 0,
  bosses_defeated_count INTEGER NOT NULL DEFAULT 0,
  quests_completed_count INTEGER NOT NULL DEFAULT 0,
  items_picked_count INTEGER NOT NULL DEFAULT 0,
  messages_sent INTEGER NOT NULL DEFAULT 0,
  UNIQUE (player_id, date)
);
"""

_CREATE_INDEXES = [
    "CREATE INDEX IF NOT EXISTS game_events_event_hash_idx ON game_events (event_hash);",
    'CREATE INDEX IF NOT EXISTS game_events_ts_type_idx ON game_events ("timestamp", event_type);',
    "CREATE INDEX IF NOT EXISTS game_events_player_type_idx ON game_events (player_id, event_type);",
    "CREATE INDEX IF NOT EXISTS game_events_source_file_idx ON game_events (source_file_id);",
    "CREATE INDEX IF NOT EXISTS game_events_created_at_idx ON game_events (created_at);",
    "CREATE INDEX IF NOT EXISTS uploaded_files_content_hash_idx ON uploaded_files (content_hash);",
    "CREATE INDEX IF NOT EXISTS players_total_score_idx ON players (total_score);",
    "CREATE INDEX IF NOT EXISTS player_stats_date_idx ON player_stats (date);",
]

# kind -> (table, natural key column, writable columns)
ENTITY_TABLES: Dict[str, tuple] = {
    "player": (
        "players",
        "player_id",
        frozenset({
            "name", "level", "current_zone", "total_score", "total_xp", "total_gold",
            "deaths", "kills", "bosses_defeated", "quests_completed", "last_seen",
        }),
    ),
    "boss": ("bosses", "name", frozenset({"total_defeats", "total_damage_taken", "times_spawned"})),
    "item": ("items", "name", frozenset({"total_pickups", "total_quantity"})),
    "zone": ("zones", "name", frozenset({"total_visits", "current_players"})),
    "quest": ("quests", "quest_id", frozenset({"name", "times_started", "times_completed"})),
}

_FILE_COLUMNS = frozenset({"name", "content_hash", "status", "events_count", "processed_at"})

_EVENT_COLUMNS = (
    'id, "timestamp", category, event_type, player_id, payload, source_file_id, event_hash, created_at'
)
_FILE_SELECT = (
    "SELECT id, file_path, name, content_hash, status, events_count, created_at, processed_at "
    "FROM uploaded_files"
)


# -----------------------------
# Helpers
# -----------------------------
def json_text(value: Any) -> Optional[str]:
    """Text form of a payload value as ``payload->>'key'`` renders it."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value)


def _entity_spec(kind: str) -> tuple:
    try:
        return ENTITY_TABLES[kind]
    except KeyError:
        raise ValueError(f"unknown entity kind: {kind!r}") from None


def _row_to_event(row: Mapping[str, Any]) -> GameEvent:
    payload = row["payload"]
    if isinstance(payload, str):
        payload = json.loads(payload)
    return GameEvent(
        id=int(row["id"]),
        timestamp=row["timestamp"],
        category=str(row["category"]),
        event_type=str(row["event_type"]),
        player_id=row["player_id"],
        payload=dict(payload or {}),
        source_file_id=row["source_file_id"],
        event_hash=row["event_hash"],
        created_at=row["created_at"],
    )


def _row_to_file(row: Mapping[str, Any]) -> UploadedFile:
    return UploadedFile(
        id=int(row["id"]),
        file_path=str(row["file_path"]),
        name=str(row["name"]),
        content_hash=str(row["content_hash"]),
        status=str(row["status"]),
        events_count=int(row["events_count"] or 0),
        created_at=row["created_at"],
        processed_at=row["processed_at"],
    )


def _row_to_player(row: Mapping[str, Any]) -> Player:
    return Player(
        player_id=str(row["player_id"]),
        name=str(row["name"]),
        level=int(row["level"] or 1),
        current_zone=row["current_zone"],
        total_score=int(row["total_score"] or 0),
        total_xp=int(row["total_xp"] or 0),
        total_gold=int(row["total_gold"] or 0),
        deaths=int(row["deaths"] or 0),
        kills=int(row["kills"] or 0),
        bosses_defeated=int(row["bosses_defeated"] or 0),
        quests_completed=int(row["quests_completed"] or 0),
        last_seen=row["last_seen"],
    )


async def _init_connection(conn: asyncpg.Connection) -> None:
    # JSONB <-> dict
    await conn.set_type_codec("jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")


class Store:
    """Repository calls bound to one connection (and its transaction, if any)."""

    def __init__(self, conn: asyncpg.Connection) -> None:
        self._conn = conn

    # ---- uploaded files ----
    async def find_completed_file_by_hash(self, content_hash: str) -> Optional[UploadedFile]:
        row = await self._conn.fetchrow(
            _FILE_SELECT + " WHERE content_hash = $1 AND status = 'completed' ORDER BY id LIMIT 1;",
            content_hash,
        )
        return _row_to_file(row) if row is not None else None

    async def find_file_by_path(self, file_path: str) -> Optional[UploadedFile]:
        row = await self._conn.fetchrow(
            _FILE_SELECT + " WHERE file_path = $1 ORDER BY id DESC LIMIT 1;", file_path
        )
        return _row_to_file(row) if row is not None else None

    async def get_file(self, file_id: int) -> Optional[UploadedFile]:
        row = await self._conn.fetchrow(_FILE_SELECT + " WHERE id = $1;", int(file_id))
        return _row_to_file(row) if row is not None else None

    async def list_files(self, *, status: Optional[str] = None, limit: int = 20) -> List[UploadedFile]:
        if status:
            rows = await self._conn.fetch(
                _FILE_SELECT + " WHERE status = $1 ORDER BY created_at DESC, id DESC LIMIT $2;",
                status,
                int(limit),
            )
        else:
            rows = await self._conn.fetch(
                _FILE_SELECT + " ORDER BY created_at DESC, id DESC LIMIT $1;", int(limit)
            )
        return [_row_to_file(r) for r in rows]

    async def create_file(
        self,
        *,
        file_path: str,
        name: str,
        content_hash: str,
        status: str = STATUS_PENDING,
    ) -> UploadedFile:
        row = await self._conn.fetchrow(
            "INSERT INTO uploaded_files (file_path, name, content_hash, status) "
            "VALUES ($1, $2, $3, $4) "
            "RETURNING id, file_path, name, content_hash, status, events_count, created_at, processed_at;",
            file_path,
            name,
            content_hash,
            status,
        )
        return _row_to_file(row)

    async def update_file(self, file_id: int, **values: Any) -> None:
        if not values:
            return
        bad = set(values) - _FILE_COLUMNS
        if bad:
            raise ValueError(f"not writable on uploaded_files: {sorted(bad)}")
        if "status" in values and values["status"] not in FILE_STATUSES:
            raise ValueError(f"invalid upload status: {values['status']!r}")

        cols = sorted(values)
        assignments = ", ".join(f"{c} = ${i}" for i, c in enumerate(cols, start=2))
        await self._conn.execute(
            f"UPDATE uploaded_files SET {assignments} WHERE id = $1;",
            int(file_id),
            *[values[c] for c in cols],
        )

    # ---- events ----
    async def recent_event_hashes(self, since: datetime) -> Set[str]:
        rows = await self._conn.fetch(
            "SELECT event_hash FROM game_events WHERE created_at >= $1 AND event_hash IS NOT NULL;",
            since,
        )
        return {r["event_hash"] for r in rows}

    async def event_hash_exists(self, event_hash: str) -> bool:
        found = await self._conn.fetchval(
            "SELECT EXISTS (SELECT 1 FROM game_events WHERE event_hash = $1);", event_hash
        )
        return bool(found)

    async def event_exists_matching(
        self,
        timestamp: datetime,
        event_type: str,
        criteria: Mapping[str, Any],
    ) -> bool:
        """Existence check on timestamp + event_type + extra fields.

        ``player_id`` compares the event column; every other key compares the
        payload field as text. A ``None`` criterion matches a missing or null field.
        """
        where = ['"timestamp" = $1', "event_type = $2"]
        args: List[Any] = [timestamp, event_type]
        for key in sorted(criteria):
            value = criteria[key]
            if key == "player_id":
                expr = "player_id"
            else:
                args.append(key)
                expr = f"payload->>${len(args)}"
            if value is None:
                where.append(f"{expr} IS NULL")
            else:
                args.append(json_text(value))
                where.append(f"{expr} = ${len(args)}")

        sql = "SELECT EXISTS (SELECT 1 FROM game_events WHERE " + " AND ".join(where) + ");"
        return bool(await self._conn.fetchval(sql, *args))

    async def insert_event(
        self,
        *,
        timestamp: datetime,
        category: str,
        event_type: str,
        player_id: Optional[str],
        payload: Payload,
        source_file_id: Optional[int],
        event_hash: Optional[str],
    ) -> int:
        new_id = await self._conn.fetchval(
            'INSERT INTO game_events ("timestamp", category, event_type, player_id, payload, '
            "source_file_id, event_hash) VALUES ($1, $2, $3, $4, $5, $6, $7) RETURNING id;",
            timestamp,
            category,
            event_type,
            player_id,
            dict(payload),
            source_file_id,
            event_hash,
        )
        return int(new_id)

    async def events_for_file(self, file_id: int) -> List[GameEvent]:
        rows = await self._conn.fetch(
            f"SELECT {_EVENT_COLUMNS} FROM game_events WHERE source_file_id = $1 "
            'ORDER BY "timestamp", id;',
            int(file_id),
        )
        return [_row_to_event(r) for r in rows]

    async def events_for_player(self, player_id: str) -> List[GameEvent]:
        """Every event where the player acts or is named as victim, killer, defeater or id."""
        refs = " OR ".join(f"payload->>'{f}' = $1" for f in PLAYER_REFERENCE_FIELDS)
        rows = await self._conn.fetch(
            f"SELECT {_EVENT_COLUMNS} FROM game_events WHERE player_id = $1 OR {refs} "
            'ORDER BY "timestamp", id;',
            player_id,
        )
        return [_row_to_event(r) for r in rows]

    async def events_with_value(self, event_types: Iterable[str], key: str, value: Any) -> List[GameEvent]:
        rows = await self._conn.fetch(
            f"SELECT {_EVENT_COLUMNS} FROM game_events "
            "WHERE event_type = ANY($1::text[]) AND payload->>$2 = $3 "
            'ORDER BY "timestamp", id;',
            list(event_types),
            key,
            json_text(value),
        )
        return [_row_to_event(r) for r in rows]

    # ---- entities ----
    async def get_player(self, player_id: str) -> Optional[Player]:
        row = await self._conn.fetchrow("SELECT * FROM players WHERE player_id = $1;", player_id)
        return _row_to_player(row) if row is not None else None

    async def insert_player(self, player: Player) -> Player:
        """Insert if absent and return whatever is stored afterwards."""
        await self._conn.execute(
            "INSERT INTO players (player_id, name, level, current_zone, last_seen) "
            "VALUES ($1, $2, $3, $4, $5) ON CONFLICT (player_id) DO NOTHING;",
            player.player_id,
            player.name,
            int(player.level),
            player.current_zone,
            player.last_seen,
        )
        stored = await self.get_player(player.player_id)
        if stored is None:
            raise RuntimeError(f"player {player.player_id!r} vanished after insert")
        return stored

    async def ensure_entity(self, kind: str, key: str, defaults: Optional[Mapping[str, Any]] = None) -> None:
        """Existence-only upsert keyed by natural key; defaults apply on creation only."""
        table, key_col, writable = _entity_spec(kind)
        values = dict(defaults or {})
        bad = set(values) - writable
        if bad:
            raise ValueError(f"not writable on {table}: {sorted(bad)}")

        cols = [key_col] + sorted(values)
        args = [key] + [values[c] for c in sorted(values)]
        placeholders = ", ".join(f"${i}" for i in range(1, len(cols) + 1))
        await self._conn.execute(
            f"INSERT INTO {table} ({', '.join(cols)}) VALUES ({placeholders}) "
            f"ON CONFLICT ({key_col}) DO NOTHING;",
            *args,
        )

    async def update_entity(self, kind: str, key: str, values: Mapping[str, Any]) -> None:
        if not values:
            return
        table, key_col, writable = _entity_spec(kind)
        bad = set(values) - writable
        if bad:
            raise ValueError(f"not writable on {table}: {sorted(bad)}")

        cols = sorted(values)
        assignments = ", ".join(f"{c} = ${i}" for i, c in enumerate(cols, start=2))
        await self._conn.execute(
            f"UPDATE {table} SET {assignments} WHERE {key_col} = $1;",
            key,
            *[values[c] for c in cols],
        )

    async def count_players_in_zone(self, zone: str) -> int:
        n = await self._conn.fetchval("SELECT COUNT(*) FROM players WHERE current_zone = $1;", zone)
        return int(n or 0)

    async def replace_player_daily_stats(self, player_id: str, rows: Iterable[PlayerDailyStats]) -> None:
        await self._conn.execute("DELETE FROM player_stats WHERE player_id = $1;", player_id)
        records = [
            (
                r.player_id,
                r.date,
                r.score_gained,
                r.xp_gained,
                r.gold_gained,
                r.deaths_count,
                r.kills_count,
                r.bosses_defeated_count,
                r.quests_completed_count,
                r.items_picked_count,
                r.messages_sent,
            )
            for r in rows
        ]
        if not records:
            return
        await self._conn.executemany(
            "INSERT INTO player_stats (player_id, date, score_gained, xp_gained, gold_gained, "
            "deaths_count, kills_count, bosses_defeated_count, quests_completed_count, "
            "items_picked_count, messages_sent) "
            "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11);",
            records,
        )

    async def player_daily_stats(self, player_id: str) -> List[PlayerDailyStats]:
        rows = await self._conn.fetch(
            "SELECT * FROM player_stats WHERE player_id = $1 ORDER BY date;", player_id
        )
        out: List[PlayerDailyStats] = []
        for r in rows:
            d: date = r["date"]
            out.append(
                PlayerDailyStats(
                    player_id=str(r["player_id"]),
                    date=d,
                    score_gained=int(r["score_gained"]),
                    xp_gained=int(r["xp_gained"]),
                    gold_gained=int(r["gold_gained"]),
                    deaths_count=int(r["deaths_count"]),
                    kills_count=int(r["kills_count"]),
                    bosses_defeated_count=int(r["bosses_defeated_count"]),
                    quests_completed_count=int(r["quests_completed_count"]),
                    items_picked_count=int(r["items_picked_count"]),
                    messages_sent=int(r["messages_sent"]),
                )
            )
        return out

    async def get_entity(self, kind: str, key: str) -> Optional[Dict[str, Any]]:
        table, key_col, _ = _entity_spec(kind)
        row = await self._conn.fetchrow(f"SELECT * FROM {table} WHERE {key_col} = $1;", key)
        return dict(row) if row is not None else None

    async def list_entities(self, kind: str, *, limit: int = 50) -> List[Dict[str, Any]]:
        table, key_col, _ = _entity_spec(kind)
        rows = await self._conn.fetch(
            f"SELECT * FROM {table} ORDER BY {key_col} LIMIT $1;", int(limit)
        )
        return [dict(r) for r in rows]

    async def list_players(self, *, limit: int = 50, by_score: bool = False) -> List[Player]:
        order = "total_score DESC, player_id" if by_score else "player_id"
        rows = await self._conn.fetch(f"SELECT * FROM players ORDER BY {order} LIMIT $1;", int(limit))
        return [_row_to_player(r) for r in rows]


class Db:
    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 5) -> None:
        self._dsn = (dsn or "").strip()
        self._min_size = int(min_size)
        self._max_size = int(max_size)
        self._pool: Optional[asyncpg.Pool] = None

    async def start(self) -> None:
        if not self._dsn:
            raise RuntimeError("DATABASE_URL is not set")

        self._pool = await asyncpg.create_pool(
            dsn=self._dsn,
            min_size=self._min_size,
            max_size=self._max_size,
            init=_init_connection,
        )

        async with self._pool.acquire() as conn:
            # Tables (order matters for the foreign key)
            await conn.execute(_CREATE_UPLOADED_FILES_TABLE)
            await conn.execute(_CREATE_GAME_EVENTS_TABLE)
            await conn.execute(_CREATE_PLAYERS_TABLE)
            await conn.execute(_CREATE_BOSSES_TABLE)
            await conn.execute(_CREATE_ITEMS_TABLE)
            await conn.execute(_CREATE_ZONES_TABLE)
            await conn.execute(_CREATE_QUESTS_TABLE)
            await conn.execute(_CREATE_PLAYER_STATS_TABLE)

            # Indexes
            for stmt in _CREATE_INDEXES:
                await conn.execute(stmt)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[Store]:
        """Autocommit store; each call is its own statement."""
        if self._pool is None:
            raise RuntimeError("DB not started")
        async with self._pool.acquire() as conn:
            yield Store(conn)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Store]:
        """Store bound to one transaction: commit on clean exit, rollback on any exception."""
        if self._pool is None:
            raise RuntimeError("DB not started")
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                yield Store(conn)
