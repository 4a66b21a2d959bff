# tests/conftest.py
import copy
import dataclasses
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path

import pytest

from gamelog_api.config import Settings
from gamelog_api.db import ENTITY_TABLES, json_text
from gamelog_api.eventlog.entities import PLAYER_REFERENCE_FIELDS
from gamelog_api.eventlog.models import GameEvent, Player, UploadedFile, utcnow
from gamelog_api.ingest import IngestionService


class SimulatedStorageError(RuntimeError):
    pass


class MemoryStore:
    """In-memory twin of gamelog_api.db.Store, same method surface."""

    def __init__(self, db):
        self._db = db

    @property
    def _s(self):
        return self._db.state

    # ---- uploaded files ----
    async def find_completed_file_by_hash(self, content_hash):
        for f in sorted(self._s["files"].values(), key=lambda f: f.id):
            if f.content_hash == content_hash and f.status == "completed":
                return dataclasses.replace(f)
        return None

    async def find_file_by_path(self, file_path):
        for f in sorted(self._s["files"].values(), key=lambda f: -f.id):
            if f.file_path == file_path:
                return dataclasses.replace(f)
        return None

    async def get_file(self, file_id):
        f = self._s["files"].get(int(file_id))
        return dataclasses.replace(f) if f else None

    async def list_files(self, *, status=None, limit=20):
        files = [f for f in self._s["files"].values() if status is None or f.status == status]
        files.sort(key=lambda f: (f.created_at, f.id), reverse=True)
        return [dataclasses.replace(f) for f in files[:limit]]

    async def create_file(self, *, file_path, name, content_hash, status="pending"):
        self._s["seq"] += 1
        f = UploadedFile(
            id=self._s["seq"],
            file_path=file_path,
            name=name,
            content_hash=content_hash,
            status=status,
            created_at=utcnow(),
        )
        self._s["files"][f.id] = f
        return dataclasses.replace(f)

    async def update_file(self, file_id, **values):
        f = self._s["files"][int(file_id)]
        for k, v in values.items():
            setattr(f, k, v)

    # ---- events ----
    async def recent_event_hashes(self, since):
        return {e.event_hash for e in self._s["events"] if e.created_at >= since and e.event_hash}

    async def event_hash_exists(self, event_hash):
        self._db.hash_lookups += 1
        return any(e.event_hash == event_hash for e in self._s["events"])

    async def event_exists_matching(self, timestamp, event_type, criteria):
        for e in self._s["events"]:
            if e.timestamp != timestamp or e.event_type != event_type:
                continue
            ok = True
            for key, want in criteria.items():
                have = e.player_id if key == "player_id" else e.payload.get(key)
                if want is None:
                    ok = have is None
                else:
                    ok = have is not None and json_text(have) == json_text(want)
                if not ok:
                    break
            if ok:
                return True
        return False

    async def insert_event(self, *, timestamp, category, event_type, player_id, payload, source_file_id, event_hash):
        self._db.inserts += 1
        if self._db.fail_on_insert is not None and self._db.inserts >= self._db.fail_on_insert:
            raise SimulatedStorageError("simulated storage failure")
        self._s["seq"] += 1
        self._s["events"].append(
            GameEvent(
                id=self._s["seq"],
                timestamp=timestamp,
                category=category,
                event_type=event_type,
                player_id=player_id,
                payload=dict(payload),
                source_file_id=source_file_id,
                event_hash=event_hash,
                created_at=self._db.now(),
            )
        )
        return self._s["seq"]

    def _sorted(self, events):
        return sorted(events, key=lambda e: (e.timestamp, e.id))

    async def events_for_file(self, file_id):
        return self._sorted(e for e in self._s["events"] if e.source_file_id == file_id)

    async def events_for_player(self, player_id):
        def refs(e):
            return e.player_id == player_id or any(
                json_text(e.payload.get(f)) == player_id for f in PLAYER_REFERENCE_FIELDS
            )

        return self._sorted(e for e in self._s["events"] if refs(e))

    async def events_with_value(self, event_types, key, value):
        types = set(event_types)
        want = json_text(value)
        return self._sorted(
            e for e in self._s["events"] if e.event_type in types and json_text(e.payload.get(key)) == want
        )

    # ---- entities ----
    async def get_player(self, player_id):
        p = self._s["players"].get(player_id)
        return dataclasses.replace(p) if p else None

    async def insert_player(self, player):
        self._s["players"].setdefault(player.player_id, dataclasses.replace(player))
        return dataclasses.replace(self._s["players"][player.player_id])

    async def ensure_entity(self, kind, key, defaults=None):
        table, _, _ = ENTITY_TABLES[kind]
        rows = self._s["entities"].setdefault(table, {})
        if key not in rows:
            rows[key] = dict(defaults or {})

    async def update_entity(self, kind, key, values):
        if kind == "player":
            p = self._s["players"].get(key)
            if p is not None:
                for k, v in values.items():
                    setattr(p, k, v)
            return
        table, _, _ = ENTITY_TABLES[kind]
        row = self._s["entities"].setdefault(table, {}).get(key)
        if row is not None:
            row.update(values)

    async def get_entity(self, kind, key):
        if kind == "player":
            p = self._s["players"].get(key)
            return dataclasses.asdict(p) if p else None
        table, key_col, _ = ENTITY_TABLES[kind]
        row = self._s["entities"].get(table, {}).get(key)
        return {key_col: key, **row} if row is not None else None

    async def list_entities(self, kind, *, limit=50):
        table, key_col, _ = ENTITY_TABLES[kind]
        rows = self._s["entities"].get(table, {})
        return [{key_col: k, **rows[k]} for k in sorted(rows)[:limit]]

    async def list_players(self, *, limit=50, by_score=False):
        players = sorted(self._s["players"].values(), key=lambda p: p.player_id)
        if by_score:
            players.sort(key=lambda p: -p.total_score)
        return [dataclasses.replace(p) for p in players[:limit]]

    async def count_players_in_zone(self, zone):
        return sum(1 for p in self._s["players"].values() if p.current_zone == zone)

    async def replace_player_daily_stats(self, player_id, rows):
        self._s["daily"][player_id] = [dataclasses.replace(r) for r in rows]

    async def player_daily_stats(self, player_id):
        return list(self._s["daily"].get(player_id, []))


class MemoryDb:
    """Db look-alike: ``transaction()`` snapshots state and restores it on error."""

    def __init__(self, *, fail_on_insert=None, now=None):
        self.state = {"seq": 0, "files": {}, "events": [], "players": {}, "entities": {}, "daily": {}}
        self.fail_on_insert = fail_on_insert
        self.inserts = 0
        self.hash_lookups = 0
        self.started = False
        self._now = now

    def now(self):
        return self._now or utcnow()

    async def start(self):
        self.started = True

    async def close(self):
        self.started = False

    @asynccontextmanager
    async def acquire(self):
        yield MemoryStore(self)

    @asynccontextmanager
    async def transaction(self):
        snapshot = copy.deepcopy(self.state)
        try:
            yield MemoryStore(self)
        except BaseException:
            self.state = snapshot
            raise

    # test helpers
    @property
    def events(self):
        return list(self.state["events"])

    def player(self, player_id) -> Player:
        return self.state["players"].get(player_id)

    def entity(self, table, key):
        return self.state["entities"].get(table, {}).get(key)


def make_settings(tmp_path: Path, **overrides) -> Settings:
    values = dict(
        database_url="",
        db_pool_min=1,
        db_pool_max=2,
        upload_dir=str(tmp_path),
        max_upload_bytes=1024 * 1024,
        recent_hash_window_days=7,
        job_workers=1,
        job_timeout_seconds=10.0,
        job_max_tries=1,
        job_backoff_seconds=(0.0,),
        selftest_enabled=True,
        environment="test",
        log_level="DEBUG",
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def memdb():
    return MemoryDb()


@pytest.fixture
def service(memdb, tmp_path):
    return IngestionService(memdb, upload_dir=tmp_path)


@pytest.fixture
def write_log(tmp_path):
    """Write lines to a log file under tmp_path and return its relative name."""

    def _write(name, lines):
        p = tmp_path / name
        p.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return name

    return _write


def ts(s: str) -> datetime:
    return datetime.strptime(s, "%Y-%m-%d %H:%M:%S")
