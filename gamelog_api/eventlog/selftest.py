from __future__ import annotations

import logging
from typing import List

from gamelog_api.eventlog.hashing import compute_event_hash
from gamelog_api.eventlog.parser import parse_line

logger = logging.getLogger("gamelog")


DEFAULT_SELFTEST_LINES: List[str] = [
    '2025-08-09 10:00:00 [combat] BOSS_DEFEAT boss_name="Dragon" defeated_by=p1 xp=100 gold=20',
    '2025-08-09 10:00:05 [game] ITEM_PICKUP player_id=p1 item="Health Potion" qty=3 location=(10,20)',
    '2025-08-09 10:01:00 [chat] MESSAGE player_id=p2 message="hello there x=1"',
    "2025-08-09 10:02:00 [combat] DEATH victim_id=p2 killer_id=p1",
    "2025-08-09 10:03:00 [game] SCORE player_id=p1 points=12.5",
]


def run_parser_selftest(lines: List[str] | None = None) -> None:
    """Smoke-test parsing and hashing at startup to catch broken patterns early.

    Raises RuntimeError if a sample line does not parse or hashes unstably.
    """
    test_lines = lines or DEFAULT_SELFTEST_LINES
    for s in test_lines:
        ev = parse_line(s)
        if ev is None:
            raise RuntimeError(f"parser self-test failed to parse: {s!r}")
        if compute_event_hash(ev) != compute_event_hash(parse_line(s)):
            raise RuntimeError(f"parser self-test got an unstable hash for: {s!r}")

    logger.info("Parser self-test passed (%d lines).", len(test_lines))
