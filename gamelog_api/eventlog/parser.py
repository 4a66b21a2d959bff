from __future__ import annotations

from datetime import datetime
from typing import Iterable, Iterator, Optional

import regex as re

from gamelog_api.eventlog.models import ParsedEvent, Payload, PayloadValue


# Game server log line:
#   2025-08-09 10:00:00 [combat] BOSS_DEFEAT boss_name="Dragon" defeated_by=p1 xp=100
# - timestamp has second precision, no zone
# - category is a single word in brackets
# - event type is a single word
# - the rest is a free-form list of key=value tokens
_RX_HEADER = re.compile(
    r"""
    ^
    (?P<ts>\d{4}-\d{2}-\d{2}\ \d{2}:\d{2}:\d{2})
    \ \[(?P<category>\w+)\]
    \ (?P<event_type>\w+)
    \ (?P<rest>.+)
    $
    """,
    re.VERBOSE,
)

_TS_FORMAT = "%Y-%m-%d %H:%M:%S"

# key="value with spaces" wins over key=value
_RX_QUOTED = re.compile(r'(\w+)="([^"]*)"')
_RX_BARE = re.compile(r"(\w+)=(\S+)")

_RX_LOCATION = re.compile(r"(?<!\w)location=\((-?\d+),\s*(-?\d+)\)")

_RX_INT = re.compile(r"^[+-]?\d+$")
_RX_DECIMAL = re.compile(r"^[+-]?(?:\d+\.\d*|\.\d+)$")


def coerce_value(raw: str) -> PayloadValue:
    """Integers and decimals become numbers; anything else stays a string."""
    s = raw.strip()
    if _RX_INT.match(s):
        return int(s)
    if _RX_DECIMAL.match(s):
        return float(s)
    return raw


def parse_payload(rest: str) -> Payload:
    """Decompose the tail of a log line into a key/value payload.

    Quoted tokens are consumed first and cut out of the text, so a bare scan
    never sees half of a quoted value (``name="Ancient`` for instance) and
    never picks up ``a=b`` sequences that live inside a quoted message.
    """
    payload: Payload = {}

    for m in _RX_QUOTED.finditer(rest):
        payload[m.group(1)] = coerce_value(m.group(2))

    remainder = _RX_QUOTED.sub(" ", rest)
    for m in _RX_BARE.finditer(remainder):
        key = m.group(1)
        if key in payload:
            continue
        payload[key] = coerce_value(m.group(2))

    loc = _RX_LOCATION.search(remainder)
    if loc:
        x = int(loc.group(1))
        y = int(loc.group(2))
        payload["location"] = f"({x},{y})"
        payload["location_x"] = x
        payload["location_y"] = y

    return payload


def parse_line(line: str, line_number: int = 0) -> Optional[ParsedEvent]:
    """Parse one raw log line. Returns None for anything that does not fit the format."""
    s = (line or "").rstrip("\r\n")
    m = _RX_HEADER.match(s)
    if not m:
        return None

    try:
        ts = datetime.strptime(m.group("ts"), _TS_FORMAT)
    except ValueError:
        # Right shape, impossible date (2025-13-40 ...)
        return None

    return ParsedEvent(
        timestamp=ts,
        category=m.group("category"),
        event_type=m.group("event_type"),
        payload=parse_payload(m.group("rest")),
        raw_line=s,
        line_number=line_number,
    )


def iter_events(lines: Iterable[str]) -> Iterator[ParsedEvent]:
    """Yield parsed events in line order, dropping blank and malformed lines."""
    for n, raw in enumerate(lines, start=1):
        if not (raw or "").strip():
            continue
        ev = parse_line(raw, n)
        if ev is not None:
            yield ev
