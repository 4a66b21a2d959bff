from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Any, Dict, Mapping, Union

from gamelog_api.eventlog.models import ParsedEvent


# Raw coordinates jitter between re-emitted copies of the same event;
# only the formatted "location" string takes part in the identity.
HASH_EXCLUDED_KEYS = frozenset({"location_x", "location_y"})

_FILE_CHUNK = 1024 * 1024


def normalize_payload_for_hash(payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Drop jitter-prone keys and sort the rest (nested maps included)."""
    out: Dict[str, Any] = {}
    for key in sorted(payload):
        if key in HASH_EXCLUDED_KEYS:
            continue
        value = payload[key]
        if isinstance(value, Mapping):
            value = normalize_payload_for_hash(value)
        out[key] = value
    return out


# Separators inside keys and values are backslash-escaped so segments cannot run together.
_ESCAPES = str.maketrans({"\\": "\\\\", "|": "\\|", ":": "\\:", "{": "\\{", "}": "\\}"})


def _escape(text: str) -> str:
    return text.translate(_ESCAPES)


def _scalar_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return _escape(str(value))


def canonical_string(data: Mapping[str, Any]) -> str:
    """Serialize a mapping into ``key:value`` segments, sorted and joined with ``|``.

    Nested mappings are serialized the same way and embedded in braces, so the
    result does not depend on insertion order at any depth.
    """
    parts = []
    for key, value in data.items():
        if isinstance(value, Mapping):
            text = "{" + canonical_string(value) + "}"
        else:
            text = _scalar_text(value)
        parts.append(f"{_escape(str(key))}:{text}")
    parts.sort()
    return "|".join(parts)


def compute_event_hash(event: ParsedEvent) -> str:
    """Deterministic 32-char content fingerprint of a parsed event."""
    data = {
        "timestamp": event.timestamp.replace(microsecond=0).strftime("%Y-%m-%d %H:%M:%S"),
        "category": event.category,
        "event_type": event.event_type,
        "event_data": normalize_payload_for_hash(event.payload),
    }
    return hashlib.md5(canonical_string(data).encode("utf-8")).hexdigest()


def compute_bytes_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def compute_file_hash(path: Union[str, Path]) -> str:
    """SHA-256 of the whole file, read in chunks."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        while True:
            chunk = f.read(_FILE_CHUNK)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()
