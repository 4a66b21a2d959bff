from .hashing import compute_event_hash, compute_file_hash
from .models import ParsedEvent
from .parser import iter_events, parse_line

__all__ = [
    "ParsedEvent",
    "compute_event_hash",
    "compute_file_hash",
    "iter_events",
    "parse_line",
]
