"""
WAL Naming and LSN Arithmetic

Helpers for write-ahead log positions and segment file names.

A segment file name is 24 hex digits: 8 for the timeline, 8 for the high
half of the segment number ("log") and 8 for the low half ("seg"). With the
default 16MB segment size there are 256 segments per log value, so the
segment number is log * 256 + seg and the segment starts at LSN
segment_number * segment_size.
"""

import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from ..exceptions import BackupIntegrityError
from ..models.entities import WALSegment, LSN_PATTERN

logger = logging.getLogger(__name__)

DEFAULT_SEGMENT_SIZE = 16 * 1024 * 1024

SEGMENT_NAME_PATTERN = re.compile(r"^[0-9A-Fa-f]{24}$")


def parse_lsn(value: str) -> int:
    """
    Convert an "X/X" LSN into a 64-bit integer position.

    Raises:
        ValueError: If the value is not an LSN
    """
    value = value.strip()
    if not LSN_PATTERN.match(value):
        raise ValueError(f"Not an LSN: '{value}'")
    high, low = value.split("/")
    return (int(high, 16) << 32) | int(low, 16)


def format_lsn(position: int) -> str:
    """Render an integer WAL position in the server's "X/X" notation."""
    return f"{position >> 32:X}/{position & 0xFFFFFFFF:X}"


def segments_per_xlogid(segment_size: int = DEFAULT_SEGMENT_SIZE) -> int:
    return 0x100000000 // segment_size


def is_segment_name(name: str) -> bool:
    """Whether a file name is a WAL segment (not .history, .backup or .partial)."""
    return bool(SEGMENT_NAME_PATTERN.match(name))


def parse_segment_name(name: str, segment_size: int = DEFAULT_SEGMENT_SIZE) -> Tuple[int, int]:
    """
    Split a segment file name into (timeline, segment_number).

    Raises:
        ValueError: If the name is not a segment file name
    """
    if not is_segment_name(name):
        raise ValueError(f"Not a WAL segment file name: '{name}'")
    timeline = int(name[0:8], 16)
    log = int(name[8:16], 16)
    seg = int(name[16:24], 16)
    return timeline, log * segments_per_xlogid(segment_size) + seg


def segment_name(timeline: int, segment_number: int, segment_size: int = DEFAULT_SEGMENT_SIZE) -> str:
    """Inverse of parse_segment_name."""
    per_id = segments_per_xlogid(segment_size)
    return f"{timeline:08X}{segment_number // per_id:08X}{segment_number % per_id:08X}"


def segment_for_lsn(lsn: str, segment_size: int = DEFAULT_SEGMENT_SIZE) -> int:
    """Number of the segment that contains an LSN."""
    return parse_lsn(lsn) // segment_size


def segment_start_lsn(segment_number: int, segment_size: int = DEFAULT_SEGMENT_SIZE) -> str:
    return format_lsn(segment_number * segment_size)


def describe_segment(path: Path, segment_size: int = DEFAULT_SEGMENT_SIZE) -> WALSegment:
    """Build a WALSegment from an archived segment file."""
    path = Path(path)
    timeline, number = parse_segment_name(path.name, segment_size)
    stat = path.stat()
    return WALSegment(
        filename=path.name,
        sequence_lsn=segment_start_lsn(number, segment_size),
        archived_at=datetime.fromtimestamp(stat.st_mtime),
        timeline=timeline,
        segment_number=number,
        size_bytes=stat.st_size
    )


def collect_segment_files(root: Path) -> Dict[str, Path]:
    """
    Find WAL segment files under root, recursively.

    A segment captured more than once (overlapping increments) is listed
    once; the largest copy wins, since a partial copy is never larger.

    Returns:
        Segment name to file path, ordered by name
    """
    found: Dict[str, Path] = {}
    for path in Path(root).rglob("*"):
        if not path.is_file() or not is_segment_name(path.name):
            continue
        name = path.name.upper()
        current = found.get(name)
        if current is None or path.stat().st_size > current.stat().st_size:
            found[name] = path
    return dict(sorted(found.items()))


def sort_segments(segments: Iterable[WALSegment]) -> List[WALSegment]:
    """Order segments by LSN, timeline breaking ties."""
    return sorted(segments, key=lambda s: (s.segment_number, s.timeline))


def find_gaps(
    segment_numbers: Iterable[int],
    timeline: int = 1,
    segment_size: int = DEFAULT_SEGMENT_SIZE
) -> List[str]:
    """
    Names of the segments missing between the lowest and highest number.

    Returns:
        Missing segment file names in order, empty when contiguous
    """
    numbers = sorted(set(segment_numbers))
    missing = []
    for previous, current in zip(numbers, numbers[1:]):
        for number in range(previous + 1, current):
            missing.append(segment_name(timeline, number, segment_size))
    return missing


def check_contiguity(
    available: Iterable[int],
    first: int,
    last: Optional[int] = None,
    timeline: int = 1,
    segment_size: int = DEFAULT_SEGMENT_SIZE
) -> List[int]:
    """
    Verify that every segment from first through last is available.

    Args:
        available: Segment numbers present (archive plus bundled)
        first: First required segment (the base backup's start segment)
        last: Last required segment; the newest available one if None
        timeline: Timeline used when naming missing segments
        segment_size: WAL segment size in bytes

    Returns:
        The required segment numbers, in order

    Raises:
        BackupIntegrityError: If any required segment is missing
    """
    present = set(available)
    if last is None:
        last = max(present) if present else first

    required = list(range(first, last + 1))
    missing = [n for n in required if n not in present]
    if missing:
        names = [segment_name(timeline, n, segment_size) for n in missing]
        shown = ", ".join(names[:5]) + (" ..." if len(names) > 5 else "")
        raise BackupIntegrityError(
            f"WAL archive has {len(names)} missing segment(s) between "
            f"{segment_name(timeline, first, segment_size)} and "
            f"{segment_name(timeline, last, segment_size)}: {shown}",
            missing_segments=names
        )

    logger.debug(f"WAL segments {first}..{last} contiguous ({len(required)} segments)")
    return required
