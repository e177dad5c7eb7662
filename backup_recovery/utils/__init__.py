"""
Backup Recovery Utilities

Exports helpers for checksum calculation, retention policy management and
WAL position arithmetic.
"""

from .checksum import ChecksumCalculator, artifact_size
from .retention import RetentionPolicyManager
from .wal import (
    parse_lsn,
    format_lsn,
    parse_segment_name,
    segment_name,
    segment_for_lsn,
    describe_segment,
    collect_segment_files,
    sort_segments,
    find_gaps,
    check_contiguity,
    is_segment_name
)

__all__ = [
    'ChecksumCalculator',
    'artifact_size',
    'RetentionPolicyManager',
    'parse_lsn',
    'format_lsn',
    'parse_segment_name',
    'segment_name',
    'segment_for_lsn',
    'describe_segment',
    'collect_segment_files',
    'sort_segments',
    'find_gaps',
    'check_contiguity',
    'is_segment_name'
]
