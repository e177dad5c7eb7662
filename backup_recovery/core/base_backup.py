"""
Base Backup Inspection

Reads what the orchestrator needs from a physical base backup without
unpacking it: the layout, the start LSN and timeline from backup_label (or
backup_manifest), the WAL segments shipped inside it and the
postgresql.auto.conf it will restore.

Supported layouts:
- tar: a pg_basebackup -Ft directory (base.tar[.gz], pg_wal.tar[.gz], backup_manifest)
- archive: a single tarball of a data directory
- plain: an unpacked data directory (PG_VERSION at the top)
"""

import json
import logging
import re
import tarfile
from pathlib import Path
from typing import List, Optional, Tuple, Union

from ..exceptions import BackupValidationError
from ..models.entities import BaseBackupInfo
from ..utils.wal import DEFAULT_SEGMENT_SIZE, is_segment_name, parse_segment_name

logger = logging.getLogger(__name__)

START_LOCATION_PATTERN = re.compile(r"^START WAL LOCATION:\s*([0-9A-Fa-f]+/[0-9A-Fa-f]+)", re.MULTILINE)
START_TIMELINE_PATTERN = re.compile(r"^START TIMELINE:\s*(\d+)", re.MULTILINE)

BASE_ARCHIVE_NAMES = ("base.tar.gz", "base.tar")
WAL_ARCHIVE_NAMES = ("pg_wal.tar.gz", "pg_wal.tar")
TARBALL_SUFFIXES = (".tar.gz", ".tgz", ".tar")


def _first_existing(directory: Path, names: Tuple[str, ...]) -> Optional[Path]:
    for name in names:
        candidate = directory / name
        if candidate.is_file():
            return candidate
    return None


def list_archive_members(archive: Union[str, Path]) -> List[str]:
    """
    Member names of a tarball, with any leading "./" removed.

    Raises:
        BackupValidationError: If the archive cannot be read
    """
    try:
        with tarfile.open(archive, "r:*") as tar:
            return [m.name[2:] if m.name.startswith("./") else m.name for m in tar.getmembers()]
    except (tarfile.TarError, OSError, EOFError) as e:
        raise BackupValidationError(
            f"Backup archive is not readable: {archive}",
            validation_errors=[str(e)]
        ) from e


def read_archive_member(archive: Union[str, Path], name: str) -> Optional[str]:
    """Text content of one member of a tarball, None if absent."""
    try:
        with tarfile.open(archive, "r:*") as tar:
            for member in tar.getmembers():
                member_name = member.name[2:] if member.name.startswith("./") else member.name
                if member_name == name and member.isfile():
                    handle = tar.extractfile(member)
                    if handle is None:
                        return None
                    with handle:
                        return handle.read().decode("utf-8", errors="replace")
    except (tarfile.TarError, OSError, EOFError) as e:
        raise BackupValidationError(
            f"Backup archive is not readable: {archive}",
            validation_errors=[str(e)]
        ) from e
    return None


def parse_backup_label(text: str) -> Tuple[Optional[str], int]:
    """Start LSN and timeline from backup_label content."""
    lsn_match = START_LOCATION_PATTERN.search(text)
    timeline_match = START_TIMELINE_PATTERN.search(text)
    start_lsn = lsn_match.group(1).upper() if lsn_match else None
    timeline = int(timeline_match.group(1)) if timeline_match else 1
    return start_lsn, timeline


def parse_backup_manifest(text: str) -> Tuple[Optional[str], int]:
    """Start LSN and timeline from the first WAL-Ranges entry of a backup_manifest."""
    try:
        manifest = json.loads(text)
    except ValueError:
        return None, 1
    ranges = manifest.get("WAL-Ranges") or []
    if not ranges:
        return None, 1
    first = ranges[0]
    start = first.get("Start-LSN")
    return (start.upper() if start else None), int(first.get("Timeline", 1))


def _segments_from_names(names: List[str], segment_size: int) -> List[int]:
    numbers = set()
    for name in names:
        base = name.rsplit("/", 1)[-1]
        if is_segment_name(base):
            numbers.add(parse_segment_name(base, segment_size)[1])
    return sorted(numbers)


def inspect_base_backup(
    path: Union[str, Path],
    segment_size: int = DEFAULT_SEGMENT_SIZE
) -> BaseBackupInfo:
    """
    Describe a physical base backup.

    Raises:
        BackupValidationError: If the path is not a recognizable base backup
            or one of its archives cannot be read
    """
    path = Path(path)
    if not path.exists():
        raise BackupValidationError(f"Base backup not found: {path}")

    label_text = None
    manifest_text = None
    auto_conf = ""
    base_archive = None
    wal_archive = None
    bundled: List[int] = []

    if path.is_file():
        if not path.name.endswith(TARBALL_SUFFIXES):
            raise BackupValidationError(
                f"Not a base backup archive: {path}",
                validation_errors=["expected a .tar, .tar.gz or .tgz file"]
            )
        layout = "archive"
        base_archive = path
        members = list_archive_members(path)
        label_text = read_archive_member(path, "backup_label")
        auto_conf = read_archive_member(path, "postgresql.auto.conf") or ""
        manifest_text = read_archive_member(path, "backup_manifest")
        bundled = _segments_from_names([m for m in members if m.startswith("pg_wal/")], segment_size)

    elif (path / "PG_VERSION").is_file():
        layout = "plain"
        label_file = path / "backup_label"
        if label_file.is_file():
            label_text = label_file.read_text()
        auto_file = path / "postgresql.auto.conf"
        if auto_file.is_file():
            auto_conf = auto_file.read_text()
        wal_dir = path / "pg_wal"
        if wal_dir.is_dir():
            bundled = _segments_from_names([p.name for p in wal_dir.iterdir()], segment_size)

    else:
        base_archive = _first_existing(path, BASE_ARCHIVE_NAMES)
        if base_archive is None:
            raise BackupValidationError(
                f"Not a base backup: {path}",
                validation_errors=["expected base.tar.gz, a data directory or a tarball"]
            )
        layout = "tar"
        list_archive_members(base_archive)
        label_text = read_archive_member(base_archive, "backup_label")
        auto_conf = read_archive_member(base_archive, "postgresql.auto.conf") or ""
        wal_archive = _first_existing(path, WAL_ARCHIVE_NAMES)
        if wal_archive is not None:
            bundled = _segments_from_names(list_archive_members(wal_archive), segment_size)

    if path.is_dir() and (path / "backup_manifest").is_file():
        manifest_text = (path / "backup_manifest").read_text()

    start_lsn, timeline = (None, 1)
    if label_text:
        start_lsn, timeline = parse_backup_label(label_text)
    if start_lsn is None and manifest_text:
        start_lsn, timeline = parse_backup_manifest(manifest_text)

    info = BaseBackupInfo(
        path=str(path),
        layout=layout,
        base_archive=str(base_archive) if base_archive else None,
        wal_archive=str(wal_archive) if wal_archive else None,
        start_lsn=start_lsn,
        timeline=timeline,
        bundled_segments=bundled,
        auto_conf=auto_conf
    )
    logger.debug(
        f"Base backup {path}: layout={layout}, start_lsn={start_lsn}, "
        f"timeline={timeline}, bundled_segments={len(bundled)}"
    )
    return info
