"""
Backup Recovery Entities

Defines data models for backups, WAL segments, recovery targets, safety
snapshots and workflow outcomes.

These models use Pydantic for validation and provide a type-safe interface
between the engines, the manager facade and the command line.
"""

import re
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


# Sidecar timestamps use the same layout the shell tooling wrote
SIDECAR_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

LSN_PATTERN = re.compile(r"^[0-9A-Fa-f]{1,8}/[0-9A-Fa-f]{1,8}$")

# "2026-01-08 14:30:00 UTC" style values are accepted by PostgreSQL but not
# by datetime.fromisoformat
_TRAILING_ZONE_NAME = re.compile(r"^(?P<stamp>.*\d)\s+(?P<zone>[A-Za-z][A-Za-z_/]*)$")

# PostgreSQL prints offsets as "+00" and clients often send "Z"; fromisoformat
# only accepts "+HH:MM" before Python 3.11
_TIME_OFFSET = re.compile(r"(?P<clock>\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?)\s*(?P<offset>Z|[+-]\d{2}(?::?\d{2})?)$")


class BackupKind(str, Enum):
    """
    Format of a full backup.

    Types:
        LOGICAL: SQL text produced by pg_dumpall
        PHYSICAL: Storage-level copy produced by pg_basebackup
    """
    LOGICAL = "logical"
    PHYSICAL = "physical"


class BackupStatus(str, Enum):
    """
    Lifecycle of a BackupRecord.

    A record starts IN_PROGRESS and is finalized exactly once.
    """
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class RecoveryTargetKind(str, Enum):
    """
    The four mutually exclusive recovery target forms.

    Values are the suffixes of the matching recovery_target_* setting.
    """
    TIME = "time"
    TRANSACTION_ID = "xid"
    NAME = "name"
    LSN = "lsn"


class RecoveryState(str, Enum):
    """
    States of the restore and point-in-time recovery state machines.
    """
    VALIDATING = "Validating"
    IMPORTING = "Importing"
    SNAPSHOTTING = "Snapshotting"
    STOPPED = "Stopped"
    CLEARING = "Clearing"
    COPYING = "Copying"
    RESTORING_BASE = "RestoringBase"
    CONFIGURING_RECOVERY = "ConfiguringRecovery"
    STARTING = "Starting"
    AWAITING_READY = "AwaitingReady"
    VERIFYING = "Verifying"
    DONE = "Done"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RecoveryState.DONE, RecoveryState.FAILED)


class BackupRecord(BaseModel):
    """
    Metadata about one full backup artifact.

    Created IN_PROGRESS when the backup starts and finalized once. The model
    is frozen: finalize() returns a new instance and never mutates the
    original, so a finalized record cannot change afterwards.

    Attributes:
        backup_id: Timestamp-based identifier (also the artifact name suffix)
        kind: LOGICAL or PHYSICAL
        created_at: When the backup started
        size_bytes: Artifact size, 0 unless COMPLETED
        database_version: Output of SELECT version() at backup time
        storage_path: Artifact location (file for logical, directory for physical)
        container: Container the backup was taken from
        status: IN_PROGRESS, COMPLETED or FAILED
        error_message: Raw diagnostic when FAILED
        checksum: SHA-256 of the artifact when COMPLETED

    Example:
        ```python
        record = BackupRecord(
            backup_id="20260108_120000",
            kind=BackupKind.LOGICAL,
            created_at=datetime.now(),
            storage_path="./backups/full_backup_20260108_120000.sql",
            container="PG-timescale"
        )
        record = record.finalize(BackupStatus.COMPLETED, size_bytes=1048576)
        ```
    """
    model_config = ConfigDict(frozen=True)

    backup_id: str = Field(..., description="Backup identifier")
    kind: BackupKind = Field(..., description="Backup format")
    created_at: datetime = Field(..., description="Backup start timestamp")
    size_bytes: int = Field(default=0, ge=0, description="Artifact size in bytes")
    database_version: Optional[str] = Field(default=None, description="Server version string")
    storage_path: str = Field(..., description="Artifact location")
    container: str = Field(..., description="Source container")
    status: BackupStatus = Field(default=BackupStatus.IN_PROGRESS, description="Record status")
    error_message: Optional[str] = Field(default=None, description="Raw diagnostic if failed")
    checksum: Optional[str] = Field(default=None, description="SHA-256 of the artifact")

    @property
    def is_completed(self) -> bool:
        return self.status == BackupStatus.COMPLETED

    @property
    def size_mb(self) -> float:
        """Get size in megabytes."""
        return self.size_bytes / (1024 * 1024)

    def finalize(
        self,
        status: BackupStatus,
        size_bytes: int = 0,
        error_message: Optional[str] = None,
        checksum: Optional[str] = None
    ) -> "BackupRecord":
        """
        Return the finalized copy of an in-progress record.

        Raises:
            ValueError: If the record was already finalized or the status is
                not terminal
        """
        if self.status != BackupStatus.IN_PROGRESS:
            raise ValueError(f"Backup record {self.backup_id} is already {self.status.value}")
        if status == BackupStatus.IN_PROGRESS:
            raise ValueError("A record can only be finalized as completed or failed")
        return self.model_copy(update={
            "status": status,
            "size_bytes": size_bytes if status == BackupStatus.COMPLETED else 0,
            "error_message": error_message,
            "checksum": checksum if status == BackupStatus.COMPLETED else None,
        })

    def to_sidecar(self) -> Dict[str, Any]:
        """Flat JSON record stored next to the artifact."""
        return {
            "backup_type": self.kind.value,
            "timestamp": self.created_at.strftime(SIDECAR_TIMESTAMP_FORMAT),
            "container": self.container,
            "postgres_version": self.database_version or "",
            "backup_size": self.size_bytes,
            "status": self.status.value,
            "backup_id": self.backup_id,
            "storage_path": self.storage_path,
            "error_message": self.error_message,
            "checksum": self.checksum,
        }

    @classmethod
    def from_sidecar(cls, data: Dict[str, Any]) -> "BackupRecord":
        """Rebuild a record from its sidecar dictionary."""
        created_at = datetime.strptime(data["timestamp"], SIDECAR_TIMESTAMP_FORMAT)
        return cls(
            backup_id=data.get("backup_id") or created_at.strftime("%Y%m%d_%H%M%S"),
            kind=BackupKind(data["backup_type"]),
            created_at=created_at,
            size_bytes=int(data.get("backup_size") or 0),
            database_version=data.get("postgres_version") or None,
            storage_path=data.get("storage_path") or "",
            container=data.get("container") or "",
            status=BackupStatus(data.get("status", BackupStatus.COMPLETED.value)),
            error_message=data.get("error_message"),
            checksum=data.get("checksum"),
        )


class WALSegment(BaseModel):
    """
    One archived write-ahead log segment.

    Attributes:
        filename: 24 hex digit segment file name
        sequence_lsn: Start LSN of the segment ("X/X")
        archived_at: Modification time of the archived file
        timeline: Timeline the segment belongs to
        segment_number: Absolute segment number, used for ordering and gaps
        size_bytes: File size
    """
    filename: str = Field(..., description="Segment file name")
    sequence_lsn: str = Field(..., description="Start LSN of the segment")
    archived_at: datetime = Field(..., description="Archive timestamp")
    timeline: int = Field(default=1, ge=1, description="Timeline ID")
    segment_number: int = Field(default=0, ge=0, description="Absolute segment number")
    size_bytes: int = Field(default=0, ge=0, description="File size in bytes")


class WALIncrement(BaseModel):
    """
    Result of one incremental WAL capture.

    Attributes:
        segments: Captured segments in non-decreasing LSN order
        size_bytes: Total size of the capture directory
        path: Capture directory (archive_dir/incremental_<ts>)
        captured_at: Capture timestamp
        gaps: Segment names missing between the first and last captured segment
        other_files: Non-segment files copied along (.history, .backup)
    """
    segments: List[WALSegment] = Field(default_factory=list)
    size_bytes: int = Field(default=0, ge=0)
    path: str = Field(...)
    captured_at: datetime = Field(default_factory=datetime.now)
    gaps: List[str] = Field(default_factory=list)
    other_files: List[str] = Field(default_factory=list)

    @property
    def segment_count(self) -> int:
        return len(self.segments)

    @property
    def has_gaps(self) -> bool:
        return len(self.gaps) > 0


class WALArchiveConfiguration(BaseModel):
    """
    Server settings required for continuous WAL archiving.

    Returned by WALArchiveManager.setup(); applying them (and restarting the
    server) is left to the operator.
    """
    wal_level: str = Field(default="replica")
    archive_mode: str = Field(default="on")
    archive_command: str = Field(...)
    max_wal_senders: int = Field(default=3, ge=0)
    wal_keep_size: str = Field(default="1GB")
    container_archive_dir: str = Field(...)
    local_archive_dir: str = Field(...)

    def to_postgresql_conf(self) -> str:
        """Render the settings as postgresql.conf lines."""
        return "\n".join([
            f"wal_level = {self.wal_level}",
            f"archive_mode = {self.archive_mode}",
            f"archive_command = '{self.archive_command}'",
            f"max_wal_senders = {self.max_wal_senders}",
            f"wal_keep_size = {self.wal_keep_size}",
        ]) + "\n"


class WALArchiveStatus(BaseModel):
    """Archiver configuration and pg_stat_archiver counters."""
    archive_mode: str = Field(default="")
    wal_level: str = Field(default="")
    archive_command: str = Field(default="")
    archived_count: int = Field(default=0, ge=0)
    failed_count: int = Field(default=0, ge=0)
    last_archived_segment: Optional[str] = Field(default=None)
    last_archived_time: Optional[str] = Field(default=None)
    last_failed_segment: Optional[str] = Field(default=None)

    @property
    def is_archiving(self) -> bool:
        return self.archive_mode in ("on", "always")


class RecoveryTarget(BaseModel):
    """
    Point at which WAL replay should stop.

    Exactly one kind is active per recovery session. Values are validated
    according to their kind.

    Example:
        ```python
        target = RecoveryTarget(kind=RecoveryTargetKind.TIME, value="2026-01-08 14:30:00")
        target.setting_name   # "recovery_target_time"
        ```
    """
    model_config = ConfigDict(frozen=True)

    kind: RecoveryTargetKind = Field(..., description="Target kind")
    value: str = Field(..., description="Target value")

    @field_validator("value")
    @classmethod
    def validate_value(cls, v, info):
        """Ensure the value is well-formed for its kind."""
        v = v.strip()
        if not v:
            raise ValueError("recovery target value cannot be empty")

        kind = info.data.get("kind")
        if kind == RecoveryTargetKind.TIME:
            parse_target_time(v)
        elif kind == RecoveryTargetKind.TRANSACTION_ID:
            if not v.isdigit() or int(v) <= 0:
                raise ValueError(f"transaction id must be a positive integer, got '{v}'")
        elif kind == RecoveryTargetKind.LSN:
            if not LSN_PATTERN.match(v):
                raise ValueError(f"LSN must look like 0/16B3748, got '{v}'")
            v = v.upper()
        elif kind == RecoveryTargetKind.NAME:
            if len(v) > 63:
                raise ValueError("restore point names are limited to 63 characters")
        return v

    @property
    def setting_name(self) -> str:
        return f"recovery_target_{self.kind.value}"

    def to_setting_line(self) -> str:
        """postgresql.auto.conf line for this target, quoted for the server."""
        escaped = self.value.replace("'", "''")
        return f"{self.setting_name} = '{escaped}'"

    def __str__(self) -> str:
        return f"{self.kind.value}={self.value}"


def _normalize_offset(value: str) -> str:
    match = _TIME_OFFSET.search(value)
    if not match:
        return value
    offset = match.group("offset")
    if offset == "Z":
        offset = "+00:00"
    else:
        digits = offset[1:].replace(":", "")
        offset = f"{offset[0]}{digits[:2]}:{digits[2:] or '00'}"
    return value[:match.start("offset")].rstrip() + offset


def parse_target_time(value: str) -> datetime:
    """
    Parse a recovery target time.

    Accepts ISO 8601 values (including the "+00" and "Z" offsets) and the
    "YYYY-MM-DD HH:MM:SS <zone name>" form.

    Raises:
        ValueError: If the value is not a timestamp
    """
    try:
        return datetime.fromisoformat(_normalize_offset(value))
    except ValueError:
        pass

    match = _TRAILING_ZONE_NAME.match(value)
    if match:
        try:
            return datetime.fromisoformat(match.group("stamp"))
        except ValueError:
            pass

    raise ValueError(f"recovery target time is not a timestamp: '{value}'")


class SafetySnapshot(BaseModel):
    """
    Compressed archive of a storage volume taken before a destructive step.

    Never deleted by the orchestrator.
    """
    model_config = ConfigDict(frozen=True)

    created_at: datetime = Field(..., description="Snapshot timestamp")
    archive_path: str = Field(..., description="Location of the .tar.gz archive")
    volume: str = Field(..., description="Volume that was archived")
    size_bytes: int = Field(default=0, ge=0, description="Archive size in bytes")


class ReadinessResult(BaseModel):
    """Outcome of a bounded readiness wait."""
    ready: bool = Field(...)
    elapsed_seconds: float = Field(default=0.0, ge=0.0)
    attempts: int = Field(default=0, ge=0)


class BaseBackupInfo(BaseModel):
    """
    What the orchestrator needs to know about a physical base backup.

    Attributes:
        path: Backup location as given by the operator
        layout: "tar" (base.tar[.gz] + pg_wal.tar[.gz]), "archive" (a single
            tarball) or "plain" (a data directory copy)
        base_archive: Path of the base tarball (tar/archive layouts)
        wal_archive: Path of the bundled pg_wal tarball, if any
        start_lsn: START WAL LOCATION from backup_label or backup_manifest
        timeline: START TIMELINE
        bundled_segments: Absolute numbers of WAL segments shipped with the backup
        auto_conf: Content of postgresql.auto.conf inside the backup
    """
    path: str = Field(...)
    layout: str = Field(...)
    base_archive: Optional[str] = Field(default=None)
    wal_archive: Optional[str] = Field(default=None)
    start_lsn: Optional[str] = Field(default=None)
    timeline: int = Field(default=1, ge=1)
    bundled_segments: List[int] = Field(default_factory=list)
    auto_conf: str = Field(default="")


class StateTransition(BaseModel):
    """One entry of a recovery session's progress trace."""
    from_state: Optional[RecoveryState] = Field(default=None)
    to_state: RecoveryState = Field(...)
    at: datetime = Field(default_factory=datetime.now)


class BackupResult(BaseModel):
    """
    Result of a backup operation as returned by the BackupManager.

    Attributes:
        success: Whether the backup completed
        record: The finalized BackupRecord, if one was created
        execution_time_ms: Time taken in milliseconds
        error_type: Exception class name when the operation raised
        error_message: Error message if the operation failed
        deleted_by_retention: Artifacts removed by the retention pass
    """
    success: bool = Field(...)
    record: Optional[BackupRecord] = Field(default=None)
    execution_time_ms: float = Field(default=0.0, ge=0.0)
    error_type: Optional[str] = Field(default=None)
    error_message: Optional[str] = Field(default=None)
    deleted_by_retention: List[str] = Field(default_factory=list)

    @property
    def execution_time_seconds(self) -> float:
        """Get execution time in seconds."""
        return self.execution_time_ms / 1000.0


class RestoreResult(BaseModel):
    """
    Result of a full restore or point-in-time recovery.

    Attributes:
        success: Whether the workflow reached Done
        workflow: Workflow name (logical-restore, physical-restore, pitr)
        final_state: Done or Failed
        failed_state: State in which the failure occurred
        transitions: Linear trace of state transitions
        safety_snapshot_path: Snapshot to roll back from, if one was taken
        server_version: Version reported during verification
        observed_time: Database time logged after a time-targeted PITR
        execution_time_ms: Time taken in milliseconds
        error_type: Exception class name on failure
        error_message: Error message on failure
        warnings: Non-fatal findings
    """
    success: bool = Field(...)
    workflow: str = Field(...)
    final_state: RecoveryState = Field(...)
    failed_state: Optional[RecoveryState] = Field(default=None)
    transitions: List[StateTransition] = Field(default_factory=list)
    safety_snapshot_path: Optional[str] = Field(default=None)
    server_version: Optional[str] = Field(default=None)
    observed_time: Optional[str] = Field(default=None)
    execution_time_ms: float = Field(default=0.0, ge=0.0)
    error_type: Optional[str] = Field(default=None)
    error_message: Optional[str] = Field(default=None)
    warnings: List[str] = Field(default_factory=list)

    @property
    def execution_time_seconds(self) -> float:
        """Get execution time in seconds."""
        return self.execution_time_ms / 1000.0
