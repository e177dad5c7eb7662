"""
Backup Recovery Parameters

Defines parameter classes for backup, restore and point-in-time recovery
requests, providing type-safe per-invocation options on top of the
process-wide BackupRecoveryConfig.
"""

from typing import Optional
from pydantic import BaseModel, Field

from .entities import BackupKind, RecoveryTarget, RecoveryTargetKind
from ..exceptions import BackupValidationError


class BackupParams(BaseModel):
    """
    Parameters for creating a full backup.

    Attributes:
        kind: LOGICAL (pg_dumpall) or PHYSICAL (pg_basebackup)
        output_dir: Directory for the artifact and its sidecar (config default if None)
        retention_days: Delete artifacts strictly older than this many days
            after the backup (config default if None, 0 disables cleanup)

    Example:
        ```python
        params = BackupParams(kind=BackupKind.PHYSICAL, output_dir="/mnt/backups")
        ```
    """
    kind: BackupKind = Field(
        default=BackupKind.LOGICAL,
        description="Backup format"
    )
    output_dir: Optional[str] = Field(
        default=None,
        description="Destination directory (uses config default if None)"
    )
    retention_days: Optional[int] = Field(
        default=None,
        ge=0,
        description="Retention window in days (uses config default if None)"
    )


class RestoreParams(BaseModel):
    """
    Parameters for a full restore.

    Attributes:
        verify_checksum: Verify the sidecar checksum before touching anything
        require_empty_target: Refuse a logical restore into a server that
            already holds user tables
        ready_timeout: Readiness bound in seconds (config default if None)
        poll_interval: Readiness poll interval in seconds (config default if None)
    """
    verify_checksum: bool = Field(
        default=True,
        description="Verify artifact checksum against its sidecar"
    )
    require_empty_target: bool = Field(
        default=False,
        description="Fail validation if the target already holds user tables"
    )
    ready_timeout: Optional[float] = Field(
        default=None,
        ge=0.0,
        description="Readiness timeout in seconds"
    )
    poll_interval: Optional[float] = Field(
        default=None,
        gt=0.0,
        description="Readiness poll interval in seconds"
    )


class PITRParams(RestoreParams):
    """
    Parameters for point-in-time recovery.

    Attributes:
        target: Where replay should stop; None replays to the end of the archive
        target_action: recovery_target_action value once the target is reached
    """
    target: Optional[RecoveryTarget] = Field(
        default=None,
        description="Recovery target (replay everything if None)"
    )
    target_action: str = Field(
        default="promote",
        pattern="^(promote|pause)$",
        description="Action once the recovery target is reached (promote or pause)"
    )


def build_recovery_target(
    target_time: Optional[str] = None,
    target_xid: Optional[str] = None,
    target_name: Optional[str] = None,
    target_lsn: Optional[str] = None
) -> Optional[RecoveryTarget]:
    """
    Build a RecoveryTarget from the four mutually exclusive options.

    Returns:
        The target, or None if no option was given

    Raises:
        BackupValidationError: If more than one option is set or the value
            is malformed
    """
    given = {
        kind: value
        for kind, value in (
            (RecoveryTargetKind.TIME, target_time),
            (RecoveryTargetKind.TRANSACTION_ID, target_xid),
            (RecoveryTargetKind.NAME, target_name),
            (RecoveryTargetKind.LSN, target_lsn),
        )
        if value is not None
    }

    if not given:
        return None

    if len(given) > 1:
        raise BackupValidationError(
            "Only one recovery target may be given per session",
            validation_errors=[f"recovery_target_{k.value}" for k in given]
        )

    kind, value = next(iter(given.items()))
    try:
        return RecoveryTarget(kind=kind, value=value)
    except ValueError as e:
        raise BackupValidationError(
            f"Malformed recovery target: {value}",
            validation_errors=[str(e)]
        ) from e
