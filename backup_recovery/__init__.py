"""
Backup and Recovery Module

Backup and recovery orchestration for PostgreSQL running in a container.
The orchestrator drives the database and its data volume through a
container runtime; it never reimplements the engine's WAL or recovery
logic.

Features:
- Logical (pg_dumpall) and physical (pg_basebackup) full backups with JSON sidecars
- Incremental backups through WAL archive captures
- Safety snapshots of the data volume before any destructive step
- Full restore and point-in-time recovery as explicit state machines
- Age and count based retention
- Docker and Podman runtime adapters

Typical usage:

    from backup_recovery import (
        BackupManager,
        BackupRecoveryConfig,
        BackupParams,
        BackupKind
    )

    config = BackupRecoveryConfig(container="PG-timescale", backup_root_path="/mnt/backups")
    manager = BackupManager(config)

    result = manager.create_backup(BackupParams(kind=BackupKind.PHYSICAL))
    print(result.record.storage_path)
"""

from .config import BackupRecoveryConfig
from .core import BackupManager
from .models import (
    BackupKind,
    BackupStatus,
    BackupRecord,
    RecoveryState,
    RecoveryTarget,
    RecoveryTargetKind,
    SafetySnapshot,
    WALSegment,
    BackupResult,
    RestoreResult,
    BackupParams,
    RestoreParams,
    PITRParams,
    build_recovery_target
)
from .exceptions import (
    BackupRecoveryError,
    ConnectivityError,
    BackupValidationError,
    ContainerStateError,
    DestructiveOperationError,
    OperationTimeoutError,
    BackupIntegrityError,
    SafetyPreconditionError,
    InvalidStateTransitionError
)

__version__ = "1.0.0"

__all__ = [
    'BackupRecoveryConfig',
    'BackupManager',
    'BackupKind',
    'BackupStatus',
    'BackupRecord',
    'RecoveryState',
    'RecoveryTarget',
    'RecoveryTargetKind',
    'SafetySnapshot',
    'WALSegment',
    'BackupResult',
    'RestoreResult',
    'BackupParams',
    'RestoreParams',
    'PITRParams',
    'build_recovery_target',
    'BackupRecoveryError',
    'ConnectivityError',
    'BackupValidationError',
    'ContainerStateError',
    'DestructiveOperationError',
    'OperationTimeoutError',
    'BackupIntegrityError',
    'SafetyPreconditionError',
    'InvalidStateTransitionError'
]
