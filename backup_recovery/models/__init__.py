"""
Backup Recovery Models

Exports all data models, entities, and parameters for backup operations.
"""

from .entities import (
    BackupKind,
    BackupStatus,
    RecoveryTargetKind,
    RecoveryState,
    BackupRecord,
    WALSegment,
    WALIncrement,
    WALArchiveConfiguration,
    WALArchiveStatus,
    RecoveryTarget,
    SafetySnapshot,
    ReadinessResult,
    BaseBackupInfo,
    StateTransition,
    BackupResult,
    RestoreResult
)

from .parameters import (
    BackupParams,
    RestoreParams,
    PITRParams,
    build_recovery_target
)

__all__ = [
    # Enums
    'BackupKind',
    'BackupStatus',
    'RecoveryTargetKind',
    'RecoveryState',

    # Entities
    'BackupRecord',
    'WALSegment',
    'WALIncrement',
    'WALArchiveConfiguration',
    'WALArchiveStatus',
    'RecoveryTarget',
    'SafetySnapshot',
    'ReadinessResult',
    'BaseBackupInfo',
    'StateTransition',
    'BackupResult',
    'RestoreResult',

    # Parameters
    'BackupParams',
    'RestoreParams',
    'PITRParams',
    'build_recovery_target'
]
