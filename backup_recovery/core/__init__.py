"""
Backup Recovery Core

Engines and state machines for full backups, WAL archiving, safety
snapshots, restore and point-in-time recovery.
"""

from .backup_engine import BackupEngine
from .base_backup import inspect_base_backup
from .database import DatabaseControl
from .manager import BackupManager
from .pitr import PITROrchestrator, build_recovery_settings
from .readiness import ReadinessMonitor
from .restore_engine import RestoreEngine
from .safety_net import SafetyNetManager
from .session import RecoverySession, LOGICAL_RESTORE, PHYSICAL_RESTORE, PITR
from .validator import BackupValidator
from .wal_archive import WALArchiveManager

__all__ = [
    'BackupEngine',
    'BackupManager',
    'BackupValidator',
    'DatabaseControl',
    'PITROrchestrator',
    'ReadinessMonitor',
    'RecoverySession',
    'RestoreEngine',
    'SafetyNetManager',
    'WALArchiveManager',
    'build_recovery_settings',
    'inspect_base_backup',
    'LOGICAL_RESTORE',
    'PHYSICAL_RESTORE',
    'PITR'
]
