"""
Configuration Module

Centralized configuration management for PostgreSQL backup and recovery:
- Database container and control role
- Container runtime selection
- Backup, WAL archive and retention settings
- Restore and point-in-time recovery settings
- Logging settings

Settings load from YAML files and environment variables (PGOPS_* prefixes)
and are validated with Pydantic.
"""

from .settings import (
    PgOpsSettings,
    ConnectionSettings,
    RuntimeSettings,
    BackupSettings,
    RecoverySettings,
    MonitoringSettings,
    load_settings
)

__all__ = [
    'PgOpsSettings',
    'ConnectionSettings',
    'RuntimeSettings',
    'BackupSettings',
    'RecoverySettings',
    'MonitoringSettings',
    'load_settings'
]
