"""
Backup Recovery Configuration

Centralized, immutable configuration for backup and recovery workflows.
A single BackupRecoveryConfig is built once per invocation (usually from
PgOpsSettings) and passed explicitly to every engine, so no component reads
global state or environment variables on its own.
"""

from dataclasses import dataclass, asdict, fields
from typing import Dict, Any, Optional
from pathlib import Path
import logging

from pydantic import SecretStr

logger = logging.getLogger(__name__)

SUPPORTED_RUNTIMES = ("docker", "podman")


@dataclass(frozen=True)
class BackupRecoveryConfig:
    """
    Configuration for backup and recovery operations.

    Target Settings:
        container: Name of the database container
        db_user: Role used for control commands
        db_name: Database used for control queries
        db_password: Optional password, only ever passed to the runtime by
            environment variable name

    Runtime Settings:
        runtime: Container runtime binary ("docker" or "podman")
        helper_image: Image used for throwaway volume operations
        data_directory: Mount point of the data volume inside the container
        data_owner: uid:gid that must own restored data files

    Storage Settings:
        backup_root_path: Default directory for full backups
        wal_archive_path: Default local directory for WAL captures
        container_wal_archive_dir: archive_command destination inside the container
        container_scratch_dir: Where pg_basebackup writes inside the container
        recovery_wal_subdir: Directory under data_directory that receives the
            WAL segments replayed during PITR
        safety_snapshot_dir: Where safety snapshots are written
        wal_segment_size_mb: Server WAL segment size (16 unless initdb changed it)

    Retention Settings:
        retention_days: Delete backups strictly older than N days (0 disables)
        retention_count: Keep N most recent backups (0 disables)
        min_backups_to_keep: Minimum backups to retain regardless of age

    Readiness Settings:
        ready_timeout: Readiness bound in seconds (default: 300)
        ready_poll_interval: Poll interval in seconds (default: 5)

    Retry Settings:
        max_retries: Pre-flight reachability retries
        retry_delay_seconds: Delay between pre-flight retries

    Reliability Settings:
        verify_checksum_before_restore: Check sidecar checksums before restoring

    Example:
        ```python
        config = BackupRecoveryConfig(
            container="PG-timescale",
            backup_root_path="/mnt/backups",
            retention_days=14
        )
        ```
    """

    # Target Settings
    container: str = "PG-timescale"
    db_user: str = "postgres"
    db_name: str = "postgres"
    db_password: Optional[SecretStr] = None

    # Runtime Settings
    runtime: str = "docker"
    helper_image: str = "alpine:3.20"
    data_directory: str = "/var/lib/postgresql/data"
    data_owner: str = "999:999"

    # Storage Settings
    backup_root_path: str = "./backups"
    wal_archive_path: str = "./backups/wal"
    container_wal_archive_dir: str = "/var/lib/postgresql/wal_archive"
    container_scratch_dir: str = "/tmp"
    recovery_wal_subdir: str = "pitr_wal_archive"
    safety_snapshot_dir: str = "./backups"
    wal_segment_size_mb: int = 16

    # Retention Settings
    retention_days: int = 30
    retention_count: int = 0
    min_backups_to_keep: int = 0

    # Readiness Settings (in seconds)
    ready_timeout: float = 300.0
    ready_poll_interval: float = 5.0

    # Retry Settings
    max_retries: int = 3
    retry_delay_seconds: float = 2.0

    # Reliability Settings
    verify_checksum_before_restore: bool = True

    def __post_init__(self):
        """Validate configuration after initialization."""
        self.validate()

    def validate(self) -> None:
        """
        Validate configuration parameters.

        Raises:
            ValueError: If any configuration parameter is invalid
        """
        if not self.container:
            raise ValueError("container must be set")
        if not self.db_user:
            raise ValueError("db_user must be set")

        if self.runtime not in SUPPORTED_RUNTIMES:
            raise ValueError(f"runtime must be one of {SUPPORTED_RUNTIMES}, got '{self.runtime}'")

        if not self.data_directory.startswith("/"):
            raise ValueError("data_directory must be an absolute path inside the container")
        if not self.container_wal_archive_dir.startswith("/"):
            raise ValueError("container_wal_archive_dir must be an absolute path inside the container")
        if "/" in self.recovery_wal_subdir or not self.recovery_wal_subdir:
            raise ValueError("recovery_wal_subdir must be a single directory name")

        # WAL segment size must be a power of two between 1MB and 1GB
        size = self.wal_segment_size_mb
        if size < 1 or size > 1024 or size & (size - 1):
            raise ValueError("wal_segment_size_mb must be a power of two between 1 and 1024")

        # Validate retention settings
        if self.retention_days < 0:
            raise ValueError("retention_days cannot be negative")
        if self.retention_count < 0:
            raise ValueError("retention_count cannot be negative")
        if self.min_backups_to_keep < 0:
            raise ValueError("min_backups_to_keep cannot be negative")

        # Validate readiness settings
        if self.ready_timeout < 0:
            raise ValueError("ready_timeout cannot be negative")
        if self.ready_poll_interval <= 0:
            raise ValueError("ready_poll_interval must be positive")
        if self.ready_timeout and self.ready_poll_interval > self.ready_timeout:
            logger.warning(
                f"ready_poll_interval ({self.ready_poll_interval}s) exceeds ready_timeout "
                f"({self.ready_timeout}s); only one probe will run"
            )

        # Validate retry settings
        if self.max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        if self.retry_delay_seconds < 0:
            raise ValueError("retry_delay_seconds cannot be negative")

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> 'BackupRecoveryConfig':
        """
        Create configuration from a dictionary.

        Unknown keys are ignored so that a whole settings section can be
        passed in.

        Example:
            ```python
            config = BackupRecoveryConfig.from_dict({
                'container': 'PG-timescale',
                'retention_days': 14
            })
            ```
        """
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in config_dict.items() if k in known}

        if isinstance(values.get('db_password'), str):
            values['db_password'] = SecretStr(values['db_password']) if values['db_password'] else None

        return cls(**values)

    @classmethod
    def from_settings(cls, settings) -> 'BackupRecoveryConfig':
        """
        Build the configuration from PgOpsSettings.

        Args:
            settings: config.settings.PgOpsSettings instance

        Returns:
            BackupRecoveryConfig instance
        """
        password = settings.connection.password
        return cls(
            container=settings.connection.container,
            db_user=settings.connection.user,
            db_name=settings.connection.database,
            db_password=password if password and password.get_secret_value() else None,
            runtime=settings.runtime.binary,
            helper_image=settings.runtime.helper_image,
            data_directory=settings.runtime.data_directory,
            data_owner=settings.runtime.data_owner,
            backup_root_path=settings.backup.backup_path,
            wal_archive_path=settings.backup.wal_archive_path,
            container_wal_archive_dir=settings.backup.container_wal_archive_dir,
            wal_segment_size_mb=settings.backup.wal_segment_size_mb,
            retention_days=settings.backup.retention_days,
            retention_count=settings.backup.retention_count,
            min_backups_to_keep=settings.backup.min_backups_to_keep,
            safety_snapshot_dir=settings.recovery.safety_snapshot_dir,
            recovery_wal_subdir=settings.recovery.recovery_wal_subdir,
            ready_timeout=settings.recovery.ready_timeout,
            ready_poll_interval=settings.recovery.poll_interval,
            verify_checksum_before_restore=settings.recovery.verify_checksum,
            max_retries=settings.connection.retry_count,
            retry_delay_seconds=settings.connection.retry_interval,
        )

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert configuration to a dictionary.

        The password is masked.
        """
        result = asdict(self)
        result['db_password'] = "**********" if self.db_password else None
        return result

    @property
    def wal_segment_size_bytes(self) -> int:
        """Get WAL segment size in bytes."""
        return self.wal_segment_size_mb * 1024 * 1024

    @property
    def recovery_wal_directory(self) -> str:
        """Absolute in-container path of the PITR WAL directory."""
        return f"{self.data_directory.rstrip('/')}/{self.recovery_wal_subdir}"

    def get_backup_root_path(self) -> Path:
        return Path(self.backup_root_path)

    def get_wal_archive_path(self) -> Path:
        return Path(self.wal_archive_path)

    def get_safety_snapshot_dir(self) -> Path:
        return Path(self.safety_snapshot_dir)

    def __repr__(self) -> str:
        """String representation of configuration."""
        return (
            f"BackupRecoveryConfig("
            f"container={self.container}, "
            f"runtime={self.runtime}, "
            f"backup_path={self.backup_root_path}, "
            f"retention={self.retention_days} days, "
            f"ready_timeout={self.ready_timeout}s"
            f")"
        )
