"""
Pydantic Settings for PostgreSQL Operations

This module provides strongly-typed configuration settings using Pydantic,
with support for environment variables and YAML configuration files.
"""

from typing import Optional, Union
from pathlib import Path
import os

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic_yaml import to_yaml_str


class ConnectionSettings(BaseSettings):
    """
    How control commands reach the database.

    Every command runs inside the database container, so the only network
    endpoint involved is the server's local socket.
    """
    model_config = SettingsConfigDict(env_prefix="PGOPS_CONNECTION_", case_sensitive=False)

    container: str = Field("PG-timescale",
                           description="Name of the database container")
    user: str = Field("postgres",
                      description="Role used for control commands")
    database: str = Field("postgres",
                          description="Database used for control queries")
    password: SecretStr = Field(SecretStr(""),
                                description="Password, passed to the container by variable name only")
    retry_count: int = Field(3,
                             description="Pre-flight reachability retries before giving up")
    retry_interval: float = Field(2.0,
                                  description="Seconds between pre-flight retries")


class RuntimeSettings(BaseSettings):
    """
    Container runtime used to drive the database container and its volume.
    """
    model_config = SettingsConfigDict(env_prefix="PGOPS_RUNTIME_", case_sensitive=False)

    binary: str = Field("docker",
                        description="Runtime CLI (docker or podman)")
    helper_image: str = Field("alpine:3.20",
                              description="Image used for throwaway volume operations")
    data_directory: str = Field("/var/lib/postgresql/data",
                                description="Mount point of the data volume inside the container")
    data_owner: str = Field("999:999",
                            description="uid:gid that must own restored data files")


class BackupSettings(BaseSettings):
    """
    Backup settings for full backups and WAL archiving.
    """
    model_config = SettingsConfigDict(env_prefix="PGOPS_BACKUP_", case_sensitive=False)

    backup_path: str = Field("./backups",
                             description="Directory where full backups and sidecars are stored")
    wal_archive_path: str = Field("./backups/wal",
                                  description="Local directory receiving WAL captures")
    container_wal_archive_dir: str = Field("/var/lib/postgresql/wal_archive",
                                           description="archive_command destination inside the container")
    wal_segment_size_mb: int = Field(16,
                                     description="Server WAL segment size in MB")
    retention_days: int = Field(30,
                                description="Delete backups strictly older than this many days (0 disables)")
    retention_count: int = Field(0,
                                 description="Keep this many most recent backups (0 disables)")
    min_backups_to_keep: int = Field(0,
                                     description="Always keep at least this many backups")


class RecoverySettings(BaseSettings):
    """
    Restore and point-in-time recovery settings.
    """
    model_config = SettingsConfigDict(env_prefix="PGOPS_RECOVERY_", case_sensitive=False)

    safety_snapshot_dir: str = Field("./backups",
                                     description="Where safety snapshots of the live volume are written")
    recovery_wal_subdir: str = Field("pitr_wal_archive",
                                     description="Directory under the data directory holding WAL for replay")
    ready_timeout: float = Field(300.0,
                                 description="Seconds to wait for the server to accept connections")
    poll_interval: float = Field(5.0,
                                 description="Seconds between readiness probes")
    verify_checksum: bool = Field(True,
                                  description="Verify backup checksums before restoring")


class MonitoringSettings(BaseSettings):
    """
    Logging settings for the command line.
    """
    model_config = SettingsConfigDict(env_prefix="PGOPS_MONITORING_", case_sensitive=False)

    log_level: str = Field("INFO",
                           description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)")
    log_file: Optional[str] = Field("./logs/pgops.jsonl",
                                    description="Structured JSON log file (None disables it)")


class PgOpsSettings(BaseSettings):
    """
    Main settings class that consolidates all configuration categories.

    Usage:
        # Load from environment variables and defaults
        settings = PgOpsSettings()

        # Load from YAML file
        settings = PgOpsSettings.from_yaml('config.yaml')

        # Access nested settings
        container = settings.connection.container
        retention = settings.backup.retention_days
    """
    model_config = SettingsConfigDict(env_prefix="PGOPS_", case_sensitive=False, env_nested_delimiter="__")

    connection: ConnectionSettings = Field(default_factory=ConnectionSettings,
                                           description="Database container and role")
    runtime: RuntimeSettings = Field(default_factory=RuntimeSettings,
                                     description="Container runtime configuration")
    backup: BackupSettings = Field(default_factory=BackupSettings,
                                   description="Backup and WAL archive configuration")
    recovery: RecoverySettings = Field(default_factory=RecoverySettings,
                                       description="Restore and PITR configuration")
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings,
                                           description="Logging configuration")

    @classmethod
    def from_yaml(cls, yaml_file: Union[str, Path]) -> "PgOpsSettings":
        """Load settings from YAML file"""
        import yaml
        with open(yaml_file, 'r') as f:
            data = yaml.safe_load(f) or {}
        return cls(**data)

    def to_yaml(self) -> str:
        """Render the effective settings as YAML (secrets masked)."""
        return to_yaml_str(self)


def load_settings(config_path: Optional[str] = None) -> PgOpsSettings:
    """
    Load settings from file and/or environment variables.

    Args:
        config_path: Path to YAML configuration file. If None or file doesn't exist,
                    falls back to environment variables and default values.

    Returns:
        PgOpsSettings object with loaded configuration

    Example:
        # Load from specific config file
        settings = load_settings("/path/to/config.yaml")

        # Load from environment variables and defaults
        settings = load_settings()
    """
    if config_path and os.path.exists(config_path):
        return PgOpsSettings.from_yaml(config_path)
    return PgOpsSettings()
