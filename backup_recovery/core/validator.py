"""
Backup Validator

Pre-flight checks for restore and recovery: the artifact exists and can be
read, its sidecar record agrees with it, and the target container exists.
Every check runs before anything is mutated.
"""

import json
import logging
from pathlib import Path
from typing import Optional, Union

from ..config import BackupRecoveryConfig
from ..exceptions import BackupIntegrityError, BackupValidationError
from ..models.entities import BackupKind, BackupRecord, BackupStatus, BaseBackupInfo
from ..runtime.base import ContainerRuntime
from ..utils.checksum import ChecksumCalculator, artifact_size
from .base_backup import inspect_base_backup

logger = logging.getLogger(__name__)


class BackupValidator:
    """
    Validator for restore inputs.

    Provides validation methods for:
    - Backup artifacts (existence, readability)
    - Sidecar records (status, size, checksum)
    - Target containers
    - WAL archive directories

    Example:
        ```python
        validator = BackupValidator(config)

        path = validator.validate_artifact("./backups/full_backup_20260108_120000.sql", BackupKind.LOGICAL)
        record = validator.validate_sidecar(path, verify_checksum=True)
        validator.validate_container(runtime, "PG-timescale")
        ```
    """

    def __init__(self, config: BackupRecoveryConfig):
        """
        Initialize backup validator.

        Args:
            config: Backup recovery configuration
        """
        self.config = config
        self._checksum = ChecksumCalculator()
        logger.debug("BackupValidator initialized")

    def validate_artifact(self, path: Union[str, Path], kind: BackupKind) -> Path:
        """
        Ensure a backup artifact exists and can be read.

        Logical artifacts must be non-empty files. Physical artifacts are
        inspected as base backups (tar archives are listed).

        Raises:
            BackupValidationError: If the artifact is missing or unreadable
        """
        path = Path(path)
        if not path.exists():
            raise BackupValidationError(
                f"Backup artifact not found: {path}",
                validation_errors=[f"{path} does not exist"]
            )

        if kind == BackupKind.LOGICAL:
            if not path.is_file():
                raise BackupValidationError(f"Logical backup must be a file: {path}")
            try:
                with open(path, "rb") as f:
                    first = f.read(1)
            except OSError as e:
                raise BackupValidationError(
                    f"Backup artifact is not readable: {path}",
                    validation_errors=[str(e)]
                ) from e
            if not first:
                raise BackupValidationError(f"Backup artifact is empty: {path}")
        else:
            self.inspect_physical(path)

        logger.debug(f"Artifact validated: {path}")
        return path

    def inspect_physical(self, path: Union[str, Path]) -> BaseBackupInfo:
        """Describe a physical backup, raising BackupValidationError if it is unusable."""
        return inspect_base_backup(path, self.config.wal_segment_size_bytes)

    @staticmethod
    def sidecar_path(artifact: Path) -> Path:
        """Where the sidecar of an artifact lives."""
        if artifact.is_file() and artifact.suffix == ".sql":
            return artifact.with_suffix(".json")
        return artifact.parent / f"{artifact.name}.json"

    def validate_sidecar(
        self,
        artifact: Union[str, Path],
        verify_checksum: bool = True
    ) -> Optional[BackupRecord]:
        """
        Check the artifact against its sidecar record, if it has one.

        Returns:
            The sidecar record, None when the artifact has no sidecar

        Raises:
            BackupValidationError: If the sidecar cannot be parsed
            BackupIntegrityError: If the record is not completed or its size
                or checksum disagree with the artifact
        """
        artifact = Path(artifact)
        sidecar = self.sidecar_path(artifact)
        if not sidecar.is_file():
            logger.info(f"No sidecar for {artifact.name}, skipping record checks")
            return None

        try:
            record = BackupRecord.from_sidecar(json.loads(sidecar.read_text()))
        except (ValueError, KeyError) as e:
            raise BackupValidationError(
                f"Sidecar is not a backup record: {sidecar}",
                validation_errors=[str(e)]
            ) from e

        if record.status != BackupStatus.COMPLETED:
            raise BackupIntegrityError(
                f"Backup {record.backup_id} is recorded as {record.status.value}",
                backup_id=record.backup_id,
                expected=BackupStatus.COMPLETED.value,
                actual=record.status.value
            )

        actual_size = artifact_size(artifact)
        if record.size_bytes != actual_size:
            raise BackupIntegrityError(
                f"Backup {record.backup_id} size mismatch: "
                f"recorded {record.size_bytes} bytes, found {actual_size}",
                backup_id=record.backup_id,
                expected=record.size_bytes,
                actual=actual_size
            )

        if verify_checksum and record.checksum:
            actual_checksum = self._checksum.calculate(artifact)
            if actual_checksum.lower() != record.checksum.lower():
                raise BackupIntegrityError(
                    f"Backup {record.backup_id} checksum mismatch",
                    backup_id=record.backup_id,
                    expected=record.checksum,
                    actual=actual_checksum
                )

        logger.debug(f"Sidecar record validated for {record.backup_id}")
        return record

    def validate_container(self, runtime: ContainerRuntime, container: str) -> None:
        """
        Raises:
            BackupValidationError: If the container does not exist
        """
        if not runtime.exists(container):
            raise BackupValidationError(
                f"Container not found: {container}",
                container=container
            )

    def validate_wal_archive(self, path: Union[str, Path]) -> Path:
        """
        Raises:
            BackupValidationError: If the WAL archive directory is missing
        """
        path = Path(path)
        if not path.is_dir():
            raise BackupValidationError(
                f"WAL archive not found: {path}",
                validation_errors=[f"{path} is not a directory"]
            )
        return path
