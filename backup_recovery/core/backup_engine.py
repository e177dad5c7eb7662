"""
Backup Engine

Creates full backups of the database running in a container:
- logical: pg_dumpall streamed into full_backup_<ts>.sql
- physical: pg_basebackup (tar format, compressed) copied out into basebackup_<ts>/

Each artifact gets a JSON sidecar with its BackupRecord. A failing backup is
reported through the record (status failed, raw diagnostic kept), never by
raising, so schedulers calling this keep running. After each backup the
retention policy removes artifacts strictly older than the retention window.
"""

import json
import logging
import shutil
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Tuple, Union

from ..config import BackupRecoveryConfig
from ..exceptions import ConnectivityError, ContainerStateError
from ..models.entities import BackupKind, BackupRecord, BackupStatus
from ..runtime.base import ContainerRuntime
from ..utils.checksum import ChecksumCalculator, artifact_size
from ..utils.retention import RetentionPolicyManager
from .database import DatabaseControl

logger = logging.getLogger(__name__)

LOGICAL_PREFIX = "full_backup_"
PHYSICAL_PREFIX = "basebackup_"
SIDECAR_SUFFIX = ".json"


class BackupEngine:
    """
    Full backup creation, listing and retention.

    Example:
        ```python
        engine = BackupEngine(database, runtime, config)

        record = engine.create_logical_backup("PG-timescale", "./backups", retention_days=30)
        if record.is_completed:
            print(f"{record.storage_path}: {record.size_mb:.1f} MB")
        else:
            print(f"Backup failed: {record.error_message}")
        ```
    """

    def __init__(
        self,
        database: DatabaseControl,
        runtime: ContainerRuntime,
        config: BackupRecoveryConfig,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.database = database
        self.runtime = runtime
        self.config = config
        self.clock = clock or datetime.now
        self._checksum = ChecksumCalculator()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def create_logical_backup(
        self,
        container: str,
        output_dir: Optional[Union[str, Path]] = None,
        retention_days: Optional[int] = None
    ) -> BackupRecord:
        """
        Dump every database of the server into a SQL file.

        Args:
            container: Source container
            output_dir: Destination directory (config default if None)
            retention_days: Retention window (config default if None, 0 disables)

        Returns:
            The finalized BackupRecord

        Raises:
            ConnectivityError: If the database is unreachable before starting
        """
        record, _ = self.create_backup(BackupKind.LOGICAL, container, output_dir, retention_days)
        return record

    def create_physical_backup(
        self,
        container: str,
        output_dir: Optional[Union[str, Path]] = None,
        retention_days: Optional[int] = None
    ) -> BackupRecord:
        """
        Take a base backup and copy it out of the container.

        The in-container scratch directory is removed whatever the outcome.

        Raises:
            ConnectivityError: If the database is unreachable before starting
        """
        record, _ = self.create_backup(BackupKind.PHYSICAL, container, output_dir, retention_days)
        return record

    def create_backup(
        self,
        kind: BackupKind,
        container: str,
        output_dir: Optional[Union[str, Path]] = None,
        retention_days: Optional[int] = None
    ) -> Tuple[BackupRecord, List[str]]:
        """
        Create a backup of either kind and apply retention.

        Returns:
            Tuple of (finalized record, artifacts deleted by retention)
        """
        output_dir = Path(output_dir) if output_dir is not None else self.config.get_backup_root_path()
        output_dir.mkdir(parents=True, exist_ok=True)

        self.database.ensure_reachable(container)

        if kind == BackupKind.LOGICAL:
            record = self._run_logical(container, output_dir)
        else:
            record = self._run_physical(container, output_dir)

        if retention_days is None:
            retention_days = self.config.retention_days
        deleted = self.apply_retention(output_dir, retention_days)

        return record, deleted

    def list_backups(self, output_dir: Optional[Union[str, Path]] = None) -> List[BackupRecord]:
        """Backup records found in output_dir, oldest first."""
        return [record for record, _ in self._scan(output_dir)]

    def apply_retention(
        self,
        output_dir: Optional[Union[str, Path]] = None,
        retention_days: Optional[int] = None
    ) -> List[str]:
        """
        Delete artifacts (and their sidecars) the retention policy rejects.

        Returns:
            Paths of the deleted artifacts
        """
        if retention_days is None:
            retention_days = self.config.retention_days

        policy = RetentionPolicyManager(
            retention_days=retention_days,
            retention_count=self.config.retention_count,
            min_backups_to_keep=self.config.min_backups_to_keep,
            clock=self.clock
        )
        if not policy.enabled:
            return []

        scanned = self._scan(output_dir)
        sidecars = {record.backup_id + record.kind.value: sidecar for record, sidecar in scanned}
        _, to_delete = policy.apply_retention_policy([record for record, _ in scanned])

        deleted = []
        for record in to_delete:
            sidecar = sidecars[record.backup_id + record.kind.value]
            artifact = self._artifact_for_sidecar(sidecar, record.kind)
            self._remove(artifact)
            sidecar.unlink(missing_ok=True)
            deleted.append(str(artifact))
            logger.info(f"Retention removed {artifact.name} (created {record.created_at})")

        return deleted

    # ------------------------------------------------------------------
    # Backup flows
    # ------------------------------------------------------------------

    def _run_logical(self, container: str, output_dir: Path) -> BackupRecord:
        backup_id = self._new_backup_id(output_dir, LOGICAL_PREFIX, ".sql")
        artifact = output_dir / f"{LOGICAL_PREFIX}{backup_id}.sql"
        record = self._start_record(backup_id, BackupKind.LOGICAL, container, artifact)

        logger.info(f"Creating logical backup of {container} -> {artifact}")
        try:
            with open(artifact, "wb") as out:
                result = self.database.dump_all(container, out)
        except (ContainerStateError, OSError) as e:
            return self._finish(record, artifact, False, str(e))

        return self._finish(record, artifact, result.ok, result.diagnostic)

    def _run_physical(self, container: str, output_dir: Path) -> BackupRecord:
        backup_id = self._new_backup_id(output_dir, PHYSICAL_PREFIX, "")
        artifact = output_dir / f"{PHYSICAL_PREFIX}{backup_id}"
        record = self._start_record(backup_id, BackupKind.PHYSICAL, container, artifact)
        scratch = f"{self.config.container_scratch_dir.rstrip('/')}/{PHYSICAL_PREFIX}{backup_id}"

        logger.info(f"Creating physical backup of {container} -> {artifact}")
        with self._scratch_dir(container, scratch):
            try:
                result = self.database.base_backup(container, scratch)
                ok, diagnostic = result.ok, result.diagnostic
                if ok:
                    self.runtime.copy_out(container, f"{scratch}/.", artifact)
            except (ContainerStateError, OSError) as e:
                ok, diagnostic = False, str(e)

        return self._finish(record, artifact, ok, diagnostic)

    @contextmanager
    def _scratch_dir(self, container: str, path: str) -> Iterator[str]:
        """Scratch location inside the container, removed on every exit path."""
        try:
            yield path
        finally:
            result = self.runtime.exec(container, ["rm", "-rf", path])
            if not result.ok:
                logger.warning(f"Could not remove {path} in {container}: {result.diagnostic}")

    # ------------------------------------------------------------------
    # Records and sidecars
    # ------------------------------------------------------------------

    def _new_backup_id(self, output_dir: Path, prefix: str, suffix: str) -> str:
        base_id = self.clock().strftime("%Y%m%d_%H%M%S")
        backup_id = base_id
        n = 1
        while (
            (output_dir / f"{prefix}{backup_id}{suffix}").exists()
            or (output_dir / f"{prefix}{backup_id}{SIDECAR_SUFFIX}").exists()
        ):
            backup_id = f"{base_id}_{n}"
            n += 1
        return backup_id

    def _start_record(self, backup_id: str, kind: BackupKind, container: str, artifact: Path) -> BackupRecord:
        try:
            version = self.database.server_version(container)
        except ConnectivityError as e:
            logger.warning(f"Could not read server version from {container}: {e.message}")
            version = None

        record = BackupRecord(
            backup_id=backup_id,
            kind=kind,
            created_at=self.clock(),
            database_version=version,
            storage_path=str(artifact),
            container=container
        )
        self._write_sidecar(record, artifact)
        return record

    def _finish(self, record: BackupRecord, artifact: Path, ok: bool, diagnostic: str) -> BackupRecord:
        size = artifact_size(artifact)

        if ok and size > 0:
            record = record.finalize(
                BackupStatus.COMPLETED,
                size_bytes=size,
                checksum=self._checksum.calculate(artifact)
            )
            logger.info(f"Backup {record.backup_id} completed ({record.size_mb:.2f} MB)")
        else:
            self._remove(artifact)
            message = diagnostic or ("backup produced an empty artifact" if ok else "backup command failed")
            record = record.finalize(BackupStatus.FAILED, error_message=message)
            logger.error(f"Backup {record.backup_id} failed: {message}")

        self._write_sidecar(record, artifact)
        return record

    @staticmethod
    def _sidecar_for_artifact(artifact: Path) -> Path:
        if artifact.suffix == ".sql":
            return artifact.with_suffix(SIDECAR_SUFFIX)
        return artifact.parent / f"{artifact.name}{SIDECAR_SUFFIX}"

    @staticmethod
    def _artifact_for_sidecar(sidecar: Path, kind: BackupKind) -> Path:
        if kind == BackupKind.LOGICAL:
            return sidecar.with_suffix(".sql")
        return sidecar.with_suffix("")

    def _write_sidecar(self, record: BackupRecord, artifact: Path) -> None:
        sidecar = self._sidecar_for_artifact(artifact)
        sidecar.write_text(json.dumps(record.to_sidecar(), indent=2))

    def _scan(self, output_dir: Optional[Union[str, Path]]) -> List[Tuple[BackupRecord, Path]]:
        output_dir = Path(output_dir) if output_dir is not None else self.config.get_backup_root_path()
        if not output_dir.is_dir():
            return []

        found = []
        for prefix in (LOGICAL_PREFIX, PHYSICAL_PREFIX):
            for sidecar in output_dir.glob(f"{prefix}*{SIDECAR_SUFFIX}"):
                try:
                    record = BackupRecord.from_sidecar(json.loads(sidecar.read_text()))
                except (ValueError, KeyError) as e:
                    logger.warning(f"Skipping unreadable sidecar {sidecar.name}: {e}")
                    continue
                found.append((record, sidecar))

        return sorted(found, key=lambda item: item[0].created_at)

    @staticmethod
    def _remove(path: Path) -> None:
        if path.is_dir():
            shutil.rmtree(path)
        elif path.exists():
            path.unlink()
