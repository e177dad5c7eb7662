"""
Backup Manager

Main orchestration class for backup and recovery operations. Wires the
container runtime, the database control interface and the engines from a
single BackupRecoveryConfig, and converts workflow failures into result
models for callers that prefer not to handle exceptions.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Union

from ..config import BackupRecoveryConfig
from ..exceptions import BackupRecoveryError
from ..models.entities import (
    BackupKind,
    BackupRecord,
    BackupResult,
    RecoveryState,
    RestoreResult,
    StateTransition,
    WALArchiveConfiguration,
    WALArchiveStatus,
    WALIncrement,
)
from ..models.parameters import BackupParams, PITRParams, RestoreParams
from ..runtime.base import ContainerRuntime
from ..runtime.docker_runtime import get_runtime
from .backup_engine import BackupEngine
from .database import DatabaseControl
from .pitr import PITROrchestrator
from .readiness import ReadinessMonitor
from .restore_engine import RestoreEngine
from .safety_net import SafetyNetManager
from .session import RecoverySession
from .validator import BackupValidator
from .wal_archive import WALArchiveManager

logger = logging.getLogger(__name__)

Observer = Callable[[StateTransition], None]


class BackupManager:
    """
    Manages backup, WAL archiving, restore and PITR for a database container.

    This is the main entry point for all operations. Backup, restore and
    PITR return result models; WAL and safety snapshot helpers return their
    values directly and raise BackupRecoveryError subclasses on failure.

    Example:
        ```python
        manager = BackupManager(BackupRecoveryConfig(container="PG-timescale"))

        # Create backup
        result = manager.create_backup(BackupParams(kind=BackupKind.LOGICAL))

        # Restore it
        restore = manager.restore_full(BackupKind.LOGICAL, result.record.storage_path)
        if not restore.success:
            print(f"Failed in {restore.failed_state}: {restore.error_message}")
        ```
    """

    def __init__(
        self,
        config: Optional[BackupRecoveryConfig] = None,
        runtime: Optional[ContainerRuntime] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Optional[Callable[[float], None]] = None
    ):
        """
        Initialize BackupManager.

        Args:
            config: Backup configuration (uses defaults if None)
            runtime: Container runtime adapter (built from config.runtime if None)
            clock: Source of "now" for timestamps and retention
            sleep: Sleep function for retries and readiness polling
        """
        self._config = config or BackupRecoveryConfig()
        self._runtime = runtime or get_runtime(self._config.runtime, self._config.helper_image)
        self._clock = clock or datetime.now

        extra = {"sleep": sleep} if sleep is not None else {}
        self._database = DatabaseControl(self._runtime, self._config, **extra)
        self._readiness = ReadinessMonitor(self._database, **extra)
        self._safety_net = SafetyNetManager(self._runtime, clock=self._clock)
        self._validator = BackupValidator(self._config)

        self._backup_engine = BackupEngine(self._database, self._runtime, self._config, clock=self._clock)
        self._wal_manager = WALArchiveManager(self._database, self._runtime, self._config, clock=self._clock)
        self._restore_engine = RestoreEngine(
            self._database,
            self._runtime,
            self._config,
            safety_net=self._safety_net,
            readiness=self._readiness,
            validator=self._validator,
            clock=self._clock
        )
        self._pitr = PITROrchestrator(self._restore_engine)

        logger.info(f"BackupManager initialized: {self._config!r}")

    @property
    def config(self) -> BackupRecoveryConfig:
        return self._config

    def _container(self, container: Optional[str]) -> str:
        return container or self._config.container

    @staticmethod
    def _elapsed_ms(start_time: datetime) -> float:
        return max((datetime.now() - start_time).total_seconds() * 1000, 0.0)

    # ------------------------------------------------------------------
    # Full backups
    # ------------------------------------------------------------------

    def create_backup(
        self,
        params: Optional[BackupParams] = None,
        container: Optional[str] = None
    ) -> BackupResult:
        """
        Create a full backup.

        Args:
            params: Backup parameters (uses defaults if None)
            container: Source container (config default if None)

        Returns:
            BackupResult; success is False when the backup could not start
            or its record was finalized as failed
        """
        start_time = datetime.now()
        params = params or BackupParams()
        container = self._container(container)

        try:
            record, deleted = self._backup_engine.create_backup(
                params.kind,
                container,
                output_dir=params.output_dir,
                retention_days=params.retention_days
            )
            return BackupResult(
                success=record.is_completed,
                record=record,
                execution_time_ms=self._elapsed_ms(start_time),
                error_message=record.error_message,
                deleted_by_retention=deleted
            )

        except BackupRecoveryError as e:
            logger.error(f"{params.kind.value} backup of {container} failed: {e}")
            return BackupResult(
                success=False,
                execution_time_ms=self._elapsed_ms(start_time),
                error_type=type(e).__name__,
                error_message=e.message
            )

    def list_backups(self, output_dir: Optional[Union[str, Path]] = None) -> List[BackupRecord]:
        return self._backup_engine.list_backups(output_dir)

    def apply_retention(
        self,
        output_dir: Optional[Union[str, Path]] = None,
        retention_days: Optional[int] = None
    ) -> List[str]:
        return self._backup_engine.apply_retention(output_dir, retention_days)

    # ------------------------------------------------------------------
    # WAL archive
    # ------------------------------------------------------------------

    def setup_wal_archiving(
        self,
        container: Optional[str] = None,
        archive_dir: Optional[Union[str, Path]] = None
    ) -> WALArchiveConfiguration:
        return self._wal_manager.setup(self._container(container), archive_dir)

    def wal_status(self, container: Optional[str] = None) -> WALArchiveStatus:
        return self._wal_manager.status(self._container(container))

    def capture_wal(
        self,
        container: Optional[str] = None,
        archive_dir: Optional[Union[str, Path]] = None
    ) -> WALIncrement:
        return self._wal_manager.capture_increment(self._container(container), archive_dir)

    def archive_live_wal(
        self,
        container: Optional[str] = None,
        archive_dir: Optional[Union[str, Path]] = None
    ) -> Path:
        return self._wal_manager.archive_live_wal(self._container(container), archive_dir)

    def cleanup_wal_source(self, container: Optional[str] = None, confirmed: bool = False) -> int:
        return self._wal_manager.cleanup_source(self._container(container), confirmed)

    # ------------------------------------------------------------------
    # Restore and PITR
    # ------------------------------------------------------------------

    def restore_full(
        self,
        kind: BackupKind,
        backup_path: Union[str, Path],
        container: Optional[str] = None,
        params: Optional[RestoreParams] = None,
        observer: Optional[Observer] = None
    ) -> RestoreResult:
        """
        Restore a full backup into a container.

        Returns:
            RestoreResult with the final state and transition trace
        """
        start_time = datetime.now()
        container = self._container(container)
        workflow = "logical-restore" if kind == BackupKind.LOGICAL else "physical-restore"
        session = self._restore_engine.new_session(workflow, container, observer)

        try:
            self._restore_engine.restore_full(kind, backup_path, container, params, session=session)
        except BackupRecoveryError as e:
            logger.error(f"Restore of {backup_path} failed: {e}")
        except Exception as e:
            logger.exception(f"Unexpected error restoring {backup_path}")
            session.fail(BackupRecoveryError(str(e), container=container))

        return self._restore_result(session, start_time)

    def restore_pitr(
        self,
        base_backup: Union[str, Path],
        wal_archive: Union[str, Path],
        container: Optional[str] = None,
        params: Optional[PITRParams] = None,
        observer: Optional[Observer] = None
    ) -> RestoreResult:
        """
        Run point-in-time recovery into a container.

        Returns:
            RestoreResult with the final state and transition trace
        """
        start_time = datetime.now()
        container = self._container(container)
        params = params or PITRParams()
        session = self._pitr.new_session(container, observer)

        try:
            self._pitr.restore_pitr(base_backup, wal_archive, container, params=params, session=session)
        except BackupRecoveryError as e:
            logger.error(f"PITR from {base_backup} failed: {e}")
        except Exception as e:
            logger.exception(f"Unexpected error during PITR from {base_backup}")
            session.fail(BackupRecoveryError(str(e), container=container))

        return self._restore_result(session, start_time)

    def _restore_result(self, session: RecoverySession, start_time: datetime) -> RestoreResult:
        error = session.error
        return RestoreResult(
            success=session.state == RecoveryState.DONE,
            workflow=session.workflow,
            final_state=session.state,
            failed_state=session.failed_state,
            transitions=list(session.history),
            safety_snapshot_path=session.safety_snapshot_path,
            server_version=session.server_version,
            observed_time=session.observed_time,
            execution_time_ms=self._elapsed_ms(start_time),
            error_type=type(error).__name__ if error else None,
            error_message=error.message if error else None,
            warnings=list(session.warnings)
        )

    # ------------------------------------------------------------------
    # Safety snapshots
    # ------------------------------------------------------------------

    def list_safety_snapshots(self, dest_dir: Optional[Union[str, Path]] = None) -> List[Path]:
        return self._safety_net.list_snapshots(dest_dir or self._config.get_safety_snapshot_dir())

    def release_safety_snapshot(self, snapshot_path: Union[str, Path], confirmed: bool = False) -> bool:
        return self._safety_net.release(snapshot_path, confirmed)
