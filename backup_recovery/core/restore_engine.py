"""
Restore Engine

Full restore of a logical or physical backup into a container, driven by
an explicit state machine:

    Validating -> Importing -> AwaitingReady -> Verifying -> Done      (logical)
    Validating -> Snapshotting -> Stopped -> Clearing -> Copying
               -> Starting -> AwaitingReady -> Verifying -> Done       (physical)

Any state may fail. Validation failures leave the system untouched; a
failure after Stopped leaves the volume in an undefined state and the error
carries the safety snapshot path for manual rollback. Nothing is rolled
back automatically.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, Union

from ..config import BackupRecoveryConfig
from ..exceptions import (
    BackupRecoveryError,
    BackupValidationError,
    ContainerStateError,
    DestructiveOperationError,
    OperationTimeoutError,
)
from ..models.entities import BackupKind, BaseBackupInfo, RecoveryState, StateTransition
from ..models.parameters import RestoreParams
from ..runtime.base import ContainerRuntime
from .database import DatabaseControl
from .readiness import ReadinessMonitor
from .safety_net import SafetyNetManager
from .session import RecoverySession
from .validator import BackupValidator

logger = logging.getLogger(__name__)

S = RecoveryState


class RestoreEngine:
    """
    Restore full backups into a database container.

    The building blocks used by the physical path (snapshot, stop, clear,
    restore base, start, wait, verify) are public so the PITR orchestrator
    runs exactly the same steps.

    Example:
        ```python
        engine = RestoreEngine(database, runtime, config)
        session = engine.restore_full(
            BackupKind.PHYSICAL,
            "./backups/basebackup_20260108_120000",
            "PG-timescale"
        )
        print(session.server_version)
        ```
    """

    def __init__(
        self,
        database: DatabaseControl,
        runtime: ContainerRuntime,
        config: BackupRecoveryConfig,
        safety_net: Optional[SafetyNetManager] = None,
        readiness: Optional[ReadinessMonitor] = None,
        validator: Optional[BackupValidator] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.database = database
        self.runtime = runtime
        self.config = config
        self.clock = clock or datetime.now
        self.safety_net = safety_net or SafetyNetManager(runtime, clock=self.clock)
        self.readiness = readiness or ReadinessMonitor(database)
        self.validator = validator or BackupValidator(config)

    def new_session(
        self,
        workflow: str,
        container: str,
        observer: Optional[Callable[[StateTransition], None]] = None
    ) -> RecoverySession:
        return RecoverySession(
            workflow=workflow,
            container=container,
            started_at=self.clock(),
            observer=observer
        )

    def restore_full(
        self,
        kind: BackupKind,
        backup_path: Union[str, Path],
        container: str,
        params: Optional[RestoreParams] = None,
        session: Optional[RecoverySession] = None
    ) -> RecoverySession:
        """
        Restore a full backup.

        Args:
            kind: LOGICAL (SQL dump) or PHYSICAL (base backup)
            backup_path: Artifact to restore
            container: Target container
            params: Restore options (defaults if None)
            session: Session to drive; a new one is created if None

        Returns:
            The session, in state Done

        Raises:
            BackupRecoveryError: Any failure; failed_state and
                safety_snapshot_path are set on the error and the session
                is left in state Failed
        """
        params = params or RestoreParams()
        workflow = "logical-restore" if kind == BackupKind.LOGICAL else "physical-restore"
        session = session or self.new_session(workflow, container)
        backup_path = Path(backup_path)

        logger.info(f"Starting {workflow} of {backup_path} into {container}")
        try:
            if kind == BackupKind.LOGICAL:
                self._validate_logical(session, backup_path, container, params)
                self._import(session, backup_path, container)
            else:
                info = self._validate_physical(backup_path, container, params)
                volume = self.take_snapshot(session, container)
                self.stop_and_clear(session, container, volume)
                session.advance(S.COPYING)
                self.restore_base(session, info, volume)
                self.start(session, container)

            self.await_ready(session, container, params)
            self.verify(session, container)
            session.advance(S.DONE)
        except BackupRecoveryError as e:
            session.fail(e)
            raise

        logger.info(f"{workflow} of {backup_path.name} into {container} completed")
        return session

    # ------------------------------------------------------------------
    # Validating
    # ------------------------------------------------------------------

    def _validate_common(self, backup_path: Path, container: str, params: RestoreParams) -> None:
        verify = params.verify_checksum and self.config.verify_checksum_before_restore
        self.validator.validate_sidecar(backup_path, verify_checksum=verify)
        self.validator.validate_container(self.runtime, container)

    def _validate_logical(
        self,
        session: RecoverySession,
        backup_path: Path,
        container: str,
        params: RestoreParams
    ) -> None:
        self.validator.validate_artifact(backup_path, BackupKind.LOGICAL)
        self._validate_common(backup_path, container, params)
        self.database.ensure_reachable(container)

        tables = self.database.count_user_tables(container)
        if tables > 0:
            message = f"Target {container} already holds {tables} user table(s); the dump is applied on top"
            if params.require_empty_target:
                raise BackupValidationError(
                    f"Target {container} is not empty ({tables} user tables)",
                    container=container,
                    validation_errors=["require_empty_target is set"]
                )
            session.warnings.append(message)
            logger.warning(message)

    def _validate_physical(self, backup_path: Path, container: str, params: RestoreParams) -> BaseBackupInfo:
        info = self.validator.inspect_physical(backup_path)
        self._validate_common(backup_path, container, params)
        return info

    # ------------------------------------------------------------------
    # Logical path
    # ------------------------------------------------------------------

    def _import(self, session: RecoverySession, backup_path: Path, container: str) -> None:
        session.advance(S.IMPORTING)
        with open(backup_path, "rb") as dump:
            result = self.database.replay_dump(container, dump)
        if not result.ok:
            raise DestructiveOperationError(
                f"Import of {backup_path.name} failed: {result.diagnostic}",
                container=container,
                step=S.IMPORTING.value
            )

    # ------------------------------------------------------------------
    # Shared physical steps
    # ------------------------------------------------------------------

    def take_snapshot(self, session: RecoverySession, container: str) -> str:
        """
        Snapshotting: archive the live data volume.

        Returns:
            The data volume name

        Raises:
            ContainerStateError: If the volume cannot be found or archived
        """
        session.advance(S.SNAPSHOTTING)
        volume = self.runtime.resolve_volume(container, self.config.data_directory)
        if not volume:
            raise ContainerStateError(
                f"No volume mounted at {self.config.data_directory} in '{container}'",
                container=container,
                operation="inspect"
            )
        session.attach_snapshot(self.safety_net.snapshot(volume, self.config.get_safety_snapshot_dir()))
        return volume

    def stop_and_clear(self, session: RecoverySession, container: str, volume: str) -> None:
        """Stopped and Clearing. Both require the session's safety snapshot."""
        session.advance(S.STOPPED)
        self.runtime.stop(container)

        session.advance(S.CLEARING)
        try:
            self.runtime.clear_volume(volume)
        except ContainerStateError as e:
            raise DestructiveOperationError(
                f"Clearing volume {volume} failed: {e.message}",
                container=container,
                step=S.CLEARING.value
            ) from e

    def restore_base(self, session: RecoverySession, info: BaseBackupInfo, volume: str) -> None:
        """Write a base backup into the cleared volume (Copying or RestoringBase)."""
        owner = self.config.data_owner
        try:
            if info.layout == "plain":
                self.runtime.copy_into_volume(volume, Path(info.path), owner=owner)
            else:
                self.runtime.extract_into_volume(volume, Path(info.base_archive), owner=owner)
                if info.wal_archive:
                    self.runtime.extract_into_volume(volume, Path(info.wal_archive), subdir="pg_wal", owner=owner)
        except ContainerStateError as e:
            raise DestructiveOperationError(
                f"Restoring {info.path} into volume {volume} failed: {e.message}",
                container=session.container,
                step=session.state.value
            ) from e
        logger.info(f"Base backup {info.path} restored into volume {volume}")

    def start(self, session: RecoverySession, container: str) -> None:
        session.advance(S.STARTING)
        self.runtime.start(container)

    def await_ready(self, session: RecoverySession, container: str, params: RestoreParams) -> None:
        """
        AwaitingReady.

        Raises:
            OperationTimeoutError: If the server is not ready within the bound
        """
        session.advance(S.AWAITING_READY)
        timeout = params.ready_timeout if params.ready_timeout is not None else self.config.ready_timeout
        poll = params.poll_interval if params.poll_interval is not None else self.config.ready_poll_interval

        result = self.readiness.wait_until_ready(container, timeout=timeout, poll_interval=poll)
        if not result.ready:
            raise OperationTimeoutError(
                f"'{container}' did not accept connections within {timeout}s",
                container=container,
                timeout_seconds=timeout,
                elapsed_seconds=result.elapsed_seconds
            )

    def verify(self, session: RecoverySession, container: str) -> None:
        """
        Verifying: the server answers and reports its databases.

        Raises:
            ConnectivityError: If the restored server cannot be queried
        """
        session.advance(S.VERIFYING)
        session.server_version = self.database.server_version(container)
        databases = self.database.list_databases(container)
        logger.info(f"Restored server: {session.server_version}")
        logger.info(f"Databases: {', '.join(databases) if databases else '(none)'}")
