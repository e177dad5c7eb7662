"""
Point-in-Time Recovery Orchestrator

Restores a base backup, stages the archived WAL next to it and lets the
server replay up to an optional recovery target:

    Validating -> Snapshotting -> Stopped -> Clearing -> RestoringBase
               -> ConfiguringRecovery -> Starting -> AwaitingReady
               -> Verifying -> Done

The orchestrator never decides when replay is finished; it writes the
recovery configuration and observes readiness. Validation proves the WAL
needed for the target is present and gap-free before the volume is
touched.
"""

import logging
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from ..exceptions import (
    BackupRecoveryError,
    BackupValidationError,
    ConnectivityError,
    ContainerStateError,
    DestructiveOperationError,
)
from ..models.entities import BaseBackupInfo, RecoveryState, RecoveryTarget, RecoveryTargetKind
from ..models.parameters import PITRParams
from ..utils.wal import (
    check_contiguity,
    collect_segment_files,
    parse_lsn,
    parse_segment_name,
    segment_for_lsn,
    segment_name,
)
from .restore_engine import RestoreEngine
from .session import RecoverySession

logger = logging.getLogger(__name__)

S = RecoveryState

RECOVERY_SIGNAL = "recovery.signal"
AUTO_CONF = "postgresql.auto.conf"


@dataclass
class WALPlan:
    """WAL files a recovery session will stage, and the range they must cover."""
    first_segment: int
    last_segment: int
    segment_files: Dict[str, Path] = field(default_factory=dict)
    history_files: List[Path] = field(default_factory=list)
    unreachable: List[str] = field(default_factory=list)


def build_recovery_settings(
    restore_wal_dir: str,
    target: Optional[RecoveryTarget] = None,
    target_action: str = "promote"
) -> str:
    """
    Lines appended to postgresql.auto.conf for a recovery run.

    At most one recovery_target_* line is written.
    """
    lines = [
        "",
        "# Point-in-time recovery",
        f"restore_command = 'cp {restore_wal_dir}/%f %p'",
        f"recovery_target_action = '{target_action}'",
    ]
    if target is not None:
        lines.append(target.to_setting_line())
    return "\n".join(lines) + "\n"


class PITROrchestrator:
    """
    Point-in-time recovery of a container from a base backup and WAL archive.

    Example:
        ```python
        pitr = PITROrchestrator(restore_engine)
        session = pitr.restore_pitr(
            "./backups/basebackup_20260108_120000",
            "./backups/wal",
            "PG-timescale",
            target=RecoveryTarget(kind=RecoveryTargetKind.TIME, value="2026-01-08 14:30:00")
        )
        print(session.observed_time)
        ```
    """

    def __init__(self, restore_engine: RestoreEngine):
        self.engine = restore_engine
        self.config = restore_engine.config
        self.database = restore_engine.database
        self.runtime = restore_engine.runtime
        self.validator = restore_engine.validator

    def new_session(self, container: str, observer=None) -> RecoverySession:
        return self.engine.new_session("pitr", container, observer)

    def restore_pitr(
        self,
        base_backup: Union[str, Path],
        wal_archive: Union[str, Path],
        container: str,
        target: Optional[RecoveryTarget] = None,
        params: Optional[PITRParams] = None,
        session: Optional[RecoverySession] = None
    ) -> RecoverySession:
        """
        Run point-in-time recovery.

        Args:
            base_backup: Physical base backup (directory or tarball)
            wal_archive: Directory holding archived WAL (searched recursively)
            container: Target container
            target: Where replay stops; replays all available WAL if None
            params: Recovery options (defaults if None)
            session: Session to drive; a new one is created if None

        Returns:
            The session, in state Done

        Raises:
            BackupRecoveryError: Any failure; the session is left in state
                Failed and the error names the failed state and snapshot
        """
        params = params or PITRParams()
        if target is None:
            target = params.target
        session = session or self.new_session(container)
        base_backup = Path(base_backup)
        wal_archive = Path(wal_archive)

        logger.info(
            f"Starting PITR of {container} from {base_backup} with WAL {wal_archive}"
            + (f", target {target}" if target else ", replaying all WAL")
        )
        try:
            info, plan = self._validate(base_backup, wal_archive, container, target, params)
            if plan.unreachable:
                gap = segment_name(info.timeline, plan.last_segment + 1, self.config.wal_segment_size_bytes)
                message = (
                    f"WAL archive is missing {gap}; "
                    f"{len(plan.unreachable)} later segment(s) are not staged and replay stops before the gap"
                )
                session.warnings.append(message)
                logger.warning(message)

            volume = self.engine.take_snapshot(session, container)
            self.engine.stop_and_clear(session, container, volume)

            session.advance(S.RESTORING_BASE)
            self.engine.restore_base(session, info, volume)

            session.advance(S.CONFIGURING_RECOVERY)
            self._configure_recovery(session, info, plan, volume, target, params.target_action)

            self.engine.start(session, container)
            logger.info("Server started in recovery mode, replaying WAL")
            self.engine.await_ready(session, container, params)

            self.engine.verify(session, container)
            if target is not None and target.kind == RecoveryTargetKind.TIME:
                self._observe_time(session, container, target)

            session.advance(S.DONE)
        except BackupRecoveryError as e:
            session.fail(e)
            raise

        logger.info(f"PITR of {container} completed")
        return session

    # ------------------------------------------------------------------
    # Validating
    # ------------------------------------------------------------------

    def _validate(
        self,
        base_backup: Path,
        wal_archive: Path,
        container: str,
        target: Optional[RecoveryTarget],
        params: PITRParams
    ) -> Tuple[BaseBackupInfo, WALPlan]:
        info = self.validator.inspect_physical(base_backup)
        self.validator.validate_wal_archive(wal_archive)
        verify = params.verify_checksum and self.config.verify_checksum_before_restore
        self.validator.validate_sidecar(base_backup, verify_checksum=verify)
        self.validator.validate_container(self.runtime, container)

        if info.start_lsn is None:
            raise BackupValidationError(
                f"Cannot determine the start LSN of {base_backup}",
                validation_errors=["no backup_label or backup_manifest found"]
            )

        plan = self.plan_wal(info, wal_archive, target)
        logger.info(
            f"WAL plan: {len(plan.segment_files)} archived segment(s), "
            f"contiguous from base start {info.start_lsn}"
        )
        return info, plan

    def plan_wal(
        self,
        info: BaseBackupInfo,
        wal_archive: Path,
        target: Optional[RecoveryTarget] = None
    ) -> WALPlan:
        """
        Work out which WAL the recovery needs and prove it is all there.

        For an LSN target, every segment from the base backup's start segment
        through the target's segment must be present. Time, name and
        transaction id targets cannot be located in WAL without replaying
        it, so only the unbroken run from the start segment is required and
        staged; archived segments past the first gap are reported as
        unreachable and replay stops at the gap. Segments bundled with the
        base backup count as present.

        Raises:
            BackupValidationError: If an LSN target precedes the base backup
            BackupIntegrityError: If a required segment is missing
        """
        segment_size = self.config.wal_segment_size_bytes
        first = segment_for_lsn(info.start_lsn, segment_size)

        last = None
        if target is not None and target.kind == RecoveryTargetKind.LSN:
            if parse_lsn(target.value) < parse_lsn(info.start_lsn):
                raise BackupValidationError(
                    f"Recovery target LSN {target.value} precedes the base backup start {info.start_lsn}",
                    validation_errors=["recovery_target_lsn is earlier than START WAL LOCATION"]
                )
            last = segment_for_lsn(target.value, segment_size)

        files = collect_segment_files(wal_archive)
        needed = {}
        for name, path in files.items():
            timeline, number = parse_segment_name(name, segment_size)
            if number >= first and timeline >= info.timeline:
                needed[name] = path

        available = {parse_segment_name(n, segment_size)[1] for n in needed}
        available.update(info.bundled_segments)

        unreachable = []
        if last is None:
            last = first
            while last + 1 in available:
                last += 1
            unreachable = sorted(
                (n for n in needed if parse_segment_name(n, segment_size)[1] > last),
                key=lambda n: parse_segment_name(n, segment_size)[1]
            )
            for name in unreachable:
                del needed[name]

        check_contiguity(available, first, last, info.timeline, segment_size)

        return WALPlan(
            first_segment=first,
            last_segment=last,
            segment_files=needed,
            unreachable=unreachable,
            history_files=sorted(p for p in wal_archive.rglob("*.history") if p.is_file())
        )

    # ------------------------------------------------------------------
    # ConfiguringRecovery
    # ------------------------------------------------------------------

    def _configure_recovery(
        self,
        session: RecoverySession,
        info: BaseBackupInfo,
        plan: WALPlan,
        volume: str,
        target: Optional[RecoveryTarget],
        target_action: str
    ) -> None:
        settings = build_recovery_settings(self.config.recovery_wal_directory, target, target_action)

        with tempfile.TemporaryDirectory(prefix="pgops_recovery_") as staging_name:
            staging = Path(staging_name)
            (staging / RECOVERY_SIGNAL).touch()
            (staging / AUTO_CONF).write_text(info.auto_conf + settings)

            wal_dir = staging / self.config.recovery_wal_subdir
            wal_dir.mkdir()
            for name, path in plan.segment_files.items():
                shutil.copy2(path, wal_dir / name)
            for path in plan.history_files:
                shutil.copy2(path, wal_dir / path.name)

            try:
                self.runtime.copy_into_volume(volume, staging, owner=self.config.data_owner)
            except ContainerStateError as e:
                raise DestructiveOperationError(
                    f"Writing recovery configuration into volume {volume} failed: {e.message}",
                    container=session.container,
                    step=S.CONFIGURING_RECOVERY.value
                ) from e

        logger.info(
            f"Recovery configured: {len(plan.segment_files)} segment(s) staged in "
            f"{self.config.recovery_wal_directory}"
            + (f", {target.setting_name} = {target.value}" if target else "")
        )

    def _observe_time(self, session: RecoverySession, container: str, target: RecoveryTarget) -> None:
        try:
            session.observed_time = self.database.current_time(container)
        except ConnectivityError as e:
            session.warnings.append(f"Could not read database time: {e.message}")
            logger.warning(session.warnings[-1])
            return
        logger.info(f"Database time after recovery: {session.observed_time} (target was {target.value})")
