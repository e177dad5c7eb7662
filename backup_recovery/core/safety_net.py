"""
Safety Net Manager

Takes a compressed archive of the live data volume before anything
destructive happens to it. The archive is the operator's only way back
after a failed restore, so it is never removed automatically; release()
deletes it only on explicit confirmation.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Union

from ..exceptions import ContainerStateError, BackupValidationError
from ..models.entities import SafetySnapshot
from ..runtime.base import ContainerRuntime

logger = logging.getLogger(__name__)

SNAPSHOT_PREFIX = "safety_backup_"
SNAPSHOT_SUFFIX = ".tar.gz"


class SafetyNetManager:
    """
    Create, list and release safety snapshots of storage volumes.

    Example:
        ```python
        safety_net = SafetyNetManager(runtime)
        snapshot = safety_net.snapshot("pg_data", Path("./backups"))
        print(f"Rollback archive: {snapshot.archive_path}")
        ```
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.runtime = runtime
        self.clock = clock or datetime.now

    def snapshot(self, volume: str, dest_dir: Union[str, Path]) -> SafetySnapshot:
        """
        Archive the entire volume into dest_dir/safety_backup_<ts>.tar.gz.

        Raises:
            ContainerStateError: If the archive could not be written or is empty
        """
        dest_dir = Path(dest_dir)
        created_at = self.clock()
        stamp = created_at.strftime('%Y%m%d_%H%M%S')
        archive_name = f"{SNAPSHOT_PREFIX}{stamp}{SNAPSHOT_SUFFIX}"
        n = 1
        while (dest_dir / archive_name).exists():
            archive_name = f"{SNAPSHOT_PREFIX}{stamp}_{n}{SNAPSHOT_SUFFIX}"
            n += 1

        logger.info(f"Creating safety snapshot of volume {volume}")
        archive_path = self.runtime.archive_volume(volume, dest_dir, archive_name)

        if not archive_path.is_file() or archive_path.stat().st_size == 0:
            raise ContainerStateError(
                f"Safety snapshot of '{volume}' was not written",
                operation="archive_volume",
                context={"archive_path": str(archive_path)}
            )

        snapshot = SafetySnapshot(
            created_at=created_at,
            archive_path=str(archive_path),
            volume=volume,
            size_bytes=archive_path.stat().st_size
        )
        logger.info(f"Safety snapshot created: {archive_path} ({snapshot.size_bytes} bytes)")
        return snapshot

    def list_snapshots(self, dest_dir: Union[str, Path]) -> List[Path]:
        """Safety snapshots in dest_dir, newest first."""
        dest_dir = Path(dest_dir)
        if not dest_dir.is_dir():
            return []
        return sorted(
            dest_dir.glob(f"{SNAPSHOT_PREFIX}*{SNAPSHOT_SUFFIX}"),
            key=lambda p: p.name,
            reverse=True
        )

    def release(self, snapshot_path: Union[str, Path], confirmed: bool = False) -> bool:
        """
        Delete a safety snapshot.

        Args:
            snapshot_path: Archive to delete
            confirmed: Operator confirmation; nothing is deleted without it

        Returns:
            True if the archive was deleted

        Raises:
            BackupValidationError: If the path is not a safety snapshot
        """
        snapshot_path = Path(snapshot_path)
        if not (snapshot_path.name.startswith(SNAPSHOT_PREFIX) and snapshot_path.name.endswith(SNAPSHOT_SUFFIX)):
            raise BackupValidationError(
                f"Not a safety snapshot: {snapshot_path}",
                validation_errors=["file name does not match safety_backup_<ts>.tar.gz"]
            )
        if not snapshot_path.is_file():
            raise BackupValidationError(f"Safety snapshot not found: {snapshot_path}")

        if not confirmed:
            logger.warning(f"Release of {snapshot_path} not confirmed, keeping it")
            return False

        snapshot_path.unlink()
        logger.info(f"Released safety snapshot {snapshot_path}")
        return True
