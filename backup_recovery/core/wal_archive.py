"""
WAL Archive Manager

Incremental backups through continuous WAL archiving. The server's
archive_command copies each finished segment into an archive directory
inside the container; this manager captures that directory to the host in
timestamped increments.

Applying the archiving settings and restarting the server is left to the
operator: setup() only prepares the directories and returns the settings.
Source segments are never removed by a capture; cleanup_source() is a
separate, confirmed step.
"""

import json
import logging
import shlex
import shutil
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, Union

from ..config import BackupRecoveryConfig
from ..exceptions import ConnectivityError, ContainerStateError
from ..models.entities import (
    SIDECAR_TIMESTAMP_FORMAT,
    WALArchiveConfiguration,
    WALArchiveStatus,
    WALIncrement,
)
from ..runtime.base import ContainerRuntime
from ..utils.checksum import artifact_size
from ..utils.wal import describe_segment, find_gaps, is_segment_name, sort_segments
from .database import DatabaseControl

logger = logging.getLogger(__name__)

INCREMENT_PREFIX = "incremental_"
LIVE_ARCHIVE_PREFIX = "archive_"
METADATA_FILE = "metadata.json"


class WALArchiveManager:
    """
    Prepare, inspect and capture the WAL archive of a container.

    Example:
        ```python
        wal = WALArchiveManager(database, runtime, config)

        settings = wal.setup("PG-timescale", "./backups/wal")
        print(settings.to_postgresql_conf())

        increment = wal.capture_increment("PG-timescale", "./backups/wal")
        if increment.has_gaps:
            print(f"Missing segments: {increment.gaps}")
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

    def _archive_dir(self, archive_dir: Optional[Union[str, Path]]) -> Path:
        return Path(archive_dir) if archive_dir is not None else self.config.get_wal_archive_path()

    def _require_running(self, container: str) -> None:
        if not self.runtime.is_running(container):
            raise ConnectivityError(f"Container '{container}' is not running", container=container)

    def _timestamped_dir(self, parent: Path, prefix: str) -> Path:
        stamp = self.clock().strftime("%Y%m%d_%H%M%S")
        target = parent / f"{prefix}{stamp}"
        n = 1
        while target.exists():
            target = parent / f"{prefix}{stamp}_{n}"
            n += 1
        return target

    def setup(
        self,
        container: str,
        archive_dir: Optional[Union[str, Path]] = None
    ) -> WALArchiveConfiguration:
        """
        Create the local and in-container archive directories.

        Safe to call repeatedly.

        Returns:
            The server settings required for archiving (not applied)
        """
        self._require_running(container)

        local_dir = self._archive_dir(archive_dir)
        local_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"WAL archive directory ready: {local_dir}")

        container_dir = self.config.container_wal_archive_dir
        result = self.runtime.exec(container, ["mkdir", "-p", container_dir])
        if not result.ok:
            logger.warning(f"Could not create {container_dir} in {container}: {result.diagnostic}")

        settings = WALArchiveConfiguration(
            archive_command=f"cp %p {container_dir}/%f",
            container_archive_dir=container_dir,
            local_archive_dir=str(local_dir)
        )
        logger.warning("WAL archiving settings must be applied by the operator and need a server restart")
        return settings

    def status(self, container: str) -> WALArchiveStatus:
        """
        Read the archiver configuration and pg_stat_archiver counters.

        Raises:
            ConnectivityError: If the server cannot be queried
        """
        self._require_running(container)

        rows = self.database.query_rows(
            container,
            "SELECT archived_count, failed_count, "
            "coalesce(last_archived_wal, ''), coalesce(last_archived_time::text, ''), "
            "coalesce(last_failed_wal, '') FROM pg_stat_archiver;"
        )
        row = (rows[0] if rows else []) + [""] * 5
        archived, failed, last_wal, last_time, last_failed = row[:5]

        return WALArchiveStatus(
            archive_mode=self.database.show_setting(container, "archive_mode"),
            wal_level=self.database.show_setting(container, "wal_level"),
            archive_command=self.database.show_setting(container, "archive_command"),
            archived_count=int(archived or 0),
            failed_count=int(failed or 0),
            last_archived_segment=last_wal or None,
            last_archived_time=last_time or None,
            last_failed_segment=last_failed or None
        )

    def capture_increment(
        self,
        container: str,
        archive_dir: Optional[Union[str, Path]] = None
    ) -> WALIncrement:
        """
        Force a segment switch and copy the container's archive to the host.

        Segments land in archive_dir/incremental_<ts>/ together with a
        metadata.json describing the capture.

        Raises:
            ConnectivityError: If the container is not running
            ContainerStateError: If the archive could not be copied out
        """
        self._require_running(container)

        local_dir = self._archive_dir(archive_dir)
        captured_at = self.clock()
        increment_dir = self._timestamped_dir(local_dir, INCREMENT_PREFIX)
        increment_dir.mkdir(parents=True)

        try:
            self.database.switch_wal(container)
        except ConnectivityError as e:
            logger.warning(f"WAL switch failed, the in-flight segment will not be captured: {e.message}")

        try:
            self.runtime.copy_out(container, f"{self.config.container_wal_archive_dir}/.", increment_dir)
        except ContainerStateError:
            shutil.rmtree(increment_dir, ignore_errors=True)
            raise

        segment_size = self.config.wal_segment_size_bytes
        segments = []
        other_files = []
        for path in sorted(increment_dir.rglob("*")):
            if not path.is_file():
                continue
            if is_segment_name(path.name):
                segments.append(describe_segment(path, segment_size))
            else:
                other_files.append(path.name)

        segments = sort_segments(segments)
        timeline = segments[-1].timeline if segments else 1
        gaps = find_gaps([s.segment_number for s in segments], timeline, segment_size)
        size = artifact_size(increment_dir)

        increment = WALIncrement(
            segments=segments,
            size_bytes=size,
            path=str(increment_dir),
            captured_at=captured_at,
            gaps=gaps,
            other_files=other_files
        )
        self._write_metadata(increment, container)

        logger.info(
            f"Captured {increment.segment_count} WAL segment(s) "
            f"({size / (1024 * 1024):.2f} MB) into {increment_dir}"
        )
        if gaps:
            logger.warning(f"WAL capture has {len(gaps)} missing segment(s): {', '.join(gaps[:5])}")
        logger.info(f"Source segments kept in {container}:{self.config.container_wal_archive_dir}")
        return increment

    def _write_metadata(self, increment: WALIncrement, container: str) -> None:
        metadata = {
            "backup_type": "incremental",
            "timestamp": increment.captured_at.strftime(SIDECAR_TIMESTAMP_FORMAT),
            "wal_files": increment.segment_count + len(increment.other_files),
            "size_bytes": increment.size_bytes,
            "backup_path": increment.path,
            "container": container,
            "segments": [
                {
                    "filename": s.filename,
                    "sequence_lsn": s.sequence_lsn,
                    "timeline": s.timeline,
                    "archived_at": s.archived_at.isoformat(),
                    "size_bytes": s.size_bytes,
                }
                for s in increment.segments
            ],
            "gaps": increment.gaps,
        }
        (Path(increment.path) / METADATA_FILE).write_text(json.dumps(metadata, indent=2))

    def cleanup_source(self, container: str, confirmed: bool = False) -> int:
        """
        Delete archived segments inside the container.

        Args:
            container: Database container
            confirmed: Operator confirmation; nothing is deleted without it

        Returns:
            Number of files removed

        Raises:
            ContainerStateError: If the removal command fails
        """
        container_dir = self.config.container_wal_archive_dir
        if not confirmed:
            logger.warning(f"Cleanup of {container}:{container_dir} not confirmed, nothing removed")
            return 0

        self._require_running(container)
        script = f"find {shlex.quote(container_dir)} -mindepth 1 -maxdepth 1 -type f -print -delete"
        result = self.runtime.exec(container, ["sh", "-c", script])
        if not result.ok:
            raise ContainerStateError(
                f"Could not clean up {container_dir}: {result.diagnostic}",
                container=container,
                operation="exec",
                exit_code=result.exit_code,
                stderr=result.stderr
            )

        removed = len([line for line in result.stdout.splitlines() if line.strip()])
        logger.info(f"Removed {removed} archived file(s) from {container}:{container_dir}")
        return removed

    def archive_live_wal(
        self,
        container: str,
        archive_dir: Optional[Union[str, Path]] = None
    ) -> Path:
        """
        Copy the server's pg_wal directory to archive_dir/archive_<ts>/.

        Returns:
            The destination directory
        """
        self._require_running(container)

        destination = self._timestamped_dir(self._archive_dir(archive_dir), LIVE_ARCHIVE_PREFIX)
        destination.mkdir(parents=True)
        source = f"{self.config.data_directory.rstrip('/')}/pg_wal/."
        self.runtime.copy_out(container, source, destination)

        logger.info(f"Live WAL files archived to {destination}")
        return destination
