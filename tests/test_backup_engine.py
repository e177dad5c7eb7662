"""
Tests for core/backup_engine.py through the BackupManager facade

Tests cover:
- Logical and physical backups with their sidecars
- Failed backups reported through the record
- Scratch cleanup inside the container
- Retention after each backup
"""

import json
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from backup_recovery.core.manager import BackupManager
from backup_recovery.exceptions import ContainerStateError
from backup_recovery.models import BackupKind, BackupParams, BackupRecord, BackupStatus

from .conftest import CONTAINER, SERVER_VERSION

NOW = datetime(2026, 1, 8, 12, 0, 0)


def _old_backup(directory: Path, days_old: int) -> Path:
    """Write a completed logical backup and its sidecar dated days_old ago."""
    created = NOW - timedelta(days=days_old)
    backup_id = created.strftime("%Y%m%d_%H%M%S")
    artifact = directory / f"full_backup_{backup_id}.sql"
    directory.mkdir(parents=True, exist_ok=True)
    artifact.write_text("-- old dump\n")
    record = BackupRecord(
        backup_id=backup_id,
        kind=BackupKind.LOGICAL,
        created_at=created,
        storage_path=str(artifact),
        container=CONTAINER
    ).finalize(BackupStatus.COMPLETED, size_bytes=artifact.stat().st_size)
    artifact.with_suffix(".json").write_text(json.dumps(record.to_sidecar()))
    return artifact


@pytest.fixture
def fixed_manager(config, runtime, no_sleep):
    return BackupManager(config, runtime=runtime, clock=lambda: NOW, sleep=no_sleep)


class TestLogicalBackup:
    """pg_dumpall backups."""

    def test_completed_backup_and_sidecar(self, fixed_manager, runtime, config):
        result = fixed_manager.create_backup(BackupParams(kind=BackupKind.LOGICAL))

        assert result.success
        record = result.record
        artifact = Path(record.storage_path)
        assert artifact.name == "full_backup_20260108_120000.sql"
        assert artifact.read_bytes() == runtime.db.dump_content
        assert record.size_bytes == artifact.stat().st_size
        assert record.database_version == SERVER_VERSION

        sidecar = json.loads(artifact.with_suffix(".json").read_text())
        assert sidecar["backup_type"] == "logical"
        assert sidecar["timestamp"] == "2026-01-08 12:00:00"
        assert sidecar["container"] == CONTAINER
        assert sidecar["postgres_version"] == SERVER_VERSION
        assert sidecar["backup_size"] == artifact.stat().st_size
        assert sidecar["status"] == "completed"

    def test_dump_failure_is_recorded_not_raised(self, fixed_manager, runtime, config):
        runtime.db.dump_exit_code = 1
        runtime.db.dump_stderr = "pg_dumpall: error: connection to server failed: FATAL: role does not exist"

        result = fixed_manager.create_backup(BackupParams(kind=BackupKind.LOGICAL))

        assert not result.success
        assert result.record.status == BackupStatus.FAILED
        assert "role does not exist" in result.record.error_message
        assert not Path(result.record.storage_path).exists()

        sidecar = Path(config.backup_root_path) / "full_backup_20260108_120000.json"
        assert json.loads(sidecar.read_text())["status"] == "failed"

    def test_dump_interrupted_by_runtime_error(self, fixed_manager, runtime, config, monkeypatch):
        def broken_dump(ref, command, stdin, stdout):
            stdout.write(b"-- partial")
            raise ContainerStateError("container went away", container=ref, operation="exec")

        monkeypatch.setattr(runtime, "_exec_pg_dumpall", broken_dump)

        result = fixed_manager.create_backup(BackupParams(kind=BackupKind.LOGICAL))

        assert result.record.status == BackupStatus.FAILED
        assert "container went away" in result.record.error_message
        assert not Path(result.record.storage_path).exists()
        sidecar = Path(config.backup_root_path) / "full_backup_20260108_120000.json"
        assert json.loads(sidecar.read_text())["status"] == "failed"

    def test_same_second_backups_get_distinct_ids(self, fixed_manager):
        first = fixed_manager.create_backup(BackupParams(kind=BackupKind.LOGICAL)).record
        second = fixed_manager.create_backup(BackupParams(kind=BackupKind.LOGICAL)).record

        assert first.backup_id == "20260108_120000"
        assert second.backup_id == "20260108_120000_1"

    def test_unreachable_database(self, fixed_manager, runtime, config):
        runtime.containers[CONTAINER].running = False

        result = fixed_manager.create_backup(BackupParams(kind=BackupKind.LOGICAL))

        assert not result.success
        assert result.record is None
        assert result.error_type == "ConnectivityError"
        assert not any(Path(config.backup_root_path).glob("full_backup_*"))


class TestPhysicalBackup:
    """pg_basebackup backups."""

    def test_completed_backup(self, fixed_manager, runtime):
        result = fixed_manager.create_backup(BackupParams(kind=BackupKind.PHYSICAL))

        assert result.success
        artifact = Path(result.record.storage_path)
        assert artifact.name == "basebackup_20260108_120000"
        assert (artifact / "base.tar.gz").is_file()
        assert (artifact / "pg_wal.tar.gz").is_file()
        assert (artifact.parent / "basebackup_20260108_120000.json").is_file()
        assert result.record.checksum

    def test_scratch_removed_after_success(self, fixed_manager, runtime):
        fixed_manager.create_backup(BackupParams(kind=BackupKind.PHYSICAL))
        assert not runtime.host_path(CONTAINER, "/tmp/basebackup_20260108_120000").exists()

    def test_scratch_removed_after_failure(self, fixed_manager, runtime):
        runtime.db.basebackup_exit_code = 1

        result = fixed_manager.create_backup(BackupParams(kind=BackupKind.PHYSICAL))

        assert not result.success
        assert "could not connect" in result.record.error_message
        assert not Path(result.record.storage_path).exists()
        assert not runtime.host_path(CONTAINER, "/tmp/basebackup_20260108_120000").exists()

    def test_copy_failure_marks_backup_failed(self, fixed_manager, runtime):
        runtime.fail_ops.add("copy_out")

        result = fixed_manager.create_backup(BackupParams(kind=BackupKind.PHYSICAL))

        assert result.record.status == BackupStatus.FAILED
        assert "simulated copy_out failure" in result.record.error_message
        assert not runtime.host_path(CONTAINER, "/tmp/basebackup_20260108_120000").exists()

    def test_base_backup_interrupted_by_runtime_error(self, fixed_manager, runtime, monkeypatch):
        def broken_basebackup(ref, command, stdin, stdout):
            raise ContainerStateError("exec failed", container=ref, operation="exec")

        monkeypatch.setattr(runtime, "_exec_pg_basebackup", broken_basebackup)

        result = fixed_manager.create_backup(BackupParams(kind=BackupKind.PHYSICAL))

        assert result.record.status == BackupStatus.FAILED
        assert "exec failed" in result.record.error_message
        assert not runtime.host_path(CONTAINER, "/tmp/basebackup_20260108_120000").exists()


class TestRetention:
    """Retention runs after every backup."""

    def test_old_backups_removed_after_new_backup(self, fixed_manager, config):
        backups = Path(config.backup_root_path)
        stale = _old_backup(backups, days_old=40)
        recent = _old_backup(backups, days_old=10)

        result = fixed_manager.create_backup(BackupParams(kind=BackupKind.LOGICAL, retention_days=30))

        assert result.success
        assert result.deleted_by_retention == [str(stale)]
        assert not stale.exists()
        assert not stale.with_suffix(".json").exists()
        assert recent.exists()
        assert Path(result.record.storage_path).exists()

    def test_zero_days_disables_cleanup(self, fixed_manager, config):
        stale = _old_backup(Path(config.backup_root_path), days_old=400)

        result = fixed_manager.create_backup(BackupParams(kind=BackupKind.LOGICAL, retention_days=0))

        assert result.deleted_by_retention == []
        assert stale.exists()

    def test_list_backups_oldest_first(self, fixed_manager, config):
        _old_backup(Path(config.backup_root_path), days_old=3)
        fixed_manager.create_backup(BackupParams(kind=BackupKind.PHYSICAL))

        records = fixed_manager.list_backups()

        assert [r.kind for r in records] == [BackupKind.LOGICAL, BackupKind.PHYSICAL]
        assert records[-1].is_completed
