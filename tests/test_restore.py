"""
Tests for core/restore_engine.py

Tests cover:
- Validation failures that leave the container untouched
- The full physical restore sequence
- Failures after the point of no return keep the safety snapshot
- Sidecar integrity checks
- Logical restore into empty and non-empty targets
"""

import tarfile
from pathlib import Path

import pytest

from backup_recovery.core.manager import BackupManager
from backup_recovery.core.database import DatabaseControl
from backup_recovery.core.restore_engine import RestoreEngine
from backup_recovery.exceptions import DestructiveOperationError
from backup_recovery.models import BackupKind, BackupParams, RecoveryState, RestoreParams

from .conftest import CONTAINER, SERVER_VERSION, VOLUME

S = RecoveryState

PHYSICAL_PATH = [
    S.VALIDATING, S.SNAPSHOTTING, S.STOPPED, S.CLEARING, S.COPYING,
    S.STARTING, S.AWAITING_READY, S.VERIFYING, S.DONE,
]
LOGICAL_PATH = [S.VALIDATING, S.IMPORTING, S.AWAITING_READY, S.VERIFYING, S.DONE]


def _states(result):
    return [t.to_state for t in result.transitions]


@pytest.fixture
def physical_backup(manager):
    return manager.create_backup(BackupParams(kind=BackupKind.PHYSICAL)).record.storage_path


@pytest.fixture
def logical_backup(manager):
    return manager.create_backup(BackupParams(kind=BackupKind.LOGICAL)).record.storage_path


class TestValidation:
    """Nothing is touched when validation fails."""

    def test_missing_artifact(self, manager, runtime, tmp_path):
        result = manager.restore_full(BackupKind.PHYSICAL, tmp_path / "basebackup_missing")

        assert not result.success
        assert result.failed_state == S.VALIDATING
        assert result.error_type == "BackupValidationError"
        assert result.safety_snapshot_path is None
        assert "stop" not in runtime.op_names()
        assert "archive_volume" not in runtime.op_names()

    def test_unknown_container(self, manager, runtime, physical_backup):
        result = manager.restore_full(BackupKind.PHYSICAL, physical_backup, container="PG-missing")

        assert result.failed_state == S.VALIDATING
        assert result.error_type == "BackupValidationError"
        assert "stop" not in runtime.op_names()

    def test_sidecar_size_mismatch(self, manager, runtime, logical_backup):
        with open(logical_backup, "ab") as f:
            f.write(b"-- appended later\n")

        result = manager.restore_full(BackupKind.LOGICAL, logical_backup)

        assert result.failed_state == S.VALIDATING
        assert result.error_type == "BackupIntegrityError"
        assert runtime.db.imported == []

    def test_checksum_mismatch(self, manager, runtime, logical_backup):
        data = Path(logical_backup).read_bytes()
        Path(logical_backup).write_bytes(data.replace(b"app", b"xyz"))

        result = manager.restore_full(BackupKind.LOGICAL, logical_backup)
        assert result.error_type == "BackupIntegrityError"

        unchecked = manager.restore_full(
            BackupKind.LOGICAL, logical_backup, params=RestoreParams(verify_checksum=False)
        )
        assert unchecked.success

    def test_failed_backup_is_not_restorable(self, manager, runtime):
        runtime.db.dump_exit_code = 1
        runtime.db.dump_stderr = "pg_dumpall: error: out of disk"
        record = manager.create_backup(BackupParams(kind=BackupKind.LOGICAL)).record

        result = manager.restore_full(BackupKind.LOGICAL, record.storage_path)

        assert result.failed_state == S.VALIDATING
        assert result.error_type == "BackupValidationError"


class TestPhysicalRestore:
    """Snapshot, stop, clear, copy, start, wait, verify."""

    def test_full_sequence(self, manager, runtime, physical_backup):
        seen = []
        result = manager.restore_full(BackupKind.PHYSICAL, physical_backup, observer=seen.append)

        assert result.success, result.error_message
        assert _states(result) == PHYSICAL_PATH
        assert [t.to_state for t in seen] == PHYSICAL_PATH
        assert result.server_version == SERVER_VERSION

        volume = runtime.volume_path(VOLUME)
        assert (volume / "backup_label").is_file()
        assert (volume / "pg_wal" / "000000010000000000000002").is_file()
        assert not (volume / "base" / "live_table").exists()
        assert "999:999" in runtime.owners
        assert runtime.is_running(CONTAINER)

    def test_snapshot_precedes_stop(self, manager, runtime, physical_backup):
        manager.restore_full(BackupKind.PHYSICAL, physical_backup)

        ops = runtime.op_names()
        assert ops.index("archive_volume") < ops.index("stop") < ops.index("clear_volume")
        assert ops.index("clear_volume") < ops.index("extract_into_volume") < ops.index("start")

    def test_snapshot_holds_previous_data(self, manager, physical_backup):
        result = manager.restore_full(BackupKind.PHYSICAL, physical_backup)

        with tarfile.open(result.safety_snapshot_path) as tar:
            assert "./base/live_table" in tar.getnames()

    def test_snapshot_failure_stops_before_destruction(self, manager, runtime, physical_backup):
        runtime.fail_ops.add("archive_volume")

        result = manager.restore_full(BackupKind.PHYSICAL, physical_backup)

        assert result.failed_state == S.SNAPSHOTTING
        assert result.error_type == "ContainerStateError"
        assert "stop" not in runtime.op_names()
        assert (runtime.volume_path(VOLUME) / "base" / "live_table").exists()

    def test_empty_snapshot_stops_before_destruction(self, manager, runtime, physical_backup):
        runtime.empty_snapshot = True

        result = manager.restore_full(BackupKind.PHYSICAL, physical_backup)

        assert result.failed_state == S.SNAPSHOTTING
        assert "stop" not in runtime.op_names()

    def test_clear_failure_reports_snapshot(self, manager, runtime, physical_backup):
        runtime.fail_ops.add("clear_volume")

        result = manager.restore_full(BackupKind.PHYSICAL, physical_backup)

        assert result.failed_state == S.CLEARING
        assert result.error_type == "DestructiveOperationError"
        assert result.safety_snapshot_path
        assert Path(result.safety_snapshot_path).is_file()

    def test_copy_failure_raises_with_snapshot(self, config, runtime, physical_backup, no_sleep):
        runtime.fail_ops.add("extract_into_volume")
        engine = RestoreEngine(DatabaseControl(runtime, config, sleep=no_sleep), runtime, config)

        with pytest.raises(DestructiveOperationError) as exc_info:
            engine.restore_full(BackupKind.PHYSICAL, physical_backup, CONTAINER)

        error = exc_info.value
        assert error.failed_state == "Copying"
        assert error.step == "Copying"
        assert Path(error.safety_snapshot_path).is_file()

    def test_readiness_timeout_keeps_snapshot(self, manager, runtime, physical_backup):
        runtime.db.ready = False

        result = manager.restore_full(BackupKind.PHYSICAL, physical_backup)

        assert result.failed_state == S.AWAITING_READY
        assert result.error_type == "OperationTimeoutError"
        assert Path(result.safety_snapshot_path).is_file()

    def test_snapshot_is_never_removed(self, manager, runtime, physical_backup):
        first = manager.restore_full(BackupKind.PHYSICAL, physical_backup)
        second = manager.restore_full(BackupKind.PHYSICAL, physical_backup)

        assert first.success and second.success
        assert Path(first.safety_snapshot_path).is_file()
        assert Path(second.safety_snapshot_path).is_file()
        assert len(manager.list_safety_snapshots()) == 2


class TestLogicalRestore:
    """Dump replay."""

    def test_import(self, manager, runtime, logical_backup):
        result = manager.restore_full(BackupKind.LOGICAL, logical_backup)

        assert result.success, result.error_message
        assert _states(result) == LOGICAL_PATH
        assert runtime.db.imported == [runtime.db.dump_content]
        assert "stop" not in runtime.op_names()
        assert result.safety_snapshot_path is None

    def test_non_empty_target_warns(self, manager, runtime, logical_backup):
        runtime.db.user_tables = 3

        result = manager.restore_full(BackupKind.LOGICAL, logical_backup)

        assert result.success
        assert any("3 user table(s)" in w for w in result.warnings)

    def test_non_empty_target_refused_on_request(self, manager, runtime, logical_backup):
        runtime.db.user_tables = 3

        result = manager.restore_full(
            BackupKind.LOGICAL, logical_backup, params=RestoreParams(require_empty_target=True)
        )

        assert result.failed_state == S.VALIDATING
        assert result.error_type == "BackupValidationError"
        assert runtime.db.imported == []

    def test_import_failure(self, manager, runtime, logical_backup):
        runtime.db.import_exit_code = 3

        result = manager.restore_full(BackupKind.LOGICAL, logical_backup)

        assert result.failed_state == S.IMPORTING
        assert result.error_type == "DestructiveOperationError"
        assert "already exists" in result.error_message

    def test_unreachable_server(self, manager, runtime, logical_backup):
        runtime.containers[CONTAINER].running = False

        result = manager.restore_full(BackupKind.LOGICAL, logical_backup)

        assert result.failed_state == S.VALIDATING
        assert result.error_type == "ConnectivityError"


def test_unexpected_errors_still_fail_the_session(config, runtime, logical_backup, no_sleep, monkeypatch):
    manager = BackupManager(config, runtime=runtime, sleep=no_sleep)
    monkeypatch.setattr(runtime, "exists", lambda ref: 1 / 0)

    result = manager.restore_full(BackupKind.LOGICAL, logical_backup)

    assert not result.success
    assert result.final_state == S.FAILED
    assert result.failed_state == S.VALIDATING
    assert result.error_type == "BackupRecoveryError"
