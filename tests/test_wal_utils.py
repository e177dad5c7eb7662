"""
Tests for utils/wal.py and core/base_backup.py

Tests cover:
- LSN parsing and formatting
- Segment name arithmetic
- Gap detection and contiguity checks
- Base backup inspection for each layout
"""

import pytest

from backup_recovery.core.base_backup import inspect_base_backup, parse_backup_label
from backup_recovery.exceptions import BackupIntegrityError, BackupValidationError
from backup_recovery.utils.wal import (
    check_contiguity,
    collect_segment_files,
    find_gaps,
    format_lsn,
    is_segment_name,
    parse_lsn,
    parse_segment_name,
    segment_for_lsn,
    segment_name,
    segment_start_lsn,
)

from .conftest import backup_label, make_base_backup, write_tar


class TestLSN:
    """LSN notation."""

    def test_parse_lsn(self):
        assert parse_lsn("0/16B3748") == 0x16B3748
        assert parse_lsn("1/0") == 1 << 32

    def test_format_lsn(self):
        assert format_lsn(0x16B3748) == "0/16B3748"
        assert format_lsn((3 << 32) | 0xFF) == "3/FF"

    def test_parse_lsn_rejects_garbage(self):
        with pytest.raises(ValueError):
            parse_lsn("16B3748")


class TestSegmentNames:
    """Segment file names with the default 16MB segments."""

    def test_segment_name_splits_log_and_seg(self):
        assert segment_name(1, 2) == "000000010000000000000002"
        assert segment_name(1, 256) == "000000010000000100000000"
        assert segment_name(2, 257) == "000000020000000100000001"

    def test_parse_segment_name(self):
        assert parse_segment_name("000000020000000100000001") == (2, 257)

    def test_segment_for_lsn(self):
        assert segment_for_lsn("0/2000028") == 2
        assert segment_for_lsn("1/2000000") == 258
        assert segment_start_lsn(258) == "1/2000000"

    def test_smaller_segments_change_the_arithmetic(self):
        one_mb = 1024 * 1024
        assert parse_segment_name("000000010000000100000003", one_mb) == (1, 4096 + 3)
        assert segment_for_lsn("0/300000", one_mb) == 3

    def test_is_segment_name(self):
        assert is_segment_name("000000010000000000000003")
        assert not is_segment_name("00000002.history")
        assert not is_segment_name("000000010000000000000003.00000028.backup")
        assert not is_segment_name("000000010000000000000003.partial")


class TestGaps:
    """Gap detection."""

    def test_contiguous_has_no_gaps(self):
        assert find_gaps([3, 1, 2]) == []

    def test_gaps_are_named_in_order(self):
        assert find_gaps([1, 2, 5]) == [
            "000000010000000000000003",
            "000000010000000000000004",
        ]

    def test_check_contiguity_returns_required_range(self):
        assert check_contiguity({2, 3, 4, 5}, first=2) == [2, 3, 4, 5]
        assert check_contiguity({2, 3, 4, 5}, first=2, last=3) == [2, 3]

    def test_check_contiguity_reports_missing_segments(self):
        with pytest.raises(BackupIntegrityError) as exc_info:
            check_contiguity({2, 3, 5}, first=2, last=6)
        assert exc_info.value.missing_segments == [
            "000000010000000000000004",
            "000000010000000000000006",
        ]

    def test_collect_segment_files_prefers_largest_copy(self, tmp_path):
        name = "000000010000000000000003"
        (tmp_path / "incremental_a").mkdir()
        (tmp_path / "incremental_b").mkdir()
        (tmp_path / "incremental_a" / name).write_bytes(b"x" * 10)
        (tmp_path / "incremental_b" / name).write_bytes(b"x" * 100)
        (tmp_path / "incremental_b" / "00000002.history").write_text("1\t0/3000000\tno reason\n")

        files = collect_segment_files(tmp_path)

        assert list(files) == [name]
        assert files[name].parent.name == "incremental_b"


class TestBaseBackupInspection:
    """Base backup layouts."""

    def test_tar_layout(self, tmp_path):
        backup = make_base_backup(tmp_path / "basebackup_1", start_lsn="0/3000028", bundled_segments=[3])

        info = inspect_base_backup(backup)

        assert info.layout == "tar"
        assert info.start_lsn == "0/3000028"
        assert info.timeline == 1
        assert info.bundled_segments == [3]
        assert info.wal_archive.endswith("pg_wal.tar.gz")
        assert "Do not edit" in info.auto_conf

    def test_manifest_is_used_without_backup_label(self, tmp_path):
        backup = tmp_path / "basebackup_2"
        write_tar(backup / "base.tar.gz", {"PG_VERSION": b"16\n"})
        (backup / "backup_manifest").write_text(
            '{"WAL-Ranges": [{"Timeline": 2, "Start-LSN": "0/5000060", "End-LSN": "0/5000138"}]}'
        )

        info = inspect_base_backup(backup)

        assert info.start_lsn == "0/5000060"
        assert info.timeline == 2

    def test_single_archive_layout(self, tmp_path):
        archive = write_tar(tmp_path / "cluster.tar.gz", {
            "./PG_VERSION": b"16\n",
            "./backup_label": backup_label("0/2000028"),
            "./pg_wal/000000010000000000000002": b"wal",
        })

        info = inspect_base_backup(archive)

        assert info.layout == "archive"
        assert info.bundled_segments == [2]
        assert info.start_lsn == "0/2000028"

    def test_single_archive_reads_its_own_manifest(self, tmp_path):
        archive = write_tar(tmp_path / "cluster.tar.gz", {
            "./PG_VERSION": b"16\n",
            "./backup_manifest": (
                b'{"WAL-Ranges": [{"Timeline": 2, "Start-LSN": "0/7000028", "End-LSN": "0/7000100"}]}'
            ),
        })
        (tmp_path / "backup_manifest").write_text(
            '{"WAL-Ranges": [{"Timeline": 1, "Start-LSN": "0/1000028", "End-LSN": "0/1000100"}]}'
        )

        info = inspect_base_backup(archive)

        assert info.start_lsn == "0/7000028"
        assert info.timeline == 2

    def test_plain_layout(self, tmp_path):
        data = tmp_path / "data"
        (data / "pg_wal").mkdir(parents=True)
        (data / "PG_VERSION").write_text("16\n")
        (data / "backup_label").write_bytes(backup_label("0/4000028", timeline=3))

        info = inspect_base_backup(data)

        assert info.layout == "plain"
        assert info.timeline == 3

    def test_missing_path(self, tmp_path):
        with pytest.raises(BackupValidationError):
            inspect_base_backup(tmp_path / "nope")

    def test_directory_without_backup(self, tmp_path):
        (tmp_path / "random.txt").write_text("hello")
        with pytest.raises(BackupValidationError):
            inspect_base_backup(tmp_path)

    def test_corrupt_tarball(self, tmp_path):
        bad = tmp_path / "broken.tar.gz"
        bad.write_bytes(b"not a tarball at all")
        with pytest.raises(BackupValidationError):
            inspect_base_backup(bad)

    def test_parse_backup_label_defaults_timeline(self):
        assert parse_backup_label("START WAL LOCATION: 0/9000028 (file x)\n") == ("0/9000028", 1)
