"""
Shared fixtures: an in-process container runtime backed by temporary
directories, plus helpers that build base backups and WAL archives.
"""

import io
import shlex
import shutil
import tarfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from backup_recovery.config import BackupRecoveryConfig
from backup_recovery.core.manager import BackupManager
from backup_recovery.exceptions import ContainerStateError
from backup_recovery.runtime.base import ContainerRuntime, ExecResult
from backup_recovery.utils.wal import segment_name

CONTAINER = "PG-timescale"
VOLUME = "pg_data"
DATA_DIR = "/var/lib/postgresql/data"
SERVER_VERSION = "PostgreSQL 16.1 on x86_64-pc-linux-gnu"
SEGMENT_SIZE = 16 * 1024 * 1024


def _extract(tar: tarfile.TarFile, target: Path) -> None:
    if hasattr(tarfile, "data_filter"):
        tar.extractall(target, filter="data")
    else:
        tar.extractall(target)


def write_tar(path: Path, members: Dict[str, bytes], compress: bool = True) -> Path:
    """Write a tarball whose members are given as name -> content."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(path, "w:gz" if compress else "w") as tar:
        for name, content in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(content)
            tar.addfile(info, io.BytesIO(content))
    return path


def backup_label(start_lsn: str = "0/2000028", timeline: int = 1) -> bytes:
    return (
        f"START WAL LOCATION: {start_lsn} (file 000000010000000000000002)\n"
        f"CHECKPOINT LOCATION: 0/2000060\n"
        f"BACKUP METHOD: streamed\n"
        f"BACKUP FROM: primary\n"
        f"START TIME: 2026-01-08 12:00:00 UTC\n"
        f"LABEL: pg_basebackup base backup\n"
        f"START TIMELINE: {timeline}\n"
    ).encode()


def make_base_backup(
    directory: Path,
    start_lsn: str = "0/2000028",
    timeline: int = 1,
    bundled_segments: Optional[List[int]] = None,
    auto_conf: str = "# Do not edit this file manually!\n"
) -> Path:
    """Build a pg_basebackup -Ft -z style directory."""
    directory.mkdir(parents=True, exist_ok=True)
    write_tar(directory / "base.tar.gz", {
        "PG_VERSION": b"16\n",
        "backup_label": backup_label(start_lsn, timeline),
        "postgresql.auto.conf": auto_conf.encode(),
        "base/1/1259": b"\x00" * 64,
    })
    wal_members = {
        segment_name(timeline, n): b"\x01" * 128
        for n in (bundled_segments or [])
    }
    write_tar(directory / "pg_wal.tar.gz", wal_members)
    (directory / "backup_manifest").write_text(
        '{"PostgreSQL-Backup-Manifest-Version": 1, "WAL-Ranges": '
        f'[{{"Timeline": {timeline}, "Start-LSN": "{start_lsn}", "End-LSN": "0/2000100"}}]}}'
    )
    return directory


def make_wal_archive(directory: Path, segments: List[int], timeline: int = 1) -> Path:
    """Write fake WAL segment files named for the given segment numbers."""
    directory.mkdir(parents=True, exist_ok=True)
    for number in segments:
        (directory / segment_name(timeline, number)).write_bytes(b"\x02" * 256)
    return directory


@dataclass
class FakeContainer:
    name: str
    running: bool = True
    volume: Optional[str] = None


@dataclass
class FakeDatabase:
    """Behaviour of the PostgreSQL tools inside the fake container."""
    ready: bool = True
    dump_content: bytes = b"-- PostgreSQL database cluster dump\nCREATE ROLE app;\n"
    dump_exit_code: int = 0
    dump_stderr: str = ""
    import_exit_code: int = 0
    basebackup_exit_code: int = 0
    user_tables: int = 0
    settings: Dict[str, str] = field(default_factory=lambda: {
        "archive_mode": "on",
        "wal_level": "replica",
        "archive_command": "cp %p /var/lib/postgresql/wal_archive/%f",
    })
    archiver_row: str = "7|1|000000010000000000000007|2026-01-08 12:00:00+00|000000010000000000000003"
    now: str = "2026-01-08 14:30:00.123+00"
    imported: List[bytes] = field(default_factory=list)
    basebackup_start_lsn: str = "0/2000028"


class FakeRuntime(ContainerRuntime):
    """
    Runtime whose containers and volumes are directories under a temp root.

    Paths under the data directory resolve into the container's volume;
    any other container path resolves under the container's own root.
    """

    name = "fake"

    def __init__(self, root: Path, data_directory: str = DATA_DIR):
        self.root = Path(root)
        self.data_directory = data_directory
        self.containers: Dict[str, FakeContainer] = {}
        self.volumes: Dict[str, Path] = {}
        self.db = FakeDatabase()
        self.calls: List[tuple] = []
        self.envs: List[Optional[dict]] = []
        self.owners: List[str] = []
        self.fail_ops: set = set()
        self.empty_snapshot = False

    # setup helpers -----------------------------------------------------

    def add_container(self, name: str = CONTAINER, volume: Optional[str] = VOLUME, running: bool = True) -> FakeContainer:
        container = FakeContainer(name=name, running=running, volume=volume)
        self.containers[name] = container
        (self.root / "containers" / name).mkdir(parents=True, exist_ok=True)
        if volume:
            self.volume_path(volume).mkdir(parents=True, exist_ok=True)
        return container

    def volume_path(self, volume: str) -> Path:
        if volume not in self.volumes:
            self.volumes[volume] = self.root / "volumes" / volume
        return self.volumes[volume]

    def host_path(self, ref: str, path: str) -> Path:
        container = self.containers[ref]
        path = path.rstrip("/") or "/"
        if container.volume and (path == self.data_directory or path.startswith(self.data_directory + "/")):
            rest = path[len(self.data_directory):].lstrip("/")
            return self.volume_path(container.volume) / rest
        return self.root / "containers" / ref / path.lstrip("/")

    def op_names(self) -> List[str]:
        return [call[0] for call in self.calls]

    def _maybe_fail(self, op: str, ref: str) -> None:
        if op in self.fail_ops:
            raise ContainerStateError(f"simulated {op} failure", container=ref, operation=op, exit_code=1)

    # container operations ----------------------------------------------

    def is_running(self, ref: str) -> bool:
        return ref in self.containers and self.containers[ref].running

    def exists(self, ref: str) -> bool:
        return ref in self.containers

    def stop(self, ref: str) -> None:
        self.calls.append(("stop", ref))
        self._maybe_fail("stop", ref)
        self.containers[ref].running = False

    def start(self, ref: str) -> None:
        self.calls.append(("start", ref))
        self._maybe_fail("start", ref)
        self.containers[ref].running = True

    def copy_out(self, ref: str, src: str, dst: Path) -> None:
        self.calls.append(("copy_out", ref, src, str(dst)))
        self._maybe_fail("copy_out", ref)
        contents_only = src.endswith("/.")
        source = self.host_path(ref, src[:-2] if contents_only else src)
        if not source.exists():
            raise ContainerStateError(f"No such container path: {src}", container=ref, operation="copy_out")
        dst = Path(dst)
        if source.is_dir():
            shutil.copytree(source, dst, dirs_exist_ok=True)
        else:
            dst.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, dst)

    def copy_in(self, ref: str, src: Path, dst: str) -> None:
        self.calls.append(("copy_in", ref, str(src), dst))
        self._maybe_fail("copy_in", ref)
        target = self.host_path(ref, dst)
        if Path(src).is_dir():
            shutil.copytree(src, target, dirs_exist_ok=True)
        else:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(src, target)

    def resolve_volume(self, ref: str, mount_point: str) -> Optional[str]:
        self.calls.append(("resolve_volume", ref, mount_point))
        container = self.containers[ref]
        return container.volume if mount_point == self.data_directory else None

    # volume operations -------------------------------------------------

    def archive_volume(self, volume: str, dest_dir: Path, archive_name: str) -> Path:
        self.calls.append(("archive_volume", volume, str(dest_dir), archive_name))
        self._maybe_fail("archive_volume", volume)
        dest_dir = Path(dest_dir)
        dest_dir.mkdir(parents=True, exist_ok=True)
        archive = dest_dir / archive_name
        if self.empty_snapshot:
            archive.write_bytes(b"")
            return archive
        with tarfile.open(archive, "w:gz") as tar:
            tar.add(self.volume_path(volume), arcname=".")
        return archive

    def clear_volume(self, volume: str) -> None:
        self.calls.append(("clear_volume", volume))
        self._maybe_fail("clear_volume", volume)
        for child in self.volume_path(volume).iterdir():
            if child.is_dir():
                shutil.rmtree(child)
            else:
                child.unlink()

    def extract_into_volume(self, volume: str, archive: Path, subdir: str = "", owner: Optional[str] = None) -> None:
        self.calls.append(("extract_into_volume", volume, str(archive), subdir))
        self._maybe_fail("extract_into_volume", volume)
        target = self.volume_path(volume) / subdir if subdir else self.volume_path(volume)
        target.mkdir(parents=True, exist_ok=True)
        with tarfile.open(archive, "r:*") as tar:
            _extract(tar, target)
        if owner:
            self.owners.append(owner)

    def copy_into_volume(self, volume: str, source_dir: Path, subdir: str = "", owner: Optional[str] = None) -> None:
        self.calls.append(("copy_into_volume", volume, str(source_dir), subdir))
        self._maybe_fail("copy_into_volume", volume)
        target = self.volume_path(volume) / subdir if subdir else self.volume_path(volume)
        shutil.copytree(source_dir, target, dirs_exist_ok=True)
        if owner:
            self.owners.append(owner)

    # exec --------------------------------------------------------------

    def exec(self, ref, command, stdin=None, stdout=None, env=None) -> ExecResult:
        command = list(command)
        self.calls.append(("exec", ref, command))
        self.envs.append(dict(env) if env else None)
        if ref not in self.containers:
            return ExecResult(exit_code=1, stderr=f"Error: No such container: {ref}")

        program = command[0]
        handler = getattr(self, f"_exec_{program}", None)
        if handler is None:
            return ExecResult(exit_code=127, stderr=f"{program}: not found")
        return handler(ref, command, stdin, stdout)

    def _exec_mkdir(self, ref, command, stdin, stdout) -> ExecResult:
        self.host_path(ref, command[-1]).mkdir(parents=True, exist_ok=True)
        return ExecResult(exit_code=0)

    def _exec_rm(self, ref, command, stdin, stdout) -> ExecResult:
        target = self.host_path(ref, command[-1])
        if target.is_dir():
            shutil.rmtree(target)
        elif target.exists():
            target.unlink()
        return ExecResult(exit_code=0)

    def _exec_sh(self, ref, command, stdin, stdout) -> ExecResult:
        words = shlex.split(command[-1])
        if words[0] != "find":
            return ExecResult(exit_code=2, stderr="unsupported script")
        directory = self.host_path(ref, words[1])
        removed = []
        for child in sorted(directory.iterdir()):
            if child.is_file():
                child.unlink()
                removed.append(f"{words[1]}/{child.name}")
        return ExecResult(exit_code=0, stdout="\n".join(removed) + ("\n" if removed else ""))

    def _exec_pg_isready(self, ref, command, stdin, stdout) -> ExecResult:
        if self.containers[ref].running and self.db.ready:
            return ExecResult(exit_code=0, stdout="/var/run/postgresql:5432 - accepting connections\n")
        return ExecResult(exit_code=2, stdout="/var/run/postgresql:5432 - no response\n")

    def _exec_pg_dumpall(self, ref, command, stdin, stdout) -> ExecResult:
        if self.db.dump_exit_code != 0:
            stdout.write(b"-- partial")
            return ExecResult(exit_code=self.db.dump_exit_code, stderr=self.db.dump_stderr)
        stdout.write(self.db.dump_content)
        return ExecResult(exit_code=0)

    def _exec_pg_basebackup(self, ref, command, stdin, stdout) -> ExecResult:
        target = self.host_path(ref, command[command.index("-D") + 1])
        target.mkdir(parents=True, exist_ok=True)
        if self.db.basebackup_exit_code != 0:
            return ExecResult(exit_code=self.db.basebackup_exit_code,
                              stderr="pg_basebackup: error: could not connect to server")
        make_base_backup(target, start_lsn=self.db.basebackup_start_lsn, bundled_segments=[2])
        return ExecResult(exit_code=0, stderr="30000/30000 kB (100%), 1/1 tablespace\n")

    def _exec_psql(self, ref, command, stdin, stdout) -> ExecResult:
        if not self.containers[ref].running:
            return ExecResult(exit_code=2, stderr="psql: error: connection refused")

        if stdin is not None:
            content = stdin.read()
            if self.db.import_exit_code != 0:
                return ExecResult(exit_code=self.db.import_exit_code,
                                  stderr='ERROR:  relation "app" already exists')
            self.db.imported.append(content)
            return ExecResult(exit_code=0)

        sql = command[command.index("-c") + 1]
        if sql.startswith("SHOW "):
            name = sql[5:].rstrip(";").strip()
            return ExecResult(exit_code=0, stdout=self.db.settings.get(name, "") + "\n")
        if sql.startswith("SELECT version()"):
            return ExecResult(exit_code=0, stdout=SERVER_VERSION + "\n")
        if sql.startswith("SELECT now()"):
            return ExecResult(exit_code=0, stdout=self.db.now + "\n")
        if sql.startswith("SELECT pg_switch_wal()"):
            return ExecResult(exit_code=0, stdout="0/3000000\n")
        if "FROM pg_database" in sql:
            return ExecResult(exit_code=0, stdout="app\npostgres\n")
        if "FROM pg_catalog.pg_tables" in sql:
            return ExecResult(exit_code=0, stdout=f"{self.db.user_tables}\n")
        if "FROM pg_stat_archiver" in sql:
            return ExecResult(exit_code=0, stdout=self.db.archiver_row + "\n")
        return ExecResult(exit_code=1, stderr=f"ERROR:  unexpected statement {sql}")


@pytest.fixture
def runtime(tmp_path):
    fake = FakeRuntime(tmp_path / "runtime")
    fake.add_container()
    data = fake.volume_path(VOLUME)
    (data / "PG_VERSION").write_text("16\n")
    (data / "base").mkdir()
    (data / "base" / "live_table").write_bytes(b"live data")
    return fake


@pytest.fixture
def config(tmp_path):
    return BackupRecoveryConfig(
        container=CONTAINER,
        backup_root_path=str(tmp_path / "backups"),
        wal_archive_path=str(tmp_path / "backups" / "wal"),
        safety_snapshot_dir=str(tmp_path / "safety"),
        max_retries=0,
        retry_delay_seconds=0,
        ready_timeout=10,
        ready_poll_interval=1
    )


@pytest.fixture
def no_sleep():
    return lambda seconds: None


@pytest.fixture
def manager(config, runtime, no_sleep):
    return BackupManager(config, runtime=runtime, sleep=no_sleep)
