"""
pgops command line

Usage examples:
    pgops backup create logical
    pgops backup list
    pgops wal setup
    pgops wal capture
    pgops restore full ./backups/full_backup_20260108_120000.sql logical
    pgops restore pitr ./backups/basebackup_20260108_120000 ./backups/wal --target-time "2026-01-08 14:30:00"
    pgops safety list

Exit codes: 0 success, 1 failure, 2 completed with warnings.
"""

import argparse
import dataclasses
import sys
from typing import List, Optional

from loguru import logger
from pydantic import ValidationError

from config import load_settings
from .config import BackupRecoveryConfig
from .core.manager import BackupManager
from .exceptions import BackupRecoveryError
from .logging_setup import configure_logging
from .models.entities import BackupKind, RestoreResult, StateTransition
from .models.parameters import BackupParams, PITRParams, RestoreParams, build_recovery_target
from .runtime.base import ContainerRuntime

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_WARNINGS = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pgops",
        description="Backup and recovery for PostgreSQL running in a container"
    )
    parser.add_argument("--config", help="YAML settings file")
    parser.add_argument("--container", help="Database container (overrides settings)")
    parser.add_argument("--log-file", help="JSON log file (overrides settings)")
    parser.add_argument("--log-level", help="Log level (overrides settings)")
    parser.add_argument("-y", "--yes", action="store_true", help="Do not prompt before destructive steps")

    commands = parser.add_subparsers(dest="command", required=True)

    # backup
    backup = commands.add_parser("backup", help="Full backups").add_subparsers(dest="action", required=True)
    create = backup.add_parser("create", help="Create a full backup")
    create.add_argument("kind", choices=[k.value for k in BackupKind])
    create.add_argument("--output-dir", help="Destination directory")
    create.add_argument("--retention-days", type=int, help="Delete backups older than this many days")
    listing = backup.add_parser("list", help="List full backups")
    listing.add_argument("--output-dir", help="Backup directory")

    # wal
    wal = commands.add_parser("wal", help="WAL archiving")
    wal.add_argument("action", choices=["setup", "capture", "status", "archive", "cleanup"])
    wal.add_argument("--archive-dir", help="Local WAL archive directory")

    # restore
    restore = commands.add_parser("restore", help="Restore and point-in-time recovery")
    restore_actions = restore.add_subparsers(dest="action", required=True)

    full = restore_actions.add_parser("full", help="Restore a full backup")
    full.add_argument("path", help="Backup artifact")
    full.add_argument("kind", choices=[k.value for k in BackupKind])
    full.add_argument("--require-empty-target", action="store_true",
                      help="Refuse a logical restore into a non-empty server")
    _add_restore_options(full)

    pitr = restore_actions.add_parser("pitr", help="Point-in-time recovery")
    pitr.add_argument("base_backup", help="Physical base backup")
    pitr.add_argument("wal_archive", help="WAL archive directory")
    targets = pitr.add_mutually_exclusive_group()
    targets.add_argument("--target-time", help="Recovery target timestamp")
    targets.add_argument("--target-xid", help="Recovery target transaction id")
    targets.add_argument("--target-name", help="Recovery target restore point")
    targets.add_argument("--target-lsn", help="Recovery target LSN")
    pitr.add_argument("--target-action", default="promote", choices=["promote", "pause"])
    _add_restore_options(pitr)

    # safety
    safety = commands.add_parser("safety", help="Safety snapshots").add_subparsers(dest="action", required=True)
    safety_list = safety.add_parser("list", help="List safety snapshots")
    safety_list.add_argument("--dir", help="Snapshot directory")
    release = safety.add_parser("release", help="Delete a safety snapshot")
    release.add_argument("path", help="Snapshot archive")

    return parser


def _add_restore_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--no-verify-checksum", action="store_true", help="Skip the sidecar checksum check")
    parser.add_argument("--ready-timeout", type=float, help="Seconds to wait for the server")
    parser.add_argument("--poll-interval", type=float, help="Seconds between readiness probes")


def confirm(prompt: str, assume_yes: bool) -> bool:
    """Ask the operator for confirmation unless --yes was given."""
    if assume_yes:
        return True
    try:
        answer = input(f"{prompt} [y/N]: ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def _print_transition(transition: StateTransition) -> None:
    if transition.from_state is None:
        print(f"  {transition.to_state.value}")
    else:
        print(f"  {transition.from_state.value} -> {transition.to_state.value}")


def _report_restore(result: RestoreResult) -> int:
    if result.success:
        print(f"{result.workflow} completed in {result.execution_time_seconds:.1f}s")
        if result.server_version:
            print(f"Server: {result.server_version}")
        if result.observed_time:
            print(f"Database time: {result.observed_time}")
        if result.safety_snapshot_path:
            print(f"Safety snapshot kept: {result.safety_snapshot_path}")
        for warning in result.warnings:
            print(f"Warning: {warning}")
        return EXIT_WARNINGS if result.warnings else EXIT_OK

    print(f"{result.workflow} failed in {result.failed_state.value if result.failed_state else '?'}: "
          f"[{result.error_type}] {result.error_message}", file=sys.stderr)
    if result.safety_snapshot_path:
        print(f"Roll back manually from: {result.safety_snapshot_path}", file=sys.stderr)
    return EXIT_FAILURE


def _cmd_backup(manager: BackupManager, args: argparse.Namespace) -> int:
    if args.action == "list":
        records = manager.list_backups(args.output_dir)
        if not records:
            print("No backups found")
        for record in records:
            print(f"{record.backup_id}  {record.kind.value:<8}  {record.status.value:<10}  "
                  f"{record.size_mb:>10.2f} MB  {record.storage_path}")
        return EXIT_OK

    params = BackupParams(kind=BackupKind(args.kind), output_dir=args.output_dir, retention_days=args.retention_days)
    result = manager.create_backup(params)
    for path in result.deleted_by_retention:
        print(f"Retention removed: {path}")
    if result.success:
        print(f"Backup completed: {result.record.storage_path} ({result.record.size_mb:.2f} MB)")
        return EXIT_OK
    print(f"Backup failed: [{result.error_type or 'BackupFailed'}] {result.error_message}", file=sys.stderr)
    return EXIT_FAILURE


def _cmd_wal(manager: BackupManager, args: argparse.Namespace) -> int:
    if args.action == "setup":
        settings = manager.setup_wal_archiving(archive_dir=args.archive_dir)
        print(f"WAL archive directory: {settings.local_archive_dir}")
        print("Apply these settings in postgresql.conf and restart the server:")
        print(settings.to_postgresql_conf())
        return EXIT_OK

    if args.action == "status":
        status = manager.wal_status()
        print(f"Archive mode:    {status.archive_mode}")
        print(f"WAL level:       {status.wal_level}")
        print(f"Archive command: {status.archive_command}")
        print(f"Archived:        {status.archived_count} (last {status.last_archived_segment or '-'} "
              f"at {status.last_archived_time or '-'})")
        print(f"Failed:          {status.failed_count} (last {status.last_failed_segment or '-'})")
        return EXIT_WARNINGS if status.failed_count or not status.is_archiving else EXIT_OK

    if args.action == "capture":
        increment = manager.capture_wal(archive_dir=args.archive_dir)
        print(f"Captured {increment.segment_count} segment(s), "
              f"{increment.size_bytes / (1024 * 1024):.2f} MB -> {increment.path}")
        if increment.has_gaps:
            print(f"Warning: missing segments {', '.join(increment.gaps)}")
            return EXIT_WARNINGS
        return EXIT_OK

    if args.action == "archive":
        destination = manager.archive_live_wal(archive_dir=args.archive_dir)
        print(f"Live WAL archived to {destination}")
        return EXIT_OK

    confirmed = confirm(f"Delete archived WAL inside {manager.config.container}?", args.yes)
    removed = manager.cleanup_wal_source(confirmed=confirmed)
    print(f"Removed {removed} file(s)" if confirmed else "Cleanup cancelled")
    return EXIT_OK if confirmed else EXIT_WARNINGS


def _cmd_restore(manager: BackupManager, args: argparse.Namespace) -> int:
    container = manager.config.container
    if args.action == "full" and args.kind == BackupKind.LOGICAL.value:
        prompt = f"This replays the dump into {container}; existing objects may conflict. Continue?"
    else:
        prompt = f"This REPLACES all data in {container}. Continue?"
    if not confirm(prompt, args.yes):
        print("Restore cancelled")
        return EXIT_FAILURE

    print("Progress:")
    if args.action == "full":
        params = RestoreParams(
            verify_checksum=not args.no_verify_checksum,
            require_empty_target=args.require_empty_target,
            ready_timeout=args.ready_timeout,
            poll_interval=args.poll_interval
        )
        result = manager.restore_full(BackupKind(args.kind), args.path, params=params, observer=_print_transition)
        return _report_restore(result)

    target = build_recovery_target(args.target_time, args.target_xid, args.target_name, args.target_lsn)
    params = PITRParams(
        target=target,
        target_action=args.target_action,
        verify_checksum=not args.no_verify_checksum,
        ready_timeout=args.ready_timeout,
        poll_interval=args.poll_interval
    )
    result = manager.restore_pitr(args.base_backup, args.wal_archive, params=params, observer=_print_transition)
    return _report_restore(result)


def _cmd_safety(manager: BackupManager, args: argparse.Namespace) -> int:
    if args.action == "list":
        snapshots = manager.list_safety_snapshots(args.dir)
        if not snapshots:
            print("No safety snapshots found")
        for path in snapshots:
            print(f"{path}  {path.stat().st_size / (1024 * 1024):.2f} MB")
        return EXIT_OK

    confirmed = confirm(f"Delete safety snapshot {args.path}?", args.yes)
    if manager.release_safety_snapshot(args.path, confirmed=confirmed):
        print(f"Released {args.path}")
        return EXIT_OK
    print("Release cancelled")
    return EXIT_WARNINGS


COMMANDS = {
    "backup": _cmd_backup,
    "wal": _cmd_wal,
    "restore": _cmd_restore,
    "safety": _cmd_safety,
}


def build_config(args: argparse.Namespace) -> BackupRecoveryConfig:
    settings = load_settings(args.config)
    configure_logging(
        args.log_level or settings.monitoring.log_level,
        args.log_file or settings.monitoring.log_file
    )
    config = BackupRecoveryConfig.from_settings(settings)
    if args.container:
        config = dataclasses.replace(config, container=args.container)
    return config


def main(argv: Optional[List[str]] = None, runtime: Optional[ContainerRuntime] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = build_config(args)
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return EXIT_FAILURE

    try:
        manager = BackupManager(config, runtime=runtime)
        return COMMANDS[args.command](manager, args)
    except BackupRecoveryError as e:
        logger.error(f"{args.command} {getattr(args, 'action', '')} failed: {e}")
        print(f"Error: [{type(e).__name__}] {e.message}", file=sys.stderr)
        return EXIT_FAILURE
    except ValidationError as e:
        logger.error(f"{args.command} {getattr(args, 'action', '')} rejected: {e}")
        print(f"Invalid arguments: {e}", file=sys.stderr)
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
