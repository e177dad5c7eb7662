"""
Retention Policy Management

Decides which full backups to keep and which to delete. Supports age-based
(strictly older than N days) and count-based (keep the N most recent)
rules, while always retaining a configurable minimum number of backups.
"""

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from ..models.entities import BackupRecord

logger = logging.getLogger(__name__)


class RetentionPolicyManager:
    """
    Manage backup retention policies.

    Backups are grouped by container and backup kind, and the policy is
    applied to each group separately. A rule set to 0 is disabled; with
    every rule disabled nothing is ever deleted.

    A backup is deleted when it breaks an enabled rule and is not among the
    min_backups_to_keep most recent of its group.

    Example:
        ```python
        manager = RetentionPolicyManager(retention_days=30)

        to_keep, to_delete = manager.apply_retention_policy(records)

        print(f"Keeping {len(to_keep)} backups")
        print(f"Deleting {len(to_delete)} backups")
        ```
    """

    def __init__(
        self,
        retention_days: int = 30,
        retention_count: int = 0,
        min_backups_to_keep: int = 0,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize retention policy manager.

        Args:
            retention_days: Delete backups strictly older than this (0 disables)
            retention_count: Maximum number of backups per group (0 disables)
            min_backups_to_keep: Minimum backups to retain regardless of age
            clock: Returns "now"; injectable for tests
        """
        if retention_count < 0:
            raise ValueError("retention_count cannot be negative")
        if retention_days < 0:
            raise ValueError("retention_days cannot be negative")
        if min_backups_to_keep < 0:
            raise ValueError("min_backups_to_keep cannot be negative")

        self.retention_days = retention_days
        self.retention_count = retention_count
        self.min_backups_to_keep = min_backups_to_keep
        self.clock = clock or datetime.now

        logger.debug(
            f"Retention policy initialized: "
            f"days={retention_days}, count={retention_count}, min={min_backups_to_keep}"
        )

    @property
    def enabled(self) -> bool:
        return self.retention_days > 0 or self.retention_count > 0

    def apply_retention_policy(
        self,
        backups: List[BackupRecord]
    ) -> Tuple[List[BackupRecord], List[BackupRecord]]:
        """
        Apply retention policy to a list of backups.

        Args:
            backups: Backup records to evaluate

        Returns:
            Tuple of (backups_to_keep, backups_to_delete)
        """
        if not backups:
            logger.debug("No backups to apply retention policy to")
            return [], []

        if not self.enabled:
            logger.debug("Retention disabled, keeping all backups")
            return list(backups), []

        to_keep = []
        to_delete = []

        for group, group_backups in self._group(backups).items():
            keep, delete = self._apply_policy_to_group(group, group_backups)
            to_keep.extend(keep)
            to_delete.extend(delete)

        logger.info(
            f"Retention policy applied: {len(to_keep)} to keep, {len(to_delete)} to delete"
        )

        return to_keep, to_delete

    def _group(self, backups: List[BackupRecord]) -> Dict[Tuple[str, str], List[BackupRecord]]:
        grouped = defaultdict(list)
        for backup in backups:
            grouped[(backup.container, backup.kind.value)].append(backup)
        return grouped

    def _apply_policy_to_group(
        self,
        group: Tuple[str, str],
        backups: List[BackupRecord]
    ) -> Tuple[List[BackupRecord], List[BackupRecord]]:
        # Newest first
        sorted_backups = sorted(backups, key=lambda b: b.created_at, reverse=True)

        cutoff_date = None
        if self.retention_days > 0:
            cutoff_date = self.clock() - timedelta(days=self.retention_days)

        to_keep = []
        to_delete = []

        for i, backup in enumerate(sorted_backups):
            too_old = cutoff_date is not None and backup.created_at < cutoff_date
            over_count = self.retention_count > 0 and i >= self.retention_count

            if i < self.min_backups_to_keep or not (too_old or over_count):
                to_keep.append(backup)
            else:
                to_delete.append(backup)
                logger.debug(
                    f"Marking for deletion: {backup.backup_id} "
                    f"({'older than cutoff' if too_old else 'over retention count'})"
                )

        container, kind = group
        logger.debug(
            f"{container}/{kind}: {len(to_keep)} backups to keep, {len(to_delete)} to delete"
        )

        return to_keep, to_delete

    def get_policy_summary(self) -> dict:
        """
        Get a summary of the retention policy configuration.

        Returns:
            Dictionary with policy details
        """
        return {
            'retention_days': self.retention_days,
            'retention_count': self.retention_count,
            'min_backups_to_keep': self.min_backups_to_keep,
            'description': self._generate_policy_description()
        }

    def _generate_policy_description(self) -> str:
        """Generate human-readable policy description."""
        parts = []

        if self.retention_days > 0:
            parts.append(f"delete backups older than {self.retention_days} days")

        if self.retention_count > 0:
            parts.append(f"keep up to {self.retention_count} most recent backups")

        if self.min_backups_to_keep > 0:
            parts.append(f"always keep at least {self.min_backups_to_keep} backups")

        if not parts:
            return "no retention policy configured"

        return "; ".join(parts)

    def __repr__(self) -> str:
        """String representation of retention policy."""
        return (
            f"RetentionPolicyManager("
            f"days={self.retention_days}, "
            f"count={self.retention_count}, "
            f"min={self.min_backups_to_keep})"
        )
