"""
Backup Recovery Exceptions

Defines the exception hierarchy for backup, WAL archiving, restore and
point-in-time recovery workflows. Each failure class maps to a distinct
operator response: nothing happened (validation), the service could not be
reached, the container runtime misbehaved, or a destructive step failed and
the safety snapshot is now the only way back.
"""

from typing import Optional, Dict, Any, List


class BackupRecoveryError(Exception):
    """
    Base exception for all backup and recovery operations.

    Attributes:
        message: Human-readable error message
        container: Container the operation targeted (if applicable)
        backup_id: Identifier of the backup involved (if applicable)
        context: Additional context information as key-value pairs
        failed_state: Workflow state in which the error surfaced (set by
            the state machine when a restore/PITR session fails)
        safety_snapshot_path: Location of the safety snapshot taken before
            the first destructive step, if one exists

    Example:
        ```python
        try:
            engine.restore_full(BackupKind.PHYSICAL, path, "PG-timescale")
        except BackupRecoveryError as e:
            logger.error(f"Restore failed in {e.failed_state}: {e.message}")
            if e.safety_snapshot_path:
                logger.error(f"Roll back manually from {e.safety_snapshot_path}")
        ```
    """

    def __init__(
        self,
        message: str,
        container: Optional[str] = None,
        backup_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.container = container
        self.backup_id = backup_id
        self.context = context or {}
        self.failed_state: Optional[str] = None
        self.safety_snapshot_path: Optional[str] = None
        super().__init__(self.message)

    def __str__(self) -> str:
        parts = [self.message]
        if self.container:
            parts.append(f"Container: {self.container}")
        if self.backup_id:
            parts.append(f"Backup ID: {self.backup_id}")
        if self.failed_state:
            parts.append(f"State: {self.failed_state}")
        if self.safety_snapshot_path:
            parts.append(f"Safety snapshot: {self.safety_snapshot_path}")
        if self.context:
            parts.append(f"Context: {self.context}")
        return " | ".join(parts)


class ConnectivityError(BackupRecoveryError):
    """
    The database control interface is unreachable.

    Raised before a backup starts when the container is not running or the
    server does not accept connections, and during verification when the
    restored server does not answer a trivial query.
    """

    def __init__(
        self,
        message: str,
        container: Optional[str] = None,
        diagnostic: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, container, None, context)
        self.diagnostic = diagnostic


class BackupValidationError(BackupRecoveryError):
    """
    Pre-flight validation failed.

    Raised for a missing or unreadable backup artifact, a missing WAL
    archive, or a malformed recovery target. Always raised before any
    mutation, so the system is untouched.

    Additional Attributes:
        validation_errors: List of specific validation failures
    """

    def __init__(
        self,
        message: str,
        container: Optional[str] = None,
        backup_id: Optional[str] = None,
        validation_errors: Optional[List[str]] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, container, backup_id, context)
        self.validation_errors = validation_errors or []


class ContainerStateError(BackupRecoveryError):
    """
    A container runtime operation failed.

    Raised when the runtime cannot stop, start, copy to or from, or inspect a
    container, or when the safety snapshot could not be written.

    Additional Attributes:
        operation: Runtime operation that failed (stop, start, copy_out, ...)
        exit_code: Exit code of the runtime command, if any
        stderr: Raw diagnostic output of the runtime command
    """

    def __init__(
        self,
        message: str,
        container: Optional[str] = None,
        operation: Optional[str] = None,
        exit_code: Optional[int] = None,
        stderr: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, container, None, context)
        self.operation = operation
        self.exit_code = exit_code
        self.stderr = stderr


class DestructiveOperationError(BackupRecoveryError):
    """
    A step after the point of no return failed.

    Raised when clearing the live volume, copying backup data into it, or
    importing a logical dump fails. Live storage is in an undefined state
    and the safety snapshot must be used for manual rollback.
    """

    def __init__(
        self,
        message: str,
        container: Optional[str] = None,
        step: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, container, None, context)
        self.step = step


class OperationTimeoutError(BackupRecoveryError, TimeoutError):
    """
    Readiness was not reached within the configured bound.

    Additional Attributes:
        timeout_seconds: The bound that elapsed
        elapsed_seconds: Time actually spent waiting
    """

    def __init__(
        self,
        message: str,
        container: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        elapsed_seconds: Optional[float] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        BackupRecoveryError.__init__(self, message, container, None, context)
        self.timeout_seconds = timeout_seconds
        self.elapsed_seconds = elapsed_seconds


class BackupIntegrityError(BackupRecoveryError):
    """
    Backup data is inconsistent.

    Raised for a gap in the WAL segment sequence required by a recovery, or
    for a mismatch between a sidecar record and its artifact (size or
    checksum).

    Additional Attributes:
        missing_segments: WAL segment file names absent from the archive
        expected: Expected value (size, checksum)
        actual: Observed value
    """

    def __init__(
        self,
        message: str,
        backup_id: Optional[str] = None,
        missing_segments: Optional[List[str]] = None,
        expected: Optional[Any] = None,
        actual: Optional[Any] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, None, backup_id, context)
        self.missing_segments = missing_segments or []
        self.expected = expected
        self.actual = actual


class SafetyPreconditionError(BackupRecoveryError):
    """
    A destructive state was requested without a current safety snapshot.
    """


class InvalidStateTransitionError(BackupRecoveryError):
    """
    A workflow attempted a transition its transition table does not allow.

    Additional Attributes:
        from_state: State the session was in
        to_state: State that was requested
    """

    def __init__(
        self,
        message: str,
        from_state: Optional[str] = None,
        to_state: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, None, None, context)
        self.from_state = from_state
        self.to_state = to_state
