"""
Recovery Session State Machine

A RecoverySession tracks one restore or point-in-time recovery run. Every
move goes through advance(), which checks the workflow's transition table
and the safety snapshot precondition, then records and logs the
transition. Sessions are in-memory only.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, FrozenSet, List, Optional

from ..exceptions import (
    BackupRecoveryError,
    InvalidStateTransitionError,
    SafetyPreconditionError,
)
from ..models.entities import RecoveryState, SafetySnapshot, StateTransition

logger = logging.getLogger(__name__)

S = RecoveryState

TransitionTable = Dict[RecoveryState, FrozenSet[RecoveryState]]

LOGICAL_RESTORE: TransitionTable = {
    S.VALIDATING: frozenset({S.IMPORTING}),
    S.IMPORTING: frozenset({S.AWAITING_READY}),
    S.AWAITING_READY: frozenset({S.VERIFYING}),
    S.VERIFYING: frozenset({S.DONE}),
}

PHYSICAL_RESTORE: TransitionTable = {
    S.VALIDATING: frozenset({S.SNAPSHOTTING}),
    S.SNAPSHOTTING: frozenset({S.STOPPED}),
    S.STOPPED: frozenset({S.CLEARING}),
    S.CLEARING: frozenset({S.COPYING}),
    S.COPYING: frozenset({S.STARTING}),
    S.STARTING: frozenset({S.AWAITING_READY}),
    S.AWAITING_READY: frozenset({S.VERIFYING}),
    S.VERIFYING: frozenset({S.DONE}),
}

PITR: TransitionTable = {
    S.VALIDATING: frozenset({S.SNAPSHOTTING}),
    S.SNAPSHOTTING: frozenset({S.STOPPED}),
    S.STOPPED: frozenset({S.CLEARING}),
    S.CLEARING: frozenset({S.RESTORING_BASE}),
    S.RESTORING_BASE: frozenset({S.CONFIGURING_RECOVERY}),
    S.CONFIGURING_RECOVERY: frozenset({S.STARTING}),
    S.STARTING: frozenset({S.AWAITING_READY}),
    S.AWAITING_READY: frozenset({S.VERIFYING}),
    S.VERIFYING: frozenset({S.DONE}),
}

WORKFLOWS: Dict[str, TransitionTable] = {
    "logical-restore": LOGICAL_RESTORE,
    "physical-restore": PHYSICAL_RESTORE,
    "pitr": PITR,
}

# States that mutate the live volume
DESTRUCTIVE_STATES = frozenset({S.STOPPED, S.CLEARING})


@dataclass
class RecoverySession:
    """
    One run of a restore or PITR workflow.

    Attributes:
        workflow: Workflow name (key of WORKFLOWS)
        container: Target container
        started_at: Session start; the safety snapshot must not be older
        state: Current state
        history: Every transition taken, in order
        safety_snapshot: Snapshot taken during Snapshotting
        error: The error that failed the session
        failed_state: State in which the error occurred
        server_version: Version reported during Verifying
        observed_time: Database time logged after a time-targeted PITR
        warnings: Non-fatal findings
        observer: Called with each StateTransition (progress output)
    """
    workflow: str
    container: str
    started_at: datetime = field(default_factory=datetime.now)
    state: RecoveryState = RecoveryState.VALIDATING
    history: List[StateTransition] = field(default_factory=list)
    safety_snapshot: Optional[SafetySnapshot] = None
    error: Optional[BackupRecoveryError] = None
    failed_state: Optional[RecoveryState] = None
    server_version: Optional[str] = None
    observed_time: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    observer: Optional[Callable[[StateTransition], None]] = None

    def __post_init__(self):
        if self.workflow not in WORKFLOWS:
            raise ValueError(f"Unknown workflow: {self.workflow}")
        if not self.history:
            self._record(None, self.state)

    @property
    def transitions(self) -> TransitionTable:
        return WORKFLOWS[self.workflow]

    @property
    def succeeded(self) -> bool:
        return self.state == RecoveryState.DONE

    @property
    def safety_snapshot_path(self) -> Optional[str]:
        return self.safety_snapshot.archive_path if self.safety_snapshot else None

    def _record(self, from_state: Optional[RecoveryState], to_state: RecoveryState) -> None:
        transition = StateTransition(from_state=from_state, to_state=to_state)
        self.history.append(transition)
        if from_state is not None:
            logger.info(f"[{self.workflow}] {from_state.value} -> {to_state.value}")
        if self.observer:
            self.observer(transition)

    def advance(self, to_state: RecoveryState) -> None:
        """
        Move to to_state.

        Raises:
            InvalidStateTransitionError: If the table does not allow the move
            SafetyPreconditionError: If to_state is destructive and no snapshot
                newer than the session start exists
        """
        allowed = self.transitions.get(self.state, frozenset())
        if to_state not in allowed:
            raise InvalidStateTransitionError(
                f"{self.workflow}: {self.state.value} -> {to_state.value} is not allowed",
                from_state=self.state.value,
                to_state=to_state.value
            )

        if to_state in DESTRUCTIVE_STATES:
            snapshot = self.safety_snapshot
            if snapshot is None or snapshot.created_at < self.started_at:
                raise SafetyPreconditionError(
                    f"Refusing to enter {to_state.value} without a safety snapshot "
                    f"taken after {self.started_at.isoformat()}",
                    container=self.container
                )

        previous = self.state
        self.state = to_state
        self._record(previous, to_state)

    def attach_snapshot(self, snapshot: SafetySnapshot) -> None:
        self.safety_snapshot = snapshot

    def fail(self, error: BackupRecoveryError) -> BackupRecoveryError:
        """
        Move to Failed from any non-terminal state.

        The error is annotated with the failed state and the snapshot path
        and returned for re-raising.
        """
        if self.state.is_terminal:
            raise InvalidStateTransitionError(
                f"{self.workflow}: session already {self.state.value}",
                from_state=self.state.value,
                to_state=RecoveryState.FAILED.value
            )

        self.failed_state = self.state
        self.error = error
        error.failed_state = self.state.value
        error.safety_snapshot_path = self.safety_snapshot_path
        if error.container is None:
            error.container = self.container

        previous = self.state
        self.state = RecoveryState.FAILED
        self._record(previous, RecoveryState.FAILED)

        logger.error(f"[{self.workflow}] failed in {previous.value}: {error.message}")
        if self.safety_snapshot_path and previous not in (S.VALIDATING, S.SNAPSHOTTING):
            logger.error(f"[{self.workflow}] manual rollback archive: {self.safety_snapshot_path}")
        return error
