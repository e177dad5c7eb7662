"""
Container Runtime Interface

The contract every platform adapter implements. The orchestrator only ever
talks to the database container and its data volume through these
operations, so the workflows stay identical whichever runtime is in use.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Mapping, Optional, Sequence


@dataclass
class ExecResult:
    """
    Outcome of a command run inside (or against) a container.

    stdout is empty when the caller streamed it into a file.
    """
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def diagnostic(self) -> str:
        """Best available error text."""
        return (self.stderr or self.stdout).strip()


class ContainerRuntime(ABC):
    """
    Operations the orchestrator needs from a container runtime.

    Container operations raise ContainerStateError when the runtime reports
    a failure. exec() never raises for a non-zero exit code; it returns the
    ExecResult so callers decide what a failure means.
    """

    name = "abstract"

    @abstractmethod
    def is_running(self, ref: str) -> bool:
        """Whether the container is running."""

    @abstractmethod
    def exists(self, ref: str) -> bool:
        """Whether the container exists (running or stopped)."""

    @abstractmethod
    def stop(self, ref: str) -> None:
        """Stop the container."""

    @abstractmethod
    def start(self, ref: str) -> None:
        """Start the container."""

    @abstractmethod
    def exec(
        self,
        ref: str,
        command: Sequence[str],
        stdin: Optional[BinaryIO] = None,
        stdout: Optional[BinaryIO] = None,
        env: Optional[Mapping[str, str]] = None
    ) -> ExecResult:
        """
        Run a command inside the container.

        Args:
            ref: Container name
            command: Program and arguments
            stdin: File streamed to the command's standard input
            stdout: File receiving the command's standard output
            env: Variables passed to the command by name only

        Returns:
            ExecResult with the exit code and captured output
        """

    @abstractmethod
    def copy_out(self, ref: str, src: str, dst: Path) -> None:
        """Copy a path from the container filesystem to the host."""

    @abstractmethod
    def copy_in(self, ref: str, src: Path, dst: str) -> None:
        """Copy a host path into the container filesystem."""

    @abstractmethod
    def resolve_volume(self, ref: str, mount_point: str) -> Optional[str]:
        """
        Find the volume (or bind source) mounted at mount_point.

        Returns:
            Volume name or host path, None if nothing is mounted there
        """

    @abstractmethod
    def archive_volume(self, volume: str, dest_dir: Path, archive_name: str) -> Path:
        """
        Write a gzip-compressed tarball of the whole volume.

        Returns:
            Path of the archive on the host
        """

    @abstractmethod
    def clear_volume(self, volume: str) -> None:
        """Remove every file from the volume, dotfiles included."""

    @abstractmethod
    def extract_into_volume(
        self,
        volume: str,
        archive: Path,
        subdir: str = "",
        owner: Optional[str] = None
    ) -> None:
        """
        Unpack a tarball into the volume.

        Args:
            volume: Target volume
            archive: Host path of a .tar or .tar.gz file
            subdir: Directory inside the volume to unpack into
            owner: uid:gid applied recursively afterwards
        """

    @abstractmethod
    def copy_into_volume(
        self,
        volume: str,
        source_dir: Path,
        subdir: str = "",
        owner: Optional[str] = None
    ) -> None:
        """
        Copy the contents of a host directory into the volume, merging with
        what is already there.
        """
