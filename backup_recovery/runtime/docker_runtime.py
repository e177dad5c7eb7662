"""
Docker and Podman Runtime Adapters

Wraps the docker (or podman) command line. Volume operations run in a
throwaway helper container that mounts the data volume, the same way an
operator would do it by hand, so the adapter needs nothing but the CLI.
"""

import logging
import os
import shlex
import subprocess
from pathlib import Path
from typing import BinaryIO, List, Mapping, Optional, Sequence

from ..exceptions import ContainerStateError
from .base import ContainerRuntime, ExecResult

logger = logging.getLogger(__name__)


class DockerRuntime(ContainerRuntime):
    """
    Container runtime backed by the docker CLI.

    Example:
        ```python
        runtime = DockerRuntime(helper_image="alpine:3.20")
        if runtime.is_running("PG-timescale"):
            result = runtime.exec("PG-timescale", ["pg_isready", "-U", "postgres"])
        ```
    """

    name = "docker"
    binary = "docker"

    def __init__(self, helper_image: str = "alpine:3.20", binary: Optional[str] = None):
        """
        Initialize the adapter.

        Args:
            helper_image: Image used for volume operations
            binary: Override the CLI executable (path or name)
        """
        self.helper_image = helper_image
        if binary:
            self.binary = binary
        logger.debug(f"{type(self).__name__} initialized (binary={self.binary}, helper={helper_image})")

    def _run(
        self,
        args: Sequence[str],
        stdin: Optional[BinaryIO] = None,
        stdout: Optional[BinaryIO] = None,
        env: Optional[Mapping[str, str]] = None
    ) -> ExecResult:
        """Execute a runtime CLI command and capture its outcome."""
        command = [self.binary, *args]
        logger.debug(f"Running: {' '.join(shlex.quote(a) for a in command)}")

        process_env = None
        if env:
            process_env = dict(os.environ)
            process_env.update(env)

        try:
            completed = subprocess.run(
                command,
                stdin=stdin if stdin is not None else subprocess.DEVNULL,
                stdout=stdout if stdout is not None else subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=process_env,
                check=False
            )
        except FileNotFoundError as e:
            raise ContainerStateError(
                f"Container runtime '{self.binary}' is not installed or not on PATH",
                operation=args[0] if args else None
            ) from e

        out = completed.stdout.decode("utf-8", errors="replace") if completed.stdout else ""
        err = completed.stderr.decode("utf-8", errors="replace") if completed.stderr else ""
        return ExecResult(exit_code=completed.returncode, stdout=out, stderr=err)

    def _require(self, result: ExecResult, operation: str, ref: str, message: str) -> ExecResult:
        if not result.ok:
            raise ContainerStateError(
                f"{message}: {result.diagnostic}",
                container=ref,
                operation=operation,
                exit_code=result.exit_code,
                stderr=result.stderr
            )
        return result

    def _list_names(self, ref: str, include_stopped: bool) -> List[str]:
        args = ["ps"]
        if include_stopped:
            args.append("-a")
        args += ["--filter", f"name=^{ref}$", "--format", "{{.Names}}"]
        result = self._require(self._run(args), "ps", ref, "Could not list containers")
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def is_running(self, ref: str) -> bool:
        return ref in self._list_names(ref, include_stopped=False)

    def exists(self, ref: str) -> bool:
        return ref in self._list_names(ref, include_stopped=True)

    def stop(self, ref: str) -> None:
        logger.info(f"Stopping container {ref}")
        self._require(self._run(["stop", ref]), "stop", ref, f"Could not stop container '{ref}'")

    def start(self, ref: str) -> None:
        logger.info(f"Starting container {ref}")
        self._require(self._run(["start", ref]), "start", ref, f"Could not start container '{ref}'")

    def exec(
        self,
        ref: str,
        command: Sequence[str],
        stdin: Optional[BinaryIO] = None,
        stdout: Optional[BinaryIO] = None,
        env: Optional[Mapping[str, str]] = None
    ) -> ExecResult:
        args = ["exec"]
        if stdin is not None:
            args.append("-i")
        # Names only: values reach the CLI through its own environment
        for name in (env or {}):
            args += ["-e", name]
        args.append(ref)
        args += list(command)
        return self._run(args, stdin=stdin, stdout=stdout, env=env)

    def copy_out(self, ref: str, src: str, dst: Path) -> None:
        self._require(
            self._run(["cp", f"{ref}:{src}", str(dst)]),
            "copy_out", ref, f"Could not copy {src} out of '{ref}'"
        )

    def copy_in(self, ref: str, src: Path, dst: str) -> None:
        self._require(
            self._run(["cp", str(src), f"{ref}:{dst}"]),
            "copy_in", ref, f"Could not copy {src} into '{ref}'"
        )

    def resolve_volume(self, ref: str, mount_point: str) -> Optional[str]:
        template = (
            "{{range .Mounts}}{{if eq .Destination \"" + mount_point + "\"}}"
            "{{if .Name}}{{.Name}}{{else}}{{.Source}}{{end}}{{end}}{{end}}"
        )
        result = self._require(
            self._run(["inspect", ref, "--format", template]),
            "inspect", ref, f"Could not inspect container '{ref}'"
        )
        volume = result.stdout.strip()
        return volume or None

    def _helper(self, mounts: Sequence[str], script: str) -> ExecResult:
        args = ["run", "--rm"]
        for mount in mounts:
            args += ["-v", mount]
        args += [self.helper_image, "sh", "-c", script]
        return self._run(args)

    @staticmethod
    def _ownership(owner: Optional[str]) -> str:
        if not owner:
            return ""
        return f" && chown -R {shlex.quote(owner)} /target && chmod 700 /target"

    def archive_volume(self, volume: str, dest_dir: Path, archive_name: str) -> Path:
        dest_dir = Path(dest_dir).resolve()
        dest_dir.mkdir(parents=True, exist_ok=True)
        result = self._helper(
            [f"{volume}:/source:ro", f"{dest_dir}:/backup"],
            f"tar czf /backup/{shlex.quote(archive_name)} -C /source ."
        )
        self._require(result, "archive_volume", volume, f"Could not archive volume '{volume}'")
        return dest_dir / archive_name

    def clear_volume(self, volume: str) -> None:
        result = self._helper([f"{volume}:/data"], "find /data -mindepth 1 -delete")
        self._require(result, "clear_volume", volume, f"Could not clear volume '{volume}'")

    def extract_into_volume(
        self,
        volume: str,
        archive: Path,
        subdir: str = "",
        owner: Optional[str] = None
    ) -> None:
        archive = Path(archive).resolve()
        target = f"/target/{subdir}".rstrip("/")
        flags = "xzf" if archive.name.endswith(".gz") else "xf"
        script = (
            f"mkdir -p {shlex.quote(target)} && "
            f"tar {flags} /backup/{shlex.quote(archive.name)} -C {shlex.quote(target)}"
            + self._ownership(owner)
        )
        result = self._helper([f"{volume}:/target", f"{archive.parent}:/backup:ro"], script)
        self._require(result, "extract_into_volume", volume, f"Could not unpack {archive.name} into '{volume}'")

    def copy_into_volume(
        self,
        volume: str,
        source_dir: Path,
        subdir: str = "",
        owner: Optional[str] = None
    ) -> None:
        source_dir = Path(source_dir).resolve()
        target = f"/target/{subdir}".rstrip("/")
        script = (
            f"mkdir -p {shlex.quote(target)} && cp -a /source/. {shlex.quote(target)}/"
            + self._ownership(owner)
        )
        result = self._helper([f"{volume}:/target", f"{source_dir}:/source:ro"], script)
        self._require(result, "copy_into_volume", volume, f"Could not copy {source_dir} into '{volume}'")


class PodmanRuntime(DockerRuntime):
    """Podman speaks the docker CLI dialect for every command used here."""

    name = "podman"
    binary = "podman"


_RUNTIMES = {
    "docker": DockerRuntime,
    "podman": PodmanRuntime,
}


def get_runtime(name: str, helper_image: str = "alpine:3.20") -> ContainerRuntime:
    """
    Build the adapter for a runtime name.

    Raises:
        ValueError: If the runtime is not supported
    """
    try:
        runtime_cls = _RUNTIMES[name]
    except KeyError:
        raise ValueError(f"Unsupported container runtime: {name}")
    return runtime_cls(helper_image=helper_image)
