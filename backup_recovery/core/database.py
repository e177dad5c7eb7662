"""
Database Control Interface

Runs PostgreSQL client tools (psql, pg_dumpall, pg_basebackup, pg_isready)
inside the database container through the container runtime. Every call
acquires the credential in a scoped block that clears it on exit; the
password reaches the runtime by environment variable name only and never
appears on a command line.
"""

import logging
import time
from contextlib import contextmanager
from typing import BinaryIO, Callable, Dict, Iterator, List, Optional, Sequence

from tenacity import Retrying, retry_if_result, stop_after_attempt, wait_fixed

from ..config import BackupRecoveryConfig
from ..exceptions import ConnectivityError
from ..runtime.base import ContainerRuntime, ExecResult

logger = logging.getLogger(__name__)

READY_MARKER = "accepting connections"


class DatabaseControl:
    """
    Control commands against the PostgreSQL server in a container.

    Example:
        ```python
        db = DatabaseControl(DockerRuntime(), config)
        db.ensure_reachable("PG-timescale")
        print(db.server_version("PG-timescale"))
        ```
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        config: BackupRecoveryConfig,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.runtime = runtime
        self.config = config
        self._sleep = sleep

    @contextmanager
    def credentials(self) -> Iterator[Dict[str, str]]:
        """
        Yield the environment carrying the password, cleared on every exit path.
        """
        env: Dict[str, str] = {}
        if self.config.db_password is not None:
            env["PGPASSWORD"] = self.config.db_password.get_secret_value()
        try:
            yield env
        finally:
            env.clear()

    def run(
        self,
        ref: str,
        command: Sequence[str],
        stdin: Optional[BinaryIO] = None,
        stdout: Optional[BinaryIO] = None
    ) -> ExecResult:
        """Run a client command in the container with credentials in scope."""
        with self.credentials() as env:
            return self.runtime.exec(ref, command, stdin=stdin, stdout=stdout, env=env or None)

    def _psql(self, *extra: str) -> List[str]:
        return [
            "psql",
            "-U", self.config.db_user,
            "-d", self.config.db_name,
            "-v", "ON_ERROR_STOP=1",
            *extra
        ]

    def is_ready(self, ref: str) -> bool:
        """Single pg_isready probe."""
        result = self.run(ref, ["pg_isready", "-U", self.config.db_user])
        return result.ok and READY_MARKER in result.stdout

    def ensure_reachable(self, ref: str) -> None:
        """
        Confirm the container runs and the server accepts connections.

        The readiness probe is retried max_retries times, retry_delay_seconds
        apart.

        Raises:
            ConnectivityError: If the container is not running or the server
                never answers
        """
        if not self.runtime.is_running(ref):
            raise ConnectivityError(f"Container '{ref}' is not running", container=ref)

        retryer = Retrying(
            stop=stop_after_attempt(self.config.max_retries + 1),
            wait=wait_fixed(self.config.retry_delay_seconds),
            retry=retry_if_result(lambda ready: not ready),
            retry_error_callback=lambda state: False,
            sleep=self._sleep
        )
        if not retryer(self.is_ready, ref):
            raise ConnectivityError(
                f"PostgreSQL in '{ref}' is not accepting connections",
                container=ref,
                context={"attempts": self.config.max_retries + 1}
            )
        logger.debug(f"PostgreSQL in {ref} is reachable")

    def query(self, ref: str, sql: str) -> str:
        """
        Run a statement and return its unaligned, tuples-only output.

        Raises:
            ConnectivityError: If psql exits non-zero
        """
        result = self.run(ref, self._psql("-t", "-A", "-c", sql))
        if not result.ok:
            raise ConnectivityError(
                f"Query failed in '{ref}': {result.diagnostic}",
                container=ref,
                diagnostic=result.stderr
            )
        return result.stdout.strip()

    def query_rows(self, ref: str, sql: str) -> List[List[str]]:
        output = self.query(ref, sql)
        return [line.split("|") for line in output.splitlines() if line]

    def server_version(self, ref: str) -> str:
        return self.query(ref, "SELECT version();")

    def current_time(self, ref: str) -> str:
        return self.query(ref, "SELECT now();")

    def show_setting(self, ref: str, name: str) -> str:
        return self.query(ref, f"SHOW {name};")

    def switch_wal(self, ref: str) -> str:
        """Close the current WAL segment so it becomes archivable."""
        return self.query(ref, "SELECT pg_switch_wal();")

    def list_databases(self, ref: str) -> List[str]:
        output = self.query(ref, "SELECT datname FROM pg_database WHERE NOT datistemplate ORDER BY datname;")
        return [line for line in output.splitlines() if line]

    def count_user_tables(self, ref: str) -> int:
        output = self.query(
            ref,
            "SELECT count(*) FROM pg_catalog.pg_tables "
            "WHERE schemaname NOT IN ('pg_catalog', 'information_schema');"
        )
        return int(output or 0)

    def dump_all(self, ref: str, out_file: BinaryIO) -> ExecResult:
        """Stream pg_dumpall output into out_file."""
        return self.run(ref, ["pg_dumpall", "-U", self.config.db_user], stdout=out_file)

    def replay_dump(self, ref: str, in_file: BinaryIO) -> ExecResult:
        """Feed a SQL dump to psql, stopping at the first error."""
        return self.run(ref, self._psql("-q"), stdin=in_file)

    def base_backup(self, ref: str, target_dir: str) -> ExecResult:
        """Run pg_basebackup in tar format with compression into target_dir."""
        return self.run(ref, [
            "pg_basebackup",
            "-U", self.config.db_user,
            "-D", target_dir,
            "-Ft", "-z", "-P"
        ])
