"""
Readiness Monitor

Bounded wait for the database to accept connections after a start. The
poll loop is driven by tenacity: it stops on the first successful probe, on
the time bound, or on the number of probes that fit in the bound,
whichever comes first.
"""

import logging
import time
from typing import Callable

from tenacity import (
    Retrying,
    retry_if_result,
    stop_after_attempt,
    stop_after_delay,
    wait_fixed,
)

from ..models.entities import ReadinessResult
from .database import DatabaseControl

logger = logging.getLogger(__name__)


class ReadinessMonitor:
    """
    Poll pg_isready until the server accepts connections or time runs out.

    wait_until_ready() never raises on timeout; callers turn ready=False
    into whatever error fits their workflow. A probe that raises counts as
    "not ready".
    """

    def __init__(
        self,
        database: DatabaseControl,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic
    ):
        self.database = database
        self._sleep = sleep
        self._monotonic = monotonic

    def _probe(self, ref: str) -> bool:
        try:
            return self.database.is_ready(ref)
        except Exception as e:
            logger.debug(f"Readiness probe against {ref} failed: {e}")
            return False

    def wait_until_ready(
        self,
        ref: str,
        timeout: float = 300,
        poll_interval: float = 5
    ) -> ReadinessResult:
        """
        Wait until the server in ref is ready.

        Args:
            ref: Container name
            timeout: Upper bound in seconds; 0 returns not-ready without probing
            poll_interval: Seconds between probes

        Returns:
            ReadinessResult with the outcome, elapsed time and probe count
        """
        if timeout <= 0:
            return ReadinessResult(ready=False, elapsed_seconds=0.0, attempts=0)

        max_attempts = int(timeout // poll_interval) + 1
        attempts = 0

        def probe() -> bool:
            nonlocal attempts
            attempts += 1
            return self._probe(ref)

        started = self._monotonic()
        retryer = Retrying(
            stop=stop_after_delay(timeout) | stop_after_attempt(max_attempts),
            wait=wait_fixed(poll_interval),
            retry=retry_if_result(lambda ready: not ready),
            retry_error_callback=lambda state: False,
            sleep=self._sleep
        )
        ready = retryer(probe)
        elapsed = max(self._monotonic() - started, 0.0)

        if ready:
            logger.info(f"{ref} accepting connections after {attempts} probe(s)")
        else:
            logger.warning(f"{ref} not ready after {timeout}s ({attempts} probe(s))")

        return ReadinessResult(ready=ready, elapsed_seconds=elapsed, attempts=attempts)
