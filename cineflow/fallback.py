"""Primary/secondary backend routing driven by ``classify_error``."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from .config import TRANSIENT_RETRY_DELAY, PollPolicy
from .errors import CapacityExhaustedError, ErrorKind, classify_error
from .jobs import JobClient
from .poller import Poller, ProgressCallback, run_job

log = logging.getLogger(__name__)


class FallbackRouter:
    """Runs a request on ``primary``, switching to ``secondary`` on capacity errors.

    - transient: the primary is retried once after ``retry_delay``; the
      retry's own failure is classified again.
    - capacity: the same request goes to the secondary, exactly once. A
      failing (or missing) secondary surfaces as ``CapacityExhaustedError``.
    - timeout / fatal: raised unchanged.
    """

    def __init__(
        self,
        primary: JobClient,
        secondary: JobClient | None = None,
        poller_factory: Callable[[PollPolicy], Poller] = Poller,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        retry_delay: float = TRANSIENT_RETRY_DELAY,
    ) -> None:
        self.primary = primary
        self.secondary = secondary
        self._poller_factory = poller_factory
        self._sleep = sleep
        self.retry_delay = retry_delay

    async def run(self, request: Any, on_progress: ProgressCallback | None = None) -> Any:
        try:
            return await self._run_primary(request, on_progress)
        except Exception as e:
            if classify_error(e) is not ErrorKind.CAPACITY:
                raise
            cause = e
        return await self._run_secondary(request, cause, on_progress)

    async def _attempt(self, client: JobClient, request: Any, on_progress) -> Any:
        return await run_job(client, request, on_progress, self._poller_factory(client.poll_policy))

    async def _run_primary(self, request: Any, on_progress) -> Any:
        try:
            return await self._attempt(self.primary, request, on_progress)
        except Exception as e:
            if classify_error(e) is not ErrorKind.TRANSIENT:
                raise
            log.warning("%s: transient failure, retrying once: %s", self.primary.name, e)
        await self._sleep(self.retry_delay)
        return await self._attempt(self.primary, request, on_progress)

    async def _run_secondary(self, request: Any, cause: Exception, on_progress) -> Any:
        if self.secondary is None:
            raise CapacityExhaustedError(f"{self.primary.name}: {cause}") from cause

        log.info("%s capacity exhausted (%s), falling back to %s",
                 self.primary.name, cause, self.secondary.name)
        try:
            return await self._attempt(self.secondary, request, on_progress)
        except Exception as e:
            log.error("%s fallback failed: %s", self.secondary.name, e)
            raise CapacityExhaustedError(
                f"{self.primary.name} capacity exhausted and {self.secondary.name} fallback failed: {e}"
            ) from e
