"""Long-poll loop for provider operations."""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

from .config import PollPolicy
from .errors import (
    ErrorKind,
    JobFailedError,
    PollConnectionLostError,
    PollTimeoutError,
    classify_error,
)
from .jobs import JobClient, JobHandle, PollState, PollStatus

log = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]


class Poller:
    """Waits for one operation to reach a terminal state.

    ``sleep`` and ``clock`` are injectable so tests can run a twenty-minute
    timeout in microseconds.
    """

    def __init__(
        self,
        policy: PollPolicy,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.policy = policy
        self._sleep = sleep
        self._clock = clock

    def next_interval(self, consecutive_errors: int) -> float:
        p = self.policy
        return min(p.max_interval, p.interval + consecutive_errors * p.backoff_step)

    async def wait(
        self,
        check: Callable[[], Awaitable[PollStatus]],
        on_progress: ProgressCallback | None = None,
        label: str = "operation",
    ) -> Any:
        """Call ``check`` until it reports DONE (returns the result) or FAILED (raises)."""
        p = self.policy
        start = self._clock()
        attempts = 0
        consecutive_errors = 0
        reported = 0.0

        if p.initial_delay:
            await self._sleep(p.initial_delay)

        while True:
            elapsed = self._clock() - start
            if elapsed >= p.timeout or (p.max_attempts is not None and attempts >= p.max_attempts):
                raise PollTimeoutError(
                    f"{label} timed out after {elapsed:.0f}s ({attempts} status checks)"
                )

            await self._sleep(self.next_interval(consecutive_errors))
            attempts += 1

            try:
                status = await check()
            except Exception as e:
                if classify_error(e) is not ErrorKind.TRANSIENT:
                    raise
                consecutive_errors += 1
                log.warning("%s: transient status error (%d/%d): %s",
                            label, consecutive_errors, p.max_consecutive_errors, e)
                if consecutive_errors >= p.max_consecutive_errors:
                    raise PollConnectionLostError(
                        f"{label}: polling connection lost (too many network errors)"
                    ) from e
                continue
            consecutive_errors = 0

            if status.state is PollState.DONE:
                if on_progress:
                    on_progress(100)
                return status.result
            if status.state is PollState.FAILED:
                raise JobFailedError(f"{label} failed: {status.reason or 'Unknown error'}")

            if on_progress:
                hint = status.progress_hint
                estimate = hint if hint is not None else p.progress_start + attempts * p.progress_step
                reported = max(reported, min(99.0, estimate))
                on_progress(reported)


async def run_job(
    client: JobClient,
    request: Any,
    on_progress: ProgressCallback | None = None,
    poller: Poller | None = None,
) -> Any:
    """Submit ``request`` and, when the client hands back a job handle, poll it out."""
    submitted = await client.submit(request)
    if not isinstance(submitted, JobHandle):
        return submitted
    poller = poller or Poller(client.poll_policy)
    log.info("%s: job %s submitted, polling", client.name, submitted.job_id)
    return await poller.wait(
        lambda: client.poll(submitted),
        on_progress=on_progress,
        label=f"{client.name} job {submitted.job_id}",
    )
