"""
Quiescence Poller - wait for a remote long-running operation to go idle.

Polls at a fixed interval (no backoff). Once the resource is idle, its last
completion record decides the outcome: a failed run is reported as failure and
must never be treated as "new enough to proceed". A lead time can be set so
that a completion is only trusted once it has aged that long, which absorbs
clock skew between this host and the remote server.

By default there is no overall deadline and a hung remote system keeps the
run waiting; the scheduler that launches the job is expected to enforce a
wall-clock limit. Set max_wait to give up with QuiescenceTimeout instead.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from ._types import QuiescenceOutcome, QuiescenceState, now_utc
from .errors import PatchGateError, QuiescenceTimeout, RemoteQueryError

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 300  # 5 minutes

StatusProbe = Callable[[], Awaitable[QuiescenceState]]


class QuiescencePoller:
    """Blocks the caller until a remote resource reports idle."""

    def __init__(
        self,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        lead_time: float = 0,
        max_wait: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = now_utc,
    ):
        """
        Args:
            poll_interval: Seconds between status queries
            lead_time: Seconds a completion must age before it is trusted
            max_wait: Overall deadline in seconds (None = wait forever)
            sleep: Awaitable sleep, replaceable in tests
            clock: Current UTC time, replaceable in tests
        """
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        if lead_time < 0:
            raise ValueError("lead_time must not be negative")
        self.poll_interval = poll_interval
        self.lead_time = lead_time
        self.max_wait = max_wait
        self._sleep = sleep
        self._clock = clock

    async def wait_until_idle(self, resource: str, probe: StatusProbe) -> QuiescenceOutcome:
        """
        Poll until the resource is idle and its last completion can be trusted.

        Args:
            resource: Name used in log lines and errors
            probe: Returns the current QuiescenceState

        Returns:
            QuiescenceOutcome; success=False when the last run failed

        Raises:
            RemoteQueryError: If the status query itself fails
            QuiescenceTimeout: If max_wait elapses while still waiting
        """
        polls = 0
        waited = 0.0

        while True:
            polls += 1
            try:
                state = await probe()
            except PatchGateError:
                raise
            except Exception as e:
                raise RemoteQueryError(f"status query failed: {e}", target=resource) from e

            if state.busy:
                logger.info(f"{resource} is busy (poll {polls}), next check in {self.poll_interval}s")
                delay = self.poll_interval

            elif not state.succeeded:
                logger.error(
                    f"{resource} is idle but its last run failed "
                    f"(completed_at={state.completed_at}, detail={state.detail})"
                )
                return QuiescenceOutcome(
                    success=False,
                    last_completion_signal=state.completed_at,
                    polls=polls,
                    waited_seconds=waited,
                    error=state.detail or "last run did not succeed",
                    error_code=state.error_code,
                )

            else:
                remaining = self._lead_time_remaining(state.completed_at)
                if remaining <= 0:
                    logger.info(
                        f"{resource} is idle, last completion {state.completed_at} "
                        f"(after {polls} polls, {waited:.0f}s)"
                    )
                    return QuiescenceOutcome(
                        success=True,
                        last_completion_signal=state.completed_at,
                        polls=polls,
                        waited_seconds=waited,
                    )
                logger.info(
                    f"{resource} completed at {state.completed_at}, waiting "
                    f"{remaining:.0f}s of lead time before trusting it"
                )
                delay = min(remaining, self.poll_interval)

            if self.max_wait is not None:
                budget = self.max_wait - waited
                if budget <= 0:
                    logger.error(f"Gave up waiting for {resource} after {waited:.0f}s")
                    raise QuiescenceTimeout(resource, waited)
                delay = min(delay, budget)

            await self._sleep(delay)
            waited += delay

    def _lead_time_remaining(self, completed_at: Optional[datetime]) -> float:
        if not self.lead_time or completed_at is None:
            return 0.0
        trusted_at = completed_at + timedelta(seconds=self.lead_time)
        return (trusted_at - self._clock()).total_seconds()
