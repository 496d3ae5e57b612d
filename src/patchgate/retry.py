"""
Bounded Retry Executor - run a fallible remote action a limited number of times.

An attempt fails when the action raises, when it returns a TRANSIENT or FATAL
ActionResult, or when the optional verify step rejects its outcome (for
example a deployment rule that ran but reported a non-zero error code). All
transient failures are retried identically with a fixed delay; fatal ones
abort at once.

A precondition callable, when given, is awaited immediately before every
attempt and its fresh value handed to both the action and the verify step.
Time-based preconditions such as "last run time before we triggered it" must
never be reused across attempts, otherwise a run that did not advance could be
mistaken for a new completion.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from ._types import ActionResult, ResultKind
from .errors import FatalRemoteError, PatchGateError, RemoteQueryError, RetriesExhausted

logger = logging.getLogger(__name__)

Precondition = Callable[[], Awaitable[Any]]
Action = Callable[..., Awaitable[Any]]
Verify = Callable[[Any, Any], Awaitable[ActionResult]]


@dataclass
class RetryOutcome:
    """Result of a bounded retry run."""
    success: bool
    value: Any = None
    attempts: int = 0
    error: Optional[str] = None
    error_code: Optional[int] = None
    exhausted: bool = False
    description: str = "action"

    def raise_for_status(self) -> Any:
        """Return the value on success, otherwise raise the matching error."""
        if self.success:
            return self.value
        if self.exhausted:
            raise RetriesExhausted(self.description, self.attempts, self.error, self.error_code)
        raise FatalRemoteError(self.error or f"{self.description} failed", code=self.error_code)


def _classify_exception(e: Exception) -> ActionResult:
    if isinstance(e, FatalRemoteError):
        return ActionResult.fatal(str(e), e.code)
    if isinstance(e, RemoteQueryError):
        return ActionResult.transient(str(e), e.code)
    if isinstance(e, PatchGateError):
        return ActionResult.fatal(str(e), getattr(e, "code", None))
    return ActionResult.transient(f"{type(e).__name__}: {e}")


class BoundedRetryExecutor:
    """
    Executes a guarded action with at most max_attempts attempts.

    Usage:
        executor = BoundedRetryExecutor(max_attempts=3, delay_seconds=60)
        outcome = await executor.execute(runner.run_rule, precondition=fetch_last_run,
                                         verify=check_run_advanced)
        value = outcome.raise_for_status()
    """

    def __init__(
        self,
        max_attempts: int = 3,
        delay_seconds: float = 60,
        settle_seconds: float = 0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if delay_seconds < 0 or settle_seconds < 0:
            raise ValueError("delays must not be negative")
        self.max_attempts = max_attempts
        self.delay_seconds = delay_seconds
        self.settle_seconds = settle_seconds
        self._sleep = sleep

    async def execute(
        self,
        action: Action,
        precondition: Optional[Precondition] = None,
        verify: Optional[Verify] = None,
        description: str = "action",
    ) -> RetryOutcome:
        """
        Run the action until it succeeds, fails fatally, or attempts run out.

        Args:
            action: Awaitable callable; receives the precondition value if one is given
            precondition: Re-fetched immediately before each attempt
            verify: Called as verify(precondition_value, action_value) after the action
            description: Used in log lines and errors

        Returns:
            RetryOutcome (never raises for action failures)
        """
        last: Optional[ActionResult] = None

        for attempt in range(1, self.max_attempts + 1):
            logger.info(f"{description}: attempt {attempt}/{self.max_attempts}")
            result = await self._attempt(action, precondition, verify)

            if result.kind == ResultKind.OK:
                logger.info(f"{description}: succeeded on attempt {attempt}")
                return RetryOutcome(
                    success=True,
                    value=result.value,
                    attempts=attempt,
                    description=description,
                )

            last = result
            if result.kind == ResultKind.FATAL:
                logger.error(f"{description}: fatal failure on attempt {attempt}: {result.error}")
                return RetryOutcome(
                    success=False,
                    value=result.value,
                    attempts=attempt,
                    error=result.error,
                    error_code=result.error_code,
                    description=description,
                )

            logger.warning(
                f"{description}: attempt {attempt}/{self.max_attempts} failed: {result.error}"
                + (f" (code {result.error_code})" if result.error_code is not None else "")
            )
            if attempt < self.max_attempts:
                await self._sleep(self.delay_seconds)

        logger.error(f"{description}: giving up after {self.max_attempts} attempts")
        return RetryOutcome(
            success=False,
            value=last.value if last else None,
            attempts=self.max_attempts,
            error=last.error if last else None,
            error_code=last.error_code if last else None,
            exhausted=True,
            description=description,
        )

    async def _attempt(
        self,
        action: Action,
        precondition: Optional[Precondition],
        verify: Optional[Verify],
    ) -> ActionResult:
        pre = None
        try:
            if precondition is not None:
                pre = await precondition()
                value = await action(pre)
            else:
                value = await action()
        except Exception as e:
            return _classify_exception(e)

        if isinstance(value, ActionResult):
            if not value.is_ok:
                return value
            value = value.value

        if verify is None:
            return ActionResult.ok(value)

        if self.settle_seconds:
            logger.debug(f"Waiting {self.settle_seconds}s for the remote system to settle")
            await self._sleep(self.settle_seconds)

        try:
            checked = await verify(pre, value)
        except Exception as e:
            return _classify_exception(e)

        if checked.is_ok and checked.value is None:
            return ActionResult.ok(value)
        return checked
