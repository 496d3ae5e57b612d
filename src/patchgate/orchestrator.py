"""
Orchestrator - sequences one watermark-gated run.

    IDLE -> WAITING_FOR_QUIESCENCE -> EVALUATING -> ACTING -> COMMITTING -> DONE
                         \\                \\           \\            \\
                          +----------------+-----------+------------+--> ABORTED

EVALUATING -> DONE is the no-op path: the signal did not advance past the
stored watermark. The run report carries the process exit code:

    0  action performed and watermark committed
    1  nothing new since the last run
    2  fatal configuration/precondition failure or generic abort
    N  a remote API's or command's error code, when it fits in 3..255;
       any other code (0, 1, 2, negative HRESULTs, larger values) exits 2
       and is kept in full in RunReport.error_code and the log
"""

import logging
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Tuple

from ._types import RunState, SignalValue, Watermark
from .errors import FatalRemoteError, PatchGateError, RemoteQueryError, RetriesExhausted
from .gate import GateDecision, should_proceed
from .poller import QuiescencePoller, StatusProbe
from .retry import Action, BoundedRetryExecutor, Precondition, Verify
from .watermark import WatermarkStore

logger = logging.getLogger(__name__)


class ExitCode(IntEnum):
    OK = 0
    NOOP = 1
    FATAL = 2


# Remote codes outside this range would collide with OK/NOOP/FATAL or be
# truncated to their low byte by the operating system.
PASSTHROUGH_MIN = 3
PASSTHROUGH_MAX = 255


SignalFetcher = Callable[[], Awaitable[SignalValue]]
CommitHook = Callable[["RunReport"], None]


@dataclass
class RunReport:
    """What happened during one gated run."""
    check_name: str
    target: Optional[str] = None
    state: RunState = RunState.IDLE
    noop: bool = False
    exit_code: int = ExitCode.FATAL
    signal: Optional[SignalValue] = None
    previous: Optional[Watermark] = None
    decision: Optional[GateDecision] = None
    attempts: int = 0
    value: Any = None
    error: Optional[str] = None
    error_code: Optional[int] = None
    transitions: List[Tuple[RunState, RunState]] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state == RunState.DONE and not self.noop


def remote_exit_code(code: Optional[int]) -> int:
    """Process exit code for a remote or command error code."""
    if isinstance(code, int) and not isinstance(code, bool) and PASSTHROUGH_MIN <= code <= PASSTHROUGH_MAX:
        return code
    return ExitCode.FATAL


def exit_code_for(error: Exception) -> int:
    """Remote error codes pass through when usable as an exit status; everything else is FATAL."""
    return remote_exit_code(getattr(error, "code", None))


def process_exit_code(code: int) -> int:
    """Clamp a job result to something the operating system reports faithfully."""
    if code in (ExitCode.OK, ExitCode.NOOP, ExitCode.FATAL):
        return int(code)
    return remote_exit_code(code)


class GatedRun:
    """
    One watermark-gated execution of a guarded action.

    Usage:
        run = GatedRun(
            check_name="wsus-sync",
            target="wsus01",
            store=WatermarkStore(state_dir),
            action=engine.start_sync,
            executor=BoundedRetryExecutor(3, 60),
            poller=QuiescencePoller(300, lead_time=600),
            probe=engine.quiescence,
        )
        report = await run.run()
        sys.exit(report.exit_code)
    """

    def __init__(
        self,
        check_name: str,
        store: WatermarkStore,
        action: Action,
        executor: BoundedRetryExecutor,
        target: Optional[str] = None,
        poller: Optional[QuiescencePoller] = None,
        probe: Optional[StatusProbe] = None,
        signal: Optional[SignalFetcher] = None,
        precondition: Optional[Precondition] = None,
        verify: Optional[Verify] = None,
        commit_hooks: Sequence[CommitHook] = (),
        force: bool = False,
    ):
        if probe is not None and poller is None:
            raise ValueError("A probe needs a poller")
        if probe is None and signal is None:
            raise ValueError("Either a quiescence probe or a signal fetcher is required")
        self.check_name = check_name
        self.target = target
        self.store = store
        self.action = action
        self.executor = executor
        self.poller = poller
        self.probe = probe
        self.signal = signal
        self.precondition = precondition
        self.verify = verify
        self.commit_hooks = list(commit_hooks)
        self.force = force

    @property
    def resource(self) -> str:
        return f"{self.check_name}@{self.target}" if self.target else self.check_name

    def _transition(self, report: RunReport, new_state: RunState) -> None:
        logger.info(f"{self.resource}: {report.state.value} -> {new_state.value}")
        report.transitions.append((report.state, new_state))
        report.state = new_state

    def _abort(self, report: RunReport, error: str, exit_code: int,
               error_code: Optional[int] = None) -> RunReport:
        report.error = error
        report.error_code = error_code
        report.exit_code = exit_code
        self._transition(report, RunState.ABORTED)
        detail = f", remote code {error_code} (0x{error_code & 0xFFFFFFFF:08X})" if error_code is not None else ""
        logger.error(f"{self.resource}: aborted: {error} (exit {int(exit_code)}{detail})")
        return report

    async def run(self) -> RunReport:
        """
        Execute the state machine once.

        PatchGateError subclasses end the run in ABORTED; any other exception
        propagates to the caller.
        """
        report = RunReport(check_name=self.check_name, target=self.target)
        try:
            return await self._run(report)
        except PatchGateError as e:
            return self._abort(report, str(e), exit_code_for(e), getattr(e, "code", None))

    async def _run(self, report: RunReport) -> RunReport:
        # --- quiescence ---------------------------------------------------
        self._transition(report, RunState.WAITING_FOR_QUIESCENCE)
        completion = None
        if self.probe is not None:
            outcome = await self.poller.wait_until_idle(self.resource, self.probe)
            if not outcome.success:
                code = outcome.error_code
                return self._abort(
                    report,
                    f"last run of {self.resource} failed: {outcome.error}",
                    remote_exit_code(code),
                    code,
                )
            completion = outcome.last_completion_signal

        # --- gate ---------------------------------------------------------
        self._transition(report, RunState.EVALUATING)
        report.previous = self.store.load(self.check_name, self.target)

        signal = await self.signal() if self.signal is not None else completion
        if signal is None:
            raise RemoteQueryError("no completion signal available", target=self.resource)
        report.signal = signal

        report.decision = should_proceed(signal, report.previous, force=self.force)
        if not report.decision:
            report.noop = True
            report.exit_code = ExitCode.NOOP
            self._transition(report, RunState.DONE)
            logger.info(f"{self.resource}: nothing new ({report.decision.reason}), exit {ExitCode.NOOP}")
            return report

        # --- action -------------------------------------------------------
        self._transition(report, RunState.ACTING)
        result = await self.executor.execute(
            self.action,
            precondition=self.precondition,
            verify=self.verify,
            description=self.resource,
        )
        report.attempts = result.attempts
        report.value = result.value
        if not result.success:
            try:
                result.raise_for_status()
            except (RetriesExhausted, FatalRemoteError) as e:
                return self._abort(report, str(e), exit_code_for(e), result.error_code)

        # --- commit -------------------------------------------------------
        self._transition(report, RunState.COMMITTING)
        self.store.save(self.check_name, signal, self.target)
        for hook in self.commit_hooks:
            hook(report)

        report.exit_code = ExitCode.OK
        self._transition(report, RunState.DONE)
        logger.info(f"{self.resource}: done after {report.attempts} attempt(s), exit {ExitCode.OK}")
        return report
