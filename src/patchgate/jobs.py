"""
Jobs - the scheduled patch-management checks built on GatedRun.

    sync-check  wait for the WSUS sync engine, gate on its last successful sync
    adr-run     run the next pattern's deployment rules once per new sync
    task-check  gate on the last successful run of a remote scheduled task

Each job validates its own parameters at construction time and raises
ConfigError when something it needs is missing.
"""

import logging
from abc import ABC, abstractmethod
from functools import partial
from typing import Any, List, Optional, Sequence

from ._types import ActionResult, DeploymentRule, RotationState, RuleRunInfo
from .command import CommandAction
from .config import GateSettings
from .errors import ConfigError
from .orchestrator import GatedRun, RunReport
from .poller import QuiescencePoller
from .remote.base import (
    DeploymentRuleRunner,
    ScheduledTaskRunner,
    UpdateSyncEngine,
    sync_quiescence,
    task_quiescence,
)
from .remote.configmgr import ConfigMgrDeploymentRules
from .remote.executor import PowerShellExecutor, WindowsTarget
from .remote.tasks import RemoteScheduledTasks
from .remote.wsus import WsusSyncEngine
from .retry import Action, BoundedRetryExecutor
from .rotation import RotationStore, next_state
from .watermark import WatermarkStore

logger = logging.getLogger(__name__)


# =============================================================================
# BUILDERS
# =============================================================================


def build_poller(settings: GateSettings) -> QuiescencePoller:
    return QuiescencePoller(
        poll_interval=settings.poll_interval,
        lead_time=settings.lead_time,
        max_wait=settings.max_wait,
    )


def build_executor(settings: GateSettings) -> BoundedRetryExecutor:
    return BoundedRetryExecutor(
        max_attempts=settings.max_attempts,
        delay_seconds=settings.retry_delay,
        settle_seconds=settings.settle_seconds,
    )


def build_powershell(settings: GateSettings) -> PowerShellExecutor:
    """PowerShell executor for the configured management host."""
    return PowerShellExecutor(WindowsTarget.from_settings(settings), timeout=settings.winrm_timeout)


def build_sync_engine(
    settings: GateSettings,
    powershell: Optional[PowerShellExecutor] = None,
) -> UpdateSyncEngine:
    if not settings.wsus_server:
        raise ConfigError("wsus_server is required")
    return WsusSyncEngine(
        powershell or build_powershell(settings),
        settings.wsus_server,
        port=settings.wsus_port,
        use_ssl=settings.wsus_use_ssl,
    )


async def acknowledge() -> ActionResult:
    """Guarded action that does nothing; the exit code alone drives the caller."""
    return ActionResult.ok()


# =============================================================================
# JOBS
# =============================================================================


class Job(ABC):
    """Shared wiring: settings, watermark store, poller and retry executor."""

    check_name = "job"

    def __init__(
        self,
        settings: GateSettings,
        store: Optional[WatermarkStore] = None,
        poller: Optional[QuiescencePoller] = None,
        executor: Optional[BoundedRetryExecutor] = None,
    ):
        self.settings = settings
        self.store = store or WatermarkStore(settings.state_dir)
        self.poller = poller or build_poller(settings)
        self.executor = executor or build_executor(settings)

    @abstractmethod
    def build(self) -> GatedRun:
        """Assemble the gated run for this job."""

    async def run(self) -> RunReport:
        report = await self.build().run()
        logger.info(
            f"{self.check_name} finished: state={report.state.value} "
            f"noop={report.noop} exit={int(report.exit_code)}"
        )
        return report


def _guarded_action(command: Optional[Sequence[str]], timeout: Optional[float]) -> Action:
    if command:
        return CommandAction(command, timeout=timeout)
    return acknowledge


class SyncGateJob(Job):
    """
    Wait for WSUS synchronization to finish and gate on its completion time.

    The guarded action is one of: start another sync, run a local command, or
    nothing at all (exit code 0 then tells a downstream step to go ahead).
    """

    check_name = "wsus-sync"

    def __init__(
        self,
        settings: GateSettings,
        engine: Optional[UpdateSyncEngine] = None,
        start_sync: bool = False,
        command: Optional[Sequence[str]] = None,
        command_timeout: Optional[float] = None,
        **kwargs,
    ):
        if not settings.wsus_server:
            raise ConfigError("wsus_server is required for sync-check")
        if start_sync and command:
            raise ConfigError("--start-sync and a command cannot be combined")
        super().__init__(settings, **kwargs)
        self.engine = engine or build_sync_engine(settings)
        self.start_sync = start_sync
        self.action = self.engine.start_sync if start_sync else _guarded_action(command, command_timeout)

    async def probe(self):
        return await sync_quiescence(self.engine)

    def build(self) -> GatedRun:
        return GatedRun(
            check_name=self.check_name,
            target=self.settings.wsus_server,
            store=self.store,
            action=self.action,
            executor=self.executor,
            poller=self.poller,
            probe=self.probe,
            force=self.settings.force,
        )


class DeploymentRuleJob(Job):
    """
    Run Automatic Deployment Rules after each new successful sync.

    Every run handles the rules matching one name pattern and the next run
    moves on to the following pattern. For each rule the last run time is
    re-read right before triggering it; the attempt only counts when a fresh
    read shows a strictly newer run time and a zero error code.
    """

    check_name = "adr-run"
    rotation_name = "adr-patterns"

    def __init__(
        self,
        settings: GateSettings,
        engine: Optional[UpdateSyncEngine] = None,
        rules: Optional[DeploymentRuleRunner] = None,
        rotations: Optional[RotationStore] = None,
        **kwargs,
    ):
        if not settings.site_code:
            raise ConfigError("site_code is required for adr-run")
        if not settings.rule_patterns:
            raise ConfigError("rule_patterns is required for adr-run")
        super().__init__(settings, **kwargs)

        if engine is None or rules is None:
            powershell = build_powershell(settings)
            engine = engine or build_sync_engine(settings, powershell)
            rules = rules or ConfigMgrDeploymentRules(powershell, settings.site_code)

        self.engine = engine
        self.rules = rules
        self.rotations = rotations or RotationStore(settings.state_dir)
        self.rotation: Optional[RotationState] = None

    async def probe(self):
        return await sync_quiescence(self.engine)

    async def run_rules(self, pattern: str) -> List[str]:
        """Run every rule matching the pattern, each with its own retry budget."""
        matched = await self.rules.list_rules(pattern)
        if not matched:
            raise ConfigError(f"No deployment rules match {pattern!r}")
        logger.info(f"Pattern {pattern!r} matched {len(matched)} rule(s)")

        for rule in matched:
            outcome = await self.executor.execute(
                partial(self._trigger, rule),
                precondition=partial(self.rules.get_last_run, rule),
                verify=partial(self._verify, rule),
                description=f"deployment rule {rule.name}",
            )
            outcome.raise_for_status()
        return [rule.name for rule in matched]

    async def _trigger(self, rule: DeploymentRule, before: RuleRunInfo) -> None:
        logger.info(f"Triggering {rule.name} (last run {before.last_run_time})")
        await self.rules.run(rule)

    async def _verify(self, rule: DeploymentRule, before: RuleRunInfo, _value: Any) -> ActionResult:
        after = await self.rules.get_last_run(rule)
        if after.last_run_time is None or (
            before.last_run_time is not None and after.last_run_time <= before.last_run_time
        ):
            return ActionResult.transient(
                f"{rule.name} last run time did not advance past {before.last_run_time}"
            )
        if after.last_error_code != 0:
            return ActionResult.transient(
                f"{rule.name} finished with error 0x{after.last_error_code & 0xFFFFFFFF:08X}",
                error_code=after.last_error_code,
            )
        return ActionResult.ok(after)

    def _commit_rotation(self, state: RotationState, report: RunReport) -> None:
        self.rotations.save(self.rotation_name, state)

    def build(self) -> GatedRun:
        state = next_state(self.rotations.load(self.rotation_name), self.settings.rule_patterns)
        self.rotation = state
        logger.info(f"Using rule pattern {state.current!r} ({state.position + 1}/{len(state.patterns)})")

        return GatedRun(
            check_name=self.check_name,
            target=self.settings.site_code,
            store=self.store,
            action=partial(self.run_rules, state.current),
            # Per-rule retries happen inside run_rules
            executor=BoundedRetryExecutor(max_attempts=1, delay_seconds=0),
            poller=self.poller,
            probe=self.probe,
            commit_hooks=[partial(self._commit_rotation, state)],
            force=self.settings.force,
        )


class TaskGateJob(Job):
    """
    Gate on the last run of a remote scheduled task.

    A non-zero last result aborts the run and becomes the exit code.
    """

    check_name = "task-run"

    def __init__(
        self,
        settings: GateSettings,
        tasks: Optional[ScheduledTaskRunner] = None,
        command: Optional[Sequence[str]] = None,
        command_timeout: Optional[float] = None,
        **kwargs,
    ):
        if not settings.task_name:
            raise ConfigError("task_name is required for task-check")
        super().__init__(settings, **kwargs)
        if tasks is None:
            tasks = RemoteScheduledTasks(build_powershell(settings))
        self.tasks = tasks
        self.action = _guarded_action(command, command_timeout)

    async def probe(self):
        return await task_quiescence(self.tasks, self.settings.task_name)

    def build(self) -> GatedRun:
        return GatedRun(
            check_name=self.check_name,
            target=self.settings.task_name,
            store=self.store,
            action=self.action,
            executor=self.executor,
            poller=self.poller,
            probe=self.probe,
            force=self.settings.force,
        )
