"""Tests for the sync-check, adr-run and task-check jobs against in-memory remotes."""

import sys

import pytest
from datetime import datetime, timedelta, timezone
from fnmatch import fnmatch
from unittest.mock import AsyncMock

from patchgate._types import (
    DeploymentRule,
    RotationState,
    RuleRunInfo,
    RunState,
    SyncResult,
    SyncStatus,
    TaskRunInfo,
)
from patchgate.config import GateSettings
from patchgate.errors import ConfigError
from patchgate.jobs import DeploymentRuleJob, Job, SyncGateJob, TaskGateJob, acknowledge
from patchgate.orchestrator import ExitCode
from patchgate.poller import QuiescencePoller
from patchgate.retry import BoundedRetryExecutor
from patchgate.rotation import RotationStore
from patchgate.watermark import WatermarkStore


JAN_1 = datetime(2024, 1, 1, tzinfo=timezone.utc)
JAN_10 = datetime(2024, 1, 10, tzinfo=timezone.utc)

RULE_ERROR = -2016410008


class FakeSyncEngine:
    """UpdateSyncEngine that is busy for a number of polls, then idle."""

    def __init__(self, completed_at=JAN_10, succeeded=True, busy_polls=0):
        self.completed_at = completed_at
        self.succeeded = succeeded
        self.busy_polls = busy_polls
        self.started = 0

    async def get_sync_status(self):
        if self.busy_polls:
            self.busy_polls -= 1
            return SyncStatus.RUNNING
        return SyncStatus.IDLE

    async def get_last_sync_result(self):
        return SyncResult(
            succeeded=self.succeeded,
            completed_at=self.completed_at,
            detail=None if self.succeeded else "Failed: WebException",
        )

    async def start_sync(self):
        self.started += 1


class FakeRules:
    """DeploymentRuleRunner whose run() advances the rule's last run time."""

    def __init__(self, names, error_code=0, stuck_runs=0):
        self.rules = [DeploymentRule(rule_id=i + 1, name=name) for i, name in enumerate(names)]
        self.last_run = {rule.rule_id: RuleRunInfo(JAN_1, 0) for rule in self.rules}
        self.error_code = error_code
        self.stuck_runs = stuck_runs
        self.runs = []
        self.fetches = 0
        self.patterns = []

    async def list_rules(self, name_pattern):
        self.patterns.append(name_pattern)
        return [rule for rule in self.rules if fnmatch(rule.name, name_pattern)]

    async def run(self, rule):
        self.runs.append(rule.name)
        if self.stuck_runs:
            self.stuck_runs -= 1
            return
        previous = self.last_run[rule.rule_id].last_run_time
        self.last_run[rule.rule_id] = RuleRunInfo(previous + timedelta(hours=1), self.error_code)

    async def get_last_run(self, rule):
        self.fetches += 1
        return self.last_run[rule.rule_id]


class FakeTasks:
    """ScheduledTaskRunner with a fixed last run."""

    def __init__(self, last_run_time=JAN_10, result_code=0, running_polls=0):
        self.info = TaskRunInfo("\\Patching\\Export", last_run_time, result_code)
        self.running_polls = running_polls

    async def is_running(self, task_name):
        if self.running_polls:
            self.running_polls -= 1
            return True
        return False

    async def get_last_run_info(self, task_name):
        return self.info


def make_settings(tmp_path, **kwargs):
    values = {
        "state_dir": tmp_path,
        "wsus_server": "wsus01",
        "site_code": "P01",
        "rule_patterns": ["Workstations*", "Servers*"],
        "task_name": "\\Patching\\Export",
    }
    values.update(kwargs)
    return GateSettings(**values)


def wiring():
    """Poller and executor that never really sleep."""
    return {
        "poller": QuiescencePoller(300, sleep=AsyncMock()),
        "executor": BoundedRetryExecutor(3, 60, sleep=AsyncMock()),
    }


class TestSyncGateJob:
    """Tests for sync-check."""

    @pytest.mark.asyncio
    async def test_waits_then_reports_new_sync(self, tmp_path):
        engine = FakeSyncEngine(busy_polls=2)
        job = SyncGateJob(make_settings(tmp_path), engine=engine, **wiring())

        report = await job.run()

        assert report.exit_code == ExitCode.OK
        assert engine.started == 0
        assert WatermarkStore(tmp_path).load("wsus-sync", "wsus01").value == JAN_10

    @pytest.mark.asyncio
    async def test_same_sync_is_noop(self, tmp_path):
        settings = make_settings(tmp_path)
        await SyncGateJob(settings, engine=FakeSyncEngine(), **wiring()).run()

        report = await SyncGateJob(settings, engine=FakeSyncEngine(), **wiring()).run()

        assert report.exit_code == ExitCode.NOOP

    @pytest.mark.asyncio
    async def test_start_sync_action(self, tmp_path):
        engine = FakeSyncEngine()
        job = SyncGateJob(make_settings(tmp_path), engine=engine, start_sync=True, **wiring())

        report = await job.run()

        assert report.exit_code == ExitCode.OK
        assert engine.started == 1

    @pytest.mark.asyncio
    async def test_failed_sync_aborts(self, tmp_path):
        job = SyncGateJob(make_settings(tmp_path), engine=FakeSyncEngine(succeeded=False), **wiring())

        report = await job.run()

        assert report.state == RunState.ABORTED
        assert report.exit_code == ExitCode.FATAL
        assert WatermarkStore(tmp_path).load("wsus-sync", "wsus01") is None

    def test_requires_wsus_server(self, tmp_path):
        with pytest.raises(ConfigError):
            SyncGateJob(make_settings(tmp_path, wsus_server=None), engine=FakeSyncEngine())

    def test_start_sync_and_command_exclusive(self, tmp_path):
        with pytest.raises(ConfigError):
            SyncGateJob(make_settings(tmp_path), engine=FakeSyncEngine(),
                        start_sync=True, command=["true"])

    def test_default_engine_needs_winrm_host(self, tmp_path):
        with pytest.raises(ConfigError):
            SyncGateJob(make_settings(tmp_path))

    def test_no_command_acknowledges(self, tmp_path):
        job = SyncGateJob(make_settings(tmp_path), engine=FakeSyncEngine())
        assert job.action is acknowledge


class TestDeploymentRuleJob:
    """Tests for adr-run."""

    def make_job(self, tmp_path, rules, engine=None, **settings):
        return DeploymentRuleJob(
            make_settings(tmp_path, **settings),
            engine=engine or FakeSyncEngine(),
            rules=rules,
            **wiring(),
        )

    @pytest.mark.asyncio
    async def test_first_run_runs_first_pattern(self, tmp_path):
        rules = FakeRules(["Workstations - Monthly", "Workstations - Defender", "Servers - Monthly"])

        report = await self.make_job(tmp_path, rules).run()

        assert report.exit_code == ExitCode.OK
        assert rules.patterns == ["Workstations*"]
        assert rules.runs == ["Workstations - Monthly", "Workstations - Defender"]
        assert report.value == ["Workstations - Monthly", "Workstations - Defender"]
        assert WatermarkStore(tmp_path).load("adr-run", "P01").value == JAN_10
        rotation = RotationStore(tmp_path).load("adr-patterns")
        assert rotation.position == 0

    @pytest.mark.asyncio
    async def test_next_sync_runs_next_pattern(self, tmp_path):
        RotationStore(tmp_path).save("adr-patterns", RotationState(["Workstations*", "Servers*"], 0))
        WatermarkStore(tmp_path).save("adr-run", JAN_1, "P01")
        rules = FakeRules(["Workstations - Monthly", "Servers - Monthly"])

        report = await self.make_job(tmp_path, rules).run()

        assert report.exit_code == ExitCode.OK
        assert rules.runs == ["Servers - Monthly"]
        assert RotationStore(tmp_path).load("adr-patterns").position == 1

    @pytest.mark.asyncio
    async def test_no_new_sync_keeps_rotation(self, tmp_path):
        RotationStore(tmp_path).save("adr-patterns", RotationState(["Workstations*", "Servers*"], 0))
        WatermarkStore(tmp_path).save("adr-run", JAN_10, "P01")
        rules = FakeRules(["Workstations - Monthly", "Servers - Monthly"])

        report = await self.make_job(tmp_path, rules).run()

        assert report.exit_code == ExitCode.NOOP
        assert rules.runs == []
        assert RotationStore(tmp_path).load("adr-patterns").position == 0

    @pytest.mark.asyncio
    async def test_stale_last_run_is_retried(self, tmp_path):
        """A run that did not advance the last run time is not mistaken for success."""
        rules = FakeRules(["Workstations - Monthly"], stuck_runs=1)

        report = await self.make_job(tmp_path, rules).run()

        assert report.exit_code == ExitCode.OK
        assert rules.runs == ["Workstations - Monthly", "Workstations - Monthly"]
        # before + after for each of the two attempts
        assert rules.fetches == 4

    @pytest.mark.asyncio
    async def test_rule_error_code_reported(self, tmp_path):
        rules = FakeRules(["Workstations - Monthly"], error_code=RULE_ERROR)

        report = await self.make_job(tmp_path, rules).run()

        assert report.state == RunState.ABORTED
        assert report.exit_code == ExitCode.FATAL
        assert report.error_code == RULE_ERROR
        assert len(rules.runs) == 3
        assert WatermarkStore(tmp_path).load("adr-run", "P01") is None
        assert RotationStore(tmp_path).load("adr-patterns") is None

    @pytest.mark.asyncio
    async def test_no_matching_rules_is_fatal(self, tmp_path):
        rules = FakeRules(["Servers - Monthly"])

        report = await self.make_job(tmp_path, rules).run()

        assert report.state == RunState.ABORTED
        assert report.exit_code == ExitCode.FATAL

    @pytest.mark.asyncio
    async def test_changed_patterns_restart_rotation(self, tmp_path):
        RotationStore(tmp_path).save("adr-patterns", RotationState(["Workstations*", "Pilot*"], 0))
        rules = FakeRules(["Workstations - Monthly", "Servers - Monthly"])

        await self.make_job(tmp_path, rules).run()

        assert rules.patterns == ["Workstations*"]

    def test_requires_site_code(self, tmp_path):
        with pytest.raises(ConfigError):
            self.make_job(tmp_path, FakeRules([]), site_code=None)

    def test_requires_patterns(self, tmp_path):
        with pytest.raises(ConfigError):
            self.make_job(tmp_path, FakeRules([]), rule_patterns=[])


class TestTaskGateJob:
    """Tests for task-check."""

    @pytest.mark.asyncio
    async def test_new_run_proceeds(self, tmp_path):
        job = TaskGateJob(make_settings(tmp_path), tasks=FakeTasks(running_polls=1), **wiring())

        report = await job.run()

        assert report.exit_code == ExitCode.OK
        assert WatermarkStore(tmp_path).load("task-run", "\\Patching\\Export").value == JAN_10

    @pytest.mark.asyncio
    async def test_failed_task_propagates_result_code(self, tmp_path):
        job = TaskGateJob(make_settings(tmp_path), tasks=FakeTasks(result_code=5), **wiring())

        report = await job.run()

        assert report.state == RunState.ABORTED
        assert report.exit_code == 5
        assert report.error_code == 5

    @pytest.mark.asyncio
    async def test_failed_task_with_result_one_is_not_noop(self, tmp_path):
        job = TaskGateJob(make_settings(tmp_path), tasks=FakeTasks(result_code=1), **wiring())

        report = await job.run()

        assert report.state == RunState.ABORTED
        assert report.exit_code == ExitCode.FATAL
        assert report.error_code == 1
        assert WatermarkStore(tmp_path).load("task-run", "\\Patching\\Export") is None

    @pytest.mark.asyncio
    async def test_command_exiting_one_is_fatal(self, tmp_path):
        command = [sys.executable, "-c", "import sys; sys.exit(1)"]
        job = TaskGateJob(make_settings(tmp_path), tasks=FakeTasks(), command=command, **wiring())

        report = await job.run()

        assert report.state == RunState.ABORTED
        assert report.attempts == 3
        assert report.exit_code == ExitCode.FATAL
        assert report.error_code == 1

    @pytest.mark.asyncio
    async def test_command_exit_status_passes_through(self, tmp_path):
        command = [sys.executable, "-c", "import sys; sys.exit(7)"]
        job = TaskGateJob(make_settings(tmp_path), tasks=FakeTasks(), command=command, **wiring())

        report = await job.run()

        assert report.exit_code == 7

    @pytest.mark.asyncio
    async def test_command_runs_as_action(self, tmp_path):
        job = TaskGateJob(make_settings(tmp_path), tasks=FakeTasks(), command=["export"], **wiring())
        job.action = AsyncMock(return_value=None)

        report = await job.run()

        assert report.exit_code == ExitCode.OK
        job.action.assert_awaited_once()

    def test_requires_task_name(self, tmp_path):
        with pytest.raises(ConfigError):
            TaskGateJob(make_settings(tmp_path, task_name=None), tasks=FakeTasks())


class TestJobBase:
    """Tests for the shared job base class."""

    def test_subclass_without_build_cannot_be_created(self, tmp_path):
        class Incomplete(Job):
            check_name = "incomplete"

        with pytest.raises(TypeError):
            Incomplete(make_settings(tmp_path), **wiring())

    def test_base_cannot_be_created(self, tmp_path):
        with pytest.raises(TypeError):
            Job(make_settings(tmp_path), **wiring())
