"""
Collaborator interfaces consumed by the gated-run core.

The core never looks inside these systems: it only needs comparable
point-in-time values and success/failure answers.
"""

import re
from datetime import datetime, timezone
from typing import Any, List, Optional, Protocol

from .._types import (
    DeploymentRule,
    QuiescenceState,
    RuleRunInfo,
    SyncResult,
    SyncStatus,
    TaskRunInfo,
    parse_timestamp,
)


class UpdateSyncEngine(Protocol):
    async def get_sync_status(self) -> SyncStatus: ...

    async def get_last_sync_result(self) -> SyncResult: ...

    async def start_sync(self) -> None: ...


class ScheduledTaskRunner(Protocol):
    async def is_running(self, task_name: str) -> bool: ...

    async def get_last_run_info(self, task_name: str) -> TaskRunInfo: ...


class DeploymentRuleRunner(Protocol):
    async def list_rules(self, name_pattern: str) -> List[DeploymentRule]: ...

    async def run(self, rule: DeploymentRule) -> None: ...

    async def get_last_run(self, rule: DeploymentRule) -> RuleRunInfo: ...


async def sync_quiescence(engine: UpdateSyncEngine) -> QuiescenceState:
    """Map sync engine status onto a quiescence observation."""
    status = await engine.get_sync_status()
    if status == SyncStatus.RUNNING:
        return QuiescenceState(busy=True)
    last = await engine.get_last_sync_result()
    return QuiescenceState(
        busy=False,
        succeeded=last.succeeded,
        completed_at=last.completed_at,
        detail=last.detail,
    )


# Task Scheduler result codes meaning "has not run yet" or "still running"
TASK_HAS_NOT_RUN = 0x41303
TASK_RUNNING = 0x41301


async def task_quiescence(runner: ScheduledTaskRunner, task_name: str) -> QuiescenceState:
    """Busy while running; once idle, success means the last result code is 0."""
    if await runner.is_running(task_name):
        return QuiescenceState(busy=True)
    info = await runner.get_last_run_info(task_name)
    if info.last_result_code == TASK_RUNNING:
        return QuiescenceState(busy=True)
    if info.last_result_code == TASK_HAS_NOT_RUN or info.last_run_time is None:
        return QuiescenceState(busy=False, succeeded=False, detail="task has not run yet")
    return QuiescenceState(
        busy=False,
        succeeded=info.last_result_code == 0,
        completed_at=info.last_run_time,
        detail=None if info.last_result_code == 0 else f"last result 0x{info.last_result_code:X}",
        error_code=info.last_result_code or None,
    )


def ps_quote(value: str) -> str:
    """Quote a value as a PowerShell single-quoted string literal."""
    return "'" + str(value).replace("'", "''") + "'"


# PowerShell format string used by every script that returns a timestamp
PS_UTC_FORMAT = "yyyy-MM-dd'T'HH:mm:ss.ffffff'Z'"

_DOTNET_DATE = re.compile(r"^/Date\((-?\d+)(?:[+-]\d{4})?\)/$")


def parse_remote_time(value: Any) -> Optional[datetime]:
    """
    Parse a timestamp returned by a PowerShell script.

    Accepts ISO-8601 strings and the /Date(ms)/ form ConvertTo-Json emits for
    raw DateTime values. Empty values mean "never".
    """
    if value is None or value == "":
        return None
    if isinstance(value, str):
        match = _DOTNET_DATE.match(value.strip())
        if match:
            return datetime.fromtimestamp(int(match.group(1)) / 1000, tz=timezone.utc)
        return parse_timestamp(value.strip())
    raise ValueError(f"Unrecognized timestamp: {value!r}")
