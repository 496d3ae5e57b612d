"""Remote Task Scheduler adapter."""

from typing import Tuple

from .._types import TaskRunInfo
from ..errors import RemoteQueryError
from .base import PS_UTC_FORMAT, parse_remote_time, ps_quote
from .executor import PowerShellExecutor


def split_task_path(task_name: str) -> Tuple[str, str]:
    r"""Split '\Folder\Task' into ('\Folder\', 'Task')."""
    task_name = task_name.replace("/", "\\")
    folder, _, name = task_name.rpartition("\\")
    return (folder + "\\") if folder else "\\", name


class RemoteScheduledTasks:
    """ScheduledTaskRunner backed by the ScheduledTasks module."""

    def __init__(self, executor: PowerShellExecutor):
        self.executor = executor

    def _script(self, task_name: str, body: str) -> str:
        folder, name = split_task_path(task_name)
        return rf'''
$ErrorActionPreference = 'Stop'
try {{
    $Task = Get-ScheduledTask -TaskPath {ps_quote(folder)} -TaskName {ps_quote(name)}
{body}
}} catch {{
    @{{ Error = $_.Exception.Message; Code = $_.Exception.HResult }} | ConvertTo-Json
}}
'''

    async def is_running(self, task_name: str) -> bool:
        data = await self.executor.run_json(self._script(task_name, r'''
    @{ State = $Task.State.ToString() } | ConvertTo-Json
'''), f"state of task {task_name}")
        return data.get("State") == "Running"

    async def get_last_run_info(self, task_name: str) -> TaskRunInfo:
        data = await self.executor.run_json(self._script(task_name, rf'''
    $Info = $Task | Get-ScheduledTaskInfo
    @{{
        LastRunTime = if ($Info.LastRunTime -and $Info.LastRunTime.Year -gt 2000) {{ $Info.LastRunTime.ToUniversalTime().ToString("{PS_UTC_FORMAT}") }} else {{ $null }}
        LastTaskResult = [int64]$Info.LastTaskResult
    }} | ConvertTo-Json
'''), f"last run of task {task_name}")
        try:
            return TaskRunInfo(
                task_name=task_name,
                last_run_time=parse_remote_time(data.get("LastRunTime")),
                last_result_code=int(data.get("LastTaskResult") or 0),
            )
        except (TypeError, ValueError) as e:
            raise RemoteQueryError(f"unexpected task info: {e}", target=task_name) from e
