"""
Remote collaborators reached over WinRM.

The gated-run core only depends on the protocols in base; the adapters here
build PowerShell commands and parse their JSON output.
"""

from .base import (
    DeploymentRuleRunner,
    ScheduledTaskRunner,
    UpdateSyncEngine,
    parse_remote_time,
    ps_quote,
    sync_quiescence,
    task_quiescence,
)
from .configmgr import ConfigMgrDeploymentRules
from .executor import PowerShellExecutor, ScriptResult, WindowsTarget
from .tasks import RemoteScheduledTasks
from .wsus import WsusSyncEngine

__all__ = [
    'DeploymentRuleRunner',
    'ScheduledTaskRunner',
    'UpdateSyncEngine',
    'parse_remote_time',
    'ps_quote',
    'sync_quiescence',
    'task_quiescence',
    'ConfigMgrDeploymentRules',
    'PowerShellExecutor',
    'ScriptResult',
    'WindowsTarget',
    'RemoteScheduledTasks',
    'WsusSyncEngine',
]
