"""ConfigMgr Automatic Deployment Rule adapter (ConfigurationManager module)."""

import logging
from typing import List

from .._types import DeploymentRule, RuleRunInfo
from ..errors import RemoteQueryError
from .base import PS_UTC_FORMAT, parse_remote_time, ps_quote
from .executor import PowerShellExecutor

logger = logging.getLogger(__name__)


class ConfigMgrDeploymentRules:
    """DeploymentRuleRunner backed by the ConfigMgr cmdlets."""

    def __init__(self, executor: PowerShellExecutor, site_code: str):
        self.executor = executor
        self.site_code = site_code

    def _script(self, body: str) -> str:
        return rf'''
$ErrorActionPreference = 'Stop'
try {{
    Import-Module (Join-Path (Split-Path $env:SMS_ADMIN_UI_PATH) 'ConfigurationManager.psd1')
    Set-Location ({ps_quote(self.site_code)} + ':')
{body}
}} catch {{
    @{{ Error = $_.Exception.Message; Code = $_.Exception.HResult }} | ConvertTo-Json
}}
'''

    async def list_rules(self, name_pattern: str) -> List[DeploymentRule]:
        data = await self.executor.run_json(self._script(rf'''
    $Rules = @(Get-CMSoftwareUpdateAutoDeploymentRule -Fast |
        Where-Object {{ $_.Name -like {ps_quote(name_pattern)} }} |
        Sort-Object Name |
        ForEach-Object {{ @{{ Id = $_.AutoDeploymentID; Name = $_.Name }} }})
    ConvertTo-Json -InputObject $Rules
'''), f"list deployment rules '{name_pattern}'")
        if isinstance(data, dict):
            data = [data]
        try:
            return [DeploymentRule(rule_id=int(item["Id"]), name=str(item["Name"])) for item in data]
        except (KeyError, TypeError, ValueError) as e:
            raise RemoteQueryError(f"unexpected rule listing: {e}", target=self.site_code) from e

    async def run(self, rule: DeploymentRule) -> None:
        await self.executor.run_json(self._script(rf'''
    Invoke-CMSoftwareUpdateAutoDeploymentRule -Id {int(rule.rule_id)}
    @{{ Invoked = $true }} | ConvertTo-Json
'''), f"run deployment rule '{rule.name}'")
        logger.info(f"Invoked deployment rule {rule.name} ({rule.rule_id})")

    async def get_last_run(self, rule: DeploymentRule) -> RuleRunInfo:
        data = await self.executor.run_json(self._script(rf'''
    $Rule = Get-CMSoftwareUpdateAutoDeploymentRule -Id {int(rule.rule_id)} -Fast
    @{{
        LastRunTime = if ($Rule.LastRunTime) {{ $Rule.LastRunTime.ToUniversalTime().ToString("{PS_UTC_FORMAT}") }} else {{ $null }}
        LastErrorCode = [int]$Rule.LastErrorCode
    }} | ConvertTo-Json
'''), f"last run of deployment rule '{rule.name}'")
        try:
            return RuleRunInfo(
                last_run_time=parse_remote_time(data.get("LastRunTime")),
                last_error_code=int(data.get("LastErrorCode") or 0),
            )
        except (TypeError, ValueError) as e:
            raise RemoteQueryError(f"unexpected rule status: {e}", target=rule.name) from e
