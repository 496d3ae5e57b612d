"""
WSUS synchronization engine adapter.

Talks to the WSUS administration API through PowerShell on the management
host. Only exposes what the gated runs need: sync status, the last sync
result and starting a sync.
"""

import logging

from .._types import SyncResult, SyncStatus
from ..errors import RemoteQueryError
from .base import PS_UTC_FORMAT, parse_remote_time, ps_quote
from .executor import PowerShellExecutor

logger = logging.getLogger(__name__)

# Subscription.GetSynchronizationStatus() values
WSUS_IDLE_STATUS = "NotProcessing"

# SynchronizationInfo.Result values
WSUS_RESULT_SUCCEEDED = "Succeeded"


class WsusSyncEngine:
    """UpdateSyncEngine backed by the WSUS administration API."""

    def __init__(self, executor: PowerShellExecutor, server: str, port: int = 8530, use_ssl: bool = False):
        self.executor = executor
        self.server = server
        self.port = port
        self.use_ssl = use_ssl

    def _script(self, body: str) -> str:
        ssl = "$true" if self.use_ssl else "$false"
        return rf'''
$ErrorActionPreference = 'Stop'
try {{
    [void][Reflection.Assembly]::LoadWithPartialName("Microsoft.UpdateServices.Administration")
    $Wsus = [Microsoft.UpdateServices.Administration.AdminProxy]::GetUpdateServer({ps_quote(self.server)}, {ssl}, {int(self.port)})
    $Subscription = $Wsus.GetSubscription()
{body}
}} catch {{
    @{{ Error = $_.Exception.Message; Code = $_.Exception.HResult }} | ConvertTo-Json
}}
'''

    async def get_sync_status(self) -> SyncStatus:
        data = await self.executor.run_json(self._script(r'''
    @{ Status = $Subscription.GetSynchronizationStatus().ToString() } | ConvertTo-Json
'''), f"WSUS sync status on {self.server}")
        status = data.get("Status")
        if not status:
            raise RemoteQueryError("sync status missing from output", target=self.server)
        return SyncStatus.IDLE if status == WSUS_IDLE_STATUS else SyncStatus.RUNNING

    async def get_last_sync_result(self) -> SyncResult:
        data = await self.executor.run_json(self._script(rf'''
    $Info = $Subscription.GetLastSynchronizationInfo()
    @{{
        Result = $Info.Result.ToString()
        EndTime = if ($Info.EndTime -gt [DateTime]::MinValue) {{ $Info.EndTime.ToUniversalTime().ToString("{PS_UTC_FORMAT}") }} else {{ $null }}
        ErrorText = $Info.Error.ToString()
    }} | ConvertTo-Json
'''), f"WSUS last sync on {self.server}")
        result = data.get("Result")
        try:
            completed_at = parse_remote_time(data.get("EndTime"))
        except ValueError as e:
            raise RemoteQueryError(f"unparseable sync end time: {e}", target=self.server) from e
        succeeded = result == WSUS_RESULT_SUCCEEDED
        return SyncResult(
            succeeded=succeeded,
            completed_at=completed_at,
            detail=None if succeeded else f"{result}: {data.get('ErrorText')}",
        )

    async def start_sync(self) -> None:
        await self.executor.run_json(self._script(r'''
    $Subscription.StartSynchronization()
    @{ Started = $true } | ConvertTo-Json
'''), f"WSUS start sync on {self.server}")
        logger.info(f"Started WSUS synchronization on {self.server}")
