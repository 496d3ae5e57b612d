"""
PowerShell executor over WinRM.

Runs the WSUS / ConfigMgr / Task Scheduler cmdlets on a Windows management
host. Scripts are expected to print a single JSON document; a script that
catches its own failure reports it as {"Error": "...", "Code": <int>}.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .._types import now_utc
from ..errors import ConfigError, RemoteQueryError

logger = logging.getLogger(__name__)


@dataclass
class WindowsTarget:
    """Windows management host configuration."""
    hostname: str
    port: int = 5985  # WinRM HTTP (5986 for HTTPS)
    username: str = ""
    password: str = field(default="", repr=False)
    use_ssl: bool = False
    verify_ssl: bool = True
    transport: str = "ntlm"  # ntlm, kerberos, certificate

    @classmethod
    def from_settings(cls, settings) -> "WindowsTarget":
        if not settings.winrm_host:
            raise ConfigError("winrm_host is required to reach the management server")
        return cls(
            hostname=settings.winrm_host,
            port=settings.effective_winrm_port,
            username=settings.winrm_username,
            password=settings.winrm_password.get_secret_value(),
            use_ssl=settings.winrm_use_ssl,
            verify_ssl=settings.winrm_verify_ssl,
            transport=settings.winrm_transport,
        )


@dataclass
class ScriptResult:
    """Result of one PowerShell script."""
    success: bool
    target: str
    status_code: int
    std_out: str = ""
    std_err: str = ""
    parsed: Any = None
    duration_seconds: float = 0.0
    error: Optional[str] = None


class PowerShellExecutor:
    """
    Execute PowerShell scripts via WinRM.

    Uses the pywinrm library; sessions are cached per host.
    """

    def __init__(self, target: WindowsTarget, timeout: int = 600):
        self.target = target
        self.timeout = timeout
        self._session = None

    def _get_session(self):
        """
        Get or create the WinRM session.

        Returns:
            winrm.Session object
        """
        try:
            import winrm
        except ImportError:
            raise ImportError(
                "pywinrm is required for Windows execution. "
                "Install with: pip install patchgate[winrm]"
            )

        if self._session is None:
            protocol = "https" if self.target.use_ssl else "http"
            endpoint = f"{protocol}://{self.target.hostname}:{self.target.port}/wsman"

            self._session = winrm.Session(
                endpoint,
                auth=(self.target.username, self.target.password),
                transport=self.target.transport,
                server_cert_validation='validate' if self.target.verify_ssl else 'ignore'
            )

        return self._session

    def _execute_sync(self, script: str) -> Dict[str, Any]:
        """Synchronous script execution (runs in thread pool)."""
        session = self._get_session()
        result = session.run_ps(script)

        output = {
            "status_code": result.status_code,
            "std_out": result.std_out.decode('utf-8', errors='replace') if result.std_out else "",
            "std_err": result.std_err.decode('utf-8', errors='replace') if result.std_err else "",
        }

        output["parsed"] = None
        if output["std_out"].strip():
            try:
                output["parsed"] = json.loads(output["std_out"])
            except json.JSONDecodeError:
                logger.debug(f"Output from {self.target.hostname} is not JSON")

        return output

    async def execute_script(self, script: str, timeout: Optional[int] = None) -> ScriptResult:
        """
        Execute a PowerShell script on the target.

        Never raises for remote failures; inspect ScriptResult.success.
        """
        timeout = timeout or self.timeout
        start_time = now_utc()
        host = self.target.hostname

        try:
            # Run in thread pool since pywinrm is synchronous
            loop = asyncio.get_running_loop()
            output = await asyncio.wait_for(
                loop.run_in_executor(None, self._execute_sync, script),
                timeout=timeout
            )
        except asyncio.TimeoutError:
            return ScriptResult(
                success=False,
                target=host,
                status_code=-1,
                duration_seconds=(now_utc() - start_time).total_seconds(),
                error=f"Execution timed out after {timeout}s",
            )
        except ImportError as e:
            raise ConfigError(str(e)) from e
        except Exception as e:
            logger.exception(f"Script execution failed on {host}")
            return ScriptResult(
                success=False,
                target=host,
                status_code=-1,
                duration_seconds=(now_utc() - start_time).total_seconds(),
                error=str(e),
            )

        parsed = output["parsed"]
        error = None
        if output["status_code"] != 0:
            error = output["std_err"].strip() or f"exit status {output['status_code']}"
        elif isinstance(parsed, dict) and parsed.get("Error"):
            error = str(parsed["Error"])

        return ScriptResult(
            success=error is None,
            target=host,
            status_code=output["status_code"],
            std_out=output["std_out"],
            std_err=output["std_err"],
            parsed=parsed,
            duration_seconds=(now_utc() - start_time).total_seconds(),
            error=error,
        )

    async def run_json(self, script: str, operation: str, timeout: Optional[int] = None) -> Any:
        """
        Execute a script and return its parsed JSON output.

        Raises:
            RemoteQueryError: If the script fails or prints no JSON
        """
        result = await self.execute_script(script, timeout)
        if not result.success:
            code = None
            if isinstance(result.parsed, dict) and isinstance(result.parsed.get("Code"), int):
                code = result.parsed["Code"]
            raise RemoteQueryError(f"{operation} failed: {result.error}", code=code, target=result.target)
        if result.parsed is None:
            raise RemoteQueryError(f"{operation} returned no JSON output", target=result.target)
        logger.debug(f"{operation} on {result.target} took {result.duration_seconds:.1f}s")
        return result.parsed
