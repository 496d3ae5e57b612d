"""
Local command execution for guarded actions.

A gated job can run a local program (a downstream export or mirror step) as
its guarded action. The command's exit status classifies the attempt: zero is
success, anything else is a transient failure carrying the exit status so it
can become the process exit code once attempts run out.
"""

import asyncio
import logging
from typing import List, Optional, Sequence

from ._types import ActionResult, now_utc
from .errors import ConfigError

logger = logging.getLogger(__name__)


class CommandResult:
    """Result of a command execution."""

    def __init__(
        self,
        exit_code: int,
        stdout: str,
        stderr: str,
        duration_sec: float
    ):
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        self.duration_sec = duration_sec
        self.success = exit_code == 0

    def __repr__(self):
        return f"CommandResult(exit_code={self.exit_code}, success={self.success})"


async def run_command(cmd: Sequence[str], timeout: Optional[float] = None) -> CommandResult:
    """
    Run a command asynchronously and capture its output.

    Args:
        cmd: Command and arguments as list
        timeout: Timeout in seconds (None = no timeout)

    Returns:
        CommandResult with exit code, stdout, stderr, duration

    Raises:
        ConfigError: If the program cannot be started
        asyncio.TimeoutError: If timeout exceeded
    """
    start_time = now_utc()

    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE
        )
    except OSError as e:
        raise ConfigError(f"Cannot start {cmd[0]}: {e}") from e

    try:
        if timeout:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        else:
            stdout, stderr = await process.communicate()
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise

    return CommandResult(
        exit_code=process.returncode,
        stdout=stdout.decode('utf-8', errors='replace') if stdout else '',
        stderr=stderr.decode('utf-8', errors='replace') if stderr else '',
        duration_sec=(now_utc() - start_time).total_seconds(),
    )


class CommandAction:
    """
    Guarded action that runs a local command.

    Usage:
        action = CommandAction(["/usr/local/bin/export-updates", "--full"])
        outcome = await executor.execute(action)
    """

    def __init__(self, cmd: Sequence[str], timeout: Optional[float] = None):
        if not cmd:
            raise ConfigError("Command must not be empty")
        self.cmd: List[str] = list(cmd)
        self.timeout = timeout

    async def __call__(self) -> ActionResult:
        logger.info(f"Running {' '.join(self.cmd)}")
        try:
            result = await run_command(self.cmd, timeout=self.timeout)
        except asyncio.TimeoutError:
            return ActionResult.transient(f"{self.cmd[0]} timed out after {self.timeout}s")

        if result.success:
            logger.info(f"{self.cmd[0]} finished in {result.duration_sec:.1f}s")
            return ActionResult.ok(result)

        stderr = result.stderr.strip().splitlines()
        return ActionResult.transient(
            f"{self.cmd[0]} exited with {result.exit_code}"
            + (f": {stderr[-1]}" if stderr else ""),
            error_code=result.exit_code,
            value=result,
        )
