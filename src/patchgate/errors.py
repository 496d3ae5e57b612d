"""
Exception hierarchy for patchgate.

Every error that can stop a run derives from PatchGateError so the CLI can map
it to an exit code. Remote failures carry the numeric code reported by the
remote API when one is available.
"""

from typing import Optional


class PatchGateError(Exception):
    """Base class for all patchgate errors."""


class ConfigError(PatchGateError):
    """Missing or invalid configuration, or an unmet precondition."""


class RemoteQueryError(PatchGateError):
    """A call to a remote administration API failed."""

    def __init__(self, message: str, code: Optional[int] = None, target: Optional[str] = None):
        self.code = code
        self.target = target
        detail = message
        if target:
            detail = f"{target}: {detail}"
        if code is not None:
            detail = f"{detail} (code {code})"
        super().__init__(detail)


class FatalRemoteError(RemoteQueryError):
    """The remote system reported a failed run. Never retried."""


class QuiescenceTimeout(PatchGateError):
    """The remote system did not become idle within the configured deadline."""

    def __init__(self, resource: str, waited_seconds: float):
        self.resource = resource
        self.waited_seconds = waited_seconds
        super().__init__(f"{resource} still busy after {waited_seconds:.0f}s")


class WatermarkCorruptError(PatchGateError):
    """A stored watermark exists but cannot be read."""


class WatermarkWriteError(PatchGateError):
    """A watermark could not be persisted."""


class GateTypeError(PatchGateError):
    """Signal and watermark values cannot be compared."""


class RetriesExhausted(PatchGateError):
    """A guarded action failed on every allowed attempt."""

    def __init__(self, description: str, attempts: int, last_error: Optional[str] = None,
                 code: Optional[int] = None):
        self.description = description
        self.attempts = attempts
        self.last_error = last_error
        self.code = code
        super().__init__(f"{description} failed after {attempts} attempts: {last_error}")
