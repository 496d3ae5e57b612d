"""
Single source of truth for shared types in patchgate.

Import types from this module, not from individual files:

    from patchgate._types import (
        Watermark, QuiescenceState, ActionResult, RunState,
        now_utc  # Use instead of datetime.utcnow()
    )
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional, Union


# A signal or watermark value: an aware UTC datetime or a counter.
SignalValue = Union[datetime, int]


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def now_utc() -> datetime:
    """
    Get current UTC time with timezone info.

    Use this instead of datetime.utcnow() which is deprecated.
    """
    return datetime.now(timezone.utc)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp, treating a trailing Z and naive values as UTC."""
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Format an aware datetime as ISO-8601 UTC with a Z suffix."""
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


# =============================================================================
# ENUMS
# =============================================================================


class ResultKind(str, Enum):
    """Classification of a guarded action's result."""
    OK = "ok"
    TRANSIENT = "transient"
    FATAL = "fatal"


class RunState(str, Enum):
    """States of a gated run."""
    IDLE = "idle"
    WAITING_FOR_QUIESCENCE = "waiting_for_quiescence"
    EVALUATING = "evaluating"
    ACTING = "acting"
    COMMITTING = "committing"
    DONE = "done"
    ABORTED = "aborted"


class SyncStatus(str, Enum):
    """Update-sync engine status."""
    RUNNING = "running"
    IDLE = "idle"


# =============================================================================
# WATERMARKS
# =============================================================================


@dataclass(frozen=True)
class Watermark:
    """Last signal value recorded after a successful gated action."""
    check_name: str
    value: SignalValue
    target: Optional[str] = None
    recorded_at: datetime = field(default_factory=now_utc)


@dataclass(frozen=True)
class RotationState:
    """Ordered pattern list plus the position used on the last run."""
    patterns: List[str]
    position: int = 0

    @property
    def current(self) -> str:
        return self.patterns[self.position]


# =============================================================================
# QUIESCENCE
# =============================================================================


@dataclass(frozen=True)
class QuiescenceState:
    """One observation of a remote long-running operation."""
    busy: bool
    succeeded: bool = True
    completed_at: Optional[datetime] = None
    detail: Optional[str] = None
    error_code: Optional[int] = None


@dataclass
class QuiescenceOutcome:
    """Result of waiting for a remote operation to become idle."""
    success: bool
    last_completion_signal: Optional[datetime] = None
    polls: int = 0
    waited_seconds: float = 0.0
    error: Optional[str] = None
    error_code: Optional[int] = None


# =============================================================================
# ACTION RESULTS
# =============================================================================


@dataclass
class ActionResult:
    """
    Tagged result of a guarded action or a verification step.

    TRANSIENT results are retried by the executor; FATAL results abort the run.
    """
    kind: ResultKind
    value: Any = None
    error: Optional[str] = None
    error_code: Optional[int] = None

    @classmethod
    def ok(cls, value: Any = None) -> "ActionResult":
        return cls(ResultKind.OK, value=value)

    @classmethod
    def transient(cls, error: str, error_code: Optional[int] = None, value: Any = None) -> "ActionResult":
        return cls(ResultKind.TRANSIENT, value=value, error=error, error_code=error_code)

    @classmethod
    def fatal(cls, error: str, error_code: Optional[int] = None, value: Any = None) -> "ActionResult":
        return cls(ResultKind.FATAL, value=value, error=error, error_code=error_code)

    @property
    def is_ok(self) -> bool:
        return self.kind == ResultKind.OK


# =============================================================================
# REMOTE RECORDS
# =============================================================================


@dataclass(frozen=True)
class SyncResult:
    """Outcome of the last update synchronization."""
    succeeded: bool
    completed_at: Optional[datetime]
    detail: Optional[str] = None


@dataclass(frozen=True)
class TaskRunInfo:
    """Last run of a remote scheduled task."""
    task_name: str
    last_run_time: Optional[datetime]
    last_result_code: int


@dataclass(frozen=True)
class DeploymentRule:
    """An Automatic Deployment Rule as listed by the site."""
    rule_id: int
    name: str


@dataclass(frozen=True)
class RuleRunInfo:
    """Last evaluation of a deployment rule."""
    last_run_time: Optional[datetime]
    last_error_code: int
