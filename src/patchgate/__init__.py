"""patchgate - Watermark-Gated Retry Runner for patch-management jobs"""

__version__ = "0.1.0"

# Core
from ._types import ActionResult, QuiescenceState, ResultKind, RunState, Watermark
from .errors import (
    ConfigError,
    FatalRemoteError,
    PatchGateError,
    QuiescenceTimeout,
    RemoteQueryError,
    RetriesExhausted,
)
from .gate import GateDecision, should_proceed
from .orchestrator import ExitCode, GatedRun, RunReport
from .poller import QuiescencePoller
from .retry import BoundedRetryExecutor, RetryOutcome
from .rotation import RotationStore
from .watermark import WatermarkStore

# Jobs
from .config import GateSettings, load_settings
from .jobs import DeploymentRuleJob, SyncGateJob, TaskGateJob

__all__ = [
    # Version
    "__version__",

    # Types
    "ActionResult",
    "QuiescenceState",
    "ResultKind",
    "RunState",
    "Watermark",

    # Errors
    "ConfigError",
    "FatalRemoteError",
    "PatchGateError",
    "QuiescenceTimeout",
    "RemoteQueryError",
    "RetriesExhausted",

    # Gated run
    "GateDecision",
    "should_proceed",
    "ExitCode",
    "GatedRun",
    "RunReport",
    "QuiescencePoller",
    "BoundedRetryExecutor",
    "RetryOutcome",
    "RotationStore",
    "WatermarkStore",

    # Jobs
    "GateSettings",
    "load_settings",
    "DeploymentRuleJob",
    "SyncGateJob",
    "TaskGateJob",
]
