"""Gate Evaluator - decide whether a fresh signal is newer than the watermark."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from ._types import SignalValue, Watermark
from .errors import GateTypeError

logger = logging.getLogger(__name__)

REASON_FORCED = "forced"
REASON_FIRST_RUN = "first_run"
REASON_NEWER = "newer"
REASON_UNCHANGED = "unchanged"
REASON_OLDER = "older"


@dataclass(frozen=True)
class GateDecision:
    proceed: bool
    reason: str

    def __bool__(self) -> bool:
        return self.proceed


def _check_comparable(signal: SignalValue, watermark_value: SignalValue) -> None:
    if isinstance(signal, bool) or isinstance(watermark_value, bool):
        raise GateTypeError("Boolean values cannot be used as signals")
    if isinstance(signal, datetime) != isinstance(watermark_value, datetime):
        raise GateTypeError(
            f"Cannot compare {type(signal).__name__} signal with "
            f"{type(watermark_value).__name__} watermark"
        )
    if isinstance(signal, datetime) and (signal.tzinfo is None) != (watermark_value.tzinfo is None):
        raise GateTypeError("Cannot compare naive and timezone-aware timestamps")


def should_proceed(
    signal: SignalValue,
    watermark: Optional[Watermark],
    force: bool = False,
) -> GateDecision:
    """
    Compare a fresh signal against the stored watermark.

    Equal values do not proceed: nothing changed since the last success.

    Raises:
        GateTypeError: If signal and watermark are of incomparable types
    """
    if force:
        logger.warning(
            f"Gate override: proceeding regardless of watermark "
            f"(signal={signal}, watermark={watermark.value if watermark else None})"
        )
        return GateDecision(True, REASON_FORCED)

    if watermark is None:
        logger.info(f"No previous watermark, proceeding with signal {signal}")
        return GateDecision(True, REASON_FIRST_RUN)

    _check_comparable(signal, watermark.value)

    if signal > watermark.value:
        logger.info(f"Signal {signal} is newer than watermark {watermark.value}, proceeding")
        return GateDecision(True, REASON_NEWER)

    if signal == watermark.value:
        logger.info(f"Signal {signal} unchanged since last run, nothing to do")
        return GateDecision(False, REASON_UNCHANGED)

    logger.warning(f"Signal {signal} is older than watermark {watermark.value}, nothing to do")
    return GateDecision(False, REASON_OLDER)
