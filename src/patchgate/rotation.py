"""
Pattern rotation for deployment-rule runs.

Each run of the ADR job processes the rules matching one name pattern and
advances to the next pattern on the following run. The pattern list and the
position used last time are stored together; if the configured list changes
(compared as sorted values, so reordering alone does not count) the rotation
starts over at position 0.
"""

import logging
from pathlib import Path
from typing import List, Optional, Sequence

from ._types import RotationState, format_timestamp, now_utc
from .errors import ConfigError, WatermarkCorruptError
from .watermark import read_state_file, safe_name, write_state_file

logger = logging.getLogger(__name__)

ROTATION_SUFFIX = ".rotation.json"


def same_patterns(stored: Sequence[str], fresh: Sequence[str]) -> bool:
    """Order-insensitive comparison of two pattern lists."""
    return sorted(stored) == sorted(fresh)


def next_state(stored: Optional[RotationState], patterns: Sequence[str]) -> RotationState:
    """
    Pick the position to use for this run.

    Args:
        stored: State persisted by the previous run, if any
        patterns: Patterns configured for this run

    Returns:
        RotationState holding this run's patterns and position

    Raises:
        ConfigError: If no patterns are configured
    """
    patterns = list(patterns)
    if not patterns:
        raise ConfigError("At least one rule pattern is required")

    if stored is None:
        return RotationState(patterns=patterns, position=0)

    if not same_patterns(stored.patterns, patterns):
        logger.info("Rule patterns changed since last run, restarting rotation")
        return RotationState(patterns=patterns, position=0)

    return RotationState(patterns=patterns, position=(stored.position + 1) % len(patterns))


class RotationStore:
    """File-backed rotation state, one file per rotation name."""

    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)

    def path_for(self, name: str) -> Path:
        return self.state_dir / f"{safe_name(name)}{ROTATION_SUFFIX}"

    def load(self, name: str) -> Optional[RotationState]:
        """
        Raises:
            WatermarkCorruptError: If the stored state cannot be decoded
        """
        path = self.path_for(name)
        data = read_state_file(path)
        if data is None:
            return None

        patterns = data.get("patterns")
        position = data.get("position")
        if (
            not isinstance(patterns, list)
            or not patterns
            or not all(isinstance(p, str) for p in patterns)
            or isinstance(position, bool)
            or not isinstance(position, int)
            or not 0 <= position < len(patterns)
        ):
            raise WatermarkCorruptError(f"Corrupt rotation state {path}")

        return RotationState(patterns=patterns, position=position)

    def save(self, name: str, state: RotationState) -> None:
        write_state_file(self.path_for(name), {
            "patterns": list(state.patterns),
            "position": state.position,
            "updated_at": format_timestamp(now_utc()),
        })
        logger.info(f"Saved rotation {name}: position {state.position} ({state.current})")

    def names(self) -> List[str]:
        if not self.state_dir.exists():
            return []
        return sorted(p.name[:-len(ROTATION_SUFFIX)] for p in self.state_dir.glob(f"*{ROTATION_SUFFIX}"))
