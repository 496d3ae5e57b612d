"""
Watermark Store - persisted "last signal seen" per check.

One JSON file per (check name, target) under the state directory. A missing
file means "never succeeded before"; a file that exists but cannot be read is
a fatal error for the run, so a corrupt state never causes a skipped or
duplicated action.

Single writer, single reader: concurrent runs against the same state
directory are not supported.
"""

import json
import logging
import os
import re
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from ._types import SignalValue, Watermark, format_timestamp, now_utc, parse_timestamp
from .errors import WatermarkCorruptError, WatermarkWriteError

logger = logging.getLogger(__name__)

WATERMARK_SUFFIX = ".watermark.json"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def safe_name(value: str) -> str:
    """Turn a check name or target into a file-name fragment."""
    cleaned = _UNSAFE_CHARS.sub("_", value.strip()).strip("._")
    return cleaned or "_"


def read_state_file(path: Path) -> Optional[Dict[str, Any]]:
    """
    Read a JSON state file.

    Returns:
        Parsed mapping, or None if the file does not exist

    Raises:
        WatermarkCorruptError: If the file exists but is not a JSON object
    """
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise WatermarkCorruptError(f"Cannot read state file {path}: {e}") from e
    if not isinstance(data, dict):
        raise WatermarkCorruptError(f"State file {path} does not contain an object")
    return data


def write_state_file(path: Path, data: Dict[str, Any]) -> None:
    """
    Atomically replace a JSON state file.

    Raises:
        WatermarkWriteError: If the file cannot be written
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
    except OSError as e:
        raise WatermarkWriteError(f"Cannot write state file {path}: {e}") from e


def encode_value(value: SignalValue) -> Dict[str, Any]:
    # bool is an int subclass but never a meaningful signal
    if isinstance(value, bool):
        raise TypeError("Watermark value must be a datetime or int, not bool")
    if isinstance(value, datetime):
        if value.tzinfo is None:
            raise TypeError("Watermark datetime must be timezone-aware")
        return {"value_type": "datetime", "value": format_timestamp(value)}
    if isinstance(value, int):
        return {"value_type": "int", "value": value}
    raise TypeError(f"Unsupported watermark value type: {type(value).__name__}")


def decode_value(value_type: str, raw: Any) -> SignalValue:
    if value_type == "datetime":
        return parse_timestamp(raw)
    if value_type == "int":
        if isinstance(raw, bool) or not isinstance(raw, int):
            raise ValueError(f"expected integer, got {raw!r}")
        return raw
    raise ValueError(f"unknown value_type {value_type!r}")


class WatermarkStore:
    """
    File-backed watermark storage.

    Usage:
        store = WatermarkStore(settings.state_dir)
        previous = store.load("wsus-sync", target="wsus01")
        ...
        store.save("wsus-sync", signal, target="wsus01")
    """

    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)

    def path_for(self, check_name: str, target: Optional[str] = None) -> Path:
        name = safe_name(check_name)
        if target:
            name = f"{name}@{safe_name(target)}"
        return self.state_dir / f"{name}{WATERMARK_SUFFIX}"

    def load(self, check_name: str, target: Optional[str] = None) -> Optional[Watermark]:
        """
        Load the stored watermark.

        Returns:
            The watermark, or None on first run

        Raises:
            WatermarkCorruptError: If the stored watermark cannot be decoded
        """
        path = self.path_for(check_name, target)
        data = read_state_file(path)
        if data is None:
            logger.info(f"No watermark for {check_name} (target={target}), treating as first run")
            return None

        try:
            if data["check_name"] != check_name:
                raise ValueError(f"belongs to check {data['check_name']!r}")
            value = decode_value(data["value_type"], data["value"])
            recorded_at = parse_timestamp(data["recorded_at"])
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise WatermarkCorruptError(f"Corrupt watermark {path}: {e}") from e

        return Watermark(
            check_name=check_name,
            value=value,
            target=data.get("target"),
            recorded_at=recorded_at,
        )

    def save(self, check_name: str, value: SignalValue, target: Optional[str] = None) -> Watermark:
        """
        Persist a new watermark. Only call after the guarded action succeeded.

        Raises:
            WatermarkWriteError: If the watermark cannot be written
        """
        try:
            encoded = encode_value(value)
        except TypeError as e:
            raise WatermarkWriteError(str(e)) from e

        watermark = Watermark(check_name=check_name, value=value, target=target, recorded_at=now_utc())
        path = self.path_for(check_name, target)
        write_state_file(path, {
            "check_name": check_name,
            "target": target,
            "recorded_at": format_timestamp(watermark.recorded_at),
            **encoded,
        })
        logger.info(f"Committed watermark {check_name} (target={target}) = {encoded['value']}")
        return watermark

    def list_all(self) -> List[Watermark]:
        """All readable watermarks in the state directory, by file name."""
        watermarks = []
        if not self.state_dir.exists():
            return watermarks
        for path in sorted(self.state_dir.glob(f"*{WATERMARK_SUFFIX}")):
            data = read_state_file(path)
            if data is None:
                continue
            if "check_name" not in data:
                raise WatermarkCorruptError(f"Corrupt watermark {path}: missing check_name")
            watermarks.append(self.load(data["check_name"], data.get("target")))
        return watermarks
