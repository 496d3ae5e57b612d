"""
Configuration management for patchgate.

Settings are validated once at the boundary and handed to jobs as a single
immutable object. Sources, lowest to highest precedence:

    defaults -> PATCHGATE_* environment variables -> config file -> CLI flags

Config files are either YAML mappings or INI files with a [patchgate] section.
"""

import configparser
import logging
from pathlib import Path
from typing import Annotated, Any, Dict, List, Mapping, Optional

import yaml
from pydantic import Field, SecretStr, ValidationError, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_STATE_DIR = Path("/var/lib/patchgate")
INI_SECTION = "patchgate"

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class GateSettings(BaseSettings):
    """Validated settings for one patchgate run."""

    # ========================================================================
    # State
    # ========================================================================

    state_dir: Path = Field(
        default=DEFAULT_STATE_DIR,
        description="Directory holding watermark and rotation state files"
    )

    # ========================================================================
    # Quiescence polling
    # ========================================================================

    poll_interval: int = Field(
        default=300,
        ge=1,
        description="Seconds between busy/idle checks"
    )

    lead_time: int = Field(
        default=0,
        ge=0,
        description="Seconds a completion must age before it is trusted"
    )

    max_wait: Optional[int] = Field(
        default=None,
        ge=1,
        description="Give up waiting for idle after N seconds (unset = wait forever)"
    )

    # ========================================================================
    # Retry
    # ========================================================================

    max_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts per guarded action"
    )

    retry_delay: int = Field(
        default=60,
        ge=0,
        description="Seconds between attempts"
    )

    settle_seconds: int = Field(
        default=0,
        ge=0,
        description="Grace period after a state-changing call before checking its result"
    )

    force: bool = Field(
        default=False,
        description="Bypass the watermark gate"
    )

    # ========================================================================
    # Logging
    # ========================================================================

    log_level: str = Field(
        default="INFO",
        description="Log level"
    )

    log_file: Optional[Path] = Field(
        default=None,
        description="Rotating log file (stderr only when unset)"
    )

    # ========================================================================
    # WinRM connection
    # ========================================================================

    winrm_host: Optional[str] = Field(
        default=None,
        description="Host that runs the WSUS/ConfigMgr PowerShell cmdlets"
    )
    winrm_port: Optional[int] = Field(
        default=None,
        ge=1,
        le=65535,
        description="WinRM port (5985 HTTP, 5986 HTTPS)"
    )
    winrm_username: str = Field(default="", description="DOMAIN\\user or user@domain")
    winrm_password: SecretStr = Field(default=SecretStr(""), description="WinRM password")
    winrm_transport: str = Field(default="ntlm", description="ntlm, kerberos, certificate")
    winrm_use_ssl: bool = Field(default=False, description="Use HTTPS")
    winrm_verify_ssl: bool = Field(default=True, description="Validate server certificate")
    winrm_timeout: int = Field(default=600, ge=10, description="Per-script timeout in seconds")

    # ========================================================================
    # Job parameters
    # ========================================================================

    wsus_server: Optional[str] = Field(default=None, description="WSUS server name")
    wsus_port: int = Field(default=8530, ge=1, le=65535, description="WSUS port")
    wsus_use_ssl: bool = Field(default=False, description="Connect to WSUS over SSL")

    site_code: Optional[str] = Field(default=None, description="ConfigMgr site code")
    rule_patterns: Annotated[List[str], NoDecode] = Field(
        default_factory=list,
        description="Deployment rule name patterns, rotated between runs"
    )

    task_name: Optional[str] = Field(default=None, description="Remote scheduled task path")

    # ========================================================================
    # Validators
    # ========================================================================

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        v = str(v).upper()
        if v not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        return v

    @field_validator("winrm_transport")
    @classmethod
    def validate_transport(cls, v):
        if v not in ("ntlm", "kerberos", "certificate", "basic", "credssp"):
            raise ValueError("winrm_transport must be ntlm, kerberos, certificate, basic or credssp")
        return v

    @field_validator("rule_patterns", mode="before")
    @classmethod
    def split_patterns(cls, v):
        if isinstance(v, str):
            return [p.strip() for p in v.split(",") if p.strip()]
        return v

    # ========================================================================
    # Derived values
    # ========================================================================

    @property
    def effective_winrm_port(self) -> int:
        if self.winrm_port:
            return self.winrm_port
        return 5986 if self.winrm_use_ssl else 5985

    model_config = SettingsConfigDict(
        env_prefix="PATCHGATE_",
        frozen=True,
        extra="forbid",
    )


def _normalize_keys(values: Mapping[str, Any]) -> Dict[str, Any]:
    return {str(k).strip().lower().replace("-", "_"): v for k, v in values.items()}


def read_config_file(path: Path) -> Dict[str, Any]:
    """
    Read raw key/value pairs from a YAML or INI config file.

    Raises:
        ConfigError: If the file is missing or not a mapping
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    if path.suffix.lower() in (".ini", ".cfg", ".conf"):
        parser = configparser.ConfigParser(interpolation=None)
        try:
            parser.read(path, encoding="utf-8")
        except configparser.Error as e:
            raise ConfigError(f"Invalid INI config {path}: {e}") from e
        if not parser.has_section(INI_SECTION):
            raise ConfigError(f"Config file {path} has no [{INI_SECTION}] section")
        return _normalize_keys(dict(parser.items(INI_SECTION)))

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML config {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    return _normalize_keys(data)


def _format_validation_error(error: ValidationError) -> str:
    problems = []
    for item in error.errors():
        loc = ".".join(str(part) for part in item.get("loc", ())) or "settings"
        problems.append(f"{loc}: {item.get('msg')}")
    return "; ".join(problems)


def load_settings(
    config_file: Optional[Path] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> GateSettings:
    """
    Load and validate settings.

    Args:
        config_file: Optional YAML or INI file
        overrides: Values from command-line flags; None entries are ignored

    Returns:
        GateSettings: Validated, immutable settings

    Raises:
        ConfigError: If any value is unknown or invalid
    """
    values: Dict[str, Any] = {}
    if config_file:
        values.update(read_config_file(config_file))
        logger.debug(f"Loaded {len(values)} settings from {config_file}")
    if overrides:
        values.update({k: v for k, v in overrides.items() if v is not None})

    try:
        return GateSettings(**values)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {_format_validation_error(e)}") from e
