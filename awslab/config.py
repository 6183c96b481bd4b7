"""Run configuration.

Settings are layered: built-in defaults, then an optional YAML file, then
environment variables, then command line flags.
"""

import logging
import os
import re
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Mapping, Optional

import yaml

from .errors import FatalError

logger = logging.getLogger(__name__)

DEFAULT_REGION = "eu-west-1"
DEFAULT_PROJECT_TAG = "AutomationLab"
DEFAULT_STATE_BUCKET = "myproject-infra-state"
DEFAULT_STATE_KEY = "aws_state.json"

ENV_VARS = {
    "region": "REGION",
    "dry_run": "DRY_RUN",
    "project_tag": "PROJECT_TAG",
    "skip_confirmation": "SKIP_CONFIRMATION",
    "profile": "AWS_PROFILE",
    "state_bucket": "STATE_BUCKET",
    "state_key": "STATE_FILE",
    "log_dir": "LOG_DIR",
    "key_dir": "KEY_DIR",
    "settle_seconds": "SETTLE_SECONDS",
    "strict_state": "STRICT_STATE",
    "output_file": "OUTPUT_FILE",
}

TRUE_VALUES = {"true", "1", "yes", "y", "on"}
FALSE_VALUES = {"false", "0", "no", "n", "off", ""}

BUCKET_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9.-]{1,61}[a-z0-9]$")


@dataclass(frozen=True)
class LabConfig:
    """Settings for one invocation."""

    region: str = DEFAULT_REGION
    dry_run: bool = False
    project_tag: str = DEFAULT_PROJECT_TAG
    skip_confirmation: bool = False
    profile: Optional[str] = None
    state_bucket: str = DEFAULT_STATE_BUCKET
    state_key: str = DEFAULT_STATE_KEY
    log_dir: Optional[str] = "./logs"
    key_dir: str = "."
    settle_seconds: float = 5.0
    strict_state: bool = False
    output_file: Optional[str] = None

    @property
    def outputs_path(self) -> Optional[str]:
        """Env file for created ids; defaults to outputs.env in the log directory."""
        if self.output_file:
            return self.output_file
        if self.log_dir:
            return os.path.join(self.log_dir, "outputs.env")
        return None

    def with_overrides(self, **overrides: Any) -> "LabConfig":
        """Return a copy with every non-None override applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes)


def _field_types() -> Dict[str, Any]:
    return {f.name: f.type for f in fields(LabConfig)}


def parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in TRUE_VALUES:
        return True
    if lowered in FALSE_VALUES:
        return False
    raise ValueError(f"Invalid boolean value: {value!r}")


def _coerce(name: str, value: Any) -> Any:
    """Convert a raw setting to the type of the LabConfig field."""
    field_type = _field_types()[name]
    if field_type in (bool, "bool"):
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return parse_bool(value)
        raise ValueError(f"Setting '{name}' must be a boolean")
    if field_type in (float, "float"):
        if isinstance(value, bool):
            raise ValueError(f"Setting '{name}' must be a number")
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise ValueError(f"Setting '{name}' must be a number") from None
        if number < 0:
            raise ValueError(f"Setting '{name}' must not be negative")
        return number
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"Setting '{name}' must be a string")
    return value


def load_config_file(path: str) -> Dict[str, Any]:
    """Load and validate a YAML config file.

    Args:
        path: Path to the YAML file

    Returns:
        Mapping of LabConfig field names to coerced values

    Raises:
        FileNotFoundError: If the file doesn't exist
        yaml.YAMLError: If the YAML is invalid
        ValueError: If the file contains unknown keys or wrongly typed values
    """
    try:
        with open(path, "r") as f:
            raw = yaml.safe_load(f)
    except FileNotFoundError:
        logger.error(f"Config file not found: {path}")
        raise
    except yaml.YAMLError as e:
        logger.error(f"Invalid YAML in config file: {e}")
        raise

    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValueError("Config file must contain a mapping at the top level")

    known = _field_types()
    settings = {}
    for key, value in raw.items():
        if key not in known:
            raise ValueError(f"Unknown setting in config file: {key}")
        settings[key] = _coerce(key, value)

    logger.info(f"Loaded configuration from {path}")
    return settings


def settings_from_env(environ: Mapping[str, str]) -> Dict[str, Any]:
    settings = {}
    for name, var in ENV_VARS.items():
        if var in environ:
            settings[name] = _coerce(name, environ[var])
    return settings


def load_config(
    config_file: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
    **overrides: Any,
) -> LabConfig:
    """Build the effective configuration.

    Args:
        config_file: Optional YAML file with settings
        environ: Environment to read overrides from (defaults to os.environ)
        **overrides: Command line values; None means "not given"

    Returns:
        The merged LabConfig
    """
    if environ is None:
        environ = os.environ

    settings: Dict[str, Any] = {}
    if config_file:
        settings.update(load_config_file(config_file))
    settings.update(settings_from_env(environ))

    config = LabConfig(**settings)
    return config.with_overrides(**overrides)


def validate_bucket_name(name: str) -> None:
    """Check an S3 bucket name against the naming rules.

    Raises:
        FatalError: If the name is not a valid bucket name
    """
    if not BUCKET_NAME_RE.match(name):
        raise FatalError(
            f"Invalid bucket name '{name}'. Must be 3-63 chars, lowercase, "
            "start/end with letter/number"
        )
    if ".." in name or ".-" in name or "-." in name:
        raise FatalError(
            f"Invalid bucket name '{name}': cannot have consecutive periods "
            "or period-dash combinations"
        )
    logger.debug(f"Bucket name validation passed: {name}")
