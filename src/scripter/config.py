"""Engine configuration schema and loading.

EngineConfig values come from, in order of precedence:
1. CLI flags (merge_cli_overrides)
2. .scripter/config.yaml, under the 'engine:' section
3. SCRIPTER_* environment variables
4. Defaults
"""

import sys
from pathlib import Path

import yaml
from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from scripter.exceptions import ConfigurationError

CONFIG_DIR_NAME = ".scripter"
CONFIG_FILE_NAME = "config.yaml"


def _default_install_directory() -> Path:
    return Path(sys.argv[0]).resolve().parent if sys.argv and sys.argv[0] else Path.cwd()


class EngineConfig(BaseSettings):
    """Tunables for the execution engine, process runner and log store.

    Example:
        ```bash
        export SCRIPTER_GRACE_PERIOD_SECONDS=10
        export SCRIPTER_LOGS_PATH=/var/log/scripter
        ```
    """

    logs_path: Path = Field(
        default=Path("scripter_logs"), description="Directory that receives run log directories"
    )
    grace_period_seconds: float = Field(
        default=5.0, gt=0, description="Time between SIGTERM and SIGKILL on stop"
    )
    retry_delay_seconds: float = Field(
        default=0.0, ge=0, description="Pause between a failed attempt and its retry"
    )
    success_exit_codes: list[int] = Field(
        default_factory=lambda: [0], description="Exit codes treated as success"
    )
    recent_lines: int = Field(default=30, ge=1, description="Lines kept in the output tail")
    chunk_size: int = Field(default=65536, ge=1, description="Max bytes per pipe read")
    install_directory: Path = Field(
        default_factory=_default_install_directory,
        description="Base for install-relative command paths",
    )

    model_config = SettingsConfigDict(
        env_prefix="SCRIPTER_",
        case_sensitive=False,
    )

    @field_validator("success_exit_codes")
    @classmethod
    def _at_least_one_success_code(cls, value: list[int]) -> list[int]:
        if not value:
            raise ValueError("success_exit_codes must not be empty")
        return value


def load_config(project_root: Path | None = None) -> EngineConfig:
    """Load engine configuration from .scripter/config.yaml.

    Args:
        project_root: Directory containing .scripter/. Defaults to cwd.

    Returns:
        EngineConfig with values from file, environment or defaults

    Raises:
        ConfigurationError: If the file is not valid YAML or fails validation
    """
    if project_root is None:
        project_root = Path.cwd()

    config_path = project_root / CONFIG_DIR_NAME / CONFIG_FILE_NAME

    if not config_path.exists():
        return EngineConfig()

    try:
        with open(config_path) as f:
            raw_config = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

    if not isinstance(raw_config, dict):
        raise ConfigurationError(f"Expected a mapping at the top of {config_path}")

    engine_section = raw_config.get("engine") or {}

    try:
        return EngineConfig(**engine_section)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid engine config in {config_path}: {e}") from e


def merge_cli_overrides(
    config: EngineConfig,
    logs_path: Path | None = None,
    grace_period_seconds: float | None = None,
    retry_delay_seconds: float | None = None,
) -> EngineConfig:
    """Return a copy of config with CLI flags applied on top.

    Args:
        config: Base configuration from load_config
        logs_path: Override for the logs directory
        grace_period_seconds: Override for the stop grace period
        retry_delay_seconds: Override for the pause between retries

    Returns:
        New EngineConfig; the input is left unchanged
    """
    updates: dict[str, object] = {}
    if logs_path is not None:
        updates["logs_path"] = logs_path
    if grace_period_seconds is not None:
        updates["grace_period_seconds"] = grace_period_seconds
    if retry_delay_seconds is not None:
        updates["retry_delay_seconds"] = retry_delay_seconds

    if not updates:
        return config

    try:
        return EngineConfig(**{**config.model_dump(), **updates})
    except ValidationError as e:
        raise ConfigurationError(f"Invalid command line override: {e}") from e
