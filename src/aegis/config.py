# Aegis Guard - Configuration
"""
Guard configuration models.

Configuration is a JSON file merged over the defaults below. Keys may be
written in snake_case or in the camelCase used by older config files.
"""

import json
import logging
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

logger = logging.getLogger("aegis.config")

DEFAULT_DATA_DIR = Path.home() / ".aegis-guard"
DEFAULT_CONFIG_FILE = DEFAULT_DATA_DIR / "config.json"


class ConfigError(ValueError):
    """Invalid or unreadable configuration."""


class GuardMode(str, Enum):
    """Operating mode of the guard engine."""
    LEARNING = "learning"
    PROTECTION = "protection"


class _ConfigModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def __init__(self, **data: Any):
        try:
            super().__init__(**data)
        except ValidationError as e:
            raise ConfigError(f"Invalid {type(self).__name__}: {e}") from e


class ActionPolicy(_ConfigModel):
    """Confidence thresholds (0-100) that decide how a verdict is handled."""
    auto_respond: int = Field(85, ge=0, le=100, description="Execute the action automatically at or above")
    notify_and_wait: int = Field(50, ge=0, le=100, description="Ask for confirmation at or above")
    log_only: int = Field(0, ge=0, le=100, description="Lower bound for logging")

    @model_validator(mode="after")
    def _check_order(self) -> "ActionPolicy":
        if not self.auto_respond > self.notify_and_wait > self.log_only:
            raise ValueError(
                "thresholds must satisfy auto_respond > notify_and_wait > log_only "
                f"(got {self.auto_respond}, {self.notify_and_wait}, {self.log_only})"
            )
        return self


class MonitorConfig(_ConfigModel):
    """Which observers run and how often the pollers sample."""
    log: bool = True
    network: bool = True
    process: bool = True
    file: bool = False
    network_poll_interval: float = Field(30.0, gt=0)
    process_poll_interval: float = Field(15.0, gt=0)
    file_poll_interval: float = Field(60.0, gt=0)
    watch_paths: list[str] = Field(default_factory=list)
    log_paths: Optional[list[str]] = None
    falco: bool = True
    suricata: bool = True


class AIConfig(_ConfigModel):
    """Optional LLM reasoning backend."""
    provider: Optional[str] = Field(None, description="anthropic, openai or ollama")
    model: Optional[str] = None
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    timeout: float = Field(15.0, gt=0, description="Seconds before an AI call is abandoned")


class GuardConfig(_ConfigModel):
    """Top-level guard configuration."""
    mode: GuardMode = GuardMode.LEARNING
    learning_days: int = Field(7, ge=0)
    action_policy: ActionPolicy = Field(default_factory=ActionPolicy)
    data_dir: Path = Field(default_factory=lambda: DEFAULT_DATA_DIR)
    rules_dir: Optional[Path] = None
    monitors: MonitorConfig = Field(default_factory=MonitorConfig)
    whitelisted_ips: list[str] = Field(default_factory=list)
    confirmation_timeout: float = Field(300.0, gt=0)
    baseline_save_every: int = Field(100, ge=1)
    ai: AIConfig = Field(default_factory=AIConfig)
    adapter_poll_interval: float = Field(60.0, gt=0)
    verbose: bool = False

    @field_validator("data_dir", "rules_dir", mode="after")
    @classmethod
    def _expand_user(cls, value: Optional[Path]) -> Optional[Path]:
        return value.expanduser() if value is not None else None

    @property
    def baseline_path(self) -> Path:
        return self.data_dir / "baseline.json"

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


def load_config(path: Optional[Path | str] = None) -> GuardConfig:
    """
    Load configuration from a JSON file.

    A missing file yields the defaults.

    Raises:
        ConfigError: unreadable file, malformed JSON or invalid values
    """
    path = Path(path) if path else DEFAULT_CONFIG_FILE
    if not path.exists():
        logger.debug(f"No config at {path}, using defaults")
        return GuardConfig()

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Failed to read config {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config {path} must contain a JSON object")

    config = GuardConfig(**data)
    logger.info(f"Loaded config from {path}")
    return config


def save_config(config: GuardConfig, path: Optional[Path | str] = None) -> Path:
    """Write configuration as JSON; returns the path written."""
    path = Path(path) if path else config.data_dir / "config.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(config.to_dict(), indent=2), encoding="utf-8")
    logger.info(f"Saved config to {path}")
    return path
