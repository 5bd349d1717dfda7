# runner_config.py

import os
from pathlib import Path
from typing import Any, Optional, Union
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator
from ruamel.yaml import YAML

from flow_logging import get_logger
from flow_models import DEFAULT_STEP_TIMEOUT_MS

logger = get_logger("config")

CONFIG_FILE_ENV = "FLOWRUNNER_CONFIG_FILE"

_ALIASES = {
    'base_url': 'Base URL',
    'default_step_timeout_ms': 'Default Step Timeout MS',
    'debug': 'Debug',
    'dry_run': 'Dry Run',
    'connector_limit': 'Connector Limit',
    'verify_ssl': 'Verify SSL',
    'session_idle_timeout_s': 'Session Idle Timeout S',
}


class RunnerConfig(BaseModel):
    """Process-level settings shared by the CLI and the session API."""
    base_url: Optional[str] = Field(None, description="Base URL that relative step URLs are joined onto")
    default_step_timeout_ms: int = Field(DEFAULT_STEP_TIMEOUT_MS, ge=1, le=600000,
                                         description="Step timeout used when neither the step nor the session config sets one")
    debug: bool = Field(default=False, description="Enable debug logging")
    dry_run: bool = Field(default=False, description="Resolve requests without sending them")
    connector_limit: int = Field(default=100, ge=1, description="Total connections pooled by the HTTP connector")
    verify_ssl: bool = Field(default=True, description="Verify TLS certificates of target hosts")
    session_idle_timeout_s: Optional[float] = Field(
        default=3600, description="Sessions idle for longer than this are pruned by the API; unset disables pruning")

    model_config = ConfigDict(
        populate_by_name=True,
        alias_generator=lambda field_name: _ALIASES.get(field_name, field_name),
        extra="ignore",
    )

    @field_validator('base_url', mode='before')
    def validate_base_url(cls, v):
        if v is None or (isinstance(v, str) and not v.strip()):
            return None # Treat empty string as None
        parsed = urlparse(str(v))
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            raise ValueError(f"Base URL must be an absolute http(s) URL: {v}")
        return str(v)

    @field_validator('session_idle_timeout_s', mode='before')
    def validate_idle_timeout(cls, v):
        if v == "" or v == 0:
            return None
        return v


def load_runner_config(path: Optional[Union[str, Path]] = None, **overrides: Any) -> RunnerConfig:
    """
    Build a RunnerConfig from an optional YAML file plus keyword overrides.
    The file path falls back to $FLOWRUNNER_CONFIG_FILE. Overrides whose value
    is None are ignored, so unset CLI options keep the file's values.
    """
    data = {}
    config_path = path or os.getenv(CONFIG_FILE_ENV)
    if config_path:
        config_path = Path(config_path)
        loaded = YAML(typ="safe").load(config_path.read_text())
        if loaded is not None and not isinstance(loaded, dict):
            raise ValueError(f"Config file {config_path} must contain a mapping, got {type(loaded).__name__}")
        # Accept both "Base URL" and base_url spellings in the file
        names = {alias: name for name, alias in _ALIASES.items()}
        data.update({names.get(key, key): value for key, value in (loaded or {}).items()})
        logger.info(f"Loaded runner configuration from {config_path}")
    data.update({key: value for key, value in overrides.items() if value is not None})
    return RunnerConfig.model_validate(data)
