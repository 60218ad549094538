"""Configuration for the Nomad metrics agent.

Settings are resolved in order of increasing precedence: model defaults,
an optional YAML file, ``NOMAD_METRICS_*`` environment variables (a local
``.env`` is honoured) and finally explicit overrides from the CLI.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import ConfigError

DEFAULT_ADDRESS = "127.0.0.1"
DEFAULT_PORT = 4646
ENV_PREFIX = "NOMAD_METRICS_"


def get_state_dir() -> Path:
    """Directory holding agent state between runs."""
    return Path.home() / ".nomad_metrics"


def default_state_file(address: str, port: int) -> Path:
    """Per-endpoint task registry file under the state directory."""
    safe_address = address.replace(":", "_").replace("/", "_")
    return get_state_dir() / f"task_registry-{safe_address}-{port}.json"


class AgentConfig(BaseModel):
    """Connection, timing and fan-out settings for one agent process."""
    address: str = Field(default=DEFAULT_ADDRESS, description="Nomad agent address")
    port: int = Field(default=DEFAULT_PORT, description="Nomad HTTP API port")
    scheme: str = Field(default="http", description="URL scheme of the Nomad API")

    request_timeout: float = Field(default=5.0, description="Per-request HTTP timeout in seconds")
    fetch_timeout: float = Field(default=10.0, description="Timeout for each allocation detail or stats fetch")
    max_concurrency: int = Field(default=16, description="Concurrent allocation fetches, 0 for unbounded")
    poll_interval: float = Field(default=60.0, description="Seconds between cycles in watch mode")

    state_file: Optional[Path] = Field(default=None, description="Where the task registry is persisted")
    log_level: str = Field(default="INFO", description="Logging level name")

    @property
    def endpoint(self) -> str:
        return f"{self.scheme}://{self.address}:{self.port}"

    @field_validator("port")
    @classmethod
    def check_port(cls, v: int) -> int:
        if not 0 < v < 65536:
            raise ValueError(f"port must be 1-65535, got {v}")
        return v

    @field_validator("scheme")
    @classmethod
    def check_scheme(cls, v: str) -> str:
        if v not in ("http", "https"):
            raise ValueError(f"scheme must be http or https, got {v!r}")
        return v

    @field_validator("request_timeout", "fetch_timeout", "poll_interval")
    @classmethod
    def check_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeouts and intervals must be positive")
        return v

    @field_validator("max_concurrency")
    @classmethod
    def check_concurrency(cls, v: int) -> int:
        if v < 0:
            raise ValueError("max_concurrency cannot be negative")
        return v

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return v.upper()

    @classmethod
    def from_yaml(cls, path: Path) -> "AgentConfig":
        """Load configuration from YAML.

        Accepts either a flat mapping or one nested under a ``nomad`` key.
        """
        return cls(**read_yaml(path))


def read_yaml(path: Path) -> dict[str, Any]:
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Config not found: {path}")

    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigError(f"Config root must be a mapping: {path}")
    if isinstance(raw.get("nomad"), dict):
        raw = raw["nomad"]
    return raw


def env_overrides(environ: dict[str, str] | None = None) -> dict[str, str]:
    """Collect ``NOMAD_METRICS_<FIELD>`` variables for known config fields."""
    environ = os.environ if environ is None else environ
    overrides = {}
    for name in AgentConfig.model_fields:
        value = environ.get(f"{ENV_PREFIX}{name.upper()}")
        if value is not None and value != "":
            overrides[name] = value
    return overrides


def load_config(
    path: Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> AgentConfig:
    """Resolve the effective configuration.

    Raises:
        ConfigError: If the file is unreadable or any value fails validation
    """
    load_dotenv()

    values: dict[str, Any] = {}
    if path is not None:
        values.update(read_yaml(path))
    values.update(env_overrides())
    if overrides:
        values.update({k: v for k, v in overrides.items() if v is not None})

    try:
        return AgentConfig(**values)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc
