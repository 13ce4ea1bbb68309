"""Agent configuration.

Loaded from YAML (config/default.yaml ships the defaults), then
overridden from the environment:
- NODE_NAME: the node this agent runs on (downward API)
- BPFMAN_DAEMON_URL: loader daemon address
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping

import yaml
from pydantic import BaseModel, Field, PositiveFloat, PositiveInt, field_validator

from agent.models import API_GROUP, API_VERSION, ProgramType

ENV_OVERRIDES: dict[str, str] = {
    "NODE_NAME": "node_name",
    "BPFMAN_DAEMON_URL": "daemon_url",
}

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / "config" / "default.yaml"


class AgentConfig(BaseModel):
    """Top-level agent configuration."""

    node_name: str = ""
    daemon_url: str = "http://127.0.0.1:50051"
    daemon_timeout: PositiveFloat = 10.0
    reconcile_timeout: PositiveFloat = 30.0
    retry_delay: PositiveFloat = 5.0
    max_retry_delay: PositiveFloat = 300.0
    resync_period: PositiveFloat = 300.0
    workers: PositiveInt = 4
    program_types: list[ProgramType] = Field(default_factory=lambda: list(ProgramType))
    api_group: str = API_GROUP
    api_version: str = API_VERSION
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        return value.upper()

    @classmethod
    def from_yaml(cls, path: Path) -> AgentConfig:
        """Load configuration from a YAML file.

        Args:
            path: Path to the YAML configuration file.

        Returns:
            Parsed AgentConfig instance.

        Raises:
            FileNotFoundError: If the config file doesn't exist.
            yaml.YAMLError: If the YAML is malformed.
            pydantic.ValidationError: If a value has the wrong type.
        """
        content = path.read_text(encoding="utf-8")
        raw = yaml.safe_load(content)
        if raw is None:
            return cls()
        return cls.model_validate(raw)

    @classmethod
    def default(cls) -> AgentConfig:
        """Return the default configuration.

        Loads config/default.yaml relative to the project root, or the
        built-in defaults if the file doesn't exist.
        """
        if DEFAULT_CONFIG_PATH.exists():
            return cls.from_yaml(DEFAULT_CONFIG_PATH)
        return cls()

    def with_env(self, environ: Mapping[str, str] | None = None) -> AgentConfig:
        """Copy of this config with environment overrides applied."""
        environ = os.environ if environ is None else environ
        updates = {field: environ[var] for var, field in ENV_OVERRIDES.items() if environ.get(var)}
        if not updates:
            return self
        return self.model_copy(update=updates)
