"""Tests for agent configuration loading."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from agent.config import AgentConfig
from agent.models import ProgramType


class TestAgentConfig:
    """Test YAML loading and environment overrides."""

    def test_default_file_matches_builtins(self) -> None:
        """The shipped default.yaml agrees with the model defaults."""
        assert AgentConfig.default() == AgentConfig()

    def test_defaults(self) -> None:
        """Built-in defaults cover every program type."""
        config = AgentConfig()
        assert config.workers == 4
        assert config.reconcile_timeout == 30.0
        assert config.program_types == list(ProgramType)
        assert config.api_group == "bpfman.io"

    def test_from_yaml(self, tmp_path: Path) -> None:
        """YAML values are parsed and normalized."""
        path = tmp_path / "agent.yaml"
        path.write_text(
            "node_name: worker-3\nworkers: 2\nprogram_types: [xdp, tc]\nlog_level: debug\n",
            encoding="utf-8",
        )
        config = AgentConfig.from_yaml(path)
        assert config.node_name == "worker-3"
        assert config.workers == 2
        assert config.program_types == [ProgramType.XDP, ProgramType.TC]
        assert config.log_level == "DEBUG"

    def test_empty_yaml_gives_defaults(self, tmp_path: Path) -> None:
        """An empty file loads as the defaults."""
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")
        assert AgentConfig.from_yaml(path) == AgentConfig()

    def test_invalid_values_rejected(self, tmp_path: Path) -> None:
        """Out-of-range values fail validation."""
        path = tmp_path / "bad.yaml"
        path.write_text("workers: 0\n", encoding="utf-8")
        with pytest.raises(ValidationError):
            AgentConfig.from_yaml(path)

    def test_unknown_program_type_rejected(self) -> None:
        """Unsupported program types fail validation."""
        with pytest.raises(ValidationError):
            AgentConfig.model_validate({"program_types": ["socket_filter"]})

    def test_env_overrides(self) -> None:
        """NODE_NAME and BPFMAN_DAEMON_URL win over the file."""
        config = AgentConfig(node_name="from-file").with_env(
            {"NODE_NAME": "from-env", "BPFMAN_DAEMON_URL": "http://10.0.0.1:9000", "HOME": "/root"}
        )
        assert config.node_name == "from-env"
        assert config.daemon_url == "http://10.0.0.1:9000"

    def test_empty_env_is_ignored(self) -> None:
        """Empty environment values leave the config untouched."""
        config = AgentConfig(node_name="from-file")
        assert config.with_env({"NODE_NAME": ""}) is config
