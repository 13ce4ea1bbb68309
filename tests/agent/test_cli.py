"""Tests for the bpfagent CLI commands that need no cluster."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
from click.testing import CliRunner

from agent import cli as cli_module
from agent.errors import DaemonUnavailable
from agent.models import ProgramType
from ebpf.models import LoadedProgram


class _StubDaemon:
    """DaemonClient stand-in for the programs command."""

    def __init__(self, programs: dict[str, LoadedProgram] | None = None, fail: bool = False) -> None:
        self.programs = programs or {}
        self.fail = fail
        self.listed: list[Any] = []
        self.closed = False

    def list(self, program_type: ProgramType | None = None) -> dict[str, LoadedProgram]:
        self.listed.append(program_type)
        if self.fail:
            raise DaemonUnavailable("connection refused")
        return self.programs

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "agent.yaml"
    path.write_text("node_name: ''\nlog_level: WARNING\n", encoding="utf-8")
    return path


@pytest.fixture(autouse=True)
def _no_node_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("NODE_NAME", raising=False)
    monkeypatch.delenv("BPFMAN_DAEMON_URL", raising=False)


def _use_daemon(monkeypatch: pytest.MonkeyPatch, daemon: _StubDaemon) -> None:
    monkeypatch.setattr(cli_module, "DaemonClient", lambda *args, **kwargs: daemon)


class TestCli:
    """Test command wiring and exit codes."""

    def test_version(self) -> None:
        """The version option prints the package version."""
        result = CliRunner().invoke(cli_module.cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_programs_lists_daemon_state(self, config_file: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Loaded programs are listed and the client is closed."""
        daemon = _StubDaemon({"inst-a": LoadedProgram(id="inst-a", kernel_id=41, name="counter")})
        _use_daemon(monkeypatch, daemon)

        result = CliRunner().invoke(cli_module.cli, ["--config", str(config_file), "programs", "--type", "xdp"])

        assert result.exit_code == 0
        assert daemon.listed == [ProgramType.XDP]
        assert daemon.closed

    def test_programs_empty(self, config_file: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """An empty daemon lists nothing and exits 0."""
        _use_daemon(monkeypatch, _StubDaemon())
        result = CliRunner().invoke(cli_module.cli, ["--config", str(config_file), "programs"])
        assert result.exit_code == 0

    def test_programs_daemon_down(self, config_file: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """An unreachable daemon exits 1."""
        daemon = _StubDaemon(fail=True)
        _use_daemon(monkeypatch, daemon)
        result = CliRunner().invoke(cli_module.cli, ["--config", str(config_file), "programs"])
        assert result.exit_code == 1
        assert daemon.closed

    def test_status_requires_node_name(self, config_file: Path) -> None:
        """status without a node name exits 1."""
        result = CliRunner().invoke(cli_module.cli, ["--config", str(config_file), "status"])
        assert result.exit_code == 1

    def test_reconcile_requires_node_name(self, config_file: Path) -> None:
        """reconcile without a node name exits 1."""
        result = CliRunner().invoke(cli_module.cli, ["--config", str(config_file), "reconcile"])
        assert result.exit_code == 1

    def test_unknown_type_rejected(self, config_file: Path) -> None:
        """An unknown program type is a usage error."""
        result = CliRunner().invoke(cli_module.cli, ["--config", str(config_file), "programs", "--type", "lsm"])
        assert result.exit_code == 2
