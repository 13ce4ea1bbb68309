"""bpfagent CLI: Click-based command interface for the node agent.

Provides commands for running and inspecting the agent on one node:
- run: start watches, resync and workers until interrupted
- reconcile: one-shot convergence of every declared spec
- status: this node's BpfProgram objects and their conditions
- programs: what the loader daemon currently holds
"""

from __future__ import annotations

import signal
import sys
from dataclasses import dataclass
from pathlib import Path

import click
from kubernetes import client
from kubernetes import config as kube_config
from kubernetes.config.config_exception import ConfigException
from rich.console import Console

from agent.cluster import ClusterReader
from agent.config import AgentConfig
from agent.engine import ConvergenceEngine
from agent.errors import AgentError
from agent.logs import configure_logging
from agent.models import HOST_LABEL, ProgramType, ReconcileResult
from agent.renderer import build_instance_table, build_program_table, print_reconcile_summary
from agent.resolver import MapOwnerResolver
from agent.runner import Agent
from agent.store import InstanceStore
from ebpf.bytecode import BytecodeResolver
from ebpf.loader import DaemonClient, check_daemon

console = Console()

PROGRAM_TYPE_CHOICE = click.Choice([t.value for t in ProgramType])


@dataclass
class Components:
    """Everything ``run`` and ``reconcile`` need, wired from one config."""

    config: AgentConfig
    store: InstanceStore
    cluster: ClusterReader
    daemon: DaemonClient
    engine: ConvergenceEngine
    custom_api: client.CustomObjectsApi
    core_api: client.CoreV1Api


@click.group()
@click.version_option(version="0.1.0", prog_name="bpfagent")
@click.option("--config", "config_path", type=click.Path(exists=True, path_type=Path), help="Path to YAML config file.")
@click.option("--log-level", default=None, help="Override the configured log level.")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, log_level: str | None) -> None:
    """bpfagent: per-node agent for declarative eBPF program management.

    Converges the programs loaded on this node toward the cluster's
    declared kprobe, uprobe, tracepoint, tc, xdp, fentry and fexit
    programs by driving the local loader daemon.
    """
    config = _load_config(config_path)
    if log_level:
        config = config.model_copy(update={"log_level": log_level.upper()})
    configure_logging(config.log_level)
    ctx.obj = config


@cli.command()
@click.pass_obj
def run(config: AgentConfig) -> None:
    """Run the agent until SIGINT or SIGTERM."""
    components = _build(config)
    reachable, reason = check_daemon(components.daemon)
    if not reachable:
        console.print(f"[yellow]{reason}; loads will be retried.[/yellow]")

    agent = Agent(
        config,
        components.engine,
        components.cluster,
        custom_api=components.custom_api,
        core_api=components.core_api,
    )

    def handle_signal(signum: int, frame: object) -> None:
        console.print("[cyan]Stopping...[/cyan]")
        agent.stop()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    try:
        agent.run()
    finally:
        components.daemon.close()


@cli.command()
@click.option("--type", "type_names", type=PROGRAM_TYPE_CHOICE, multiple=True, help="Only reconcile this program type (repeatable).")
@click.option("--max-passes", default=10, type=click.IntRange(min=1), help="Invocations per spec before giving up.")
@click.pass_obj
def reconcile(config: AgentConfig, type_names: tuple[str, ...], max_passes: int) -> None:
    """Converge every declared spec on this node once, then exit.

    Exits non-zero if any spec did not reach a steady state.
    """
    if type_names:
        config = config.model_copy(update={"program_types": [ProgramType(t) for t in type_names]})
    components = _build(config)
    agent = Agent(config, components.engine, components.cluster)

    try:
        results = agent.reconcile_once(max_passes=max_passes)
    except AgentError as exc:
        console.print(f"[red]Error: {exc}[/red]")
        sys.exit(1)
    finally:
        components.daemon.close()

    print_reconcile_summary(results, console=console)
    if any(r is not ReconcileResult.UNCHANGED for r in results.values()):
        sys.exit(2)


@cli.command()
@click.option("--type", "type_name", type=PROGRAM_TYPE_CHOICE, default=None, help="Only show this program type.")
@click.pass_obj
def status(config: AgentConfig, type_name: str | None) -> None:
    """Show this node's BpfProgram objects and their conditions."""
    _require_node(config)
    custom_api, _ = _kube_clients()
    store = InstanceStore(custom_api, config.api_group, config.api_version)
    try:
        instances = store.list({HOST_LABEL: config.node_name})
    except AgentError as exc:
        console.print(f"[red]Error: {exc}[/red]")
        sys.exit(1)

    if type_name is not None:
        instances = [i for i in instances if i.program_type.value == type_name]
    if not instances:
        console.print(f"[yellow]No BpfPrograms on {config.node_name}.[/yellow]")
        return
    console.print(build_instance_table(instances, config.node_name))


@cli.command()
@click.option("--type", "type_name", type=PROGRAM_TYPE_CHOICE, default=None, help="Only list this program type.")
@click.pass_obj
def programs(config: AgentConfig, type_name: str | None) -> None:
    """List the programs the loader daemon currently holds."""
    daemon = DaemonClient(config.daemon_url, timeout=config.daemon_timeout)
    try:
        loaded = daemon.list(ProgramType(type_name) if type_name else None)
    except AgentError as exc:
        console.print(f"[red]Error: {exc}[/red]")
        sys.exit(1)
    finally:
        daemon.close()

    if not loaded:
        console.print("[yellow]No programs loaded.[/yellow]")
        return
    console.print(build_program_table(list(loaded.values())))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_config(config_path: Path | None) -> AgentConfig:
    """Load config from path or use defaults, then apply the environment."""
    if config_path:
        config = AgentConfig.from_yaml(config_path)
    else:
        config = AgentConfig.default()
    return config.with_env()


def _require_node(config: AgentConfig) -> None:
    if not config.node_name:
        console.print("[red]Node name is not set. Set NODE_NAME or node_name in the config.[/red]")
        sys.exit(1)


def _kube_clients() -> tuple[client.CustomObjectsApi, client.CoreV1Api]:
    """API clients from the in-cluster service account, or ~/.kube/config."""
    try:
        kube_config.load_incluster_config()
    except ConfigException:
        try:
            kube_config.load_kube_config()
        except ConfigException as exc:
            console.print(f"[red]No Kubernetes configuration found: {exc}[/red]")
            sys.exit(1)
    return client.CustomObjectsApi(), client.CoreV1Api()


def _build(config: AgentConfig) -> Components:
    _require_node(config)
    custom_api, core_api = _kube_clients()
    store = InstanceStore(custom_api, config.api_group, config.api_version)
    cluster = ClusterReader(custom_api, core_api, config.api_group, config.api_version)
    daemon = DaemonClient(config.daemon_url, timeout=config.daemon_timeout)
    engine = ConvergenceEngine(
        store,
        daemon,
        MapOwnerResolver(store, daemon),
        BytecodeResolver(cluster.read_secret),
        reconcile_timeout=config.reconcile_timeout,
    )
    return Components(config, store, cluster, daemon, engine, custom_api, core_api)


if __name__ == "__main__":
    cli()
