"""Rich rendering for the agent's CLI.

Tables of this node's Instances (with their condition) and of the
programs the loader daemon currently holds, plus a summary of a one-shot
reconcile run.
"""

from __future__ import annotations

from rich.console import Console
from rich.table import Table
from rich.text import Text

from agent.models import ConditionType, Instance, ReconcileResult
from ebpf.models import LoadedProgram

# Condition → Rich color mapping
CONDITION_COLORS: dict[ConditionType, str] = {
    ConditionType.LOADED: "green",
    ConditionType.NOT_LOADED: "red bold",
    ConditionType.NOT_UNLOADED: "red bold",
    ConditionType.UNLOADED: "dim",
    ConditionType.NOT_SELECTED: "dim",
    ConditionType.MAP_OWNER_NOT_FOUND: "yellow",
    ConditionType.MAP_OWNER_NOT_LOADED: "yellow",
    ConditionType.BYTECODE_SELECTOR_ERROR: "magenta",
    ConditionType.CONFIG_ERROR: "magenta",
}

RESULT_COLORS: dict[ReconcileResult, str] = {
    ReconcileResult.UNCHANGED: "green",
    ReconcileResult.UPDATED: "cyan",
    ReconcileResult.REQUEUE: "yellow",
}


def condition_text(instance: Instance) -> Text:
    if instance.condition is None:
        return Text("Pending", style="dim italic")
    return Text(instance.condition.type.value, style=CONDITION_COLORS[instance.condition.type])


def build_instance_table(instances: list[Instance], node_name: str) -> Table:
    """Table of Instances on a node, one row each, sorted by name."""
    table = Table(title=f"BpfPrograms on {node_name}", expand=True)
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Type", width=10)
    table.add_column("Owner")
    table.add_column("Kernel ID", justify="right")
    table.add_column("Condition", no_wrap=True)
    table.add_column("Message", ratio=1)

    for instance in sorted(instances, key=lambda i: i.name):
        table.add_row(
            instance.name,
            instance.program_type.value,
            instance.owner.name,
            str(instance.kernel_id) if instance.kernel_id is not None else "-",
            condition_text(instance),
            instance.condition.message if instance.condition is not None else "",
        )
    return table


def _attach_summary(program: LoadedProgram) -> str:
    if program.attach is None:
        return ""
    fields = program.attach.model_dump(exclude={"kind"}, exclude_none=True)
    return " ".join(f"{key}={value}" for key, value in fields.items() if value not in ([], ""))


def build_program_table(programs: list[LoadedProgram]) -> Table:
    """Table of programs the daemon holds, sorted by kernel id."""
    table = Table(title="Loaded programs", expand=True)
    table.add_column("Kernel ID", justify="right", style="bold")
    table.add_column("Program ID", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("Attach", ratio=1)
    table.add_column("Maps", justify="right")

    for program in sorted(programs, key=lambda p: p.kernel_id):
        table.add_row(
            str(program.kernel_id),
            program.id,
            program.name,
            _attach_summary(program),
            ",".join(str(m) for m in program.map_ids) or "-",
        )
    return table


def print_reconcile_summary(results: dict[str, ReconcileResult], console: Console | None = None) -> None:
    """Print the final result of each spec after a one-shot reconcile."""
    console = console or Console()
    table = Table(title="Reconcile summary")
    table.add_column("Spec", style="cyan")
    table.add_column("Result", no_wrap=True)

    for key in sorted(results):
        result = results[key]
        table.add_row(key, Text(result.value, style=RESULT_COLORS[result]))
    console.print(table)

    pending = sum(1 for r in results.values() if r is not ReconcileResult.UNCHANGED)
    if pending:
        console.print(f"[yellow]{pending} spec(s) did not converge.[/yellow]")
    else:
        console.print("[green]All specs converged.[/green]")
