# src/stackforge/cli/formatter.py
import json
from typing import Any, Dict, List

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from stackforge.core.errors import ConfigurationError, CycleError
from stackforge.core.models import InstanceStatus
from stackforge.execution.outputs import OutputReport

# Shared console for every rendered report
console = Console()

STATUS_STYLE = {
    InstanceStatus.APPLIED: ("green", "✅"),
    InstanceStatus.FAILED: ("red", "❌"),
    InstanceStatus.BLOCKED: ("yellow", "⛔"),
    InstanceStatus.PENDING: ("dim", "…"),
    InstanceStatus.MATERIALIZING: ("cyan", "…"),
}


class StackFormatter:
    """
    StackFormatter: renders plans, apply reports and errors.
    """

    def plan_table(self, plan) -> Table:
        """Instances in apply order, with their level and what they wait for."""
        levels = plan.graph.levels()
        table = Table(title="Stackforge Plan", show_lines=True, header_style="bold magenta")
        table.add_column("#", justify="right", style="dim")
        table.add_column("Instance", style="cyan")
        table.add_column("Level", justify="center")
        table.add_column("Depends On", style="white")
        table.add_column("Bootstrap", justify="center")

        for position, address in enumerate(plan.graph.topological_order(), start=1):
            instance = plan.graph.nodes[address]
            deps = sorted(plan.graph.dependencies[address])
            steps = len(instance.declaration.bootstrap)
            table.add_row(
                str(position), escape(address), str(levels[address]),
                escape("\n".join(deps)) or "-",
                f"{steps} step(s)" if steps else "-",
            )
        return table

    def print_plan(self, plan):
        console.print(self.plan_table(plan))
        console.print(Panel(
            f"[bold white]Plan Summary[/bold white]\n"
            f"════════════════════════════════════════\n"
            f"Instances:     {len(plan.instances)}\n"
            f"Edges:         {len(plan.graph.edges)}\n"
            f"Graph Depth:   {plan.graph.depth()}\n"
            f"Outputs:       {len(plan.config.outputs)}",
            border_style="dim"
        ))
        self.show_warnings(plan.warnings)

    def show_warnings(self, warnings: List[str]):
        for warning in warnings:
            console.print(f"[bold yellow]⚠  Warning:[/bold yellow] {escape(warning)}")

    def apply_table(self, result) -> Table:
        table = Table(title="Stackforge Apply Report", show_lines=True, header_style="bold magenta")
        table.add_column("Instance", style="cyan")
        table.add_column("Status", style="bold")
        table.add_column("Identity", style="dim")
        table.add_column("Created", justify="center")
        table.add_column("Bootstrapped", justify="center")
        table.add_column("Detail", style="white")

        for r in result.results.values():
            color, icon = STATUS_STYLE[r.status]
            if r.error:
                detail = r.error
            elif r.blocked_by:
                detail = f"blocked by {r.blocked_by}"
            elif r.noop:
                detail = "unchanged"
            else:
                detail = "; ".join(r.warnings)
            table.add_row(
                escape(r.address),
                f"[{color}]{icon} {r.status.value}[/{color}]",
                r.identity or "-",
                "✔" if r.materialized else "-",
                "✔" if r.bootstrapped else "-",
                escape(detail),
            )
        return table

    def outputs_panel(self, outputs: OutputReport) -> Panel:
        lines = []
        for name, value in outputs.values.items():
            shown = "(sensitive)" if name in outputs.sensitive else escape(json.dumps(value, default=str))
            lines.append(f"[cyan]{name}[/cyan] = {shown}")
        for name, missing in outputs.unavailable.items():
            lines.append(f"[yellow]{name}[/yellow] = [dim](unavailable: {escape(missing.reason)})[/dim]")
        return Panel("\n".join(lines) or "[dim]no outputs declared[/dim]",
                     title="[bold white]Outputs[/bold white]", border_style="cyan")

    def summary_panel(self, summary: Dict[str, Any]) -> Panel:
        color = {"SUCCESS": "green", "PARTIAL": "yellow"}.get(summary["status"], "red")
        return Panel(
            f"[bold white]Summary Report[/bold white]\n"
            f"════════════════════════════════════════\n"
            f"Status:          [{color}]{summary['status']}[/{color}]\n"
            f"Instances:       {summary['total_instances']}\n"
            f"Applied:         [green]{summary['applied']}[/green] ({summary['unchanged']} unchanged)\n"
            f"Failed:          [red]{summary['failed']}[/red]\n"
            f"Blocked:         [yellow]{summary['blocked']}[/yellow]\n"
            f"Duration:        {summary['duration_seconds']}s",
            border_style="dim"
        )

    def print_apply(self, result, summary: Dict[str, Any]):
        console.print(self.apply_table(result))
        console.print(self.outputs_panel(result.outputs))
        console.print(self.summary_panel(summary))

    def print_error(self, error: Exception):
        if isinstance(error, CycleError):
            console.print(Panel(
                "[bold red]Dependency cycle detected[/bold red]\n\n" + "\n  ↳ ".join(error.cycle),
                title="Configuration Error", border_style="red", expand=False
            ))
        elif isinstance(error, ConfigurationError):
            where = f"[white]{escape(error.path)}[/white]\n" if error.path else ""
            console.print(Panel(f"{where}[bold red]{escape(error.message)}[/bold red]",
                                title="Configuration Error", border_style="red", expand=False))
        else:
            console.print(f"[bold red]Error:[/bold red] {escape(str(error))}")

    def print_json(self, data: Dict[str, Any]):
        console.print_json(json.dumps(data, default=str))
