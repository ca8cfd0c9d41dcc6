"""Rich views for orchestration runs."""

from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.tree import Tree

from ..orchestration.batch_planner import get_batch_plan_summary
from ..orchestration.models import (
	BatchPlan,
	BatchStatus,
	OrchestrationExecution,
	OrchestrationPhase,
	OrchestrationStatus,
	STEP_ORDER,
)
from .utils import elapsed_seconds, format_duration, format_timestamp

STATUS_STYLES = {
	OrchestrationStatus.RUNNING: "cyan",
	OrchestrationStatus.PAUSED: "yellow",
	OrchestrationStatus.WAITING_MERGE: "yellow",
	OrchestrationStatus.NEEDS_ATTENTION: "red",
	OrchestrationStatus.COMPLETED: "green",
	OrchestrationStatus.FAILED: "red",
	OrchestrationStatus.CANCELLED: "dim",
}

BATCH_ICONS = {
	BatchStatus.PENDING: "[dim][ ][/dim]",
	BatchStatus.RUNNING: "[yellow][~][/yellow]",
	BatchStatus.COMPLETED: "[green][x][/green]",
	BatchStatus.HEALED: "[green][h][/green]",
	BatchStatus.FAILED: "[red][!][/red]",
}


def _phase_line(execution: OrchestrationExecution) -> str:
	parts = []
	current = execution.current_phase
	done = current == OrchestrationPhase.COMPLETE
	for phase in STEP_ORDER:
		if execution.config.is_skipped(phase):
			parts.append(f"[dim strike]{phase.value}[/dim strike]")
		elif phase == current:
			parts.append(f"[bold cyan]{phase.value}[/bold cyan]")
		elif done or STEP_ORDER.index(phase) < STEP_ORDER.index(current):
			parts.append(f"[green]{phase.value}[/green]")
		else:
			parts.append(f"[dim]{phase.value}[/dim]")
	return " > ".join(parts)


def render_orchestration(
	execution: OrchestrationExecution,
	console: Optional[Console] = None,
	log_entries: int = 10,
) -> None:
	"""Render a run: summary panel, batch tree and recent decisions."""
	console = console or Console()
	style = STATUS_STYLES.get(execution.status, "white")
	budget = execution.config.budget

	lines = []
	lines.append(f"[bold]Project:[/bold] {execution.project_id}  [dim]{execution.project_path}[/dim]")
	lines.append(f"[bold]Status:[/bold] [{style}]{execution.status.value}[/{style}]")
	lines.append(f"[bold]Phases:[/bold] {_phase_line(execution)}")
	lines.append(f"[bold]Cost:[/bold] ${execution.total_cost_usd:.2f} of ${budget.max_total:.2f}")
	elapsed = elapsed_seconds(execution.started_at, execution.completed_at)
	if elapsed is not None:
		lines.append(f"[bold]Elapsed:[/bold] {format_duration(elapsed)}")
	if execution.error_message:
		lines.append(f"[bold red]Error:[/bold red] {execution.error_message}")
	if execution.recovery_context:
		options = ", ".join(o.value for o in execution.recovery_context.options)
		lines.append("")
		lines.append(f"[bold red]Needs attention:[/bold red] {execution.recovery_context.issue}")
		lines.append(f"[bold]Options:[/bold] {options}")

	console.print(Panel("\n".join(lines), title=f"Orchestration: {execution.id}", border_style=style))

	batches = execution.batches
	if batches.items:
		done = sum(1 for item in batches.items if item.status in (BatchStatus.COMPLETED, BatchStatus.HEALED))
		tree = Tree(f"[bold]Batches[/bold]  [dim]({done}/{batches.total} done)[/dim]")
		for item in batches.items:
			icon = BATCH_ICONS.get(item.status, "[ ]")
			marker = " [cyan]<[/cyan]" if item.index == batches.current and not batches.all_done() else ""
			label = f"{icon} [bold]{item.section}[/bold] [dim]{', '.join(item.task_ids)}[/dim]{marker}"
			if item.heal_attempts:
				label += f" [yellow](healed x{item.heal_attempts})[/yellow]"
			tree.add(label)
		console.print(tree)

	if log_entries and execution.decision_log:
		table = Table(title="Recent Decisions")
		table.add_column("Time")
		table.add_column("Decision", style="cyan")
		table.add_column("Reason")
		for entry in execution.decision_log[-log_entries:]:
			table.add_row(format_timestamp(entry.timestamp), entry.decision, entry.reason)
		console.print(table)


def render_orchestration_list(
	executions: list[OrchestrationExecution],
	console: Optional[Console] = None,
) -> None:
	"""Render a table of runs, newest first."""
	console = console or Console()

	if not executions:
		console.print("[dim]No orchestrations recorded yet.[/dim]")
		return

	table = Table(title="Orchestrations")
	table.add_column("ID", style="cyan")
	table.add_column("Project")
	table.add_column("Phase")
	table.add_column("Status")
	table.add_column("Cost", justify="right")
	table.add_column("Started")

	for execution in executions:
		style = STATUS_STYLES.get(execution.status, "white")
		table.add_row(
			execution.id[:8],
			execution.project_id,
			execution.current_phase.value,
			f"[{style}]{execution.status.value}[/{style}]",
			f"${execution.total_cost_usd:.2f}",
			format_timestamp(execution.started_at),
		)
	console.print(table)


def render_batch_plan(plan: BatchPlan, console: Optional[Console] = None) -> None:
	"""Render a batch plan as a tree of batches and tasks."""
	console = console or Console()

	tree = Tree(f"[bold]{get_batch_plan_summary(plan)}[/bold]")
	for batch in plan.batches:
		branch = tree.add(f"[bold]{batch.name}[/bold] [dim]({len(batch.task_ids)} tasks)[/dim]")
		for task_id in batch.task_ids:
			deps = batch.dependencies.get(task_id)
			suffix = f" [dim]after {', '.join(deps)}[/dim]" if deps else ""
			branch.add(f"{task_id}{suffix}")
	console.print(tree)

	for warning in plan.dependency_warnings:
		console.print(f"[yellow]warning:[/yellow] {warning}")
