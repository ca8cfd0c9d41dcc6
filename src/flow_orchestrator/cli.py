"""CLI for flow-orchestrator: start, inspect and drive orchestration runs."""

import argparse
import asyncio
import sys
from pathlib import Path

from dotenv import load_dotenv
from rich.console import Console

from .config import Config, load_config
from .logging_config import setup_logging

console = Console()


def _service(config: Config):
	from .orchestration.service import OrchestrationService
	return OrchestrationService.from_config(config)


def _resolve_id(store, execution_id: str) -> str:
	"""Accept a full id or a unique prefix of one."""
	if store.get(execution_id) is not None:
		return execution_id
	matches = [e.id for e in store.list_executions() if e.id.startswith(execution_id)]
	if len(matches) == 1:
		return matches[0]
	if matches:
		console.print(f"[red]Ambiguous id {execution_id}: {len(matches)} matches[/red]")
	else:
		console.print(f"[red]Orchestration not found: {execution_id}[/red]")
	sys.exit(1)


async def _drive(service, execution_ids: list[str]) -> None:
	"""Run the given runners in this process until they stop."""
	try:
		for execution_id in execution_ids:
			await service.runners.start(execution_id)
		for execution_id in execution_ids:
			await service.runners.wait(execution_id)
	finally:
		await service.shutdown()


def _print_outcome(service, execution_id: str) -> None:
	from .visualizer import render_orchestration
	execution = service.store.get(execution_id)
	if execution is not None:
		render_orchestration(execution, console=console, log_entries=5)


def cmd_start(args: argparse.Namespace) -> None:
	"""Start an orchestration run."""
	from .orchestration.models import OrchestrationBudget, OrchestrationConfig
	from .orchestration.service import StartRejected

	config = load_config()
	service = _service(config)
	try:
		run_config = OrchestrationConfig(
			auto_merge=args.auto_merge,
			additional_context=args.context or "",
			skip_design=args.skip_design,
			skip_analyze=args.skip_analyze,
			skip_implement=args.skip_implement,
			skip_verify=args.skip_verify,
			auto_heal_enabled=not args.no_heal,
			max_heal_attempts=args.max_heal_attempts,
			pause_between_batches=args.pause_between_batches,
			budget=OrchestrationBudget(max_total=args.budget),
		)
	except ValueError as e:
		console.print(f"[red]Invalid configuration: {e}[/red]")
		sys.exit(1)

	try:
		execution = asyncio.run(service.start(args.project_id, args.path, run_config, run=False))
	except StartRejected as e:
		console.print(f"[red]{e}[/red]")
		sys.exit(1)

	console.print(f"Started orchestration [cyan]{execution.id}[/cyan] at {execution.current_phase.value}")
	if not args.run:
		console.print(f"[dim]Drive it with: flow-orchestrator run {execution.id[:8]}[/dim]")
		return
	asyncio.run(_drive(service, [execution.id]))
	_print_outcome(service, execution.id)


def cmd_status(args: argparse.Namespace) -> None:
	"""Show one run, a project's active run, or all runs."""
	from .orchestration.store import ExecutionStore
	from .visualizer import render_orchestration, render_orchestration_list

	store = ExecutionStore.from_config(load_config())
	if args.execution_id:
		execution = store.get(_resolve_id(store, args.execution_id))
		render_orchestration(execution, console=console, log_entries=args.log)
		return

	if args.project:
		active = store.get_active(args.project)
		if active is not None:
			render_orchestration(active, console=console, log_entries=args.log)
			return
		console.print(f"[dim]No active orchestration for {args.project}.[/dim]")
	render_orchestration_list(store.list_executions(args.project)[:args.limit], console=console)


def _apply(args: argparse.Namespace, verb: str, operation) -> None:
	"""Run a store operation and report whether its precondition held."""
	from .orchestration.store import ExecutionStore

	store = ExecutionStore.from_config(load_config())
	execution_id = _resolve_id(store, args.execution_id)
	execution = operation(store, execution_id)
	if execution is None:
		current = store.get(execution_id)
		console.print(f"[red]Cannot {verb} orchestration in status {current.status.value}[/red]")
		sys.exit(1)
	console.print(f"{verb.capitalize()}: [cyan]{execution.id}[/cyan] is now {execution.status.value}")


def cmd_pause(args: argparse.Namespace) -> None:
	_apply(args, "pause", lambda store, eid: store.pause(eid))


def cmd_resume(args: argparse.Namespace) -> None:
	_apply(args, "resume", lambda store, eid: store.resume(eid))


def cmd_merge(args: argparse.Namespace) -> None:
	_apply(args, "merge", lambda store, eid: store.trigger_merge(eid))


def cmd_recover(args: argparse.Namespace) -> None:
	from .orchestration.models import RecoveryOption
	_apply(args, "recover", lambda store, eid: store.handle_recovery(eid, RecoveryOption(args.action)))


def cmd_cancel(args: argparse.Namespace) -> None:
	"""Cancel a run and ask its live session to stop."""
	config = load_config()
	service = _service(config)
	execution_id = _resolve_id(service.store, args.execution_id)
	execution = asyncio.run(service.cancel(execution_id))
	if execution is None:
		console.print(f"[red]Orchestration {execution_id} is already finished[/red]")
		sys.exit(1)
	console.print(f"Cancelled [cyan]{execution.id}[/cyan]")


def cmd_run(args: argparse.Namespace) -> None:
	"""Drive a run in the foreground until it stops."""
	config = load_config()
	if args.poll_interval is not None:
		config.poll_interval = args.poll_interval
	service = _service(config)
	execution_id = _resolve_id(service.store, args.execution_id)
	try:
		asyncio.run(_drive(service, [execution_id]))
	except KeyboardInterrupt:
		console.print("[yellow]Interrupted; the run stays where it is and can be driven again.[/yellow]")
	_print_outcome(service, execution_id)


def cmd_reconcile(args: argparse.Namespace) -> None:
	"""Clean up runner locks from dead processes and drive interrupted runs."""
	config = load_config()
	service = _service(config)

	async def reconcile() -> dict:
		result = await service.runners.reconcile()
		if args.no_drive:
			await service.shutdown()
		else:
			await _drive(service, result["restarted"])
		return result

	result = asyncio.run(reconcile())
	console.print(f"Restarted: {len(result['restarted'])}  Cleared: {len(result['cleared'])}")
	for execution_id in result["restarted"]:
		console.print(f"  [green]restarted[/green] {execution_id}")
	for execution_id in result["cleared"]:
		console.print(f"  [dim]cleared[/dim]   {execution_id}")


def cmd_plan(args: argparse.Namespace) -> None:
	"""Preview the implement batches for a tasks.md file or project directory."""
	from .orchestration.batch_planner import find_tasks_file, plan_batches
	from .visualizer import render_batch_plan

	path = Path(args.path)
	tasks_file = find_tasks_file(path) if path.is_dir() else path
	if tasks_file is None or not tasks_file.exists():
		console.print(f"[red]No tasks.md found at {args.path}[/red]")
		sys.exit(1)
	try:
		plan = plan_batches(tasks_file.read_text(), args.fallback_size)
	except ValueError as e:
		console.print(f"[red]{e}[/red]")
		sys.exit(1)
	render_batch_plan(plan, console=console)


def cmd_serve(args: argparse.Namespace) -> None:
	"""Run the MCP server (stdio transport)."""
	from .server import mcp
	mcp.run()


def main() -> None:
	"""CLI entry point."""
	load_dotenv()

	parser = argparse.ArgumentParser(
		prog="flow-orchestrator",
		description="Drive design, analyze, implement, verify and merge with agent sessions",
	)
	parser.add_argument("--log-level", type=str, default=None, help="DEBUG, INFO, WARNING or ERROR")
	subparsers = parser.add_subparsers(dest="command")

	# start
	start_parser = subparsers.add_parser("start", help="Start an orchestration run")
	start_parser.add_argument("project_id", help="Project identifier")
	start_parser.add_argument("--path", type=str, default=None, help="Project directory (default: registry lookup)")
	start_parser.add_argument("--auto-merge", action="store_true", help="Merge after verify without waiting")
	start_parser.add_argument("--skip-design", action="store_true")
	start_parser.add_argument("--skip-analyze", action="store_true")
	start_parser.add_argument("--skip-implement", action="store_true")
	start_parser.add_argument("--skip-verify", action="store_true")
	start_parser.add_argument("--context", type=str, default=None, help="Extra context for every session")
	start_parser.add_argument("--no-heal", action="store_true", help="Disable auto-healing of failed batches")
	start_parser.add_argument("--max-heal-attempts", type=int, default=1, help="Heal attempts per batch")
	start_parser.add_argument("--pause-between-batches", action="store_true")
	start_parser.add_argument("--budget", type=float, default=50.0, help="Total budget in USD")
	start_parser.add_argument("--run", action="store_true", help="Drive the run in the foreground")
	start_parser.set_defaults(func=cmd_start)

	# status
	status_parser = subparsers.add_parser("status", help="Show orchestration status")
	status_parser.add_argument("execution_id", nargs="?", default=None, help="Orchestration ID or prefix")
	status_parser.add_argument("--project", type=str, default=None, help="Filter by project")
	status_parser.add_argument("--log", type=int, default=10, help="Decision log entries to show")
	status_parser.add_argument("--limit", type=int, default=20, help="Max runs to list")
	status_parser.set_defaults(func=cmd_status)

	# pause / resume / cancel / merge
	for name, func, help_text in (
		("pause", cmd_pause, "Pause a running orchestration"),
		("resume", cmd_resume, "Resume a paused orchestration"),
		("cancel", cmd_cancel, "Cancel an orchestration"),
		("merge", cmd_merge, "Trigger the merge step"),
	):
		sub = subparsers.add_parser(name, help=help_text)
		sub.add_argument("execution_id", help="Orchestration ID or prefix")
		sub.set_defaults(func=func)

	# recover
	recover_parser = subparsers.add_parser("recover", help="Resolve an orchestration that needs attention")
	recover_parser.add_argument("execution_id", help="Orchestration ID or prefix")
	recover_parser.add_argument("action", choices=["retry", "skip", "abort"])
	recover_parser.set_defaults(func=cmd_recover)

	# run
	run_parser = subparsers.add_parser("run", help="Drive an orchestration in the foreground")
	run_parser.add_argument("execution_id", help="Orchestration ID or prefix")
	run_parser.add_argument("--poll-interval", type=float, default=None, help="Seconds between polls")
	run_parser.set_defaults(func=cmd_run)

	# reconcile
	reconcile_parser = subparsers.add_parser("reconcile", help="Recover runs interrupted by a crash")
	reconcile_parser.add_argument("--no-drive", action="store_true", help="Only clean up, do not drive runs")
	reconcile_parser.set_defaults(func=cmd_reconcile)

	# plan
	plan_parser = subparsers.add_parser("plan", help="Preview implement batches")
	plan_parser.add_argument("path", help="tasks.md file or project directory")
	plan_parser.add_argument("--fallback-size", type=int, default=15, help="Batch size without sections")
	plan_parser.set_defaults(func=cmd_plan)

	# serve
	serve_parser = subparsers.add_parser("serve", help="Run MCP server (stdio)")
	serve_parser.set_defaults(func=cmd_serve)

	args = parser.parse_args()

	if not args.command:
		parser.print_help()
		sys.exit(1)

	setup_logging(level=args.log_level, log_dir=load_config().log_dir)
	args.func(args)
