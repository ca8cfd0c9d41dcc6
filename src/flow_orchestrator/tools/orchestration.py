"""Orchestration tools - start, inspect and steer orchestration runs."""

import json

from mcp.server.fastmcp import FastMCP

from ..config import Config
from ..orchestration.batch_planner import get_batch_plan_summary, plan_batches_for_project
from ..orchestration.models import (
	OrchestrationBudget,
	OrchestrationConfig,
	OrchestrationExecution,
	RecoveryOption,
)
from ..orchestration.service import OrchestrationService, StartRejected, get_service


async def _service(config: Config) -> OrchestrationService:
	service = get_service(config)
	await service.ensure_reconciled()
	return service


def _summary(execution: OrchestrationExecution) -> dict:
	"""Compact view used by every tool response."""
	batches = execution.batches
	data = {
		"id": execution.id,
		"project_id": execution.project_id,
		"status": execution.status.value,
		"phase": execution.current_phase.value,
		"total_cost_usd": round(execution.total_cost_usd, 4),
		"started_at": execution.started_at,
		"updated_at": execution.updated_at,
	}
	if batches.items:
		data["batches"] = {
			"current": batches.current,
			"total": batches.total,
			"items": [
				{"section": item.section, "status": item.status.value, "tasks": len(item.task_ids)}
				for item in batches.items
			],
		}
	if execution.error_message:
		data["error"] = execution.error_message
	if execution.recovery_context:
		data["recovery"] = {
			"issue": execution.recovery_context.issue,
			"options": [o.value for o in execution.recovery_context.options],
		}
	return data


def _not_applied(execution_id: str, action: str, service) -> str:
	execution = service.store.get(execution_id)
	if execution is None:
		return json.dumps({"success": False, "error": f"Orchestration not found: {execution_id}"})
	return json.dumps({
		"success": False,
		"error": f"Cannot {action} orchestration in status {execution.status.value}",
		"orchestration": _summary(execution),
	}, indent=2)


def register_orchestration_tools(mcp: FastMCP, config: Config) -> None:
	"""Register orchestration tools."""

	@mcp.tool()
	async def start_orchestration(
		project_id: str,
		project_path: str = "",
		auto_merge: bool = False,
		skip_design: bool = False,
		skip_analyze: bool = False,
		skip_implement: bool = False,
		skip_verify: bool = False,
		additional_context: str = "",
		auto_heal: bool = True,
		max_heal_attempts: int = 1,
		pause_between_batches: bool = False,
		max_budget_usd: float = 50.0,
	) -> str:
		"""
		Start an orchestration run for a project and begin driving it.

		Args:
			project_id: Project identifier (looked up in the project registry)
			project_path: Project directory (overrides the registry)
			auto_merge: Run merge after verify without waiting
			skip_design: Skip the design step
			skip_analyze: Skip the analyze step
			skip_implement: Skip the implement step
			skip_verify: Skip the verify step
			additional_context: Extra text passed to every session
			auto_heal: Heal failed batches automatically
			max_heal_attempts: Heal attempts per batch (0-5)
			pause_between_batches: Pause after each implement batch
			max_budget_usd: Total spend ceiling for the run
		"""
		service = await _service(config)
		try:
			run_config = OrchestrationConfig(
				auto_merge=auto_merge,
				additional_context=additional_context,
				skip_design=skip_design,
				skip_analyze=skip_analyze,
				skip_implement=skip_implement,
				skip_verify=skip_verify,
				auto_heal_enabled=auto_heal,
				max_heal_attempts=max_heal_attempts,
				pause_between_batches=pause_between_batches,
				budget=OrchestrationBudget(max_total=max_budget_usd),
			)
		except ValueError as e:
			return json.dumps({"success": False, "error": f"Invalid configuration: {e}"})

		try:
			execution = await service.start(project_id, project_path or None, run_config)
		except StartRejected as e:
			return json.dumps({"success": False, "error": str(e)})

		return json.dumps({
			"success": True,
			"orchestration": _summary(execution),
		}, indent=2)

	@mcp.tool()
	async def get_orchestration(execution_id: str, include_log: bool = False) -> str:
		"""
		Get an orchestration run by ID.

		Args:
			execution_id: The orchestration ID
			include_log: Include the full decision log
		"""
		service = await _service(config)
		execution = service.store.get(execution_id)
		if execution is None:
			return json.dumps({"success": False, "error": f"Orchestration not found: {execution_id}"})

		data = {
			"success": True,
			"orchestration": _summary(execution),
			"runner_active": service.runners.is_active(execution_id),
		}
		if include_log:
			data["decision_log"] = [entry.to_json_dict() for entry in execution.decision_log]
		else:
			data["recent_decisions"] = [entry.to_json_dict() for entry in execution.decision_log[-5:]]
		return json.dumps(data, indent=2)

	@mcp.tool()
	async def get_active_orchestration(project_id: str) -> str:
		"""
		Get the in-progress orchestration for a project, if any.

		Args:
			project_id: Project identifier
		"""
		service = await _service(config)
		execution = service.store.get_active(project_id)
		if execution is None:
			return json.dumps({"success": True, "orchestration": None})
		return json.dumps({"success": True, "orchestration": _summary(execution)}, indent=2)

	@mcp.tool()
	async def list_orchestrations(project_id: str = "", limit: int = 10) -> str:
		"""
		List orchestration runs, newest first.

		Args:
			project_id: Only runs for this project (empty = all)
			limit: Maximum number of runs to return
		"""
		service = await _service(config)
		executions = service.store.list_executions(project_id or None)[:limit]
		return json.dumps({
			"success": True,
			"orchestrations": [_summary(e) for e in executions],
		}, indent=2)

	@mcp.tool()
	async def pause_orchestration(execution_id: str) -> str:
		"""Pause a running orchestration after its current session."""
		service = await _service(config)
		execution = service.store.pause(execution_id)
		if execution is None:
			return _not_applied(execution_id, "pause", service)
		return json.dumps({"success": True, "orchestration": _summary(execution)}, indent=2)

	@mcp.tool()
	async def resume_orchestration(execution_id: str) -> str:
		"""Resume a paused orchestration."""
		service = await _service(config)
		execution = await service.resume(execution_id)
		if execution is None:
			return _not_applied(execution_id, "resume", service)
		return json.dumps({"success": True, "orchestration": _summary(execution)}, indent=2)

	@mcp.tool()
	async def cancel_orchestration(execution_id: str) -> str:
		"""Cancel an orchestration and ask its live session to stop."""
		service = await _service(config)
		execution = await service.cancel(execution_id)
		if execution is None:
			return _not_applied(execution_id, "cancel", service)
		return json.dumps({"success": True, "orchestration": _summary(execution)}, indent=2)

	@mcp.tool()
	async def trigger_orchestration_merge(execution_id: str) -> str:
		"""Start the merge step of an orchestration that is waiting for it."""
		service = await _service(config)
		execution = await service.trigger_merge(execution_id)
		if execution is None:
			return _not_applied(execution_id, "merge", service)
		return json.dumps({"success": True, "orchestration": _summary(execution)}, indent=2)

	@mcp.tool()
	async def recover_orchestration(execution_id: str, action: str) -> str:
		"""
		Resolve an orchestration that needs attention.

		Args:
			execution_id: The orchestration ID
			action: retry, skip, or abort
		"""
		try:
			option = RecoveryOption(action)
		except ValueError:
			return json.dumps({
				"success": False,
				"error": f"Invalid action: {action}",
				"valid_actions": [o.value for o in RecoveryOption],
			})

		service = await _service(config)
		execution = await service.recover(execution_id, option)
		if execution is None:
			return _not_applied(execution_id, action, service)
		return json.dumps({"success": True, "orchestration": _summary(execution)}, indent=2)

	@mcp.tool()
	async def preview_batches(project_path: str, fallback_size: int = 15) -> str:
		"""
		Show how a project's tasks.md would be split into implement batches.

		Args:
			project_path: Project directory
			fallback_size: Batch size when tasks.md has no sections
		"""
		try:
			plan = plan_batches_for_project(project_path, fallback_size)
		except ValueError as e:
			return json.dumps({"success": False, "error": str(e)})
		if plan is None:
			return json.dumps({"success": False, "error": f"No tasks.md found under {project_path}"})

		return json.dumps({
			"success": True,
			"summary": get_batch_plan_summary(plan),
			"plan": plan.to_json_dict(),
		}, indent=2)
