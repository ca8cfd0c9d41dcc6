"""
Execution Store - file-backed orchestration state with atomic updates.

Layout:
- <executions_dir>/<id>.json        one record per run
- <active_dir>/<project_id>.json    pointer to the project's active run

Every write goes through atomic_write_json (temp file, fsync, rename), and
every mutating operation appends exactly one decision-log entry. Operations
whose precondition does not hold return None and leave the record untouched.

Usage:
	store = ExecutionStore.from_config(config)
	execution = store.start("my-project", "/path/to/project", OrchestrationConfig())
	store.pause(execution.id)
"""

import json
import logging
import os
import tempfile
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

from pydantic import ValidationError

from ..config import Config
from .batch_planner import create_batch_tracking
from .decisions import get_next_phase, get_starting_phase
from .models import (
	BatchPlan,
	BatchStatus,
	BatchTracking,
	DecisionLogEntry,
	DONE_BATCH_STATUSES,
	OrchestrationConfig,
	OrchestrationExecution,
	OrchestrationPhase,
	OrchestrationStatus,
	RecoveryContext,
	RecoveryOption,
	STEP_ORDER,
	Step,
	StepStatus,
)

logger = logging.getLogger(__name__)

STEP_FILE = Path(".specflow") / "orchestration-state.json"

# (decision, reason, data) appended to the log when a mutation applies
LogEntry = tuple[str, str, Optional[dict[str, Any]]]


def _now() -> str:
	return datetime.now().isoformat()


@contextmanager
def atomic_write(path: Path) -> Iterator[Any]:
	"""Write to a temp file beside `path` and rename it into place on success."""
	path = Path(path)
	path.parent.mkdir(parents=True, exist_ok=True)
	fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
	try:
		with os.fdopen(fd, "w") as f:
			yield f
			f.flush()
			os.fsync(f.fileno())
		os.replace(tmp_name, path)
	except BaseException:
		try:
			os.unlink(tmp_name)
		except FileNotFoundError:
			pass
		raise


def atomic_write_json(path: Path, data: Any) -> None:
	with atomic_write(path) as f:
		json.dump(data, f, indent=2)


def read_json(path: Path) -> Optional[Any]:
	"""Load a JSON file; missing or corrupt files read as None."""
	try:
		with open(path) as f:
			return json.load(f)
	except FileNotFoundError:
		return None
	except (OSError, json.JSONDecodeError) as e:
		logger.warning(f"Ignoring unreadable state file {path}: {e}")
		return None


# --- project step file ---------------------------------------------------------


def read_step(project_path: str | Path) -> Optional[Step]:
	"""The project's current step from .specflow/orchestration-state.json."""
	data = read_json(Path(project_path) / STEP_FILE)
	if not isinstance(data, dict):
		return None
	raw = (data.get("orchestration") or {}).get("step")
	if not isinstance(raw, dict) or not raw.get("current"):
		return None
	try:
		return Step.model_validate({
			"current": raw["current"],
			"index": raw.get("index", -1),
			"status": raw.get("status") or StepStatus.NOT_STARTED.value,
		})
	except ValidationError as e:
		logger.warning(f"Malformed step in {project_path}: {e.error_count()} errors")
		return None


def write_step(project_path: str | Path, phase: OrchestrationPhase, status: StepStatus) -> Step:
	"""Record the current step, keeping any other keys in the state file."""
	path = Path(project_path) / STEP_FILE
	data = read_json(path)
	if not isinstance(data, dict):
		data = {}
	orchestration = data.setdefault("orchestration", {})
	step = Step.for_phase(phase, status)
	orchestration["step"] = step.to_json_dict()
	atomic_write_json(path, data)
	return step


# --- store ---------------------------------------------------------------------


class ExecutionStore:
	"""
	Durable store for orchestration executions.

	Constructed once per process and shared by the runner, the MCP tools and
	the CLI. Holds no in-memory copies: every call reads the record from disk.
	"""

	def __init__(self, executions_dir: Path, active_dir: Path):
		self.executions_dir = Path(executions_dir)
		self.active_dir = Path(active_dir)
		self.executions_dir.mkdir(parents=True, exist_ok=True)
		self.active_dir.mkdir(parents=True, exist_ok=True)

	@classmethod
	def from_config(cls, config: Config) -> "ExecutionStore":
		return cls(config.executions_dir, config.active_dir)

	# --- persistence ---

	def _record_path(self, execution_id: str) -> Path:
		return self.executions_dir / f"{execution_id}.json"

	def _active_path(self, project_id: str) -> Path:
		return self.active_dir / f"{project_id}.json"

	def _load(self, path: Path) -> Optional[OrchestrationExecution]:
		data = read_json(path)
		if data is None:
			return None
		try:
			return OrchestrationExecution.model_validate(data)
		except ValidationError as e:
			logger.warning(f"Ignoring malformed execution record {path}: {e.error_count()} errors")
			return None

	def _save(self, execution: OrchestrationExecution) -> None:
		execution.updated_at = _now()
		atomic_write_json(self._record_path(execution.id), execution.to_json_dict())

	def _claim_active(self, project_id: str, execution_id: str) -> bool:
		"""Create the active pointer unless one already exists."""
		path = self._active_path(project_id)
		fd, tmp_name = tempfile.mkstemp(dir=self.active_dir, prefix=f".{path.name}.", suffix=".tmp")
		try:
			with os.fdopen(fd, "w") as f:
				json.dump({"executionId": execution_id, "projectId": project_id, "claimedAt": _now()}, f)
				f.flush()
				os.fsync(f.fileno())
			# link() fails if the pointer exists, making the claim atomic across processes
			os.link(tmp_name, path)
			return True
		except FileExistsError:
			return False
		finally:
			os.unlink(tmp_name)

	def _clear_active(self, execution: OrchestrationExecution) -> None:
		path = self._active_path(execution.project_id)
		pointer = read_json(path)
		if isinstance(pointer, dict) and pointer.get("executionId") not in (None, execution.id):
			return
		try:
			path.unlink()
		except FileNotFoundError:
			pass

	def _update(
		self,
		execution_id: str,
		apply: Callable[[OrchestrationExecution], Optional[LogEntry]],
	) -> Optional[OrchestrationExecution]:
		"""Read, check-and-mutate via `apply`, log, write. `apply` returns None to reject."""
		execution = self.get(execution_id)
		if execution is None:
			return None
		entry = apply(execution)
		if entry is None:
			return None

		decision, reason, data = entry
		execution.decision_log.append(DecisionLogEntry(decision=decision, reason=reason, data=data))
		if execution.is_terminal:
			execution.completed_at = execution.completed_at or _now()
			execution.recovery_context = None
		self._save(execution)
		if execution.is_terminal:
			self._clear_active(execution)
		logger.debug(f"[{execution.id[:8]}] {decision}: {reason}")
		return execution

	# --- queries ---

	def get(self, execution_id: str) -> Optional[OrchestrationExecution]:
		return self._load(self._record_path(execution_id))

	def get_active(self, project_id: str) -> Optional[OrchestrationExecution]:
		"""The project's non-terminal run, if its pointer is intact."""
		pointer = read_json(self._active_path(project_id))
		if not isinstance(pointer, dict) or not pointer.get("executionId"):
			return None
		execution = self.get(pointer["executionId"])
		if execution is None or execution.is_terminal:
			return None
		return execution

	def list_executions(self, project_id: Optional[str] = None) -> list[OrchestrationExecution]:
		"""All readable records, newest first."""
		executions = []
		for path in self.executions_dir.glob("*.json"):
			execution = self._load(path)
			if execution is None:
				continue
			if project_id is not None and execution.project_id != project_id:
				continue
			executions.append(execution)
		return sorted(executions, key=lambda e: e.started_at, reverse=True)

	def snapshot(self, execution_id: str) -> Optional[dict]:
		"""Read-only JSON view of a record, decision log included."""
		execution = self.get(execution_id)
		return execution.to_json_dict() if execution else None

	def can_heal_batch(self, execution_id: str) -> bool:
		execution = self.get(execution_id)
		if execution is None or not execution.config.auto_heal_enabled:
			return False
		item = execution.batches.current_item()
		if item is None:
			return False
		return item.heal_attempts < execution.config.max_heal_attempts

	def is_budget_exceeded(self, execution_id: str) -> bool:
		execution = self.get(execution_id)
		if execution is None:
			return False
		return execution.total_cost_usd >= execution.config.budget.max_total

	# --- lifecycle ---

	def start(
		self,
		project_id: str,
		project_path: str | Path,
		config: Optional[OrchestrationConfig] = None,
		batch_plan: Optional[BatchPlan] = None,
	) -> Optional[OrchestrationExecution]:
		"""
		Create a new run and claim it as the project's active one.

		Returns:
			The new execution, or None when another run is already in progress
		"""
		config = config or OrchestrationConfig()
		active = self.get_active(project_id)
		if active is not None:
			logger.warning(f"Orchestration already in progress: {active.id}")
			return None

		# A pointer to a finished or unreadable run is stale
		stale_pointer = self._active_path(project_id)
		if stale_pointer.exists():
			stale_pointer.unlink(missing_ok=True)

		phase = get_starting_phase(config)
		execution = OrchestrationExecution(
			id=str(uuid.uuid4()),
			project_id=project_id,
			project_path=str(project_path),
			config=config,
			current_phase=phase,
			batches=create_batch_tracking(batch_plan) if batch_plan else BatchTracking(),
		)
		if not self._claim_active(project_id, execution.id):
			logger.warning(f"Orchestration already in progress for {project_id} (lost claim race)")
			return None

		data = {"startingPhase": phase.value}
		if batch_plan is not None:
			data["batches"] = len(batch_plan.batches)
		execution.decision_log.append(DecisionLogEntry(
			decision="start",
			reason=f"Started orchestration at {phase.value}",
			data=data,
		))
		self._save(execution)
		logger.info(f"Started orchestration {execution.id} for {project_id} at {phase.value}")
		return execution

	def pause(self, execution_id: str) -> Optional[OrchestrationExecution]:
		def apply(e: OrchestrationExecution) -> Optional[LogEntry]:
			if e.status != OrchestrationStatus.RUNNING:
				return None
			e.status = OrchestrationStatus.PAUSED
			return "pause", "Paused", None
		return self._update(execution_id, apply)

	def resume(self, execution_id: str) -> Optional[OrchestrationExecution]:
		def apply(e: OrchestrationExecution) -> Optional[LogEntry]:
			if e.status != OrchestrationStatus.PAUSED:
				return None
			e.status = OrchestrationStatus.RUNNING
			return "resume", "Resumed", None
		return self._update(execution_id, apply)

	def cancel(self, execution_id: str, reason: str = "Cancelled by user") -> Optional[OrchestrationExecution]:
		def apply(e: OrchestrationExecution) -> Optional[LogEntry]:
			if e.is_terminal:
				return None
			e.status = OrchestrationStatus.CANCELLED
			return "cancel", reason, None
		return self._update(execution_id, apply)

	def fail(self, execution_id: str, reason: str) -> Optional[OrchestrationExecution]:
		def apply(e: OrchestrationExecution) -> Optional[LogEntry]:
			if e.is_terminal:
				return None
			e.status = OrchestrationStatus.FAILED
			e.error_message = reason
			return "fail", reason, None
		return self._update(execution_id, apply)

	def complete(self, execution_id: str) -> Optional[OrchestrationExecution]:
		def apply(e: OrchestrationExecution) -> Optional[LogEntry]:
			if e.is_terminal:
				return None
			e.status = OrchestrationStatus.COMPLETED
			e.current_phase = OrchestrationPhase.COMPLETE
			return "complete", "Orchestration complete", {"totalCostUsd": round(e.total_cost_usd, 4)}
		return self._update(execution_id, apply)

	def set_needs_attention(
		self,
		execution_id: str,
		issue: str,
		options: Optional[list[RecoveryOption]] = None,
		failed_workflow_id: Optional[str] = None,
	) -> Optional[OrchestrationExecution]:
		def apply(e: OrchestrationExecution) -> Optional[LogEntry]:
			if e.is_terminal:
				return None
			e.status = OrchestrationStatus.NEEDS_ATTENTION
			e.recovery_context = RecoveryContext(
				issue=issue,
				options=list(options) if options else [RecoveryOption.RETRY, RecoveryOption.ABORT],
				failed_workflow_id=failed_workflow_id,
			)
			data = {"failedWorkflowId": failed_workflow_id} if failed_workflow_id else None
			return "needs_attention", issue, data
		return self._update(execution_id, apply)

	def handle_recovery(self, execution_id: str, action: RecoveryOption) -> Optional[OrchestrationExecution]:
		"""
		Apply a human's choice to a run that needs attention.

		retry: run again from the current step (a failed batch goes back to pending)
		skip: move past the current step
		abort: cancel the run
		"""
		action = RecoveryOption(action)

		def apply(e: OrchestrationExecution) -> Optional[LogEntry]:
			if e.status != OrchestrationStatus.NEEDS_ATTENTION:
				return None
			e.recovery_context = None
			e.error_message = None

			if action == RecoveryOption.ABORT:
				e.status = OrchestrationStatus.CANCELLED
				return "recovery_abort", "User chose to abort", None

			e.status = OrchestrationStatus.RUNNING
			if action == RecoveryOption.RETRY:
				self._reset_current_step(e)
				return "recovery_retry", f"User chose to retry {e.current_phase.value}", None

			next_phase = self._advance_phase(e)
			return "recovery_skip", f"User chose to skip to {next_phase.value}", {"nextPhase": next_phase.value}
		return self._update(execution_id, apply)

	def go_back_to_step(self, execution_id: str, step: OrchestrationPhase) -> Optional[OrchestrationExecution]:
		"""Rewind to an earlier step. Rewinding to implement or before drops the batch plan."""
		step = OrchestrationPhase(step)

		def apply(e: OrchestrationExecution) -> Optional[LogEntry]:
			if e.is_terminal or step not in STEP_ORDER:
				return None
			previous = e.current_phase
			e.current_phase = step
			e.status = OrchestrationStatus.RUNNING
			e.recovery_context = None
			e.error_message = None
			if STEP_ORDER.index(step) <= STEP_ORDER.index(OrchestrationPhase.IMPLEMENT):
				e.batches = BatchTracking()
			for later in STEP_ORDER[STEP_ORDER.index(step):]:
				if later == OrchestrationPhase.IMPLEMENT:
					e.executions.implement = []
				else:
					setattr(e.executions, later.value, None)
			self._sync_step(e, StepStatus.NOT_STARTED)
			return "go_back_to_step", f"Went back from {previous.value} to {step.value}", {"from": previous.value}
		return self._update(execution_id, apply)

	def transition_to_next_phase(self, execution_id: str) -> Optional[OrchestrationExecution]:
		"""Move to the next non-skipped step; stop at waiting_merge unless auto-merge is on."""
		def apply(e: OrchestrationExecution) -> Optional[LogEntry]:
			if e.is_terminal or e.status == OrchestrationStatus.WAITING_MERGE:
				return None
			previous = e.current_phase
			next_phase = self._advance_phase(e)
			if e.status == OrchestrationStatus.COMPLETED:
				return "complete", f"All phases complete after {previous.value}", None
			if e.status == OrchestrationStatus.WAITING_MERGE:
				return "waiting_merge", f"{previous.value} complete, waiting for merge to be triggered", None
			return "transition", f"{previous.value} -> {next_phase.value}", {"from": previous.value, "to": next_phase.value}
		return self._update(execution_id, apply)

	def trigger_merge(self, execution_id: str) -> Optional[OrchestrationExecution]:
		def apply(e: OrchestrationExecution) -> Optional[LogEntry]:
			if e.status != OrchestrationStatus.WAITING_MERGE:
				return None
			e.status = OrchestrationStatus.RUNNING
			e.current_phase = OrchestrationPhase.MERGE
			return "merge_triggered", "Merge triggered by user", None
		return self._update(execution_id, apply)

	# --- sessions ---

	def link_workflow_execution(self, execution_id: str, workflow_id: str) -> Optional[OrchestrationExecution]:
		"""Bind a started session to the current step, or to the current batch during implement."""
		def apply(e: OrchestrationExecution) -> Optional[LogEntry]:
			if e.is_terminal or e.current_phase == OrchestrationPhase.COMPLETE:
				return None
			if e.current_phase == OrchestrationPhase.IMPLEMENT:
				item = e.batches.current_item()
				if item is None:
					return None
				item.workflow_execution_id = workflow_id
				item.status = BatchStatus.RUNNING
				item.started_at = _now()
				e.executions.implement.append(workflow_id)
				return "link_execution", f"Batch {item.index + 1} running as {workflow_id}", {"workflowId": workflow_id, "batchIndex": item.index}
			setattr(e.executions, e.current_phase.value, workflow_id)
			return "link_execution", f"{e.current_phase.value} running as {workflow_id}", {"workflowId": workflow_id}
		return self._update(execution_id, apply)

	def link_healer(self, execution_id: str, healer_id: str) -> Optional[OrchestrationExecution]:
		def apply(e: OrchestrationExecution) -> Optional[LogEntry]:
			item = e.batches.current_item()
			if e.is_terminal or item is None:
				return None
			item.healer_execution_id = healer_id
			e.executions.healers.append(healer_id)
			return "link_healer", f"Healer {healer_id} attached to batch {item.index + 1}", {"healerId": healer_id}
		return self._update(execution_id, apply)

	# --- batches ---

	def initialize_batches(self, execution_id: str, plan: BatchPlan) -> Optional[OrchestrationExecution]:
		"""Attach batch tracking to an implement step that has none yet."""
		def apply(e: OrchestrationExecution) -> Optional[LogEntry]:
			if e.is_terminal or e.batches.items:
				return None
			e.batches = create_batch_tracking(plan)
			return "update_batches", f"Planned {len(plan.batches)} batches", {
				"batches": [b.name for b in plan.batches],
				"usedFallback": plan.used_fallback,
				"warnings": plan.dependency_warnings or None,
			}
		return self._update(execution_id, apply)

	def complete_batch(self, execution_id: str) -> Optional[OrchestrationExecution]:
		def apply(e: OrchestrationExecution) -> Optional[LogEntry]:
			item = e.batches.current_item()
			if e.is_terminal or item is None or item.status in DONE_BATCH_STATUSES:
				return None
			item.status = BatchStatus.COMPLETED
			item.completed_at = _now()
			moved = self._move_pointer(e)
			return "batch_complete", f"Batch {item.index + 1} completed", {"nextBatch": e.batches.current if moved else None}
		return self._update(execution_id, apply)

	def fail_batch(self, execution_id: str, error: str) -> Optional[OrchestrationExecution]:
		def apply(e: OrchestrationExecution) -> Optional[LogEntry]:
			item = e.batches.current_item()
			if e.is_terminal or item is None:
				return None
			item.status = BatchStatus.FAILED
			return "batch_failed", f"Batch {item.index + 1} failed", {"error": error}
		return self._update(execution_id, apply)

	def heal_batch(self, execution_id: str, healer_id: Optional[str] = None) -> Optional[OrchestrationExecution]:
		def apply(e: OrchestrationExecution) -> Optional[LogEntry]:
			item = e.batches.current_item()
			if e.is_terminal or item is None or item.status != BatchStatus.FAILED:
				return None
			item.status = BatchStatus.HEALED
			item.completed_at = _now()
			if healer_id:
				item.healer_execution_id = healer_id
			moved = self._move_pointer(e)
			return "batch_healed", f"Batch {item.index + 1} healed", {"healerId": healer_id, "nextBatch": e.batches.current if moved else None}
		return self._update(execution_id, apply)

	def advance_batch(self, execution_id: str) -> Optional[OrchestrationExecution]:
		"""Move the pointer past a batch that is already done."""
		def apply(e: OrchestrationExecution) -> Optional[LogEntry]:
			item = e.batches.current_item()
			if e.is_terminal or item is None or item.status not in DONE_BATCH_STATUSES:
				return None
			if not self._move_pointer(e):
				return None
			return "next_batch", f"Starting batch {e.batches.current + 1}", {"batchIndex": e.batches.current}
		return self._update(execution_id, apply)

	def increment_heal_attempt(self, execution_id: str) -> Optional[OrchestrationExecution]:
		def apply(e: OrchestrationExecution) -> Optional[LogEntry]:
			item = e.batches.current_item()
			if e.is_terminal or item is None:
				return None
			item.heal_attempts += 1
			return "heal_attempt", f"Heal attempt {item.heal_attempts} for batch {item.index + 1}", None
		return self._update(execution_id, apply)

	# --- cost and audit ---

	def add_cost(
		self,
		execution_id: str,
		cost_usd: float,
		source: str = "session",
		workflow_id: Optional[str] = None,
	) -> Optional[OrchestrationExecution]:
		"""Add spend to the run. A session's cost is only ever counted once."""
		def apply(e: OrchestrationExecution) -> Optional[LogEntry]:
			if cost_usd <= 0:
				return None
			if workflow_id and workflow_id in self._costed_workflows(e):
				return None
			e.total_cost_usd += cost_usd
			data: dict[str, Any] = {"totalCostUsd": round(e.total_cost_usd, 4)}
			if workflow_id:
				data["workflowId"] = workflow_id
			return "add_cost", f"${cost_usd:.4f} from {source}", data
		return self._update(execution_id, apply)

	@staticmethod
	def _costed_workflows(e: OrchestrationExecution) -> set[str]:
		return {
			entry.data["workflowId"]
			for entry in e.decision_log
			if entry.decision == "add_cost" and entry.data and entry.data.get("workflowId")
		}

	def log_decision(
		self,
		execution_id: str,
		decision: str,
		reason: str,
		data: Optional[dict[str, Any]] = None,
	) -> Optional[OrchestrationExecution]:
		return self._update(execution_id, lambda e: (decision, reason, data or None))

	# --- internal transitions ---

	@staticmethod
	def _move_pointer(e: OrchestrationExecution) -> bool:
		if e.batches.current < len(e.batches.items) - 1:
			e.batches.current += 1
			return True
		return False

	@staticmethod
	def _sync_step(e: OrchestrationExecution, status: StepStatus) -> None:
		if e.current_phase not in STEP_ORDER:
			return
		try:
			write_step(e.project_path, e.current_phase, status)
		except OSError as err:
			logger.warning(f"Could not write step file for {e.project_path}: {err}")

	def _advance_phase(self, e: OrchestrationExecution) -> OrchestrationPhase:
		next_phase = get_next_phase(e.current_phase, e.config)
		if next_phase == OrchestrationPhase.COMPLETE:
			e.status = OrchestrationStatus.COMPLETED
			e.current_phase = OrchestrationPhase.COMPLETE
			return next_phase
		e.current_phase = next_phase
		if next_phase == OrchestrationPhase.MERGE and not e.config.auto_merge:
			e.status = OrchestrationStatus.WAITING_MERGE
		self._sync_step(e, StepStatus.NOT_STARTED)
		return next_phase

	def _reset_current_step(self, e: OrchestrationExecution) -> None:
		if e.current_phase == OrchestrationPhase.IMPLEMENT:
			item = e.batches.current_item()
			if item is not None and item.status in (BatchStatus.FAILED, BatchStatus.RUNNING):
				item.status = BatchStatus.PENDING
				item.workflow_execution_id = None
				item.healer_execution_id = None
		elif e.current_phase in STEP_ORDER:
			setattr(e.executions, e.current_phase.value, None)
			self._sync_step(e, StepStatus.IN_PROGRESS)
			return
		self._sync_step(e, StepStatus.NOT_STARTED)

