"""
Decision Engine - maps orchestration state to the next action.

`decide()` is pure: no I/O, no clock reads (the caller passes `now`), and it
never raises. The runner owns every side effect.

Recoverable vs terminal classification, applied to every step:
- A failure inside the implement step is a batch failure. It is healed
  automatically while the batch has heal attempts left, otherwise it needs
  attention.
- A failure in any other step (or a cancelled session anywhere) needs a human.
- A stale session is restarted once automatically, then needs a human.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from .models import (
	BatchItem,
	BatchStatus,
	BatchTracking,
	DONE_BATCH_STATUSES,
	OrchestrationConfig,
	OrchestrationPhase,
	RecoveryOption,
	ProjectStatus,
	STEP_ORDER,
	Step,
	StepStatus,
	WorkflowSnapshot,
	WorkflowStatus,
)

STALE_THRESHOLD_SECONDS = 10 * 60
MAX_RUN_DURATION_SECONDS = 4 * 60 * 60
MAX_BACKOFF_MS = 30_000
BASE_BACKOFF_MS = 1_000

LIVE_WORKFLOW_STATUSES = frozenset({WorkflowStatus.RUNNING, WorkflowStatus.WAITING_FOR_INPUT})
STARTABLE_STEP_STATUSES = frozenset({StepStatus.NOT_STARTED, StepStatus.PENDING, StepStatus.IN_PROGRESS})
DONE_STEP_STATUSES = frozenset({StepStatus.COMPLETE, StepStatus.SKIPPED})
FAILED_STEP_STATUSES = frozenset({StepStatus.FAILED, StepStatus.BLOCKED})

HUMAN_OPTIONS = (RecoveryOption.RETRY, RecoveryOption.ABORT)
BATCH_OPTIONS = (RecoveryOption.RETRY, RecoveryOption.SKIP, RecoveryOption.ABORT)


class Action(str, Enum):
	"""Everything the runner can be asked to do."""
	IDLE = "idle"
	WAIT = "wait"
	SPAWN = "spawn"
	TRANSITION = "transition"
	WAIT_MERGE = "wait_merge"
	INITIALIZE_BATCHES = "initialize_batches"
	ADVANCE_BATCH = "advance_batch"
	FORCE_STEP_COMPLETE = "force_step_complete"
	HEAL_BATCH = "heal_batch"
	RECOVER_STALE = "recover_stale"
	NEEDS_ATTENTION = "needs_attention"
	COMPLETE = "complete"
	FAIL = "fail"


@dataclass(frozen=True)
class DecisionInput:
	"""Everything `decide()` looks at."""
	active: bool
	step: Step
	config: OrchestrationConfig
	batches: BatchTracking = field(default_factory=BatchTracking)
	workflow: Optional[WorkflowSnapshot] = None
	total_cost_usd: float = 0.0
	started_at: Optional[str] = None
	now: Optional[datetime] = None
	stale_recoveries: int = 0
	stale_threshold: float = STALE_THRESHOLD_SECONDS
	max_run_duration: float = MAX_RUN_DURATION_SECONDS


@dataclass(frozen=True)
class Decision:
	"""The chosen action plus whatever the runner needs to carry it out."""
	action: Action
	reason: str
	skill: Optional[str] = None
	next_step: Optional[OrchestrationPhase] = None
	batch_index: Optional[int] = None
	context: Optional[str] = None
	pause_after: bool = False
	recovery_options: tuple[RecoveryOption, ...] = ()
	failed_workflow_id: Optional[str] = None
	error_message: Optional[str] = None

	def to_log_data(self) -> dict:
		data = {}
		if self.skill:
			data["skill"] = self.skill
		if self.next_step:
			data["nextStep"] = self.next_step.value
		if self.batch_index is not None:
			data["batchIndex"] = self.batch_index
		if self.pause_after:
			data["pauseAfter"] = True
		if self.failed_workflow_id:
			data["failedWorkflowId"] = self.failed_workflow_id
		return data


# --- helpers -----------------------------------------------------------------


def get_skill_for_phase(phase: OrchestrationPhase) -> str:
	"""Skill identifier used to start the external session for a step."""
	if phase == OrchestrationPhase.COMPLETE:
		return f"flow.{OrchestrationPhase.IMPLEMENT.value}"
	return f"flow.{phase.value}"


def get_starting_phase(config: OrchestrationConfig) -> OrchestrationPhase:
	"""First step not switched off by a skip flag. Merge is never skipped."""
	for phase in STEP_ORDER:
		if not config.is_skipped(phase):
			return phase
	return OrchestrationPhase.MERGE


def get_next_phase(current: OrchestrationPhase, config: OrchestrationConfig) -> OrchestrationPhase:
	"""The step after `current`, honouring skip flags; COMPLETE after merge."""
	if current not in STEP_ORDER:
		return OrchestrationPhase.COMPLETE
	for phase in STEP_ORDER[STEP_ORDER.index(current) + 1:]:
		if not config.is_skipped(phase):
			return phase
	return OrchestrationPhase.COMPLETE


def is_phase_complete(status: Optional[ProjectStatus], phase: OrchestrationPhase) -> bool:
	"""Whether project artifacts back up a finished session for `phase`."""
	if status is None:
		return False
	if phase == OrchestrationPhase.DESIGN:
		return status.has_plan and status.has_tasks
	if phase == OrchestrationPhase.IMPLEMENT:
		return status.tasks_total > 0 and status.tasks_complete == status.tasks_total
	# analyze, verify and merge leave nothing to inspect
	return True


def are_all_batches_complete(batches: BatchTracking) -> bool:
	return batches.all_done()


def compute_backoff_ms(failures: int) -> int:
	"""Delay before retrying a failed session lookup: min(2^n * 1s, 30s)."""
	failures = max(failures, 0)
	if failures >= 15:
		return MAX_BACKOFF_MS
	return min(2 ** failures * BASE_BACKOFF_MS, MAX_BACKOFF_MS)


def is_stale(
	workflow: Optional[WorkflowSnapshot],
	now: Optional[datetime],
	threshold: float = STALE_THRESHOLD_SECONDS,
) -> bool:
	"""A running session whose activity evidence is older than `threshold` seconds."""
	if workflow is None or now is None or workflow.status != WorkflowStatus.RUNNING:
		return False
	if workflow.last_activity_at is None:
		return False
	return now.timestamp() - workflow.last_activity_at > threshold


def build_batch_context(item: BatchItem, additional_context: str = "") -> str:
	"""Session context that confines an implement session to one batch."""
	context = (
		f'Execute only the "{item.section}" section ({", ".join(item.task_ids)}). '
		"Do NOT work on tasks from other sections."
	)
	if additional_context:
		return f"{context}\n\n{additional_context}"
	return context


def _elapsed_seconds(started_at: Optional[str], now: Optional[datetime]) -> Optional[float]:
	if not started_at or now is None:
		return None
	try:
		started = datetime.fromisoformat(started_at)
	except ValueError:
		return None
	if (started.tzinfo is None) != (now.tzinfo is None):
		return None
	return (now - started).total_seconds()


def _needs_attention(
	reason: str,
	options: tuple[RecoveryOption, ...] = HUMAN_OPTIONS,
	workflow: Optional[WorkflowSnapshot] = None,
	error_message: Optional[str] = None,
) -> Decision:
	return Decision(
		action=Action.NEEDS_ATTENTION,
		reason=reason,
		recovery_options=options,
		failed_workflow_id=workflow.id if workflow else None,
		error_message=error_message or (workflow.error if workflow else None),
	)


# --- decision table ------------------------------------------------------------


def decide(inp: DecisionInput) -> Decision:
	"""Pick the next action. First matching rule wins."""
	if not inp.active:
		return Decision(action=Action.IDLE, reason="No active orchestration")

	budget = inp.config.budget
	if inp.total_cost_usd >= budget.max_total:
		message = f"Budget exceeded: ${inp.total_cost_usd:.2f} of ${budget.max_total:.2f}"
		return Decision(action=Action.FAIL, reason=message, error_message=message)

	elapsed = _elapsed_seconds(inp.started_at, inp.now)
	if elapsed is not None and elapsed > inp.max_run_duration:
		hours = inp.max_run_duration / 3600
		return _needs_attention(f"Orchestration has been running for more than {hours:g} hours")

	workflow = inp.workflow
	step = inp.step

	if is_stale(workflow, inp.now, inp.stale_threshold):
		if inp.stale_recoveries < 1:
			return Decision(
				action=Action.RECOVER_STALE,
				reason=f"Session {workflow.id} shows no activity, restarting it",
				failed_workflow_id=workflow.id,
			)
		return _needs_attention(
			f"Session {workflow.id} went stale again after a restart",
			workflow=workflow,
		)

	if workflow is not None:
		if workflow.status == WorkflowStatus.RUNNING and step.status != StepStatus.COMPLETE:
			return Decision(action=Action.WAIT, reason="Workflow running")
		if workflow.status == WorkflowStatus.WAITING_FOR_INPUT:
			return Decision(action=Action.WAIT, reason="Waiting for user input")
		if workflow.status == WorkflowStatus.CANCELLED:
			return _needs_attention(f"Workflow {workflow.id} was cancelled", workflow=workflow)
		if workflow.status == WorkflowStatus.FAILED:
			if step.current != OrchestrationPhase.IMPLEMENT:
				return _needs_attention(
					f"Workflow failed: {workflow.error or 'unknown error'}",
					workflow=workflow,
				)
			item = inp.batches.current_item()
			# a healed batch keeps its failed session; the batch rules take it from here
			healed = item is not None and item.status in DONE_BATCH_STATUSES
			if step.status not in DONE_STEP_STATUSES and not healed:
				return _decide_batch_failure(inp, f"Batch workflow failed: {workflow.error or 'unknown error'}")

	if step.status in DONE_STEP_STATUSES:
		return _decide_step_complete(inp)

	if step.status in FAILED_STEP_STATUSES:
		if step.current == OrchestrationPhase.IMPLEMENT:
			return _decide_batch_failure(inp, f"Implement step {step.status.value}")
		return _needs_attention(f"Step {step.current.value} is {step.status.value}", workflow=workflow)

	if step.current == OrchestrationPhase.IMPLEMENT:
		batch_decision = _decide_batch(inp)
		if batch_decision is not None:
			return batch_decision

	if workflow is None and step.status in STARTABLE_STEP_STATUSES and step.current != OrchestrationPhase.IMPLEMENT:
		return Decision(
			action=Action.SPAWN,
			reason=f"Starting {step.current.value}",
			skill=get_skill_for_phase(step.current),
			context=inp.config.additional_context or None,
		)

	workflow_state = workflow.status.value if workflow else "none"
	return _needs_attention(
		f"Unrecognized state: step {step.current.value} is {step.status.value}, workflow {workflow_state}",
		workflow=workflow,
	)


def _decide_step_complete(inp: DecisionInput) -> Decision:
	current = inp.step.current
	config = inp.config

	if current == OrchestrationPhase.MERGE:
		return Decision(action=Action.COMPLETE, reason="Merge complete")

	if current == OrchestrationPhase.VERIFY and not config.auto_merge:
		return Decision(action=Action.WAIT_MERGE, reason="Verify complete, waiting for merge to be triggered")

	next_phase = get_next_phase(current, config)
	if next_phase == OrchestrationPhase.COMPLETE:
		return Decision(action=Action.COMPLETE, reason="All phases complete")
	if next_phase == OrchestrationPhase.MERGE and not config.auto_merge:
		return Decision(
			action=Action.WAIT_MERGE,
			reason=f"{current.value.capitalize()} complete, waiting for merge to be triggered",
		)

	return Decision(
		action=Action.TRANSITION,
		reason=f"Phase {current.value} complete, transitioning to {next_phase.value}",
		skill=get_skill_for_phase(next_phase),
		next_step=next_phase,
	)


def _decide_batch_failure(inp: DecisionInput, reason: str) -> Decision:
	item = inp.batches.current_item()
	if item is None:
		return _needs_attention(f"{reason} (no current batch)", workflow=inp.workflow)

	config = inp.config
	if config.auto_heal_enabled and item.heal_attempts < config.max_heal_attempts:
		return Decision(
			action=Action.HEAL_BATCH,
			reason=f"{reason}; healing batch {item.index + 1} (attempt {item.heal_attempts + 1}/{config.max_heal_attempts})",
			batch_index=item.index,
			failed_workflow_id=item.workflow_execution_id,
			error_message=inp.workflow.error if inp.workflow else None,
		)

	detail = "auto-heal disabled" if not config.auto_heal_enabled else f"{item.heal_attempts} heal attempts used"
	return Decision(
		action=Action.NEEDS_ATTENTION,
		reason=f"Batch {item.index + 1} ({item.section}) failed, {detail}",
		batch_index=item.index,
		recovery_options=BATCH_OPTIONS,
		failed_workflow_id=item.workflow_execution_id,
		error_message=inp.workflow.error if inp.workflow else None,
	)


def _decide_batch(inp: DecisionInput) -> Optional[Decision]:
	"""Batch sub-decision for the implement step. None means no opinion."""
	batches = inp.batches
	config = inp.config
	workflow = inp.workflow

	if not batches.items:
		return Decision(action=Action.INITIALIZE_BATCHES, reason="No batches planned yet")

	item = batches.current_item()
	if item is None:
		return _needs_attention(
			f"Batch pointer {batches.current} is outside {len(batches.items)} batches",
		)

	total = len(batches.items)
	is_last = item.index >= total - 1

	if item.status == BatchStatus.FAILED:
		return _decide_batch_failure(inp, f"Batch {item.index + 1} failed")

	if item.status == BatchStatus.PENDING:
		if workflow is not None and workflow.status in LIVE_WORKFLOW_STATUSES:
			return None
		return Decision(
			action=Action.SPAWN,
			reason=f"Starting batch {item.index + 1}/{total}: {item.section}",
			skill=get_skill_for_phase(OrchestrationPhase.IMPLEMENT),
			batch_index=item.index,
			context=build_batch_context(item, config.additional_context),
		)

	if item.status == BatchStatus.RUNNING:
		if workflow is None:
			return _needs_attention(f"Batch {item.index + 1} is running but has no session")
		if workflow.status in LIVE_WORKFLOW_STATUSES:
			return None
		if workflow.status == WorkflowStatus.COMPLETED:
			if is_last:
				return Decision(
					action=Action.FORCE_STEP_COMPLETE,
					reason=f"Last batch ({item.section}) finished, completing implement",
					batch_index=item.index,
				)
			return Decision(
				action=Action.ADVANCE_BATCH,
				reason=f"Batch {item.index + 1} complete, moving to batch {item.index + 2}",
				batch_index=item.index + 1,
				pause_after=config.pause_between_batches,
			)
		return None

	if item.status in DONE_BATCH_STATUSES:
		if not is_last:
			return Decision(
				action=Action.ADVANCE_BATCH,
				reason=f"Batch {item.index + 1} {item.status.value}, moving to batch {item.index + 2}",
				batch_index=item.index + 1,
				pause_after=config.pause_between_batches,
			)
		if batches.all_done():
			if inp.step.status != StepStatus.COMPLETE:
				return Decision(
					action=Action.FORCE_STEP_COMPLETE,
					reason="All batches complete, completing implement",
					batch_index=item.index,
				)
			return None
		return _needs_attention("Last batch is done but earlier batches are not", options=BATCH_OPTIONS)

	return None
