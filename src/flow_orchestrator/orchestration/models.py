"""
Orchestration Models - Pydantic schemas for persisted orchestration state.

Records are stored as JSON with camelCase keys so that external observers
(dashboards, the project's own tooling) can read them without this package.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
	"""Base model that reads and writes camelCase JSON."""
	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

	def to_json_dict(self) -> dict:
		return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class OrchestrationStatus(str, Enum):
	"""Lifecycle status of an orchestration execution."""
	RUNNING = "running"
	PAUSED = "paused"
	WAITING_MERGE = "waiting_merge"
	NEEDS_ATTENTION = "needs_attention"
	COMPLETED = "completed"
	FAILED = "failed"
	CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
	OrchestrationStatus.COMPLETED,
	OrchestrationStatus.FAILED,
	OrchestrationStatus.CANCELLED,
})


class OrchestrationPhase(str, Enum):
	"""Workflow phase. COMPLETE is a phase but never a step."""
	DESIGN = "design"
	ANALYZE = "analyze"
	IMPLEMENT = "implement"
	VERIFY = "verify"
	MERGE = "merge"
	COMPLETE = "complete"


STEP_ORDER = (
	OrchestrationPhase.DESIGN,
	OrchestrationPhase.ANALYZE,
	OrchestrationPhase.IMPLEMENT,
	OrchestrationPhase.VERIFY,
	OrchestrationPhase.MERGE,
)

STEP_INDEX_MAP = {step: index for index, step in enumerate(STEP_ORDER)}


class StepStatus(str, Enum):
	"""Status of the current step as reported by the project."""
	NOT_STARTED = "not_started"
	PENDING = "pending"
	IN_PROGRESS = "in_progress"
	COMPLETE = "complete"
	FAILED = "failed"
	BLOCKED = "blocked"
	SKIPPED = "skipped"


class BatchStatus(str, Enum):
	"""Status of a single implement batch."""
	PENDING = "pending"
	RUNNING = "running"
	COMPLETED = "completed"
	FAILED = "failed"
	HEALED = "healed"


DONE_BATCH_STATUSES = frozenset({BatchStatus.COMPLETED, BatchStatus.HEALED})


class WorkflowStatus(str, Enum):
	"""Live status of an external agent session."""
	RUNNING = "running"
	WAITING_FOR_INPUT = "waiting_for_input"
	COMPLETED = "completed"
	FAILED = "failed"
	CANCELLED = "cancelled"


class RecoveryOption(str, Enum):
	"""Actions a human can take on a run that needs attention."""
	RETRY = "retry"
	SKIP = "skip"
	ABORT = "abort"


class OrchestrationBudget(CamelModel):
	"""Spend ceilings in USD."""
	max_per_batch: float = Field(default=5.0, ge=0, description="Maximum spend per batch")
	max_total: float = Field(default=50.0, ge=0, description="Maximum total spend for the run")
	healing_budget: float = Field(default=2.0, ge=0, description="Maximum spend per heal attempt")
	decision_budget: float = Field(default=0.5, ge=0, description="Maximum spend on decision calls")


class OrchestrationConfig(CamelModel):
	"""Per-run settings, fixed when the run starts."""
	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

	auto_merge: bool = Field(default=False, description="Run merge after verify without waiting")
	additional_context: str = Field(default="", description="Extra text appended to every session context")
	skip_design: bool = False
	skip_analyze: bool = False
	skip_implement: bool = False
	skip_verify: bool = False
	auto_heal_enabled: bool = Field(default=True, description="Attempt automatic healing of failed batches")
	max_heal_attempts: int = Field(default=1, ge=0, le=5)
	batch_size_fallback: int = Field(default=15, ge=1, le=50)
	pause_between_batches: bool = False
	budget: OrchestrationBudget = Field(default_factory=OrchestrationBudget)

	def is_skipped(self, phase: OrchestrationPhase) -> bool:
		return {
			OrchestrationPhase.DESIGN: self.skip_design,
			OrchestrationPhase.ANALYZE: self.skip_analyze,
			OrchestrationPhase.IMPLEMENT: self.skip_implement,
			OrchestrationPhase.VERIFY: self.skip_verify,
		}.get(phase, False)


class BatchItem(CamelModel):
	"""One section of tasks executed by a single agent session."""
	index: int
	section: str
	task_ids: list[str] = Field(default_factory=list)
	status: BatchStatus = BatchStatus.PENDING
	started_at: Optional[str] = None
	completed_at: Optional[str] = None
	heal_attempts: int = 0
	workflow_execution_id: Optional[str] = None
	healer_execution_id: Optional[str] = None


class BatchTracking(CamelModel):
	"""Batch pointer plus the items it walks over."""
	total: int = 0
	current: int = 0
	items: list[BatchItem] = Field(default_factory=list)

	def current_item(self) -> Optional[BatchItem]:
		if 0 <= self.current < len(self.items):
			return self.items[self.current]
		return None

	def all_done(self) -> bool:
		return bool(self.items) and all(item.status in DONE_BATCH_STATUSES for item in self.items)


class PlannedBatch(CamelModel):
	"""A batch as produced by the planner, before tracking starts."""
	name: str
	task_ids: list[str] = Field(default_factory=list)
	dependencies: dict[str, list[str]] = Field(default_factory=dict)


class BatchPlan(CamelModel):
	"""Planner output. Not persisted."""
	batches: list[PlannedBatch] = Field(default_factory=list)
	used_fallback: bool = False
	fallback_size: Optional[int] = None
	total_incomplete: int = 0
	dependency_warnings: list[str] = Field(default_factory=list)


class Step(CamelModel):
	"""The project's current step. `index` must match STEP_INDEX_MAP."""
	current: OrchestrationPhase
	index: int
	status: StepStatus = StepStatus.NOT_STARTED

	@classmethod
	def for_phase(cls, phase: OrchestrationPhase, status: StepStatus = StepStatus.NOT_STARTED) -> "Step":
		return cls(current=phase, index=STEP_INDEX_MAP.get(phase, len(STEP_ORDER)), status=status)


class OrchestrationExecutions(CamelModel):
	"""External session ids recorded per step."""
	design: Optional[str] = None
	analyze: Optional[str] = None
	implement: list[str] = Field(default_factory=list)
	verify: Optional[str] = None
	merge: Optional[str] = None
	healers: list[str] = Field(default_factory=list)


class DecisionLogEntry(CamelModel):
	"""One audit entry; appended by every state mutation."""
	timestamp: str = Field(default_factory=lambda: datetime.now().isoformat())
	decision: str
	reason: str
	data: Optional[dict[str, Any]] = None


class RecoveryContext(CamelModel):
	"""Why a run needs attention and what can be done about it."""
	issue: str
	options: list[RecoveryOption] = Field(default_factory=lambda: [RecoveryOption.RETRY, RecoveryOption.ABORT])
	failed_workflow_id: Optional[str] = None


class OrchestrationExecution(CamelModel):
	"""The persisted record of one orchestration run."""
	id: str
	project_id: str
	project_path: str
	status: OrchestrationStatus = OrchestrationStatus.RUNNING
	config: OrchestrationConfig = Field(default_factory=OrchestrationConfig)
	current_phase: OrchestrationPhase = OrchestrationPhase.DESIGN
	batches: BatchTracking = Field(default_factory=BatchTracking)
	executions: OrchestrationExecutions = Field(default_factory=OrchestrationExecutions)
	started_at: str = Field(default_factory=lambda: datetime.now().isoformat())
	updated_at: str = Field(default_factory=lambda: datetime.now().isoformat())
	completed_at: Optional[str] = None
	decision_log: list[DecisionLogEntry] = Field(default_factory=list)
	total_cost_usd: float = 0.0
	error_message: Optional[str] = None
	recovery_context: Optional[RecoveryContext] = None

	@property
	def is_terminal(self) -> bool:
		return self.status in TERMINAL_STATUSES

	def current_workflow_id(self) -> Optional[str]:
		"""Session id bound to the current step (or current batch during implement)."""
		if self.current_phase == OrchestrationPhase.IMPLEMENT:
			item = self.batches.current_item()
			return item.workflow_execution_id if item else None
		if self.current_phase == OrchestrationPhase.COMPLETE:
			return None
		return getattr(self.executions, self.current_phase.value)


class WorkflowSnapshot(CamelModel):
	"""Point-in-time view of an external session."""
	id: str
	status: WorkflowStatus
	last_activity_at: Optional[float] = Field(default=None, description="Epoch seconds of the last observed activity")
	session_id: Optional[str] = None
	cost_usd: float = 0.0
	error: Optional[str] = None


class ProjectStatus(CamelModel):
	"""Artifact summary reported by the project's status command."""
	phase: Optional[str] = None
	has_spec: bool = False
	has_plan: bool = False
	has_tasks: bool = False
	tasks_total: int = 0
	tasks_complete: int = 0


class HealingStatus(str, Enum):
	FIXED = "fixed"
	PARTIAL = "partial"
	FAILED = "failed"


class HealingResult(CamelModel):
	"""Structured answer a healer session is asked to return."""
	status: HealingStatus = Field(description="fixed: all tasks done, partial: some done, failed: blocked")
	tasks_completed: list[str] = Field(default_factory=list, description="Task IDs completed by the healer")
	tasks_remaining: list[str] = Field(default_factory=list, description="Task IDs still incomplete")
	fix_applied: Optional[str] = Field(default=None, description="What was changed to fix the failure")
	blocker_reason: Optional[str] = Field(default=None, description="Why the remaining tasks could not be done")
