"""Orchestration module - Batch planning, decisions, state, healing, and the runner."""

from .batch_planner import plan_batches, plan_batches_for_project
from .decisions import Action, Decision, DecisionInput, decide
from .models import (
	BatchPlan,
	OrchestrationConfig,
	OrchestrationExecution,
	OrchestrationPhase,
	OrchestrationStatus,
	RecoveryOption,
)
from .runner import OrchestrationRunner, RunnerRegistry, SpawnIntentLock
from .sessions import ClaudeCliHealer, ClaudeCliSessionRunner, SessionStartError, SpecflowStatusSource
from .store import ExecutionStore

__all__ = [
	"Action",
	"BatchPlan",
	"ClaudeCliHealer",
	"ClaudeCliSessionRunner",
	"Decision",
	"DecisionInput",
	"ExecutionStore",
	"OrchestrationConfig",
	"OrchestrationExecution",
	"OrchestrationPhase",
	"OrchestrationRunner",
	"OrchestrationStatus",
	"RecoveryOption",
	"RunnerRegistry",
	"SessionStartError",
	"SpawnIntentLock",
	"SpecflowStatusSource",
	"decide",
	"plan_batches",
	"plan_batches_for_project",
]
