"""
Tests for the file-backed execution store.

Tests:
- Run lifecycle and the one-active-run-per-project rule
- Phase transitions, merge gating and recovery
- Batch pointer operations
- Cost accounting and the decision log
- Atomic writes and the project step file
"""

import json

import pytest

from flow_orchestrator.orchestration.batch_planner import plan_batches
from flow_orchestrator.orchestration.models import (
	BatchStatus,
	OrchestrationConfig,
	OrchestrationPhase,
	OrchestrationStatus,
	RecoveryOption,
	StepStatus,
)
from flow_orchestrator.orchestration.store import (
	ExecutionStore,
	STEP_FILE,
	atomic_write,
	atomic_write_json,
	read_json,
	read_step,
	write_step,
)

from tests.helpers import SAMPLE_TASKS, fast_run_config, make_project


@pytest.fixture
def store(tmp_path):
	return ExecutionStore(tmp_path / "executions", tmp_path / "active")


@pytest.fixture
def project(tmp_path):
	return make_project(tmp_path)


def start_implement(store, project):
	"""A run sitting at implement with the sample plan's two batches."""
	execution = store.start("proj", project, fast_run_config(), batch_plan=plan_batches(SAMPLE_TASKS))
	assert execution is not None
	return execution


class TestAtomicFiles:
	"""Tests for atomic writes and tolerant reads."""

	def test_round_trip(self, tmp_path):
		path = tmp_path / "nested" / "state.json"
		atomic_write_json(path, {"a": 1})
		assert read_json(path) == {"a": 1}

	def test_failed_write_leaves_original(self, tmp_path):
		path = tmp_path / "state.json"
		atomic_write_json(path, {"a": 1})

		with pytest.raises(RuntimeError):
			with atomic_write(path) as f:
				f.write("{partial")
				raise RuntimeError("crash mid-write")

		assert read_json(path) == {"a": 1}
		assert [p.name for p in tmp_path.iterdir()] == ["state.json"]

	def test_corrupt_and_missing_read_as_none(self, tmp_path):
		bad = tmp_path / "bad.json"
		bad.write_text("{not json")
		assert read_json(bad) is None
		assert read_json(tmp_path / "missing.json") is None


class TestStepFile:
	"""Tests for .specflow/orchestration-state.json."""

	def test_write_then_read(self, tmp_path):
		write_step(tmp_path, OrchestrationPhase.VERIFY, StepStatus.IN_PROGRESS)
		step = read_step(tmp_path)

		assert step.current == OrchestrationPhase.VERIFY
		assert step.index == 3
		assert step.status == StepStatus.IN_PROGRESS

	def test_write_preserves_other_keys(self, tmp_path):
		path = tmp_path / STEP_FILE
		path.parent.mkdir(parents=True)
		path.write_text(json.dumps({"project": {"name": "demo"}, "orchestration": {"extra": 1}}))

		write_step(tmp_path, OrchestrationPhase.DESIGN, StepStatus.COMPLETE)
		data = json.loads(path.read_text())

		assert data["project"] == {"name": "demo"}
		assert data["orchestration"]["extra"] == 1
		assert data["orchestration"]["step"]["status"] == "complete"

	def test_missing_or_malformed(self, tmp_path):
		assert read_step(tmp_path) is None
		path = tmp_path / STEP_FILE
		path.parent.mkdir(parents=True)
		path.write_text(json.dumps({"orchestration": {"step": {"current": "nonsense"}}}))
		assert read_step(tmp_path) is None


class TestLifecycle:
	"""Tests for starting and ending runs."""

	def test_start_creates_record_and_active_pointer(self, store, project):
		execution = store.start("proj", project)

		assert execution.status == OrchestrationStatus.RUNNING
		assert execution.current_phase == OrchestrationPhase.DESIGN
		assert execution.decision_log[0].decision == "start"
		assert store.get_active("proj").id == execution.id
		assert store.get(execution.id) == execution

	def test_start_honours_skip_flags(self, store, project):
		execution = store.start("proj", project, fast_run_config())
		assert execution.current_phase == OrchestrationPhase.IMPLEMENT

	def test_second_start_for_same_project_is_rejected(self, store, project):
		first = store.start("proj", project)
		second = store.start("proj", project)

		assert second is None
		assert store.get_active("proj").id == first.id
		assert len(store.list_executions("proj")) == 1

	def test_start_allowed_after_terminal(self, store, project):
		first = store.start("proj", project)
		store.cancel(first.id)

		second = store.start("proj", project)
		assert second is not None
		assert store.get_active("proj").id == second.id

	def test_other_projects_are_independent(self, store, project):
		assert store.start("a", project) is not None
		assert store.start("b", project) is not None

	def test_pause_and_resume(self, store, project):
		execution = store.start("proj", project)

		assert store.resume(execution.id) is None
		assert store.pause(execution.id).status == OrchestrationStatus.PAUSED
		assert store.pause(execution.id) is None
		assert store.resume(execution.id).status == OrchestrationStatus.RUNNING

	def test_terminal_runs_are_frozen(self, store, project):
		execution = store.start("proj", project)
		done = store.fail(execution.id, "boom")

		assert done.error_message == "boom"
		assert done.completed_at is not None
		assert store.get_active("proj") is None
		for op in (store.pause, store.cancel, store.complete):
			assert op(execution.id) is None
		assert store.fail(execution.id, "again") is None
		assert store.get(execution.id).error_message == "boom"

	def test_every_mutation_appends_one_log_entry(self, store, project):
		execution = store.start("proj", project)
		store.pause(execution.id)
		store.resume(execution.id)
		store.complete(execution.id)

		log = [entry.decision for entry in store.get(execution.id).decision_log]
		assert log == ["start", "pause", "resume", "complete"]

	def test_rejected_mutation_leaves_record_untouched(self, store, project):
		execution = store.start("proj", project)
		before = store.get(execution.id)

		assert store.trigger_merge(execution.id) is None
		assert store.get(execution.id) == before

	def test_unknown_id(self, store):
		assert store.get("missing") is None
		assert store.pause("missing") is None
		assert store.snapshot("missing") is None

	def test_list_executions_newest_first(self, store, project):
		first = store.start("proj", project)
		store.cancel(first.id)
		second = store.start("proj", project)

		assert [e.id for e in store.list_executions()] == [second.id, first.id]
		assert store.list_executions("other") == []

	def test_snapshot_uses_camel_case(self, store, project):
		execution = store.start("proj", project)
		snapshot = store.snapshot(execution.id)

		assert snapshot["projectId"] == "proj"
		assert snapshot["currentPhase"] == "design"
		assert snapshot["decisionLog"][0]["decision"] == "start"


class TestTransitions:
	"""Tests for phase transitions and merge gating."""

	def test_transition_writes_next_step(self, store, project):
		execution = store.start("proj", project)
		moved = store.transition_to_next_phase(execution.id)

		assert moved.current_phase == OrchestrationPhase.ANALYZE
		assert read_step(project).current == OrchestrationPhase.ANALYZE
		assert read_step(project).status == StepStatus.NOT_STARTED

	def test_transition_into_merge_waits(self, store, project):
		execution = store.start("proj", project, OrchestrationConfig(skip_design=True, skip_analyze=True, skip_implement=True))
		assert execution.current_phase == OrchestrationPhase.VERIFY

		waiting = store.transition_to_next_phase(execution.id)
		assert waiting.status == OrchestrationStatus.WAITING_MERGE
		assert waiting.current_phase == OrchestrationPhase.MERGE
		assert store.transition_to_next_phase(execution.id) is None

		merging = store.trigger_merge(execution.id)
		assert merging.status == OrchestrationStatus.RUNNING
		assert merging.decision_log[-1].decision == "merge_triggered"

	def test_auto_merge_goes_straight_to_merge(self, store, project):
		config = OrchestrationConfig(skip_design=True, skip_analyze=True, skip_implement=True, auto_merge=True)
		execution = store.start("proj", project, config)

		moved = store.transition_to_next_phase(execution.id)
		assert moved.status == OrchestrationStatus.RUNNING
		assert moved.current_phase == OrchestrationPhase.MERGE

	def test_transition_after_merge_completes(self, store, project):
		config = OrchestrationConfig(skip_design=True, skip_analyze=True, skip_implement=True, auto_merge=True)
		execution = store.start("proj", project, config)
		store.transition_to_next_phase(execution.id)

		done = store.transition_to_next_phase(execution.id)
		assert done.status == OrchestrationStatus.COMPLETED
		assert done.current_phase == OrchestrationPhase.COMPLETE
		assert store.get_active("proj") is None

	def test_go_back_to_step_clears_later_work(self, store, project):
		execution = start_implement(store, project)
		store.link_workflow_execution(execution.id, "wf-1")

		rewound = store.go_back_to_step(execution.id, OrchestrationPhase.DESIGN)

		assert rewound.current_phase == OrchestrationPhase.DESIGN
		assert rewound.batches.items == []
		assert rewound.executions.implement == []
		assert read_step(project).current == OrchestrationPhase.DESIGN


class TestRecovery:
	"""Tests for needs-attention and the human recovery choices."""

	def test_needs_attention_records_context(self, store, project):
		execution = store.start("proj", project)
		flagged = store.set_needs_attention(execution.id, "stuck", [RecoveryOption.RETRY], "wf-9")

		assert flagged.status == OrchestrationStatus.NEEDS_ATTENTION
		assert flagged.recovery_context.issue == "stuck"
		assert flagged.recovery_context.failed_workflow_id == "wf-9"

	def test_recovery_requires_needs_attention(self, store, project):
		execution = store.start("proj", project)
		assert store.handle_recovery(execution.id, RecoveryOption.RETRY) is None

	def test_retry_resets_failed_batch(self, store, project):
		execution = start_implement(store, project)
		store.link_workflow_execution(execution.id, "wf-1")
		store.fail_batch(execution.id, "tests failed")
		store.set_needs_attention(execution.id, "Batch failed")

		retried = store.handle_recovery(execution.id, RecoveryOption.RETRY)
		item = retried.batches.items[0]

		assert retried.status == OrchestrationStatus.RUNNING
		assert retried.recovery_context is None
		assert item.status == BatchStatus.PENDING
		assert item.workflow_execution_id is None

	def test_retry_outside_implement_clears_session(self, store, project):
		execution = store.start("proj", project)
		store.link_workflow_execution(execution.id, "wf-1")
		store.set_needs_attention(execution.id, "Workflow failed")

		retried = store.handle_recovery(execution.id, "retry")

		assert retried.executions.design is None
		assert read_step(project).status == StepStatus.IN_PROGRESS

	def test_skip_moves_to_next_phase(self, store, project):
		execution = store.start("proj", project)
		store.set_needs_attention(execution.id, "stuck")

		skipped = store.handle_recovery(execution.id, RecoveryOption.SKIP)
		assert skipped.current_phase == OrchestrationPhase.ANALYZE
		assert skipped.decision_log[-1].decision == "recovery_skip"

	def test_abort_cancels(self, store, project):
		execution = store.start("proj", project)
		store.set_needs_attention(execution.id, "stuck")

		aborted = store.handle_recovery(execution.id, RecoveryOption.ABORT)
		assert aborted.status == OrchestrationStatus.CANCELLED
		assert store.get_active("proj") is None


class TestBatches:
	"""Tests for the batch pointer."""

	def test_link_marks_current_batch_running(self, store, project):
		execution = start_implement(store, project)
		linked = store.link_workflow_execution(execution.id, "wf-1")

		assert linked.batches.items[0].status == BatchStatus.RUNNING
		assert linked.batches.items[0].workflow_execution_id == "wf-1"
		assert linked.executions.implement == ["wf-1"]

	def test_complete_batch_moves_pointer(self, store, project):
		execution = start_implement(store, project)
		store.link_workflow_execution(execution.id, "wf-1")

		done = store.complete_batch(execution.id)
		assert done.batches.items[0].status == BatchStatus.COMPLETED
		assert done.batches.current == 1
		assert store.complete_batch(execution.id).batches.current == 1

	def test_pointer_never_passes_last_batch(self, store, project):
		execution = start_implement(store, project)
		store.complete_batch(execution.id)
		store.complete_batch(execution.id)
		final = store.get(execution.id)

		assert final.batches.current == 1
		assert final.batches.all_done()
		assert store.advance_batch(execution.id) is None

	def test_heal_requires_failed_batch(self, store, project):
		execution = start_implement(store, project)
		assert store.heal_batch(execution.id, "healer-1") is None

		store.fail_batch(execution.id, "boom")
		store.increment_heal_attempt(execution.id)
		healed = store.heal_batch(execution.id, "healer-1")

		assert healed.batches.items[0].status == BatchStatus.HEALED
		assert healed.batches.items[0].heal_attempts == 1
		assert healed.batches.items[0].healer_execution_id == "healer-1"
		assert healed.batches.current == 1

	def test_can_heal_batch(self, store, project):
		execution = start_implement(store, project)
		assert store.can_heal_batch(execution.id)
		store.increment_heal_attempt(execution.id)
		assert not store.can_heal_batch(execution.id)

	def test_initialize_batches_only_once(self, store, project):
		execution = store.start("proj", project, fast_run_config())
		plan = plan_batches(SAMPLE_TASKS)

		assert store.initialize_batches(execution.id, plan).batches.total == 2
		assert store.initialize_batches(execution.id, plan) is None


class TestCost:
	"""Tests for cost accounting."""

	def test_add_cost_accumulates(self, store, project):
		execution = store.start("proj", project)
		store.add_cost(execution.id, 1.25)
		store.add_cost(execution.id, 0.75, source="healer")

		assert store.get(execution.id).total_cost_usd == pytest.approx(2.0)

	def test_session_cost_counted_once(self, store, project):
		execution = store.start("proj", project)
		store.add_cost(execution.id, 3.0, workflow_id="wf-1")

		assert store.add_cost(execution.id, 3.0, workflow_id="wf-1") is None
		assert store.get(execution.id).total_cost_usd == pytest.approx(3.0)

	def test_zero_cost_is_ignored(self, store, project):
		execution = store.start("proj", project)
		assert store.add_cost(execution.id, 0) is None

	def test_budget_exceeded(self, store, project):
		execution = store.start("proj", project)
		assert not store.is_budget_exceeded(execution.id)
		store.add_cost(execution.id, 50.0)
		assert store.is_budget_exceeded(execution.id)

	def test_log_decision(self, store, project):
		execution = store.start("proj", project)
		logged = store.log_decision(execution.id, "note", "Something happened", {"k": "v"})
		assert logged.decision_log[-1].data == {"k": "v"}
