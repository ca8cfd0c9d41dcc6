"""Tests for step/record consistency checks."""

from flow_orchestrator.orchestration.models import (
	BatchStatus,
	OrchestrationConfig,
	OrchestrationExecution,
	OrchestrationPhase,
	OrchestrationStatus,
	Step,
	StepStatus,
)
from flow_orchestrator.orchestration.validation import Severity, validate_state

from tests.helpers import make_batches


def make_execution(**kwargs) -> OrchestrationExecution:
	values = {"id": "exec-1", "project_id": "proj", "project_path": "/tmp/proj"}
	values.update(kwargs)
	return OrchestrationExecution(**values)


class TestValidateState:
	"""Tests for validate_state()."""

	def test_consistent_state_is_valid(self):
		result = validate_state(Step.for_phase(OrchestrationPhase.DESIGN), make_execution())

		assert result.valid
		assert result.severity == Severity.NONE
		assert result.issues == []

	def test_missing_step_file_is_fine(self):
		assert validate_state(None, make_execution()).valid

	def test_index_mismatch_is_a_warning(self):
		step = Step(current=OrchestrationPhase.DESIGN, index=3, status=StepStatus.IN_PROGRESS)
		result = validate_state(step, make_execution())

		assert result.valid
		assert result.severity == Severity.WARNING
		assert result.warnings[0].code == "STEP_INDEX_MISMATCH"

	def test_phase_mismatch_is_a_warning(self):
		step = Step.for_phase(OrchestrationPhase.VERIFY)
		result = validate_state(step, make_execution())

		assert result.valid
		assert [i.code for i in result.issues] == ["STEP_PHASE_MISMATCH"]

	def test_complete_phase_ignores_step(self):
		execution = make_execution(current_phase=OrchestrationPhase.COMPLETE)
		assert validate_state(Step.for_phase(OrchestrationPhase.MERGE), execution).issues == []

	def test_heal_attempts_over_limit_is_an_error(self):
		execution = make_execution(
			current_phase=OrchestrationPhase.IMPLEMENT,
			config=OrchestrationConfig(max_heal_attempts=1),
			batches=make_batches(BatchStatus.FAILED, heal_attempts=2),
		)
		result = validate_state(None, execution)

		assert not result.valid
		assert result.errors[0].code == "INVALID_HEAL_ATTEMPTS"

	def test_pointer_out_of_bounds_is_an_error(self):
		execution = make_execution(batches=make_batches(BatchStatus.PENDING, current=4))
		result = validate_state(None, execution)

		assert not result.valid
		assert "BATCH_CURRENT_OUT_OF_BOUNDS" in result.summary()

	def test_total_mismatch_is_an_error(self):
		batches = make_batches(BatchStatus.PENDING)
		batches.total = 3
		assert not validate_state(None, make_execution(batches=batches)).valid

	def test_needs_attention_without_context_is_an_error(self):
		execution = make_execution(status=OrchestrationStatus.NEEDS_ATTENTION)
		result = validate_state(None, execution)
		assert [i.code for i in result.errors] == ["MISSING_RECOVERY_CONTEXT"]
