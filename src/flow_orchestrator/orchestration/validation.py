"""Consistency checks between the project's step and the orchestration record."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .models import (
	DONE_BATCH_STATUSES,
	OrchestrationExecution,
	OrchestrationPhase,
	OrchestrationStatus,
	STEP_INDEX_MAP,
	Step,
)


class Severity(str, Enum):
	NONE = "none"
	WARNING = "warning"
	ERROR = "error"


@dataclass
class ValidationIssue:
	"""A single consistency problem."""
	code: str
	message: str
	severity: Severity
	field: Optional[str] = None


@dataclass
class ValidationResult:
	valid: bool
	issues: list[ValidationIssue] = field(default_factory=list)
	severity: Severity = Severity.NONE

	@property
	def errors(self) -> list[ValidationIssue]:
		return [i for i in self.issues if i.severity == Severity.ERROR]

	@property
	def warnings(self) -> list[ValidationIssue]:
		return [i for i in self.issues if i.severity == Severity.WARNING]

	def summary(self) -> str:
		return "; ".join(f"{i.code}: {i.message}" for i in self.issues)


def validate_step(step: Step) -> list[ValidationIssue]:
	issues = []
	expected = STEP_INDEX_MAP.get(step.current)
	if expected is None:
		issues.append(ValidationIssue(
			code="INVALID_STEP",
			message=f"'{step.current.value}' is not a workflow step",
			severity=Severity.ERROR,
			field="step.current",
		))
	elif step.index != expected:
		issues.append(ValidationIssue(
			code="STEP_INDEX_MISMATCH",
			message=f"Step {step.current.value} has index {step.index}, expected {expected}",
			severity=Severity.WARNING,
			field="step.index",
		))
	return issues


def validate_execution(execution: OrchestrationExecution) -> list[ValidationIssue]:
	issues = []
	batches = execution.batches

	for position, item in enumerate(batches.items):
		if item.index != position:
			issues.append(ValidationIssue(
				code="BATCH_INDEX_MISMATCH",
				message=f"Batch at position {position} claims index {item.index}",
				severity=Severity.ERROR,
				field=f"batches.items[{position}].index",
			))
		if item.heal_attempts < 0 or item.heal_attempts > execution.config.max_heal_attempts:
			issues.append(ValidationIssue(
				code="INVALID_HEAL_ATTEMPTS",
				message=(
					f"Batch {position} has {item.heal_attempts} heal attempts "
					f"(max {execution.config.max_heal_attempts})"
				),
				severity=Severity.ERROR,
				field=f"batches.items[{position}].healAttempts",
			))

	if batches.items:
		all_done = all(item.status in DONE_BATCH_STATUSES for item in batches.items)
		in_bounds = 0 <= batches.current < len(batches.items)
		if not in_bounds and not all_done:
			issues.append(ValidationIssue(
				code="BATCH_CURRENT_OUT_OF_BOUNDS",
				message=f"Batch pointer {batches.current} outside {len(batches.items)} batches",
				severity=Severity.ERROR,
				field="batches.current",
			))
		if batches.total != len(batches.items):
			issues.append(ValidationIssue(
				code="BATCH_INDEX_MISMATCH",
				message=f"Batch total {batches.total} does not match {len(batches.items)} items",
				severity=Severity.ERROR,
				field="batches.total",
			))

	if execution.status == OrchestrationStatus.NEEDS_ATTENTION and execution.recovery_context is None:
		issues.append(ValidationIssue(
			code="MISSING_RECOVERY_CONTEXT",
			message="Execution needs attention but has no recovery context",
			severity=Severity.ERROR,
			field="recoveryContext",
		))

	return issues


def validate_cross_consistency(step: Optional[Step], execution: OrchestrationExecution) -> list[ValidationIssue]:
	if step is None or execution.current_phase == OrchestrationPhase.COMPLETE:
		return []
	if step.current != execution.current_phase:
		return [ValidationIssue(
			code="STEP_PHASE_MISMATCH",
			message=f"Project step is {step.current.value} but orchestration is at {execution.current_phase.value}",
			severity=Severity.WARNING,
			field="currentPhase",
		)]
	return []


def validate_state(step: Optional[Step], execution: OrchestrationExecution) -> ValidationResult:
	"""Run every check. Errors block automated progress; warnings are only logged."""
	issues: list[ValidationIssue] = []
	if step is not None:
		issues.extend(validate_step(step))
	issues.extend(validate_execution(execution))
	issues.extend(validate_cross_consistency(step, execution))

	if any(i.severity == Severity.ERROR for i in issues):
		severity = Severity.ERROR
	elif issues:
		severity = Severity.WARNING
	else:
		severity = Severity.NONE
	return ValidationResult(valid=severity != Severity.ERROR, issues=issues, severity=severity)
