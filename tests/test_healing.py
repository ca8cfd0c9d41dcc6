"""
Tests for auto-healing.

Tests:
- Failure context capture from session metadata and tasks.md
- Transcript extraction
- Healer prompt contents
- attempt_heal short-circuit and error handling
"""

import json

import pytest

from flow_orchestrator.orchestration.healing import (
	FailureContext,
	UNKNOWN_FAILURE,
	attempt_heal,
	build_healer_prompt,
	capture_failure_context,
	get_healing_summary,
	is_healing_partial,
	is_healing_successful,
	read_session_transcript,
	spawn_healer,
)
from flow_orchestrator.orchestration.models import HealingResult, HealingStatus
from flow_orchestrator.orchestration.sessions import HealerResponse

from tests.helpers import FakeHealer, make_project


def write_metadata(sessions_dir, workflow_id, **fields):
	session_dir = sessions_dir / workflow_id
	session_dir.mkdir(parents=True)
	(session_dir / "metadata.json").write_text(json.dumps(fields))


class TestCaptureFailureContext:
	"""Tests for capture_failure_context()."""

	def test_reads_metadata_and_tasks(self, tmp_path):
		project = make_project(tmp_path)
		sessions = tmp_path / "sessions"
		write_metadata(sessions, "wf-1", error="ImportError: no module", stderr="trace", sessionId="sess-1")

		context = capture_failure_context(
			project, sessions, "wf-1", "Setup", ["T001", "T002"],
			claude_projects_dir=tmp_path / "none",
		)

		assert context.error_message == "ImportError: no module"
		assert context.stderr == "trace"
		assert context.session_id == "sess-1"
		assert context.completed_task_ids == ["T001"]
		assert context.failed_task_ids == ["T002"]

	def test_missing_metadata_is_unknown_failure(self, tmp_path):
		project = make_project(tmp_path)
		context = capture_failure_context(project, tmp_path / "sessions", "wf-x", "Core", ["T003"])

		assert context.error_message == UNKNOWN_FAILURE
		assert context.session_id is None
		assert context.failed_task_ids == ["T003"]


class TestTranscript:
	"""Tests for read_session_transcript()."""

	def test_keeps_last_user_and_assistant_messages(self, tmp_path):
		session_dir = tmp_path / "projects" / "-home-proj"
		session_dir.mkdir(parents=True)
		events = [
			{"type": "system", "message": {"content": "ignored"}},
			{"type": "user", "message": {"content": "Implement T002"}},
			{"type": "assistant", "message": {"content": [{"type": "text", "text": "Working on it"}, {"type": "tool_use"}]}},
			{"type": "assistant", "message": {"content": "Tests failed"}},
		]
		lines = [json.dumps(e) for e in events] + ["not json", ""]
		(session_dir / "sess-1.jsonl").write_text("\n".join(lines))

		transcript = read_session_transcript("sess-1", tmp_path / "projects", max_messages=2)

		assert transcript == "[ASSISTANT]: Working on it\n\n[ASSISTANT]: Tests failed"

	def test_missing_session(self, tmp_path):
		assert read_session_transcript(None, tmp_path) is None
		assert read_session_transcript("nope", tmp_path) is None


class TestHealerPrompt:
	"""Tests for build_healer_prompt()."""

	def test_prompt_lists_tasks_and_error(self):
		context = FailureContext(
			section="Core",
			attempted_task_ids=["T003", "T004"],
			error_message="SyntaxError",
			completed_task_ids=["T003"],
			failed_task_ids=["T004"],
			additional_context="Use tabs",
		)
		prompt = build_healer_prompt(context)

		assert prompt.startswith("# Auto-Heal Request")
		assert "**Section**: Core" in prompt
		assert "**Error**: SyntaxError" in prompt
		assert "**Completed Before Failure**: T003" in prompt
		assert "Focus ONLY on the remaining tasks: T004" in prompt
		assert "## Additional Context" in prompt
		assert "**Stderr**" not in prompt

	def test_prompt_truncates_stderr(self):
		context = FailureContext(section="S", attempted_task_ids=["T001"], failed_task_ids=["T001"], stderr="x" * 5000)
		prompt = build_healer_prompt(context)

		assert "x" * 2000 in prompt
		assert "x" * 2001 not in prompt
		assert "**Completed Before Failure**: None" in prompt

	def test_prompt_is_deterministic(self):
		context = FailureContext(section="S", attempted_task_ids=["T001"], failed_task_ids=["T001"])
		assert build_healer_prompt(context) == build_healer_prompt(context)


class TestAttemptHeal:
	"""Tests for attempt_heal() and spawn_healer()."""

	@pytest.mark.asyncio
	async def test_already_complete_skips_healer(self, tmp_path):
		project = make_project(tmp_path)
		healer = FakeHealer()

		response = await attempt_heal(healer, project, tmp_path / "sessions", None, "Setup", ["T001"])

		assert healer.calls == []
		assert is_healing_successful(response)
		assert response.result.tasks_completed == ["T001"]

	@pytest.mark.asyncio
	async def test_runs_healer_with_budget_and_session(self, tmp_path):
		project = make_project(tmp_path)
		healer = FakeHealer()

		response = await attempt_heal(
			healer, project, tmp_path / "sessions", "wf-1", "Core", ["T003", "T004"],
			budget_usd=1.5, session_id="sess-9",
		)

		assert response.cost_usd == 0.5
		call = healer.calls[0]
		assert call["budget_usd"] == 1.5
		assert call["session_id"] == "sess-9"
		assert "T003, T004" in call["prompt"]

	@pytest.mark.asyncio
	async def test_healer_exception_becomes_failed_response(self, tmp_path):
		class BrokenHealer:
			async def run_healer(self, *args, **kwargs):
				raise RuntimeError("cli missing")

		context = FailureContext(section="S", attempted_task_ids=["T001"], failed_task_ids=["T001"])
		response = await spawn_healer(BrokenHealer(), tmp_path, context)

		assert not response.success
		assert response.error == "cli missing"
		assert get_healing_summary(response) == "Error: cli missing"


class TestHealingOutcome:
	"""Tests for outcome helpers."""

	def test_partial(self):
		response = HealerResponse(
			success=True,
			result=HealingResult(status=HealingStatus.PARTIAL, tasks_completed=["T001"], tasks_remaining=["T002"]),
		)
		assert is_healing_partial(response)
		assert not is_healing_successful(response)
		assert get_healing_summary(response) == "Partial: completed 1, remaining 1"

	def test_failed_summary(self):
		response = HealerResponse(
			success=True,
			result=HealingResult(status=HealingStatus.FAILED, blocker_reason="needs credentials"),
		)
		assert get_healing_summary(response) == "Failed: needs credentials"
