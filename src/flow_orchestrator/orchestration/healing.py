"""
Auto-Healing - recovers a failed implement batch with a secondary session.

Flow:
1. capture_failure_context() gathers the error, stderr, completed tasks and
   the tail of the failed session's transcript.
2. build_healer_prompt() turns that into a recovery prompt.
3. spawn_healer() runs the healer (forking the failed session when possible)
   and returns its structured HealingResult.

attempt_heal() skips the healer entirely when the tasks file already shows
every task in the batch as done.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .batch_planner import verify_batch_task_completion
from .models import HealingResult, HealingStatus
from .sessions import HealerClient, HealerResponse
from .store import read_json

logger = logging.getLogger(__name__)

STDERR_LIMIT = 2000
TRANSCRIPT_LIMIT = 3000
TRANSCRIPT_MESSAGES = 10
MESSAGE_LIMIT = 500
UNKNOWN_FAILURE = "Unknown failure"


@dataclass
class FailureContext:
	"""What the healer needs to know about a failed batch."""
	section: str
	attempted_task_ids: list[str]
	error_message: str = UNKNOWN_FAILURE
	stderr: str = ""
	completed_task_ids: list[str] = field(default_factory=list)
	failed_task_ids: list[str] = field(default_factory=list)
	session_id: Optional[str] = None
	session_transcript: Optional[str] = None
	additional_context: Optional[str] = None


def _message_text(message: dict) -> str:
	content = message.get("content")
	if isinstance(content, list):
		return "\n".join(
			part.get("text", "") for part in content
			if isinstance(part, dict) and part.get("type") == "text"
		)
	return str(content) if content else ""


def read_session_transcript(
	session_id: Optional[str],
	claude_projects_dir: Optional[Path] = None,
	max_messages: int = TRANSCRIPT_MESSAGES,
) -> Optional[str]:
	"""Last `max_messages` user/assistant messages from ~/.claude/projects/*/<session>.jsonl."""
	if not session_id:
		return None
	projects_dir = claude_projects_dir or Path.home() / ".claude" / "projects"
	if not projects_dir.is_dir():
		return None

	session_file = next(projects_dir.glob(f"*/{session_id}.jsonl"), None)
	if session_file is None:
		logger.debug(f"No transcript found for session {session_id}")
		return None

	messages = []
	try:
		lines = session_file.read_text().splitlines()
	except OSError as e:
		logger.warning(f"Could not read transcript {session_file}: {e}")
		return None

	for line in lines:
		if not line.strip():
			continue
		try:
			event = json.loads(line)
		except json.JSONDecodeError:
			continue
		if not isinstance(event, dict) or event.get("type") not in ("user", "assistant"):
			continue
		text = _message_text(event.get("message") or {})
		if text:
			messages.append(f"[{event['type'].upper()}]: {text[:MESSAGE_LIMIT]}")

	if not messages:
		return None
	return "\n\n".join(messages[-max_messages:])


def capture_failure_context(
	project_path: str | Path,
	sessions_dir: Path,
	workflow_id: Optional[str],
	section: str,
	task_ids: list[str],
	additional_context: Optional[str] = None,
	claude_projects_dir: Optional[Path] = None,
) -> FailureContext:
	"""Collect failure details. Missing metadata degrades to 'Unknown failure'."""
	context = FailureContext(
		section=section,
		attempted_task_ids=list(task_ids),
		failed_task_ids=list(task_ids),
		additional_context=additional_context or None,
	)

	if workflow_id:
		metadata = read_json(Path(sessions_dir) / workflow_id / "metadata.json")
		if isinstance(metadata, dict):
			context.error_message = metadata.get("error") or metadata.get("stderr") or "Execution failed"
			context.stderr = metadata.get("stderr") or ""
			context.session_id = metadata.get("sessionId")

	completed, incomplete = verify_batch_task_completion(project_path, task_ids)
	context.completed_task_ids = completed
	context.failed_task_ids = incomplete

	context.session_transcript = read_session_transcript(context.session_id, claude_projects_dir)
	return context


def build_healer_prompt(context: FailureContext) -> str:
	"""Deterministic recovery prompt for a failed batch."""
	completed = ", ".join(context.completed_task_ids) if context.completed_task_ids else "None"
	remaining = ", ".join(context.failed_task_ids)

	sections = [
		"# Auto-Heal Request",
		"",
		"A batch implementation failed and needs recovery. Your task is to complete the remaining tasks.",
		"",
		"## Failure Details",
		"",
		f"**Section**: {context.section}",
		f"**Error**: {context.error_message}",
	]
	if context.stderr:
		sections.extend(["", "**Stderr**:", "```", context.stderr[:STDERR_LIMIT], "```"])
	if context.session_transcript:
		sections.extend([
			"",
			"## Recent Session Transcript",
			"",
			"The following is the last portion of the conversation before the failure:",
			"",
			"```",
			context.session_transcript[:TRANSCRIPT_LIMIT],
			"```",
		])
	sections.extend([
		"",
		"## Task Status",
		"",
		f"**Attempted Tasks**: {', '.join(context.attempted_task_ids)}",
		f"**Completed Before Failure**: {completed}",
		f"**Tasks Needing Completion**: {remaining}",
		"",
		"## Instructions",
		"",
		"1. **Analyze the error** - Understand what went wrong",
		"2. **Fix the root cause** - Address the underlying issue (missing file, syntax error, etc.)",
		"3. **Complete remaining tasks** - Implement the tasks listed above that weren't completed",
		"4. **Verify fixes** - Ensure tests pass and no new errors are introduced",
		"",
		f"Focus ONLY on the remaining tasks: {remaining}",
		"Do NOT re-implement already completed tasks.",
	])
	if context.additional_context:
		sections.extend(["", "## Additional Context", "", context.additional_context])
	sections.extend([
		"",
		"## Expected Output",
		"",
		"Return a HealingResult with:",
		"- status: 'fixed' (all tasks complete), 'partial' (some tasks done), or 'failed' (couldn't fix)",
		"- tasksCompleted: Array of task IDs you completed",
		"- tasksRemaining: Array of task IDs still incomplete",
		"- fixApplied: Description of what you fixed (if applicable)",
		"- blockerReason: Why you couldn't complete (if failed/partial)",
	])
	return "\n".join(sections)


async def spawn_healer(
	client: HealerClient,
	project_path: str | Path,
	context: FailureContext,
	budget_usd: float = 2.0,
) -> HealerResponse:
	"""
	Run the healer, forking the failed session when its id is known.

	`success` says whether the healer call itself worked; check
	is_healing_successful() for whether the batch was actually fixed.
	"""
	prompt = build_healer_prompt(context)
	try:
		return await client.run_healer(
			str(project_path),
			prompt,
			session_id=context.session_id,
			budget_usd=budget_usd,
		)
	except Exception as e:
		logger.error(f"Healer call failed: {e}")
		return HealerResponse(success=False, error=str(e) or "Unknown error during healing")


async def attempt_heal(
	client: HealerClient,
	project_path: str | Path,
	sessions_dir: Path,
	workflow_id: Optional[str],
	section: str,
	task_ids: list[str],
	budget_usd: float = 2.0,
	additional_context: Optional[str] = None,
	session_id: Optional[str] = None,
) -> HealerResponse:
	"""Heal a failed batch, or report it fixed for free if the tasks are already done."""
	context = capture_failure_context(
		project_path,
		sessions_dir,
		workflow_id,
		section,
		task_ids,
		additional_context=additional_context,
	)
	if session_id:
		context.session_id = session_id

	if not context.failed_task_ids:
		logger.info(f"All tasks in '{section}' already complete, no healer needed")
		return HealerResponse(
			success=True,
			result=HealingResult(
				status=HealingStatus.FIXED,
				tasks_completed=context.completed_task_ids,
				tasks_remaining=[],
			),
		)

	logger.info(f"Spawning healer for '{section}' ({len(context.failed_task_ids)} tasks remaining)")
	return await spawn_healer(client, project_path, context, budget_usd)


def is_healing_successful(response: HealerResponse) -> bool:
	return response.success and response.result is not None and response.result.status == HealingStatus.FIXED


def is_healing_partial(response: HealerResponse) -> bool:
	return response.success and response.result is not None and response.result.status == HealingStatus.PARTIAL


def get_healing_summary(response: HealerResponse) -> str:
	"""One line describing the outcome."""
	if not response.success or response.result is None:
		return f"Error: {response.error or 'Unknown error'}"
	result = response.result
	if result.status == HealingStatus.FIXED:
		return f"Healed: completed {len(result.tasks_completed)} tasks"
	if result.status == HealingStatus.PARTIAL:
		return f"Partial: completed {len(result.tasks_completed)}, remaining {len(result.tasks_remaining)}"
	return f"Failed: {result.blocker_reason or 'Unknown reason'}"
