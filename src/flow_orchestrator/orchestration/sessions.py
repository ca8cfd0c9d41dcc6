"""
External collaborators - agent sessions, project status, project registry.

The orchestration core only talks to these through the Protocols below.
Production implementations wrap the `claude` and `specflow` CLIs with asyncio
subprocesses; tests substitute in-memory fakes.

Session bookkeeping lives in <sessions_dir>/<id>/:
- metadata.json   status, cost, error text, claude session id, pid
- output.log      raw stream-json output; its mtime is the activity signal
"""

import asyncio
import json
import logging
import os
import signal
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional, Protocol

from pydantic import ValidationError

from ..config import Config
from .models import HealingResult, ProjectStatus, WorkflowSnapshot, WorkflowStatus
from .store import atomic_write_json, read_json

logger = logging.getLogger(__name__)

STATUS_TIMEOUT_SECONDS = 30
DEFAULT_SESSION_TIMEOUT = 600.0
STREAM_CHUNK_BYTES = 64 * 1024


class SessionStartError(Exception):
	"""Raised when an external session cannot be started."""
	pass


# --- interfaces ----------------------------------------------------------------


class SessionRunner(Protocol):
	"""Starts and observes long-running agent sessions."""

	async def start(self, project_path: str, skill: str, context: Optional[str] = None) -> WorkflowSnapshot:
		...

	async def status(self, workflow_id: str) -> Optional[WorkflowSnapshot]:
		...

	async def resume(self, workflow_id: str, answers: dict[str, str]) -> Optional[WorkflowSnapshot]:
		...

	async def cancel(self, workflow_id: str) -> bool:
		...


@dataclass
class HealerResponse:
	"""Raw outcome of one healer call."""
	success: bool
	result: Optional[HealingResult] = None
	cost_usd: float = 0.0
	duration_seconds: float = 0.0
	session_id: Optional[str] = None
	error: Optional[str] = None


class HealerClient(Protocol):
	"""Runs a single blocking healer session and returns its structured answer."""

	async def run_healer(
		self,
		project_path: str,
		prompt: str,
		session_id: Optional[str] = None,
		budget_usd: Optional[float] = None,
	) -> HealerResponse:
		...


class StatusSource(Protocol):
	async def status(self, project_path: str) -> Optional[ProjectStatus]:
		...


class ProjectRegistry(Protocol):
	def get_path(self, project_id: str) -> Optional[str]:
		...


# --- claude CLI ----------------------------------------------------------------


def build_claude_args(
	prompt: str,
	output_format: str = "json",
	resume_session_id: Optional[str] = None,
	fork_session: bool = False,
	model: Optional[str] = None,
	max_budget_usd: Optional[float] = None,
	json_schema: Optional[dict] = None,
) -> list[str]:
	"""Arguments for a non-interactive `claude -p` run."""
	args = ["-p", prompt, "--output-format", output_format, "--dangerously-skip-permissions"]
	if output_format == "stream-json":
		args.append("--verbose")
	if resume_session_id:
		args.extend(["--resume", resume_session_id])
		if fork_session:
			args.append("--fork-session")
	if model:
		args.extend(["--model", model])
	if max_budget_usd is not None:
		args.extend(["--max-budget-usd", f"{max_budget_usd:g}"])
	if json_schema is not None:
		args.extend(["--json-schema", json.dumps(json_schema)])
	return args


def _kill(process: asyncio.subprocess.Process) -> None:
	try:
		process.kill()
	except ProcessLookupError:
		pass


def _pid_alive(pid: Optional[int]) -> bool:
	if not pid:
		return False
	try:
		os.kill(pid, 0)
	except ProcessLookupError:
		return False
	except PermissionError:
		return True
	return True


class ClaudeCliSessionRunner:
	"""
	SessionRunner backed by `claude -p --output-format stream-json`.

	`start` returns as soon as the process is spawned; a watcher task follows
	the output stream and keeps metadata.json current. Sessions started by a
	previous process are still observable through their metadata and pid.
	"""

	def __init__(
		self,
		sessions_dir: Path,
		claude_binary: str = "claude",
		model: Optional[str] = None,
		timeout: float = DEFAULT_SESSION_TIMEOUT,
	):
		self.sessions_dir = Path(sessions_dir)
		self.claude_binary = claude_binary
		self.model = model
		self.timeout = timeout
		self._processes: dict[str, asyncio.subprocess.Process] = {}
		self._watchers: dict[str, asyncio.Task] = {}

	@classmethod
	def from_config(cls, config: Config) -> "ClaudeCliSessionRunner":
		return cls(
			config.sessions_dir,
			claude_binary=config.claude_binary,
			model=config.claude_model,
			timeout=config.spawn_timeout,
		)

	def _dir(self, workflow_id: str) -> Path:
		return self.sessions_dir / workflow_id

	def _read_metadata(self, workflow_id: str) -> Optional[dict]:
		data = read_json(self._dir(workflow_id) / "metadata.json")
		return data if isinstance(data, dict) else None

	def _write_metadata(self, workflow_id: str, **updates) -> dict:
		metadata = self._read_metadata(workflow_id) or {"id": workflow_id}
		metadata.update({k: v for k, v in updates.items() if v is not None})
		metadata["updatedAt"] = datetime.now().isoformat()
		atomic_write_json(self._dir(workflow_id) / "metadata.json", metadata)
		return metadata

	def _snapshot(self, workflow_id: str, metadata: dict) -> WorkflowSnapshot:
		log_path = self._dir(workflow_id) / "output.log"
		try:
			last_activity = log_path.stat().st_mtime
		except FileNotFoundError:
			last_activity = (self._dir(workflow_id) / "metadata.json").stat().st_mtime
		return WorkflowSnapshot(
			id=workflow_id,
			status=WorkflowStatus(metadata.get("status", WorkflowStatus.RUNNING.value)),
			last_activity_at=last_activity,
			session_id=metadata.get("sessionId"),
			cost_usd=float(metadata.get("costUsd") or 0.0),
			error=metadata.get("error"),
		)

	async def start(self, project_path: str, skill: str, context: Optional[str] = None) -> WorkflowSnapshot:
		"""Spawn a session running `/<skill> <context>` in the project directory."""
		prompt = f"/{skill}" + (f" {context}" if context else "")
		return await self._spawn(str(uuid.uuid4()), project_path, skill, prompt)

	async def _spawn(
		self,
		workflow_id: str,
		project_path: str,
		skill: str,
		prompt: str,
		resume_session_id: Optional[str] = None,
	) -> WorkflowSnapshot:
		previous = self._read_metadata(workflow_id)
		if previous is not None:
			for key in ("error", "stderr", "completedAt"):
				previous.pop(key, None)
			atomic_write_json(self._dir(workflow_id) / "metadata.json", previous)

		args = build_claude_args(
			prompt,
			output_format="stream-json",
			resume_session_id=resume_session_id,
			model=self.model,
		)

		try:
			process = await asyncio.create_subprocess_exec(
				self.claude_binary,
				*args,
				cwd=project_path,
				stdin=asyncio.subprocess.DEVNULL,
				stdout=asyncio.subprocess.PIPE,
				stderr=asyncio.subprocess.PIPE,
			)
		except (FileNotFoundError, PermissionError) as e:
			raise SessionStartError(f"Could not launch {self.claude_binary}: {e}") from e

		metadata = self._write_metadata(
			workflow_id,
			projectPath=str(project_path),
			skill=skill,
			status=WorkflowStatus.RUNNING.value,
			pid=process.pid,
			startedAt=datetime.now().isoformat(),
			timeoutSeconds=self.timeout,
		)
		self._processes[workflow_id] = process
		self._watchers[workflow_id] = asyncio.create_task(self._watch(workflow_id, process))
		logger.info(f"Started session {workflow_id} ({skill}) pid={process.pid}")
		return self._snapshot(workflow_id, metadata)

	async def _watch(self, workflow_id: str, process: asyncio.subprocess.Process) -> None:
		log_path = self._dir(workflow_id) / "output.log"
		result: dict = {}

		def handle_line(raw: bytes) -> None:
			try:
				event = json.loads(raw)
			except json.JSONDecodeError:
				return
			if not isinstance(event, dict):
				return
			if event.get("session_id") and "sessionId" not in result:
				result["sessionId"] = event["session_id"]
				self._write_metadata(workflow_id, sessionId=event["session_id"])
			if event.get("type") == "result":
				result.update(event)

		async def consume_stdout() -> None:
			# stream-json lines can be far longer than StreamReader's line limit
			pending = b""
			with open(log_path, "ab") as log:
				while True:
					chunk = await process.stdout.read(STREAM_CHUNK_BYTES)
					if not chunk:
						break
					log.write(chunk)
					log.flush()
					*lines, pending = (pending + chunk).split(b"\n")
					for line in lines:
						handle_line(line)
			if pending.strip():
				handle_line(pending)

		stderr_task = asyncio.create_task(process.stderr.read())
		try:
			await asyncio.wait_for(consume_stdout(), timeout=self.timeout)
			await process.wait()
			stderr = (await stderr_task).decode(errors="replace")
		except asyncio.TimeoutError:
			stderr_task.cancel()
			_kill(process)
			await process.wait()
			self._write_metadata(
				workflow_id,
				status=WorkflowStatus.FAILED.value,
				error=f"Session timed out after {self.timeout:g}s",
				completedAt=datetime.now().isoformat(),
			)
			logger.warning(f"Session {workflow_id} timed out")
			return
		except asyncio.CancelledError:
			stderr_task.cancel()
			_kill(process)
			raise
		except Exception as e:
			stderr_task.cancel()
			_kill(process)
			await process.wait()
			self._write_metadata(
				workflow_id,
				status=WorkflowStatus.FAILED.value,
				error=f"Lost session output: {e}",
				completedAt=datetime.now().isoformat(),
			)
			logger.error(f"Session {workflow_id} watcher failed: {e}")
			return
		finally:
			self._processes.pop(workflow_id, None)
			self._watchers.pop(workflow_id, None)

		metadata = self._read_metadata(workflow_id) or {}
		if metadata.get("status") == WorkflowStatus.CANCELLED.value:
			return

		failed = process.returncode != 0 or result.get("is_error")
		error = None
		if failed:
			error = result.get("result") or stderr.strip()[-500:] or f"claude exited with code {process.returncode}"
		self._write_metadata(
			workflow_id,
			status=(WorkflowStatus.FAILED if failed else WorkflowStatus.COMPLETED).value,
			costUsd=result.get("total_cost_usd", result.get("cost_usd")),
			error=error,
			stderr=stderr[-4000:] if stderr else None,
			completedAt=datetime.now().isoformat(),
		)
		logger.info(f"Session {workflow_id} finished: {'failed' if failed else 'completed'}")

	async def status(self, workflow_id: str) -> Optional[WorkflowSnapshot]:
		"""Current status, or None when no record of the session exists."""
		metadata = self._read_metadata(workflow_id)
		if metadata is None:
			return None
		running = metadata.get("status") == WorkflowStatus.RUNNING.value
		if running and workflow_id not in self._processes and not _pid_alive(metadata.get("pid")):
			metadata = self._write_metadata(
				workflow_id,
				status=WorkflowStatus.FAILED.value,
				error="Session process exited without reporting a result",
			)
		try:
			return self._snapshot(workflow_id, metadata)
		except (ValueError, OSError) as e:
			logger.warning(f"Unreadable session metadata for {workflow_id}: {e}")
			return None

	async def resume(self, workflow_id: str, answers: dict[str, str]) -> Optional[WorkflowSnapshot]:
		"""Continue a session with the user's answers, under the same workflow id."""
		metadata = self._read_metadata(workflow_id)
		if metadata is None or not metadata.get("sessionId"):
			return None
		prompt = "\n".join(f"{question}: {answer}" for question, answer in answers.items())
		return await self._spawn(
			workflow_id,
			metadata["projectPath"],
			metadata.get("skill", ""),
			prompt,
			resume_session_id=metadata["sessionId"],
		)

	async def cancel(self, workflow_id: str) -> bool:
		"""Best effort: signal the process and mark the session cancelled without waiting."""
		metadata = self._read_metadata(workflow_id)
		if metadata is None:
			return False
		process = self._processes.get(workflow_id)
		try:
			if process is not None and process.returncode is None:
				process.terminate()
			elif _pid_alive(metadata.get("pid")):
				os.kill(metadata["pid"], signal.SIGTERM)
		except ProcessLookupError:
			pass
		self._write_metadata(
			workflow_id,
			status=WorkflowStatus.CANCELLED.value,
			completedAt=datetime.now().isoformat(),
		)
		logger.info(f"Cancelled session {workflow_id}")
		return True

	async def shutdown(self) -> None:
		for task in list(self._watchers.values()):
			task.cancel()
		await asyncio.gather(*self._watchers.values(), return_exceptions=True)


class ClaudeCliHealer:
	"""HealerClient that runs one blocking `claude -p` call with a JSON schema."""

	def __init__(
		self,
		claude_binary: str = "claude",
		model: Optional[str] = "sonnet",
		timeout: float = DEFAULT_SESSION_TIMEOUT,
	):
		self.claude_binary = claude_binary
		self.model = model
		self.timeout = timeout

	@classmethod
	def from_config(cls, config: Config) -> "ClaudeCliHealer":
		return cls(config.claude_binary, model=config.claude_model, timeout=config.spawn_timeout)

	async def run_healer(
		self,
		project_path: str,
		prompt: str,
		session_id: Optional[str] = None,
		budget_usd: Optional[float] = None,
	) -> HealerResponse:
		args = build_claude_args(
			prompt,
			resume_session_id=session_id,
			fork_session=bool(session_id),
			model=self.model,
			max_budget_usd=budget_usd,
			json_schema=HealingResult.model_json_schema(by_alias=True),
		)
		started = time.monotonic()

		try:
			process = await asyncio.create_subprocess_exec(
				self.claude_binary,
				*args,
				cwd=project_path,
				stdin=asyncio.subprocess.DEVNULL,
				stdout=asyncio.subprocess.PIPE,
				stderr=asyncio.subprocess.PIPE,
			)
		except FileNotFoundError:
			logger.error("Claude CLI not found")
			return HealerResponse(success=False, error=f"{self.claude_binary} not found")

		try:
			stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
		except asyncio.TimeoutError:
			process.kill()
			await process.wait()
			logger.error(f"Healer timed out after {self.timeout:g}s")
			return HealerResponse(
				success=False,
				duration_seconds=time.monotonic() - started,
				error=f"Healer timed out after {self.timeout:g}s",
			)

		duration = time.monotonic() - started
		if process.returncode != 0:
			error = stderr.decode(errors="replace").strip() or f"claude exited with code {process.returncode}"
			logger.error(f"Healer failed: {error[:200]}")
			return HealerResponse(success=False, duration_seconds=duration, error=error)

		return parse_healer_output(stdout.decode(errors="replace"), duration)


def parse_healer_output(raw: str, duration: float = 0.0) -> HealerResponse:
	"""Turn `claude --output-format json` output into a HealerResponse."""
	try:
		payload = json.loads(raw)
	except json.JSONDecodeError as e:
		return HealerResponse(success=False, duration_seconds=duration, error=f"Unparseable healer output: {e}")
	if not isinstance(payload, dict):
		return HealerResponse(success=False, duration_seconds=duration, error="Healer output is not an object")

	cost = float(payload.get("total_cost_usd", payload.get("cost_usd")) or 0.0)
	session_id = payload.get("session_id")
	if payload.get("is_error"):
		return HealerResponse(
			success=False,
			cost_usd=cost,
			duration_seconds=duration,
			session_id=session_id,
			error=str(payload.get("result") or "Healer reported an error"),
		)

	structured = payload.get("structured_output")
	if structured is None:
		return HealerResponse(
			success=False,
			cost_usd=cost,
			duration_seconds=duration,
			session_id=session_id,
			error="Healer returned no structured output",
		)
	try:
		result = HealingResult.model_validate(structured)
	except ValidationError as e:
		return HealerResponse(
			success=False,
			cost_usd=cost,
			duration_seconds=duration,
			session_id=session_id,
			error=f"Invalid healer result: {e.error_count()} errors",
		)
	return HealerResponse(success=True, result=result, cost_usd=cost, duration_seconds=duration, session_id=session_id)


# --- specflow status --------------------------------------------------------------


def parse_project_status(payload: dict) -> ProjectStatus:
	"""Flatten `specflow status --json` output."""
	context = payload.get("context") or {}
	progress = payload.get("progress") or {}
	phase = payload.get("phase") or {}
	return ProjectStatus(
		phase=phase.get("name") if isinstance(phase, dict) else str(phase),
		has_spec=bool(context.get("hasSpec")),
		has_plan=bool(context.get("hasPlan")),
		has_tasks=bool(context.get("hasTasks")),
		tasks_total=int(progress.get("tasksTotal") or 0),
		tasks_complete=int(progress.get("tasksComplete") or 0),
	)


class SpecflowStatusSource:
	"""StatusSource backed by `specflow status --json`."""

	def __init__(self, binary: str = "specflow", timeout: float = STATUS_TIMEOUT_SECONDS):
		self.binary = binary
		self.timeout = timeout

	async def status(self, project_path: str) -> Optional[ProjectStatus]:
		try:
			process = await asyncio.create_subprocess_exec(
				self.binary, "status", "--json",
				cwd=project_path,
				stdout=asyncio.subprocess.PIPE,
				stderr=asyncio.subprocess.PIPE,
			)
			stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
		except asyncio.TimeoutError:
			process.kill()
			logger.warning(f"{self.binary} status timed out in {project_path}")
			return None
		except (FileNotFoundError, NotADirectoryError) as e:
			logger.warning(f"{self.binary} status unavailable: {e}")
			return None

		if process.returncode != 0:
			logger.warning(f"{self.binary} status failed: {stderr.decode(errors='replace').strip()[:200]}")
			return None
		try:
			payload = json.loads(stdout)
		except json.JSONDecodeError:
			logger.warning(f"{self.binary} status returned invalid JSON")
			return None
		return parse_project_status(payload) if isinstance(payload, dict) else None


# --- project registry -------------------------------------------------------------


class JsonProjectRegistry:
	"""ProjectRegistry reading {"projects": {id: {"path": ...}}} from a JSON file."""

	def __init__(self, registry_file: Path):
		self.registry_file = Path(registry_file)

	def get_path(self, project_id: str) -> Optional[str]:
		data = read_json(self.registry_file)
		if not isinstance(data, dict):
			return None
		entry = (data.get("projects") or {}).get(project_id)
		if isinstance(entry, dict):
			return entry.get("path")
		if isinstance(entry, str):
			return entry
		return None
