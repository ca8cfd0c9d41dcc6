"""Shared test fixtures and helpers for flow-orchestrator tests."""

import asyncio
import time
from pathlib import Path
from typing import Callable, Optional
from unittest.mock import MagicMock

from flow_orchestrator.config import Config
from flow_orchestrator.orchestration.models import (
	BatchItem,
	BatchStatus,
	BatchTracking,
	HealingResult,
	HealingStatus,
	OrchestrationConfig,
	ProjectStatus,
	WorkflowSnapshot,
	WorkflowStatus,
)
from flow_orchestrator.orchestration.sessions import HealerResponse

SAMPLE_TASKS = """# Tasks

## Setup
- [x] T001 Create project skeleton
- [ ] T002 Add config loader [depends: T001]

## Core
- [ ] T003 Implement parser
- [ ] T004 Wire parser into CLI [after: T003]
"""


def make_config(tmp_path: Path, **overrides) -> Config:
	"""Config rooted under tmp_path with fast timings for tests."""
	config = Config(config_dir=tmp_path / "config", data_dir=tmp_path / "data")
	config.poll_interval = 0.01
	config.spawn_timeout = 5.0
	config.registry_file = tmp_path / "registry.json"
	for key, value in overrides.items():
		setattr(config, key, value)
	config.ensure_dirs()
	return config


def make_project(tmp_path: Path, tasks: Optional[str] = SAMPLE_TASKS, name: str = "project") -> Path:
	"""A project directory with specs/0001-feature/tasks.md."""
	project = tmp_path / name
	spec_dir = project / "specs" / "0001-feature"
	spec_dir.mkdir(parents=True, exist_ok=True)
	if tasks is not None:
		(spec_dir / "tasks.md").write_text(tasks)
	return project


def make_batches(*statuses: BatchStatus, current: int = 0, heal_attempts: int = 0) -> BatchTracking:
	items = [
		BatchItem(
			index=i,
			section=f"Section {i + 1}",
			task_ids=[f"T{i + 1:03d}"],
			status=status,
			heal_attempts=heal_attempts,
			workflow_execution_id=f"wf-{i}" if status != BatchStatus.PENDING else None,
		)
		for i, status in enumerate(statuses)
	]
	return BatchTracking(total=len(items), current=current, items=items)


def make_workflow(
	status: WorkflowStatus = WorkflowStatus.RUNNING,
	workflow_id: str = "wf-0",
	last_activity_at: Optional[float] = None,
	cost_usd: float = 0.0,
	error: Optional[str] = None,
) -> WorkflowSnapshot:
	return WorkflowSnapshot(
		id=workflow_id,
		status=status,
		last_activity_at=last_activity_at if last_activity_at is not None else time.time(),
		cost_usd=cost_usd,
		error=error,
	)


class FakeSessionRunner:
	"""
	In-memory SessionRunner.

	Sessions start as `running` (after `delay` seconds); tests (or `on_start`)
	move them along with finish(). Every start is recorded as
	(project_path, skill, context).
	"""

	def __init__(
		self,
		on_start: Optional[Callable[["FakeSessionRunner", str, str], None]] = None,
		delay: float = 0.0,
	):
		self.sessions: dict[str, WorkflowSnapshot] = {}
		self.started: list[tuple[str, str, Optional[str]]] = []
		self.cancelled: list[str] = []
		self.fail_start: Optional[Exception] = None
		self.on_start = on_start
		self.delay = delay
		self._counter = 0

	async def start(self, project_path: str, skill: str, context: Optional[str] = None) -> WorkflowSnapshot:
		if self.delay:
			await asyncio.sleep(self.delay)
		if self.fail_start is not None:
			raise self.fail_start
		self._counter += 1
		workflow_id = f"wf-{self._counter}"
		self.started.append((project_path, skill, context))
		self.sessions[workflow_id] = make_workflow(WorkflowStatus.RUNNING, workflow_id)
		if self.on_start is not None:
			self.on_start(self, workflow_id, skill)
		return self.sessions[workflow_id]

	async def status(self, workflow_id: str) -> Optional[WorkflowSnapshot]:
		return self.sessions.get(workflow_id)

	async def resume(self, workflow_id: str, answers: dict[str, str]) -> Optional[WorkflowSnapshot]:
		return self.sessions.get(workflow_id)

	async def cancel(self, workflow_id: str) -> bool:
		self.cancelled.append(workflow_id)
		if workflow_id in self.sessions:
			self.finish(workflow_id, WorkflowStatus.CANCELLED)
			return True
		return False

	def finish(
		self,
		workflow_id: str,
		status: WorkflowStatus = WorkflowStatus.COMPLETED,
		cost_usd: float = 0.0,
		error: Optional[str] = None,
	) -> None:
		self.sessions[workflow_id] = make_workflow(status, workflow_id, cost_usd=cost_usd, error=error)


class FakeHealer:
	"""HealerClient returning a canned response and recording prompts."""

	def __init__(self, response: Optional[HealerResponse] = None, delay: float = 0.0):
		self.response = response or HealerResponse(
			success=True,
			result=HealingResult(status=HealingStatus.FIXED, tasks_completed=["T001"]),
			cost_usd=0.5,
			session_id="healer-session",
		)
		self.calls: list[dict] = []
		self.delay = delay

	async def run_healer(
		self,
		project_path: str,
		prompt: str,
		session_id: Optional[str] = None,
		budget_usd: Optional[float] = None,
	) -> HealerResponse:
		self.calls.append({
			"project_path": project_path,
			"prompt": prompt,
			"session_id": session_id,
			"budget_usd": budget_usd,
		})
		if self.delay:
			await asyncio.sleep(self.delay)
		return self.response


class FakeStatusSource:
	def __init__(self, status: Optional[ProjectStatus] = None):
		self.project_status = status

	async def status(self, project_path: str) -> Optional[ProjectStatus]:
		return self.project_status


def fast_run_config(**overrides) -> OrchestrationConfig:
	"""Run config that goes straight to implement."""
	values = {"skip_design": True, "skip_analyze": True}
	values.update(overrides)
	return OrchestrationConfig(**values)


def capture_tools(config: MagicMock, register_fn: Callable) -> dict:
	"""Register tools on a mock MCP and return the captured tool functions.

	Args:
		config: Config object to pass to the registration function
		register_fn: The registration function (e.g., register_orchestration_tools)

	Returns:
		Dict mapping tool name to the tool function
	"""
	captured = {}

	class MockMCP:
		def tool(self):
			def decorator(fn):
				captured[fn.__name__] = fn
				return fn
			return decorator

	register_fn(MockMCP(), config)
	return captured
