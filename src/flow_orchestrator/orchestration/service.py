"""
Orchestration service - wires the store, session adapters and runner registry.

The MCP tools and the CLI both go through this object so that a run started
from either surface is driven by the same RunnerRegistry.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from ..config import Config
from .models import OrchestrationConfig, OrchestrationExecution, OrchestrationStatus, RecoveryOption
from .runner import RunnerRegistry
from .sessions import (
	ClaudeCliHealer,
	ClaudeCliSessionRunner,
	HealerClient,
	JsonProjectRegistry,
	ProjectRegistry,
	SessionRunner,
	SpecflowStatusSource,
	StatusSource,
)
from .store import ExecutionStore

logger = logging.getLogger(__name__)


class StartRejected(Exception):
	"""A run could not be started; the message says why."""
	pass


@dataclass
class OrchestrationService:
	config: Config
	store: ExecutionStore
	sessions: SessionRunner
	healer: HealerClient
	status_source: Optional[StatusSource] = None
	projects: Optional[ProjectRegistry] = None
	runners: RunnerRegistry = field(init=False)
	_reconciled: bool = field(default=False, init=False, repr=False)

	def __post_init__(self) -> None:
		self.runners = RunnerRegistry(
			self.config,
			self.store,
			self.sessions,
			self.healer,
			status_source=self.status_source,
		)

	@classmethod
	def from_config(cls, config: Config) -> "OrchestrationService":
		return cls(
			config=config,
			store=ExecutionStore.from_config(config),
			sessions=ClaudeCliSessionRunner.from_config(config),
			healer=ClaudeCliHealer.from_config(config),
			status_source=SpecflowStatusSource(config.specflow_binary),
			projects=JsonProjectRegistry(config.registry_file),
		)

	def resolve_project_path(self, project_id: str, project_path: Optional[str] = None) -> str:
		"""Explicit path first, then the project registry."""
		path = project_path or (self.projects.get_path(project_id) if self.projects else None)
		if not path:
			raise StartRejected(f"Unknown project: {project_id} (pass a project path)")
		if not Path(path).is_dir():
			raise StartRejected(f"Project path does not exist: {path}")
		return str(path)

	async def start(
		self,
		project_id: str,
		project_path: Optional[str] = None,
		run_config: Optional[OrchestrationConfig] = None,
		run: bool = True,
	) -> OrchestrationExecution:
		"""Create a run and (optionally) start its runner. Raises StartRejected."""
		path = self.resolve_project_path(project_id, project_path)
		execution = self.store.start(project_id, path, run_config)
		if execution is None:
			active = self.store.get_active(project_id)
			suffix = f": {active.id}" if active else ""
			raise StartRejected(f"Orchestration already in progress{suffix}")
		if run:
			await self.runners.start(execution.id)
		return execution

	async def resume(self, execution_id: str) -> Optional[OrchestrationExecution]:
		execution = self.store.resume(execution_id)
		if execution is not None:
			await self.runners.start(execution_id)
		return execution

	async def trigger_merge(self, execution_id: str) -> Optional[OrchestrationExecution]:
		execution = self.store.trigger_merge(execution_id)
		if execution is not None:
			await self.runners.start(execution_id)
		return execution

	async def recover(self, execution_id: str, action: RecoveryOption) -> Optional[OrchestrationExecution]:
		execution = self.store.handle_recovery(execution_id, action)
		if execution is not None and execution.status == OrchestrationStatus.RUNNING:
			await self.runners.start(execution_id)
		return execution

	async def cancel(self, execution_id: str) -> Optional[OrchestrationExecution]:
		return await self.runners.cancel(execution_id)

	async def ensure_reconciled(self) -> None:
		"""Pick up runs left behind by a previous process, once per service."""
		if self._reconciled:
			return
		self._reconciled = True
		await self.runners.reconcile()

	async def shutdown(self) -> None:
		await self.runners.shutdown()
		shutdown = getattr(self.sessions, "shutdown", None)
		if shutdown is not None:
			await shutdown()


# Singleton
_service: Optional[OrchestrationService] = None


def get_service(config: Config) -> OrchestrationService:
	"""Get or create the process-wide service."""
	global _service
	if _service is None:
		_service = OrchestrationService.from_config(config)
	return _service
