"""
Runner - the polling loop that drives one orchestration execution.

Each iteration:
1. Load the execution; stop on terminal or needs_attention, idle while
   paused or waiting for merge.
2. Fail on budget, block on consistency errors.
3. Resolve the live session for the current step (or batch), backing off
   when a linked session cannot be found.
4. decide(), record the decision, dispatch it through the handler table.
5. Sleep for the poll interval (or the backoff) and repeat.

RunnerRegistry owns one asyncio task per execution and reconciles runner
lock files left behind by a previous process.
"""

import asyncio
import json
import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Optional

from ..config import Config
from .batch_planner import get_batch_plan_summary, plan_batches_for_project
from .decisions import (
	Action,
	Decision,
	DecisionInput,
	DONE_STEP_STATUSES,
	build_batch_context,
	compute_backoff_ms,
	decide,
	get_skill_for_phase,
	is_phase_complete,
)
from .healing import attempt_heal, get_healing_summary, is_healing_successful
from .models import (
	BatchStatus,
	DONE_BATCH_STATUSES,
	OrchestrationExecution,
	OrchestrationPhase,
	OrchestrationStatus,
	Step,
	StepStatus,
	WorkflowSnapshot,
	WorkflowStatus,
)
from .sessions import HealerClient, HealerResponse, SessionRunner, StatusSource, _pid_alive
from .store import ExecutionStore, read_json, read_step, write_step
from .validation import Severity, validate_state

logger = logging.getLogger(__name__)

LOOKUP_TIMEOUT_SECONDS = 30
IDLE_POLL_MULTIPLIER = 2

Handler = Callable[[OrchestrationExecution, Decision, Optional[WorkflowSnapshot]], Awaitable[bool]]


def _binding(execution: OrchestrationExecution) -> tuple:
	"""Step, batch and session a spawn would attach to."""
	return execution.current_phase, execution.batches.current, execution.current_workflow_id()


def _step_slot(execution: OrchestrationExecution) -> tuple:
	return execution.current_phase, execution.batches.current


class SpawnIntentLock:
	"""
	At most one session start per execution at a time.

	An in-process asyncio.Lock is the fast path; a `<id>.spawn` marker created
	with O_EXCL covers other processes and survives crashes. Markers older
	than `stale_after` seconds are assumed abandoned and reclaimed.
	"""

	def __init__(self, lock_dir: Path, stale_after: float = 600.0):
		self.lock_dir = Path(lock_dir)
		self.lock_dir.mkdir(parents=True, exist_ok=True)
		self.stale_after = stale_after
		self._locks: dict[str, asyncio.Lock] = {}

	def _marker(self, execution_id: str) -> Path:
		return self.lock_dir / f"{execution_id}.spawn"

	def _claim_marker(self, execution_id: str) -> bool:
		path = self._marker(execution_id)
		for _ in range(2):
			try:
				fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
			except FileExistsError:
				try:
					age = time.time() - path.stat().st_mtime
				except FileNotFoundError:
					continue
				if age <= self.stale_after:
					return False
				logger.warning(f"Reclaiming stale spawn marker for {execution_id} ({age:.0f}s old)")
				path.unlink(missing_ok=True)
				continue
			with os.fdopen(fd, "w") as f:
				json.dump({"pid": os.getpid(), "claimedAt": datetime.now().isoformat()}, f)
			return True
		return False

	def is_held(self, execution_id: str) -> bool:
		lock = self._locks.get(execution_id)
		return (lock is not None and lock.locked()) or self._marker(execution_id).exists()

	@asynccontextmanager
	async def hold(self, execution_id: str) -> AsyncIterator[bool]:
		"""Yields True when the intent was claimed, False when someone else holds it."""
		lock = self._locks.setdefault(execution_id, asyncio.Lock())
		if lock.locked():
			yield False
			return
		async with lock:
			if not self._claim_marker(execution_id):
				yield False
				return
			try:
				yield True
			finally:
				self._marker(execution_id).unlink(missing_ok=True)


class OrchestrationRunner:
	"""Drives a single execution until it stops, fails, completes or needs a human."""

	def __init__(
		self,
		execution_id: str,
		store: ExecutionStore,
		sessions: SessionRunner,
		healer: HealerClient,
		config: Config,
		spawn_lock: SpawnIntentLock,
		status_source: Optional[StatusSource] = None,
		stop_event: Optional[asyncio.Event] = None,
		clock: Callable[[], datetime] = datetime.now,
	):
		self.execution_id = execution_id
		self.store = store
		self.sessions = sessions
		self.healer = healer
		self.config = config
		self.spawn_lock = spawn_lock
		self.status_source = status_source
		self.stop_event = stop_event or asyncio.Event()
		self.clock = clock

		self.iterations = 0
		self.lookup_failures = 0
		self.spawn_failures = 0
		self.stale_recoveries = 0
		self._stale_slot: Optional[tuple] = None
		self._last_recorded: Optional[tuple[Action, str]] = None

		self._handlers: dict[Action, Handler] = {
			Action.IDLE: self._handle_noop,
			Action.WAIT: self._handle_noop,
			Action.SPAWN: self._handle_spawn,
			Action.TRANSITION: self._handle_transition,
			Action.WAIT_MERGE: self._handle_wait_merge,
			Action.INITIALIZE_BATCHES: self._handle_initialize_batches,
			Action.ADVANCE_BATCH: self._handle_advance_batch,
			Action.FORCE_STEP_COMPLETE: self._handle_force_step_complete,
			Action.HEAL_BATCH: self._handle_heal_batch,
			Action.RECOVER_STALE: self._handle_recover_stale,
			Action.NEEDS_ATTENTION: self._handle_needs_attention,
			Action.COMPLETE: self._handle_complete,
			Action.FAIL: self._handle_fail,
		}
		missing = set(Action) - set(self._handlers)
		if missing:
			raise RuntimeError(f"No handler for actions: {sorted(a.value for a in missing)}")

	@property
	def poll_interval(self) -> float:
		return self.config.poll_interval

	# --- loop ---

	async def run(self) -> Optional[OrchestrationExecution]:
		"""Poll until the execution stops needing this runner."""
		logger.info(f"[{self.execution_id[:8]}] Runner started")
		max_iterations = self.config.max_iterations

		while not self.stop_event.is_set():
			if max_iterations is not None and self.iterations >= max_iterations:
				logger.info(f"[{self.execution_id[:8]}] Reached {max_iterations} iterations")
				break
			self.iterations += 1
			try:
				delay, keep_going = await self.run_once()
			except Exception as e:
				logger.exception(f"[{self.execution_id[:8]}] Iteration failed: {e}")
				self.lookup_failures += 1
				if self.lookup_failures >= self.config.max_lookup_failures:
					self.store.set_needs_attention(
						self.execution_id,
						f"Runner failed {self.lookup_failures} times in a row: {e}",
					)
					break
				delay, keep_going = compute_backoff_ms(self.lookup_failures) / 1000, True

			if not keep_going:
				break
			await self._sleep(delay)

		logger.info(f"[{self.execution_id[:8]}] Runner stopped after {self.iterations} iterations")
		return self.store.get(self.execution_id)

	async def _sleep(self, seconds: float) -> None:
		try:
			await asyncio.wait_for(self.stop_event.wait(), timeout=seconds)
		except asyncio.TimeoutError:
			pass

	def _failure_delay(self) -> float:
		failures = max(self.lookup_failures, self.spawn_failures)
		if failures:
			return compute_backoff_ms(failures) / 1000
		return self.poll_interval

	def _stale_count(self, execution: OrchestrationExecution) -> int:
		"""Stale restarts already spent on the current step (or batch)."""
		if self._stale_slot != _step_slot(execution):
			return 0
		return self.stale_recoveries

	async def run_once(self) -> tuple[float, bool]:
		"""One poll iteration. Returns (seconds to sleep, keep going)."""
		execution = self.store.get(self.execution_id)
		if execution is None:
			logger.warning(f"[{self.execution_id[:8]}] Execution record missing, stopping")
			return 0, False
		if execution.is_terminal or execution.status == OrchestrationStatus.NEEDS_ATTENTION:
			return 0, False
		if execution.status in (OrchestrationStatus.PAUSED, OrchestrationStatus.WAITING_MERGE):
			return self.poll_interval * IDLE_POLL_MULTIPLIER, True

		budget = execution.config.budget
		if execution.total_cost_usd >= budget.max_total:
			self.store.fail(
				self.execution_id,
				f"Budget exceeded: ${execution.total_cost_usd:.2f} of ${budget.max_total:.2f}",
			)
			return 0, False

		if execution.current_phase == OrchestrationPhase.COMPLETE:
			self.store.complete(self.execution_id)
			return 0, False

		file_step = read_step(execution.project_path)
		validation = validate_state(file_step, execution)
		if validation.severity == Severity.ERROR:
			self.store.set_needs_attention(self.execution_id, f"Inconsistent state: {validation.summary()}")
			return 0, False
		for issue in validation.warnings:
			logger.warning(f"[{self.execution_id[:8]}] {issue.code}: {issue.message}")

		workflow, found = await self._resolve_workflow(execution)
		if not found:
			self.lookup_failures += 1
			if self.lookup_failures >= self.config.max_lookup_failures:
				self.store.set_needs_attention(
					self.execution_id,
					f"Session {execution.current_workflow_id()} could not be found after {self.lookup_failures} attempts",
					failed_workflow_id=execution.current_workflow_id(),
				)
				return 0, False
			delay = compute_backoff_ms(self.lookup_failures) / 1000
			logger.warning(f"[{self.execution_id[:8]}] Session lookup failed, retrying in {delay:g}s")
			return delay, True
		self.lookup_failures = 0

		if workflow is not None and workflow.status in (WorkflowStatus.COMPLETED, WorkflowStatus.FAILED):
			execution = self._account_cost(execution, workflow)

		step = await self._resolve_step(execution, file_step, workflow)
		decision = decide(DecisionInput(
			active=True,
			step=step,
			config=execution.config,
			batches=execution.batches,
			workflow=workflow,
			total_cost_usd=execution.total_cost_usd,
			started_at=execution.started_at,
			now=self.clock(),
			stale_recoveries=self._stale_count(execution),
			stale_threshold=self.config.stale_threshold,
			max_run_duration=self.config.max_run_duration,
		))
		self._record(decision)

		keep_going = await self._handlers[decision.action](execution, decision, workflow)
		return self._failure_delay(), keep_going

	# --- state resolution ---

	async def _resolve_workflow(self, execution: OrchestrationExecution) -> tuple[Optional[WorkflowSnapshot], bool]:
		"""(snapshot, found). A linked session that cannot be looked up is not found."""
		workflow_id = execution.current_workflow_id()
		if workflow_id is None:
			return None, True
		try:
			snapshot = await asyncio.wait_for(self.sessions.status(workflow_id), timeout=LOOKUP_TIMEOUT_SECONDS)
		except Exception as e:
			logger.warning(f"[{self.execution_id[:8]}] Status lookup for {workflow_id} failed: {e!r}")
			return None, False
		return snapshot, snapshot is not None

	async def _resolve_step(
		self,
		execution: OrchestrationExecution,
		file_step: Optional[Step],
		workflow: Optional[WorkflowSnapshot],
	) -> Step:
		phase = execution.current_phase
		if file_step is not None and file_step.current == phase:
			step = file_step
		else:
			status = StepStatus.IN_PROGRESS if execution.current_workflow_id() else StepStatus.NOT_STARTED
			step = Step.for_phase(phase, status)

		if (
			phase != OrchestrationPhase.IMPLEMENT
			and workflow is not None
			and workflow.status == WorkflowStatus.COMPLETED
			and step.status not in DONE_STEP_STATUSES
			and await self._corroborate(execution, phase)
		):
			write_step(execution.project_path, phase, StepStatus.COMPLETE)
			step = Step.for_phase(phase, StepStatus.COMPLETE)
		return step

	async def _corroborate(self, execution: OrchestrationExecution, phase: OrchestrationPhase) -> bool:
		"""A finished session only completes its step if the project artifacts agree."""
		if self.status_source is None:
			return True
		try:
			project_status = await self.status_source.status(execution.project_path)
		except Exception as e:
			logger.warning(f"[{self.execution_id[:8]}] Status source failed: {e!r}")
			return True
		if project_status is None:
			return True
		return is_phase_complete(project_status, phase)

	def _account_cost(self, execution: OrchestrationExecution, workflow: WorkflowSnapshot) -> OrchestrationExecution:
		"""Add a finished session's cost to the run (the store ignores repeats)."""
		updated = self.store.add_cost(
			self.execution_id,
			workflow.cost_usd,
			source=f"session {workflow.id}",
			workflow_id=workflow.id,
		)
		return updated or execution

	def _record(self, decision: Decision) -> None:
		logger.info(f"[{self.execution_id[:8]}] {decision.action.value}: {decision.reason}")
		key = (decision.action, decision.reason)
		if key == self._last_recorded:
			return
		self._last_recorded = key
		if decision.action in (Action.IDLE, Action.WAIT):
			return
		self.store.log_decision(self.execution_id, decision.action.value, decision.reason, decision.to_log_data() or None)

	# --- session start ---

	async def _spawn(self, execution: OrchestrationExecution, skill: str, context: Optional[str]) -> bool:
		"""Start a session under the spawn-intent lock and link it. False means stop the loop."""
		async with self.spawn_lock.hold(self.execution_id) as claimed:
			if not claimed:
				logger.info(f"[{self.execution_id[:8]}] Spawn already in progress, skipping")
				return True
			fresh = self.store.get(self.execution_id)
			if fresh is None or fresh.status != OrchestrationStatus.RUNNING or _binding(fresh) != _binding(execution):
				logger.info(f"[{self.execution_id[:8]}] Run changed since it was read, skipping spawn")
				return True
			try:
				snapshot = await asyncio.wait_for(
					self.sessions.start(execution.project_path, skill, context),
					timeout=self.config.spawn_timeout,
				)
			except Exception as e:
				error = f"timed out after {self.config.spawn_timeout:g}s" if isinstance(e, asyncio.TimeoutError) else str(e)
				self.spawn_failures += 1
				logger.error(f"[{self.execution_id[:8]}] Failed to start {skill}: {error}")
				if self.spawn_failures >= self.config.max_lookup_failures:
					self.store.set_needs_attention(
						self.execution_id,
						f"Could not start {skill} after {self.spawn_failures} attempts: {error}",
					)
					return False
				return True

		self.spawn_failures = 0
		linked = self.store.link_workflow_execution(self.execution_id, snapshot.id)
		if linked is None:
			# the run was cancelled or finished while the session was starting
			logger.warning(f"[{self.execution_id[:8]}] Could not link {snapshot.id}, cancelling it")
			await self._cancel_session(snapshot.id)
			return False
		if linked.current_phase != OrchestrationPhase.IMPLEMENT:
			write_step(linked.project_path, linked.current_phase, StepStatus.IN_PROGRESS)
		return True

	async def _cancel_session(self, workflow_id: Optional[str]) -> None:
		if not workflow_id:
			return
		try:
			await self.sessions.cancel(workflow_id)
		except Exception as e:
			logger.warning(f"[{self.execution_id[:8]}] Could not cancel session {workflow_id}: {e!r}")

	# --- handlers ---

	async def _handle_noop(self, execution, decision, workflow) -> bool:
		return True

	async def _handle_spawn(self, execution, decision, workflow) -> bool:
		return await self._spawn(execution, decision.skill or get_skill_for_phase(execution.current_phase), decision.context)

	async def _handle_transition(self, execution, decision, workflow) -> bool:
		updated = self.store.transition_to_next_phase(self.execution_id)
		if updated is None:
			return True
		if updated.status == OrchestrationStatus.COMPLETED:
			return False
		if updated.status != OrchestrationStatus.RUNNING or updated.current_phase == OrchestrationPhase.IMPLEMENT:
			return True
		return await self._spawn(
			updated,
			get_skill_for_phase(updated.current_phase),
			updated.config.additional_context or None,
		)

	async def _handle_wait_merge(self, execution, decision, workflow) -> bool:
		if execution.status == OrchestrationStatus.RUNNING and execution.current_phase != OrchestrationPhase.MERGE:
			self.store.transition_to_next_phase(self.execution_id)
		return True

	async def _handle_initialize_batches(self, execution, decision, workflow) -> bool:
		plan = plan_batches_for_project(execution.project_path, execution.config.batch_size_fallback)
		if plan is None:
			self.store.fail(self.execution_id, "No tasks.md found for the implement step")
			return False
		for warning in plan.dependency_warnings:
			logger.warning(f"[{self.execution_id[:8]}] {warning}")
		if not plan.batches:
			logger.info(f"[{self.execution_id[:8]}] No incomplete tasks, implement is already done")
			write_step(execution.project_path, OrchestrationPhase.IMPLEMENT, StepStatus.COMPLETE)
			return True
		logger.info(f"[{self.execution_id[:8]}] {get_batch_plan_summary(plan)}")
		self.store.initialize_batches(self.execution_id, plan)
		return True

	async def _handle_advance_batch(self, execution, decision, workflow) -> bool:
		item = execution.batches.current_item()
		if item is None:
			return True
		if item.status == BatchStatus.RUNNING:
			updated = self.store.complete_batch(self.execution_id)
		elif item.status in DONE_BATCH_STATUSES:
			updated = self.store.advance_batch(self.execution_id)
		else:
			updated = None
		if updated is not None and decision.pause_after:
			self.store.pause(self.execution_id)
		return True

	async def _handle_force_step_complete(self, execution, decision, workflow) -> bool:
		item = execution.batches.current_item()
		if item is not None and item.status == BatchStatus.RUNNING:
			self.store.complete_batch(self.execution_id)
		write_step(execution.project_path, OrchestrationPhase.IMPLEMENT, StepStatus.COMPLETE)
		return True

	async def _handle_heal_batch(self, execution, decision, workflow) -> bool:
		item = execution.batches.current_item()
		if item is None:
			return True
		if item.status != BatchStatus.FAILED:
			self.store.fail_batch(self.execution_id, decision.error_message or decision.reason)
		self.store.increment_heal_attempt(self.execution_id)

		budget = execution.config.budget.healing_budget
		try:
			response = await asyncio.wait_for(
				attempt_heal(
					self.healer,
					execution.project_path,
					self.config.sessions_dir,
					item.workflow_execution_id,
					item.section,
					item.task_ids,
					budget_usd=budget,
					additional_context=execution.config.additional_context or None,
					session_id=workflow.session_id if workflow else None,
				),
				timeout=self.config.spawn_timeout,
			)
		except asyncio.TimeoutError:
			response = HealerResponse(success=False, error=f"Healer timed out after {self.config.spawn_timeout:g}s")

		if response.cost_usd > 0:
			self.store.add_cost(self.execution_id, response.cost_usd, source="healer")
		healer_id = response.session_id
		if healer_id:
			self.store.link_healer(self.execution_id, healer_id)

		summary = get_healing_summary(response)
		if response.cost_usd > budget:
			self.store.log_decision(
				self.execution_id,
				"heal_rejected",
				f"Healer spent ${response.cost_usd:.2f}, over the ${budget:.2f} healing budget",
			)
		elif is_healing_successful(response):
			self.store.heal_batch(self.execution_id, healer_id)
			return True
		else:
			self.store.log_decision(self.execution_id, "heal_failed", summary)
		logger.warning(f"[{self.execution_id[:8]}] Heal of batch {item.index + 1} did not succeed: {summary}")
		return True

	async def _handle_recover_stale(self, execution, decision, workflow) -> bool:
		slot = _step_slot(execution)
		if slot != self._stale_slot:
			self._stale_slot = slot
			self.stale_recoveries = 0
		self.stale_recoveries += 1
		await self._cancel_session(decision.failed_workflow_id)
		if execution.current_phase == OrchestrationPhase.IMPLEMENT:
			item = execution.batches.current_item()
			if item is None:
				return True
			context = build_batch_context(item, execution.config.additional_context)
		else:
			context = execution.config.additional_context or None
		return await self._spawn(execution, get_skill_for_phase(execution.current_phase), context)

	async def _handle_needs_attention(self, execution, decision, workflow) -> bool:
		self.store.set_needs_attention(
			self.execution_id,
			decision.reason,
			list(decision.recovery_options) or None,
			decision.failed_workflow_id,
		)
		return False

	async def _handle_complete(self, execution, decision, workflow) -> bool:
		self.store.complete(self.execution_id)
		return False

	async def _handle_fail(self, execution, decision, workflow) -> bool:
		self.store.fail(self.execution_id, decision.error_message or decision.reason)
		return False


class RunnerRegistry:
	"""
	Owns the runner task for every active execution in this process.

	Usage:
		registry = RunnerRegistry(config, store, sessions, healer)
		await registry.reconcile()
		await registry.start(execution.id)
		...
		await registry.shutdown()
	"""

	STOP_TIMEOUT = 5.0
	LOCK_WRITE_GRACE = 5.0

	def __init__(
		self,
		config: Config,
		store: ExecutionStore,
		sessions: SessionRunner,
		healer: HealerClient,
		status_source: Optional[StatusSource] = None,
	):
		self.config = config
		self.store = store
		self.sessions = sessions
		self.healer = healer
		self.status_source = status_source
		self.runners_dir = Path(config.runners_dir)
		self.runners_dir.mkdir(parents=True, exist_ok=True)
		self.spawn_lock = SpawnIntentLock(self.runners_dir, stale_after=config.spawn_timeout)

		self._runners: dict[str, tuple[asyncio.Task, asyncio.Event]] = {}
		self._lock = asyncio.Lock()

	def _lock_path(self, execution_id: str) -> Path:
		return self.runners_dir / f"{execution_id}.json"

	def is_active(self, execution_id: str) -> bool:
		entry = self._runners.get(execution_id)
		return entry is not None and not entry[0].done()

	def active_ids(self) -> list[str]:
		return [eid for eid in self._runners if self.is_active(eid)]

	def _claim_lock(self, execution_id: str, project_id: str) -> bool:
		"""Create the runner lock with O_EXCL. False when a live process elsewhere owns it."""
		path = self._lock_path(execution_id)
		for _ in range(2):
			try:
				fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
			except FileExistsError:
				data = read_json(path)
				if not isinstance(data, dict):
					try:
						age = time.time() - path.stat().st_mtime
					except FileNotFoundError:
						continue
					# another process may be between creating and writing it
					if age < self.LOCK_WRITE_GRACE:
						return False
				else:
					pid = data.get("pid")
					if pid and pid != os.getpid() and _pid_alive(pid):
						logger.warning(f"Runner for {execution_id} is owned by live pid {pid}, not starting")
						return False
				path.unlink(missing_ok=True)
				continue
			with os.fdopen(fd, "w") as f:
				json.dump({
					"pid": os.getpid(),
					"executionId": execution_id,
					"projectId": project_id,
					"startedAt": datetime.now().isoformat(),
				}, f)
			return True
		return False

	async def start(self, execution_id: str) -> bool:
		"""Start a runner unless one is already active here or elsewhere, or the execution is not running."""
		async with self._lock:
			if self.is_active(execution_id):
				return False
			execution = self.store.get(execution_id)
			if execution is None or execution.status != OrchestrationStatus.RUNNING:
				return False
			if not self._claim_lock(execution_id, execution.project_id):
				return False

			stop_event = asyncio.Event()
			runner = OrchestrationRunner(
				execution_id,
				self.store,
				self.sessions,
				self.healer,
				self.config,
				self.spawn_lock,
				status_source=self.status_source,
				stop_event=stop_event,
			)
			task = asyncio.create_task(self._run(runner))
			self._runners[execution_id] = (task, stop_event)
			logger.info(f"Runner started for {execution_id}")
			return True

	async def _run(self, runner: OrchestrationRunner) -> None:
		try:
			await runner.run()
		finally:
			self._lock_path(runner.execution_id).unlink(missing_ok=True)

	async def stop(self, execution_id: str) -> bool:
		"""Signal the runner to stop and wait briefly for it."""
		async with self._lock:
			entry = self._runners.pop(execution_id, None)
		if entry is None:
			return False
		task, stop_event = entry
		stop_event.set()
		try:
			await asyncio.wait_for(task, timeout=self.STOP_TIMEOUT)
		except asyncio.TimeoutError:
			task.cancel()
			try:
				await task
			except asyncio.CancelledError:
				pass
		return True

	async def cancel(self, execution_id: str) -> Optional[OrchestrationExecution]:
		"""Cancel the run, ask its live session to stop, and let the runner exit."""
		execution = self.store.get(execution_id)
		if execution is None:
			return None
		workflow_id = execution.current_workflow_id()
		cancelled = self.store.cancel(execution_id)
		if cancelled is None:
			return None
		if workflow_id:
			try:
				await self.sessions.cancel(workflow_id)
			except Exception as e:
				logger.warning(f"Could not cancel session {workflow_id}: {e!r}")
		entry = self._runners.get(execution_id)
		if entry is not None:
			entry[1].set()
		return cancelled

	async def shutdown(self) -> None:
		for execution_id in list(self._runners):
			await self.stop(execution_id)

	async def wait(self, execution_id: str) -> None:
		entry = self._runners.get(execution_id)
		if entry is not None:
			await entry[0]

	async def reconcile(self) -> dict[str, list[str]]:
		"""
		Handle runner lock files with no live runner behind them.

		Returns:
			{"restarted": [...], "cleared": [...]} execution ids
		"""
		restarted: list[str] = []
		cleared: list[str] = []

		for lock_path in sorted(self.runners_dir.glob("*.json")):
			data = read_json(lock_path)
			execution_id = data.get("executionId") if isinstance(data, dict) else None
			execution_id = execution_id or lock_path.stem
			if self.is_active(execution_id):
				continue

			pid = data.get("pid") if isinstance(data, dict) else None
			if pid and pid != os.getpid() and _pid_alive(pid):
				continue

			lock_path.unlink(missing_ok=True)
			execution = self.store.get(execution_id)
			if execution is not None and execution.status == OrchestrationStatus.RUNNING:
				if await self.start(execution_id):
					restarted.append(execution_id)
					continue
			cleared.append(execution_id)

		if restarted or cleared:
			logger.info(f"Reconciled runners: restarted={restarted} cleared={cleared}")
		return {"restarted": restarted, "cleared": cleared}
