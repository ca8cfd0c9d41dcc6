"""
Batch Planner - splits a tasks.md checklist into dependency-ordered batches.

Recognised syntax:
- Task lines: `- [ ] T001 Description` or `* [x] T002 Description`
- Section headers: `## Setup`
- Dependencies: `[depends: T001, T002]`, `[dep: T001]`, `[after: T001]`

Each section with incomplete tasks becomes one batch. A document without
any sectioned tasks is sliced into fixed-size `Batch N` groups instead.
"""

import heapq
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .models import BatchItem, BatchPlan, BatchStatus, BatchTracking, PlannedBatch

logger = logging.getLogger(__name__)

TASK_PATTERN = re.compile(r"^[-*]\s*\[([ xX])\]\s*(T\d{3})\b(.*)$")
SECTION_PATTERN = re.compile(r"^##\s+(.+)$")
DEPENDENCY_PATTERN = re.compile(r"\[(depends?|dep|after):\s*([^\]]+)\]", re.IGNORECASE)
TASK_ID_PATTERN = re.compile(r"T\d{3}")
SPEC_DIR_PATTERN = re.compile(r"^\d{4}-")

DEFAULT_SECTION = "Tasks"
DEFAULT_FALLBACK_SIZE = 15


@dataclass
class ParsedTask:
	"""A task line from the checklist."""
	id: str
	description: str
	complete: bool
	section: Optional[str]
	position: int
	depends_on: list[str] = field(default_factory=list)


def parse_tasks(text: str) -> list[ParsedTask]:
	"""Parse every task line, remembering its section and document position."""
	tasks: list[ParsedTask] = []
	section: Optional[str] = None

	for raw_line in text.splitlines():
		line = raw_line.strip()

		header = SECTION_PATTERN.match(line)
		if header:
			section = header.group(1).strip()
			continue

		match = TASK_PATTERN.match(line)
		if not match:
			continue

		rest = match.group(3)
		depends_on: list[str] = []
		for dep_match in DEPENDENCY_PATTERN.finditer(rest):
			for dep_id in TASK_ID_PATTERN.findall(dep_match.group(2)):
				if dep_id not in depends_on:
					depends_on.append(dep_id)

		tasks.append(ParsedTask(
			id=match.group(2),
			description=DEPENDENCY_PATTERN.sub("", rest).strip(),
			complete=match.group(1).lower() == "x",
			section=section,
			position=len(tasks),
			depends_on=depends_on,
		))

	return tasks


def _resolve_dependencies(
	tasks: list[ParsedTask],
	warnings: list[str],
) -> dict[str, list[str]]:
	"""Map each incomplete task to its unsatisfied dependencies."""
	by_id = {task.id: task for task in tasks}
	resolved: dict[str, list[str]] = {}

	for task in tasks:
		if task.complete:
			continue
		deps = []
		for dep_id in task.depends_on:
			dep = by_id.get(dep_id)
			if dep is None:
				warnings.append(f"Task {task.id} depends on {dep_id}, which doesn't exist")
				continue
			if dep.complete or dep_id == task.id:
				continue
			deps.append(dep_id)
		if deps:
			resolved[task.id] = deps

	return resolved


def _kahn(task_ids: list[str], dependencies: dict[str, list[str]]) -> list[str]:
	"""Kahn's algorithm restricted to `task_ids`, ties broken by input order."""
	position = {task_id: i for i, task_id in enumerate(task_ids)}
	in_degree = {task_id: 0 for task_id in task_ids}
	dependents: dict[str, list[str]] = {task_id: [] for task_id in task_ids}

	for task_id in task_ids:
		for dep_id in dependencies.get(task_id, []):
			if dep_id in position:
				in_degree[task_id] += 1
				dependents[dep_id].append(task_id)

	ready = [position[task_id] for task_id, degree in in_degree.items() if degree == 0]
	heapq.heapify(ready)
	ordered: list[str] = []

	while ready:
		task_id = task_ids[heapq.heappop(ready)]
		ordered.append(task_id)
		for dependent in dependents[task_id]:
			in_degree[dependent] -= 1
			if in_degree[dependent] == 0:
				heapq.heappush(ready, position[dependent])

	return ordered


def topological_sort(
	task_ids: list[str],
	dependencies: dict[str, list[str]],
) -> Optional[list[str]]:
	"""
	Order `task_ids` so every task follows its dependencies.

	Dependencies outside `task_ids` are ignored. Returns None on a cycle.
	"""
	ordered = _kahn(task_ids, dependencies)
	if len(ordered) != len(task_ids):
		return None
	return ordered


def _build_batch(
	name: str,
	tasks: list[ParsedTask],
	dependencies: dict[str, list[str]],
	warnings: list[str],
) -> PlannedBatch:
	task_ids = [task.id for task in tasks]
	ordered = _kahn(task_ids, dependencies)
	if len(ordered) != len(task_ids):
		sorted_ids = set(ordered)
		in_cycle = [task_id for task_id in task_ids if task_id not in sorted_ids]
		warnings.append(f"Circular dependency in {name}: {', '.join(in_cycle)}")
		logger.warning(f"Circular dependency in batch '{name}', keeping document order")
		ordered = task_ids

	batch_deps = {task_id: dependencies[task_id] for task_id in ordered if task_id in dependencies}
	return PlannedBatch(name=name, task_ids=ordered, dependencies=batch_deps)


def plan_batches(text: str, fallback_size: int = DEFAULT_FALLBACK_SIZE) -> BatchPlan:
	"""
	Plan implement batches from tasks.md content.

	Args:
		text: Raw checklist text
		fallback_size: Tasks per batch when the document has no sections

	Returns:
		BatchPlan with zero batches when nothing is left to do
	"""
	if fallback_size < 1:
		raise ValueError(f"fallback_size must be >= 1, got {fallback_size}")

	tasks = parse_tasks(text)
	incomplete = [task for task in tasks if not task.complete]
	warnings: list[str] = []
	dependencies = _resolve_dependencies(tasks, warnings)

	if not incomplete:
		return BatchPlan(total_incomplete=0, dependency_warnings=warnings)

	has_sections = any(task.section is not None for task in tasks)
	batches: list[PlannedBatch] = []

	if has_sections:
		sections: dict[str, list[ParsedTask]] = {}
		for task in incomplete:
			sections.setdefault(task.section or DEFAULT_SECTION, []).append(task)
		for name, section_tasks in sections.items():
			batches.append(_build_batch(name, section_tasks, dependencies, warnings))
		return BatchPlan(
			batches=batches,
			used_fallback=False,
			total_incomplete=len(incomplete),
			dependency_warnings=warnings,
		)

	for start in range(0, len(incomplete), fallback_size):
		chunk = incomplete[start:start + fallback_size]
		name = f"Batch {start // fallback_size + 1}"
		batches.append(_build_batch(name, chunk, dependencies, warnings))

	return BatchPlan(
		batches=batches,
		used_fallback=True,
		fallback_size=fallback_size,
		total_incomplete=len(incomplete),
		dependency_warnings=warnings,
	)


def create_batch_tracking(plan: BatchPlan) -> BatchTracking:
	"""Turn a plan into pending batch items, all starting at index 0."""
	items = [
		BatchItem(index=i, section=batch.name, task_ids=list(batch.task_ids), status=BatchStatus.PENDING)
		for i, batch in enumerate(plan.batches)
	]
	return BatchTracking(total=len(items), current=0, items=items)


def get_batch_plan_summary(plan: BatchPlan) -> str:
	"""One line per batch, for logs and CLI output."""
	if not plan.batches:
		return "No incomplete tasks"

	mode = f"fallback, {plan.fallback_size} per batch" if plan.used_fallback else "by section"
	lines = [f"{plan.total_incomplete} tasks in {len(plan.batches)} batches ({mode})"]
	for i, batch in enumerate(plan.batches, start=1):
		lines.append(f"  {i}. {batch.name}: {len(batch.task_ids)} tasks ({', '.join(batch.task_ids)})")
	for warning in plan.dependency_warnings:
		lines.append(f"  ! {warning}")
	return "\n".join(lines)


def find_tasks_file(project_path: str | Path) -> Optional[Path]:
	"""Locate tasks.md in the newest specs/NNNN-* directory."""
	specs_dir = Path(project_path) / "specs"
	if not specs_dir.is_dir():
		return None

	candidates = sorted(
		d for d in specs_dir.iterdir()
		if d.is_dir() and SPEC_DIR_PATTERN.match(d.name) and (d / "tasks.md").is_file()
	)
	if not candidates:
		return None
	return candidates[-1] / "tasks.md"


def plan_batches_for_project(
	project_path: str | Path,
	fallback_size: int = DEFAULT_FALLBACK_SIZE,
) -> Optional[BatchPlan]:
	"""Plan batches from the project's current tasks file, or None if there is none."""
	tasks_file = find_tasks_file(project_path)
	if tasks_file is None:
		logger.warning(f"No tasks.md found under {project_path}/specs")
		return None
	try:
		text = tasks_file.read_text()
	except OSError as e:
		logger.error(f"Failed to read {tasks_file}: {e}")
		return None
	return plan_batches(text, fallback_size)


def get_completed_task_ids(text: str, task_ids: list[str]) -> list[str]:
	"""Which of `task_ids` are checked off in `text`."""
	wanted = set(task_ids)
	return [task.id for task in parse_tasks(text) if task.complete and task.id in wanted]


def verify_batch_task_completion(
	project_path: str | Path,
	task_ids: list[str],
) -> tuple[list[str], list[str]]:
	"""
	Check a batch's tasks against the tasks file on disk.

	Returns:
		(completed, incomplete) task ids, in batch order
	"""
	tasks_file = find_tasks_file(project_path)
	if tasks_file is None:
		return [], list(task_ids)
	try:
		done = set(get_completed_task_ids(tasks_file.read_text(), task_ids))
	except OSError as e:
		logger.warning(f"Could not read {tasks_file}: {e}")
		return [], list(task_ids)
	completed = [task_id for task_id in task_ids if task_id in done]
	incomplete = [task_id for task_id in task_ids if task_id not in done]
	return completed, incomplete
