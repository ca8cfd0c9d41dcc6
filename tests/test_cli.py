"""Tests for the CLI."""

import os
from unittest.mock import patch

import pytest
from rich.console import Console

from flow_orchestrator.cli import main
from flow_orchestrator.config import Config
from flow_orchestrator.orchestration.store import ExecutionStore

from tests.helpers import make_project


@pytest.fixture
def data_env(tmp_path):
	"""Point load_config() at tmp_path."""
	env = {
		"FLOW_ORCHESTRATOR_DATA_DIR": str(tmp_path / "data"),
		"FLOW_ORCHESTRATOR_CONFIG_DIR": str(tmp_path / "config"),
		"FLOW_ORCHESTRATOR_REGISTRY_FILE": str(tmp_path / "registry.json"),
	}
	with patch.dict(os.environ, env):
		yield Config(config_dir=tmp_path / "config", data_dir=tmp_path / "data")


@pytest.fixture
def store(data_env):
	return ExecutionStore.from_config(data_env)


def run_cli(tmp_path, *argv: str) -> tuple[int, str]:
	"""Run main() with argv; returns (exit code, output)."""
	out_path = tmp_path / "cli-out.txt"
	console = Console(file=open(out_path, "w"), width=200)
	code = 0
	with patch("sys.argv", ["flow-orchestrator", *argv]), \
		patch("flow_orchestrator.cli.console", console), \
		patch("flow_orchestrator.cli.setup_logging"):
		try:
			main()
		except SystemExit as e:
			code = e.code or 0
		finally:
			console.file.close()
	return code, out_path.read_text()


def test_help():
	"""--help should exit cleanly."""
	with patch("sys.argv", ["flow-orchestrator", "--help"]):
		try:
			main()
		except SystemExit as e:
			assert e.code == 0


def test_no_command_exits_with_error():
	"""Running with no subcommand should print help and exit 1."""
	with patch("sys.argv", ["flow-orchestrator"]):
		with pytest.raises(SystemExit) as exc:
			main()
	assert exc.value.code == 1


def test_subcommands_registered():
	"""Every subcommand should accept --help."""
	for command in ("start", "status", "pause", "resume", "cancel", "merge", "recover", "run", "reconcile", "plan", "serve"):
		with patch("sys.argv", ["flow-orchestrator", command, "--help"]):
			with pytest.raises(SystemExit) as exc:
				main()
		assert exc.value.code == 0


def test_plan_project_directory(tmp_path, data_env):
	code, output = run_cli(tmp_path, "plan", str(make_project(tmp_path)))

	assert code == 0
	assert "3 tasks in 2 batches (by section)" in output
	assert "Setup" in output


def test_plan_missing_tasks(tmp_path, data_env):
	code, output = run_cli(tmp_path, "plan", str(tmp_path / "nothing"))

	assert code == 1
	assert "No tasks.md found" in output


def test_start_without_running(tmp_path, data_env, store):
	project = make_project(tmp_path)
	code, output = run_cli(tmp_path, "start", "proj", "--path", str(project), "--skip-design")

	assert code == 0
	assert "Started orchestration" in output
	execution = store.get_active("proj")
	assert execution.current_phase.value == "analyze"

	code, output = run_cli(tmp_path, "start", "proj", "--path", str(project))
	assert code == 1
	assert "already in progress" in output


def test_start_rejects_invalid_config(tmp_path, data_env):
	code, output = run_cli(tmp_path, "start", "proj", "--path", str(tmp_path), "--max-heal-attempts", "9")
	assert code == 1
	assert "Invalid configuration" in output


def test_status_list_and_detail(tmp_path, data_env, store):
	code, output = run_cli(tmp_path, "status")
	assert "No orchestrations recorded yet." in output

	execution = store.start("proj", make_project(tmp_path))
	code, output = run_cli(tmp_path, "status")
	assert execution.id[:8] in output

	code, output = run_cli(tmp_path, "status", execution.id[:8])
	assert f"Orchestration: {execution.id}" in output

	code, output = run_cli(tmp_path, "status", "--project", "proj")
	assert f"Orchestration: {execution.id}" in output


def test_status_unknown_id(tmp_path, data_env):
	code, output = run_cli(tmp_path, "status", "deadbeef")
	assert code == 1
	assert "Orchestration not found: deadbeef" in output


def test_pause_resume_and_rejected_transition(tmp_path, data_env, store):
	execution = store.start("proj", make_project(tmp_path))

	code, output = run_cli(tmp_path, "pause", execution.id)
	assert code == 0
	assert "is now paused" in output

	code, output = run_cli(tmp_path, "merge", execution.id)
	assert code == 1
	assert "Cannot merge orchestration in status paused" in output

	code, output = run_cli(tmp_path, "resume", execution.id)
	assert "is now running" in output


def test_recover_and_cancel(tmp_path, data_env, store):
	execution = store.start("proj", make_project(tmp_path))
	store.set_needs_attention(execution.id, "stuck")

	code, output = run_cli(tmp_path, "recover", execution.id, "skip")
	assert code == 0
	assert store.get(execution.id).current_phase.value == "analyze"

	code, output = run_cli(tmp_path, "cancel", execution.id)
	assert code == 0
	assert store.get(execution.id).status.value == "cancelled"

	code, output = run_cli(tmp_path, "cancel", execution.id)
	assert code == 1


def test_reconcile_without_driving(tmp_path, data_env, store):
	execution = store.start("proj", make_project(tmp_path))
	store.cancel(execution.id)
	data_env.runners_dir.mkdir(parents=True, exist_ok=True)
	(data_env.runners_dir / f"{execution.id}.json").write_text('{"pid": 0}')

	code, output = run_cli(tmp_path, "reconcile", "--no-drive")

	assert code == 0
	assert "Restarted: 0  Cleared: 1" in output
	assert not (data_env.runners_dir / f"{execution.id}.json").exists()
