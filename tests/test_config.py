"""Tests for the configuration system."""

import logging
import os
from pathlib import Path
from unittest.mock import patch

from flow_orchestrator.config import Config, _apply_env_overrides, _apply_toml, get_config, load_config
from flow_orchestrator.logging_config import setup_logging


def test_config_defaults():
	"""Config should have sensible defaults."""
	config = Config()
	assert config.config_dir.is_absolute()
	assert config.data_dir.is_absolute()
	assert config.executions_dir == config.data_dir / "orchestrations"
	assert config.active_dir == config.data_dir / "active"
	assert config.runners_dir == config.data_dir / "runners"
	assert config.sessions_dir == config.data_dir / "sessions"
	assert config.log_dir == config.data_dir / "logs"
	assert config.poll_interval == 10.0
	assert config.max_lookup_failures == 5


def test_config_env_overrides():
	"""Environment variables should override defaults."""
	config = Config()
	with patch.dict(os.environ, {
		"FLOW_ORCHESTRATOR_DATA_DIR": "/tmp/test-data",
		"FLOW_ORCHESTRATOR_POLL_INTERVAL": "2.5",
		"FLOW_ORCHESTRATOR_MAX_ITERATIONS": "7",
		"FLOW_ORCHESTRATOR_CLAUDE_MODEL": "opus",
	}):
		config = _apply_env_overrides(config)
		assert config.data_dir == Path("/tmp/test-data")
		# Derived paths should be recomputed
		assert config.executions_dir == Path("/tmp/test-data/orchestrations")
		assert config.poll_interval == 2.5
		assert config.max_iterations == 7
		assert config.claude_model == "opus"


def test_config_toml_overrides(tmp_path: Path):
	"""config.toml values should be applied and coerced."""
	config = Config(config_dir=tmp_path / "config", data_dir=tmp_path / "data")
	config.config_dir.mkdir(parents=True)
	(config.config_dir / "config.toml").write_text(
		'poll_interval = 3\nspawn_timeout = 120\nregistry_file = "~/reg.json"\nunknown_key = 1\n'
	)

	config = _apply_toml(config)

	assert config.poll_interval == 3.0
	assert config.spawn_timeout == 120.0
	assert config.registry_file == Path.home() / "reg.json"
	assert not hasattr(config, "unknown_key")


def test_config_ensure_dirs(tmp_path: Path):
	"""ensure_dirs should create all required directories."""
	config = Config(
		config_dir=tmp_path / "config",
		data_dir=tmp_path / "data",
	)
	assert not config.config_dir.exists()

	config.ensure_dirs()

	assert config.config_dir.exists()
	assert config.executions_dir.exists()
	assert config.runners_dir.exists()
	assert config.log_dir.exists()


def test_load_config_creates_dirs(tmp_path: Path):
	"""load_config should create directories."""
	with patch.dict(os.environ, {
		"FLOW_ORCHESTRATOR_DATA_DIR": str(tmp_path / "data"),
		"FLOW_ORCHESTRATOR_CONFIG_DIR": str(tmp_path / "config"),
	}):
		config = load_config()
		assert config.data_dir.exists()
		assert config.active_dir.exists()


def test_get_config_is_cached(tmp_path: Path):
	"""get_config should load once and return the same instance."""
	with patch.dict(os.environ, {
		"FLOW_ORCHESTRATOR_DATA_DIR": str(tmp_path / "data"),
		"FLOW_ORCHESTRATOR_CONFIG_DIR": str(tmp_path / "config"),
	}), patch("flow_orchestrator.config._config", None):
		config = get_config()
		assert get_config() is config
		assert config.data_dir == tmp_path / "data"


def test_setup_logging_writes_file(tmp_path: Path):
	"""setup_logging should add a rotating file handler when given a directory."""
	logger = setup_logging("flow_orchestrator_test_logging", level="DEBUG", log_dir=tmp_path)
	try:
		logger.debug("hello")
		for handler in logger.handlers:
			handler.flush()

		assert logger.level == logging.DEBUG
		assert "hello" in (tmp_path / "flow_orchestrator_test_logging.log").read_text()
		# Second call must not stack handlers
		assert setup_logging("flow_orchestrator_test_logging", log_dir=tmp_path) is logger
		assert len(logger.handlers) == 2
	finally:
		for handler in list(logger.handlers):
			handler.close()
			logger.removeHandler(handler)
