"""Configuration system using platformdirs for cross-platform paths."""

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import platformdirs

APP_NAME = "flow-orchestrator"
APP_AUTHOR = "flow-orchestrator"
ENV_PREFIX = "FLOW_ORCHESTRATOR_"


@dataclass
class Config:
	"""Central configuration with XDG/platform conventions."""

	config_dir: Path = field(default_factory=lambda: Path(platformdirs.user_config_dir(APP_NAME)))
	data_dir: Path = field(default_factory=lambda: Path(platformdirs.user_data_dir(APP_NAME)))

	# Derived paths
	executions_dir: Path = field(init=False)
	active_dir: Path = field(init=False)
	runners_dir: Path = field(init=False)
	sessions_dir: Path = field(init=False)
	log_dir: Path = field(init=False)

	# User-configurable
	registry_file: Path = field(default_factory=lambda: Path.home() / ".specflow" / "registry.json")
	poll_interval: float = 10.0
	max_iterations: Optional[int] = None
	spawn_timeout: float = 600.0
	stale_threshold: float = 600.0
	max_run_duration: float = 4 * 3600.0
	max_lookup_failures: int = 5
	claude_binary: str = "claude"
	claude_model: str = "sonnet"
	specflow_binary: str = "specflow"

	def __post_init__(self) -> None:
		self.executions_dir = self.data_dir / "orchestrations"
		self.active_dir = self.data_dir / "active"
		self.runners_dir = self.data_dir / "runners"
		self.sessions_dir = self.data_dir / "sessions"
		self.log_dir = self.data_dir / "logs"

	def ensure_dirs(self) -> None:
		"""Create all required directories."""
		self.config_dir.mkdir(parents=True, exist_ok=True)
		self.data_dir.mkdir(parents=True, exist_ok=True)
		for path in (self.executions_dir, self.active_dir, self.runners_dir, self.sessions_dir, self.log_dir):
			path.mkdir(parents=True, exist_ok=True)


PATH_FIELDS = {"config_dir", "data_dir", "registry_file"}
FLOAT_FIELDS = {"poll_interval", "spawn_timeout", "stale_threshold", "max_run_duration"}
INT_FIELDS = {"max_iterations", "max_lookup_failures"}


def _coerce(attr: str, val):
	if attr in PATH_FIELDS:
		return Path(os.path.expanduser(str(val)))
	if attr in FLOAT_FIELDS:
		return float(val)
	if attr in INT_FIELDS:
		return int(val)
	return val


def _apply_env_overrides(config: Config) -> Config:
	"""Apply FLOW_ORCHESTRATOR_* environment variable overrides."""
	env_map = {
		f"{ENV_PREFIX}CONFIG_DIR": "config_dir",
		f"{ENV_PREFIX}DATA_DIR": "data_dir",
		f"{ENV_PREFIX}REGISTRY_FILE": "registry_file",
		f"{ENV_PREFIX}POLL_INTERVAL": "poll_interval",
		f"{ENV_PREFIX}MAX_ITERATIONS": "max_iterations",
		f"{ENV_PREFIX}SPAWN_TIMEOUT": "spawn_timeout",
		f"{ENV_PREFIX}STALE_THRESHOLD": "stale_threshold",
		f"{ENV_PREFIX}MAX_RUN_DURATION": "max_run_duration",
		f"{ENV_PREFIX}MAX_LOOKUP_FAILURES": "max_lookup_failures",
		f"{ENV_PREFIX}CLAUDE_BINARY": "claude_binary",
		f"{ENV_PREFIX}CLAUDE_MODEL": "claude_model",
		f"{ENV_PREFIX}SPECFLOW_BINARY": "specflow_binary",
	}
	for env_key, attr in env_map.items():
		val = os.getenv(env_key)
		if val:
			setattr(config, attr, _coerce(attr, val))
	# Recompute derived paths after overrides
	config.__post_init__()
	return config


def _apply_toml(config: Config) -> Config:
	"""Apply config.toml overrides if file exists."""
	toml_path = config.config_dir / "config.toml"
	if not toml_path.exists():
		return config

	with open(toml_path, "rb") as f:
		data = tomllib.load(f)

	for key, val in data.items():
		if hasattr(config, key):
			setattr(config, key, _coerce(key, val))

	# Recompute derived paths after toml overrides
	config.__post_init__()
	return config


def load_config() -> Config:
	"""Load config with precedence: env vars > config.toml > defaults."""
	config = Config()
	config = _apply_toml(config)
	config = _apply_env_overrides(config)
	config.ensure_dirs()
	return config


# Singleton
_config: Config | None = None


def get_config() -> Config:
	"""Get or create the global config instance."""
	global _config
	if _config is None:
		_config = load_config()
	return _config
