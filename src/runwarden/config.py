"""Configuration loading and management for RunWarden."""

from __future__ import annotations

import os
import re
from pathlib import Path

import yaml
from loguru import logger

from runwarden.models import Runbook, RunbookDefinition, RunWardenConfig

# Default paths
DEFAULT_CONFIG_DIR = Path.home() / ".runwarden"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "runwarden.yaml"
DEFAULT_RUNBOOKS_DIR = DEFAULT_CONFIG_DIR / "runbooks"  # One file per runbook
DEFAULT_DB_FILE = DEFAULT_CONFIG_DIR / "runwarden.db"
DEFAULT_PID_FILE = DEFAULT_CONFIG_DIR / "runwarden.pid"
DEFAULT_LOGS_DIR = DEFAULT_CONFIG_DIR / "logs"


class ConfigError(Exception):
    """Configuration error."""

    pass


def ensure_config_dir() -> Path:
    """Ensure the config directory exists."""
    DEFAULT_CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    DEFAULT_LOGS_DIR.mkdir(parents=True, exist_ok=True)
    DEFAULT_RUNBOOKS_DIR.mkdir(parents=True, exist_ok=True)
    return DEFAULT_CONFIG_DIR


def expand_env_vars(value: str) -> str:
    """Expand environment variables in a string.

    Supports:
    - ${env:VAR_NAME} - environment variable
    - $VAR_NAME or ${VAR_NAME} - standard env var expansion
    """
    def replace_env(match: re.Match[str]) -> str:
        var_name = match.group(1)
        return os.environ.get(var_name, "")

    value = re.sub(r"\$\{env:([^}]+)\}", replace_env, value)
    return os.path.expandvars(value)


def expand_path(path: str | None) -> str | None:
    """Expand a path with ~ and environment variables."""
    if path is None:
        return None
    return expand_env_vars(os.path.expanduser(path))


def load_yaml_file(path: Path) -> dict:
    """Load a YAML file."""
    if not path.exists():
        return {}

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ConfigError(f"Invalid YAML in {path}: expected a mapping, got {type(data).__name__}")

    return data


def _expand_things(data: dict) -> None:
    """Expand env vars and paths in the things section, in place."""
    things = data.get("things")
    if not isinstance(things, dict):
        return

    for thing in things.values():
        if not isinstance(thing, dict):
            continue
        if "cmd" in thing:
            thing["cmd"] = expand_env_vars(str(thing["cmd"]))
        if "cwd" in thing:
            thing["cwd"] = expand_path(thing["cwd"])
        if "env" in thing and isinstance(thing["env"], dict):
            thing["env"] = {k: expand_env_vars(str(v)) for k, v in thing["env"].items()}


def load_config(config_path: Path | None = None) -> RunWardenConfig:
    """Load the main RunWarden configuration."""
    path = config_path or DEFAULT_CONFIG_FILE

    if not path.exists():
        logger.info(f"Config file not found at {path}, using defaults")
        return RunWardenConfig()

    data = load_yaml_file(path)
    _expand_things(data)

    try:
        config = RunWardenConfig.model_validate(data)
        logger.debug(f"Loaded config from {path}")
        return config
    except Exception as e:
        raise ConfigError(f"Invalid config file {path}: {e}") from e


def load_runbook_file(path: Path) -> Runbook:
    """Load a single runbook from a YAML file.

    The runbook ID is taken from the file name unless the file sets one.

    Raises:
        ConfigError: If the file is missing or malformed
    """
    if not path.exists():
        raise ConfigError(f"Runbook file not found: {path}")

    data = load_yaml_file(path)
    runbook_id = str(data.pop("id", path.stem))

    try:
        definition = RunbookDefinition.model_validate(data)
    except Exception as e:
        raise ConfigError(f"Invalid runbook file {path}: {e}") from e

    return definition.to_runbook(runbook_id=runbook_id)


def load_runbooks(runbooks_path: Path | None = None) -> dict[str, Runbook]:
    """Load every runbook from the runbooks directory.

    Invalid files are logged and skipped.
    """
    runbooks_dir = runbooks_path or DEFAULT_RUNBOOKS_DIR

    if not runbooks_dir.exists() or not runbooks_dir.is_dir():
        logger.warning(f"Runbooks directory not found at {runbooks_dir}")
        return {}

    runbooks: dict[str, Runbook] = {}
    for runbook_file in sorted(runbooks_dir.glob("*.yaml")):
        try:
            runbook = load_runbook_file(runbook_file)
        except ConfigError as e:
            logger.error(f"Failed to load runbook file {runbook_file}: {e}")
            continue
        runbooks[runbook.id] = runbook

    logger.debug(f"Loaded {len(runbooks)} runbooks from {runbooks_dir}")
    return runbooks


def save_runbook_file(runbook: Runbook, runbooks_path: Path | None = None) -> Path:
    """Save a runbook definition to its own file.

    Args:
        runbook: The runbook to save
        runbooks_path: Optional path to runbooks directory

    Returns:
        Path of the written file
    """
    runbooks_dir = runbooks_path or DEFAULT_RUNBOOKS_DIR
    runbooks_dir.mkdir(parents=True, exist_ok=True)

    data = RunbookDefinition.model_validate(runbook.model_dump()).model_dump(mode="json", exclude_none=True)
    runbook_file = runbooks_dir / f"{runbook.id}.yaml"

    with open(runbook_file, "w") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)

    logger.debug(f"Saved runbook '{runbook.id}' to {runbook_file}")
    return runbook_file


def create_default_config() -> None:
    """Create default configuration files if they don't exist."""
    ensure_config_dir()

    if not DEFAULT_CONFIG_FILE.exists():
        config = RunWardenConfig()
        data = config.model_dump(mode="json")
        data["things"] = {
            "hello": {
                "cmd": "echo",
                "description": "Prints its arguments",
                "profiles": {"default": "'Hello from RunWarden!'"},
            }
        }
        with open(DEFAULT_CONFIG_FILE, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
        logger.info(f"Created default config at {DEFAULT_CONFIG_FILE}")

    existing = list(DEFAULT_RUNBOOKS_DIR.glob("*.yaml"))
    if not existing:
        example = {
            "name": "Example Runbook",
            "description": "An example runbook to get started",
            "is_enabled": False,
            "steps": [
                {"step_id": "greet", "name": "Greet", "thing_id": "hello"},
                {
                    "step_id": "report",
                    "name": "Report",
                    "thing_id": "hello",
                    "arguments_override": "'Greeting failed'",
                    "depends_on": ["greet"],
                    "condition": {"type": "on_failure"},
                },
            ],
        }
        example_file = DEFAULT_RUNBOOKS_DIR / "example-runbook.yaml"
        with open(example_file, "w") as f:
            yaml.dump(example, f, default_flow_style=False, sort_keys=False, allow_unicode=True)
        logger.info(f"Created example runbook at {example_file}")
