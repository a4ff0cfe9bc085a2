"""Configuration loading for Taskweave.

Settings come from ``TASKWEAVE_*`` environment variables, falling back to
the project config file ``<storage>/config.json`` and then to defaults.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

from .taskweave_logging import normalize_level


ENV_PREFIX = "TASKWEAVE"
DEFAULT_STORAGE_DIR = ".taskweave"
DEFAULT_TASK_GROUP = "default"
DEFAULT_LOG_LEVEL = "info"
DEFAULT_AI_MODEL = "gpt-4o-mini"
DEFAULT_AI_TIMEOUT_SECONDS = 60.0
CONFIG_FILE_NAME = "config.json"


class ConfigError(RuntimeError):
    """Raised when configuration is missing or invalid."""


def _k(suffix: str) -> str:
    return f"{ENV_PREFIX}_{suffix}"


def _first_env(*names: str, default: Optional[str] = None) -> Optional[str]:
    for name in names:
        value = os.getenv(name)
        if value is not None and value.strip() != "":
            return value.strip()
    return default


def _read_float(raw_value: Optional[str], *, default: float, key: str) -> float:
    if raw_value is None:
        return default
    try:
        value = float(raw_value)
    except ValueError as e:
        raise ConfigError(f"{key} must be a number, got '{raw_value}'.") from e
    if value <= 0:
        raise ConfigError(f"{key} must be positive.")
    return value


def read_project_config(storage_path: Path) -> Dict[str, Any]:
    """Read ``config.json`` from the storage directory; missing file means empty."""
    path = storage_path / CONFIG_FILE_NAME
    if not path.is_file():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Could not read project config {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Project config {path} must contain a JSON object.")
    return data


@dataclass(frozen=True)
class Settings:
    project_root: Optional[Path] = None
    storage_dir: str = DEFAULT_STORAGE_DIR
    task_group: str = DEFAULT_TASK_GROUP
    log_level: str = DEFAULT_LOG_LEVEL
    log_file: Optional[Path] = None
    ai_model: str = DEFAULT_AI_MODEL
    ai_research_model: Optional[str] = None
    ai_base_url: Optional[str] = None
    ai_api_key: Optional[str] = None
    ai_timeout_seconds: float = DEFAULT_AI_TIMEOUT_SECONDS

    def with_overrides(self, **overrides: Any) -> "Settings":
        """Return a copy with every non-None override applied."""
        changes = {key: value for key, value in overrides.items() if value is not None}
        if "log_level" in changes:
            changes["log_level"] = normalize_level(changes["log_level"])
        return replace(self, **changes)


def load_settings(root: Optional[Path | str] = None) -> Settings:
    """Load settings from the environment and the project config file."""
    env_root = _first_env(_k("PROJECT_ROOT"))
    if root is not None:
        project_root: Optional[Path] = Path(root).expanduser().resolve()
    elif env_root:
        project_root = Path(env_root).expanduser().resolve()
    else:
        project_root = None

    storage_dir = _first_env(_k("STORAGE_DIR"), default=DEFAULT_STORAGE_DIR)
    project_config: Dict[str, Any] = {}
    if project_root is not None:
        project_config = read_project_config(project_root / storage_dir)
    global_config = project_config.get("global") or {}
    if not isinstance(global_config, dict):
        raise ConfigError("'global' in the project config must be an object.")

    task_group = _first_env(_k("TASK_GROUP")) or global_config.get("workingTaskGroup") or DEFAULT_TASK_GROUP

    raw_level = _first_env(_k("LOG_LEVEL")) or global_config.get("logLevel") or DEFAULT_LOG_LEVEL
    try:
        log_level = normalize_level(raw_level)
    except ValueError as e:
        raise ConfigError(str(e)) from e

    log_file = _first_env(_k("LOG_FILE"))

    return Settings(
        project_root=project_root,
        storage_dir=storage_dir,
        task_group=str(task_group),
        log_level=log_level,
        log_file=Path(log_file).expanduser() if log_file else None,
        ai_model=_first_env(_k("AI_MODEL"), default=DEFAULT_AI_MODEL),
        ai_research_model=_first_env(_k("AI_RESEARCH_MODEL")),
        ai_base_url=_first_env(_k("AI_BASE_URL")),
        ai_api_key=_first_env(_k("AI_API_KEY"), "OPENAI_API_KEY"),
        ai_timeout_seconds=_read_float(
            _first_env(_k("AI_TIMEOUT_SECONDS")),
            default=DEFAULT_AI_TIMEOUT_SECONDS,
            key=_k("AI_TIMEOUT_SECONDS"),
        ),
    )


def _candidate_bases(start: Optional[Path] = None) -> List[Path]:
    cwd = (start or Path.cwd()).resolve()
    bases: List[Path] = [cwd]
    bases.extend(cwd.parents)
    return bases


def locate_project_root(storage_dir: str = DEFAULT_STORAGE_DIR, start: Optional[Path] = None) -> Optional[Path]:
    """Nearest directory at or above ``start`` that holds the storage marker."""
    for base in _candidate_bases(start):
        if (base / storage_dir).is_dir():
            return base
    return None


def resolve_project_root(root: Optional[str] = None) -> Path:
    """Explicit root, then TASKWEAVE_PROJECT_ROOT, then the nearest marked directory."""
    if root:
        resolved = Path(root).expanduser().resolve()
        if not resolved.exists():
            raise ConfigError(f"Provided root '{root}' does not exist.")
        return resolved

    env_root = _first_env(_k("PROJECT_ROOT"))
    if env_root:
        env_path = Path(env_root).expanduser().resolve()
        if not env_path.exists():
            raise ConfigError(
                f"Environment variable {_k('PROJECT_ROOT')} points to '{env_root}', which does not exist."
            )
        return env_path

    storage_dir = _first_env(_k("STORAGE_DIR"), default=DEFAULT_STORAGE_DIR)
    detected_root = locate_project_root(storage_dir)
    if detected_root:
        return detected_root

    raise ConfigError(
        "Unable to determine project root automatically. Provide the 'root' argument "
        f"or set the {_k('PROJECT_ROOT')} environment variable."
    )
