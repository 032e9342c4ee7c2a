"""Load optional workflow configuration from `.agent_workflow/config.yaml` and startup credentials."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

from .constants import (
    CONFIG_FILE,
    CREDENTIAL_ENV_VARS,
    DEFAULT_AGENT_TIMEOUT_SECONDS,
    DEFAULT_BRANCH,
    DEFAULT_CALLBACK_WORKERS,
    DEFAULT_HANDLER_TIMEOUT_SECONDS,
    DEFAULT_STALE_TIMEOUT_MINUTES,
    DEFAULT_UNDO_WINDOW_SECONDS,
    STATE_DIR_NAME,
)
from .errors import ConfigError
from .io_utils import _load_yaml_with_error
from .utils import _coerce_int


def load_workflow_config(project_dir: Path) -> tuple[dict[str, Any], str | None]:
    """Load the optional workflow config file.

    Args:
        project_dir: Repository root directory.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    project_dir = project_dir.resolve()
    path = project_dir / STATE_DIR_NAME / CONFIG_FILE
    if not path.exists():
        return {}, None
    data, err = _load_yaml_with_error(path, {})
    if err:
        return {}, err
    return data, None


def _get_nested(config: dict[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


@dataclass(frozen=True)
class AgentConfig:
    command: Optional[str] = None
    timeout_seconds: int = DEFAULT_AGENT_TIMEOUT_SECONDS


@dataclass(frozen=True)
class WorkflowSettings:
    """Effective settings after merging config.yaml over the defaults."""

    stale_timeout_minutes: int = DEFAULT_STALE_TIMEOUT_MINUTES
    undo_window_seconds: int = DEFAULT_UNDO_WINDOW_SECONDS
    handler_timeout_seconds: float = DEFAULT_HANDLER_TIMEOUT_SECONDS
    default_branch: str = DEFAULT_BRANCH
    callback_workers: int = DEFAULT_CALLBACK_WORKERS
    agents: Mapping[str, AgentConfig] = field(default_factory=dict)

    def agent(self, name: str) -> AgentConfig:
        return self.agents.get(name) or AgentConfig()

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "WorkflowSettings":
        agents: dict[str, AgentConfig] = {}
        raw_agents = _get_nested(config, "agents")
        if isinstance(raw_agents, dict):
            for name, raw in raw_agents.items():
                if not isinstance(raw, dict):
                    continue
                command = raw.get("command")
                agents[str(name)] = AgentConfig(
                    command=command if isinstance(command, str) and command.strip() else None,
                    timeout_seconds=_coerce_int(raw.get("timeout_seconds"), DEFAULT_AGENT_TIMEOUT_SECONDS),
                )

        try:
            handler_timeout = float(config.get("handler_timeout_seconds", DEFAULT_HANDLER_TIMEOUT_SECONDS))
        except (TypeError, ValueError):
            handler_timeout = float(DEFAULT_HANDLER_TIMEOUT_SECONDS)

        default_branch = config.get("default_branch")
        return cls(
            stale_timeout_minutes=max(
                0, _coerce_int(config.get("stale_timeout_minutes"), DEFAULT_STALE_TIMEOUT_MINUTES)
            ),
            undo_window_seconds=max(
                1, _coerce_int(config.get("undo_window_seconds"), DEFAULT_UNDO_WINDOW_SECONDS)
            ),
            handler_timeout_seconds=handler_timeout if handler_timeout > 0 else float(DEFAULT_HANDLER_TIMEOUT_SECONDS),
            default_branch=default_branch if isinstance(default_branch, str) and default_branch else DEFAULT_BRANCH,
            callback_workers=max(1, _coerce_int(config.get("callback_workers"), DEFAULT_CALLBACK_WORKERS)),
            agents=agents,
        )


def load_settings(project_dir: Path) -> WorkflowSettings:
    """Load config.yaml into :class:`WorkflowSettings`.

    Raises:
        ConfigError: If the config file exists but cannot be parsed.
    """
    config, err = load_workflow_config(project_dir)
    if err:
        raise ConfigError(f"Unable to read workflow config: {err}")
    return WorkflowSettings.from_config(config)


@dataclass(frozen=True)
class Credentials:
    tracker_token: str
    chat_token: str
    chat_id: str


def load_credentials(environ: Optional[Mapping[str, str]] = None) -> Credentials:
    """Read tracker and chat credentials from the environment.

    Called once at startup. A missing variable is fatal.

    Raises:
        ConfigError: If any credential variable is unset or empty.
    """
    env = os.environ if environ is None else environ
    values: dict[str, str] = {}
    missing: list[str] = []
    for key, var in CREDENTIAL_ENV_VARS.items():
        value = (env.get(var) or "").strip()
        if not value:
            missing.append(var)
        values[key] = value
    if missing:
        raise ConfigError(f"Missing required environment variables: {', '.join(missing)}")
    return Credentials(**values)
