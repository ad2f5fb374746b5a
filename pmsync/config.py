"""Project configuration for PM synchronization.

Settings come from two places:

* ``.hodge/config.json`` - the ``pm`` block names the active tool, an optional
  per-phase status map, the ship comment verbosity and a debug switch.
* Environment variables - credentials are only ever read from the
  environment, and ``HODGE_PM_TOOL`` overrides the configured tool.

The file is re-read on every call so a long-lived process picks up edits.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import StorageError
from .models import DEFAULT_STATUS_MAP, VERBOSITY_LEVELS, WORKFLOW_PHASES

logger = logging.getLogger("pmsync.config")

CONFIG_FILE = "config.json"

PM_TOOL_ENV = "HODGE_PM_TOOL"
DEBUG_ENVS = ("HODGE_DEBUG", "DEBUG")
PM_DEBUG_ENV = "HODGE_PM_DEBUG"

# Credential env var per tool
API_KEY_ENVS = {
    "linear": "LINEAR_API_KEY",
    "github": "GITHUB_TOKEN",
    "jira": "JIRA_API_TOKEN",
    "gitlab": "GITLAB_TOKEN",
    "azure": "AZURE_DEVOPS_TOKEN",
}
TEAM_ID_ENVS = {
    "linear": "LINEAR_TEAM_ID",
}
PROJECT_ID_ENVS = {
    "linear": "LINEAR_PROJECT_ID",
    "github": "GITHUB_REPO",
}

_TRUTHY = {"1", "true", "yes", "on"}


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in _TRUTHY


@dataclass(slots=True)
class PMConfig:
    """The ``pm`` block of the project config, merged with defaults."""

    tool: Optional[str] = None
    status_map: Dict[str, str] = field(default_factory=dict)
    verbosity: str = "essential"
    debug: bool = False

    def status_for(self, phase: str) -> str:
        """Target external status for a workflow phase."""
        return self.status_map.get(phase) or DEFAULT_STATUS_MAP[phase]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PMConfig":
        raw_map = data.get("status_map") or {}
        if not isinstance(raw_map, dict):
            logger.warning(f"Ignoring pm.status_map: expected an object, got {type(raw_map).__name__}")
            raw_map = {}
        status_map = {
            phase: str(status)
            for phase, status in raw_map.items()
            if phase in WORKFLOW_PHASES and status
        }
        verbosity = data.get("verbosity") or "essential"
        if verbosity not in VERBOSITY_LEVELS:
            logger.warning(f"Unknown comment verbosity '{verbosity}', using 'essential'")
            verbosity = "essential"
        tool = data.get("tool")
        return cls(
            tool=str(tool).lower() if tool else None,
            status_map=status_map,
            verbosity=verbosity,
            debug=bool(data.get("debug", False)),
        )


@dataclass(slots=True)
class EnvironmentValidation:
    """Result of checking whether the PM environment is usable."""

    tool: Optional[str]
    is_valid: bool
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"tool": self.tool, "is_valid": self.is_valid, "errors": list(self.errors)}


class ConfigManager:
    """Read project PM configuration and tool credentials."""

    def __init__(self, base_path: Path | str = "."):
        self.base_path = Path(base_path)
        self.config_path = self.base_path / ".hodge" / CONFIG_FILE

    def load(self) -> Dict[str, Any]:
        """Raw project config; an absent file is an empty config."""
        try:
            text = self.config_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as exc:
            raise StorageError(f"Failed to read {self.config_path}: {exc}", self.config_path) from exc
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise StorageError(f"Failed to parse {self.config_path}: {exc}", self.config_path) from exc
        return data if isinstance(data, dict) else {}

    def save(self, config: Dict[str, Any]) -> Path:
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        self.config_path.write_text(json.dumps(config, indent=2) + "\n", encoding="utf-8")
        return self.config_path

    def get_pm_config(self) -> PMConfig:
        pm = self.load().get("pm") or {}
        if not isinstance(pm, dict):
            raise StorageError(
                f"Invalid pm block in {self.config_path}: expected an object, got {type(pm).__name__}",
                self.config_path,
            )
        return PMConfig.from_dict(pm)

    def get_pm_tool(self) -> Optional[str]:
        """Active tool: HODGE_PM_TOOL first, then the config file."""
        env_tool = os.getenv(PM_TOOL_ENV)
        if env_tool:
            return env_tool.strip().lower()
        return self.get_pm_config().tool

    def get_pm_api_key(self, tool: Optional[str]) -> Optional[str]:
        if not tool:
            return None
        env_name = API_KEY_ENVS.get(tool.lower())
        return os.getenv(env_name) if env_name else None

    def get_pm_team_id(self, tool: str = "linear") -> Optional[str]:
        env_name = TEAM_ID_ENVS.get(tool.lower())
        return os.getenv(env_name) if env_name else None

    def get_pm_project_id(self, tool: str) -> Optional[str]:
        env_name = PROJECT_ID_ENVS.get(tool.lower())
        return os.getenv(env_name) if env_name else None

    def is_debug_mode(self) -> bool:
        if any(_env_flag(name) for name in DEBUG_ENVS):
            return True
        return self.get_pm_config().debug

    def is_pm_debug_mode(self) -> bool:
        """Detailed PM error output, independent of the general debug flag."""
        return _env_flag(PM_DEBUG_ENV)

    def is_external_sync_configured(self) -> bool:
        tool = self.get_pm_tool()
        if not tool or tool == "local":
            return False
        return bool(self.get_pm_api_key(tool))


def validate_pm_environment(config: Optional[ConfigManager] = None) -> EnvironmentValidation:
    """Check that the active PM tool has the credentials it needs."""
    config = config or ConfigManager()
    tool = config.get_pm_tool()
    errors: List[str] = []

    if not tool:
        errors.append(f"{PM_TOOL_ENV} environment variable is not set and no pm.tool is configured")
        return EnvironmentValidation(tool=None, is_valid=False, errors=errors)

    if tool == "local":
        return EnvironmentValidation(tool=tool, is_valid=True)

    if tool == "linear":
        api_key = config.get_pm_api_key("linear")
        if not api_key:
            errors.append("LINEAR_API_KEY environment variable is required for Linear")
        elif len(api_key) < 20:
            errors.append("LINEAR_API_KEY appears to be invalid (too short)")
        if not config.get_pm_team_id("linear"):
            errors.append("LINEAR_TEAM_ID environment variable is required for Linear")
    elif tool == "github":
        if not config.get_pm_api_key("github"):
            errors.append("GITHUB_TOKEN environment variable is required for GitHub")
        if not config.get_pm_project_id("github"):
            errors.append("GITHUB_REPO environment variable (owner/repo) is required for GitHub")
    elif tool in API_KEY_ENVS:
        errors.append(f"{tool} integration is not yet implemented")
    else:
        errors.append(f"Unknown PM tool: {tool}")

    return EnvironmentValidation(tool=tool, is_valid=not errors, errors=errors)
