"""Base PM adapter - the capability surface every PM tool implements."""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from ..errors import FeatureNotFoundError, PMAdapterError, ValidationError
from ..models import PMAdapterConfig, PMIssue, PMOverrides, PMState, WORKFLOW_PHASES
from .conventions import StateConventions

OVERRIDES_FILE = "pm-overrides.json"
DEFAULT_CACHE_TIMEOUT = 5 * 60  # seconds


class BasePMAdapter(ABC):
    """Uniform operations over a PM tool's issues and workflow states.

    Subclasses hide the tool's state vocabulary and issue-ID grammar behind
    ``fetch_states``, ``get_issue``, ``update_issue_state``, ``search_issues``,
    ``create_issue``, ``append_comment`` and ``is_valid_issue_id``.
    """

    tool_name = "base"

    def __init__(
        self,
        config: PMAdapterConfig,
        overrides: Optional[PMOverrides] = None,
        base_path: Path | str | None = None,
        cache_timeout: float = DEFAULT_CACHE_TIMEOUT,
    ):
        self.config = config
        self.base_path = Path(base_path) if base_path is not None else Path(".")
        self.logger = logging.getLogger(f"pmsync.adapters.{self.tool_name}")
        self.conventions = StateConventions()
        self.overrides = self.load_overrides(overrides)
        self.cache_timeout = cache_timeout
        # project key -> (fetched at, states)
        self._state_cache: Dict[str, Tuple[float, List[PMState]]] = {}

        for state_type, patterns in self.overrides.custom_patterns.items():
            self.conventions.add_custom_patterns(state_type, patterns)

    @property
    def overrides_path(self) -> Path:
        return self.base_path / ".hodge" / OVERRIDES_FILE

    def load_overrides(self, fallback: Optional[PMOverrides] = None) -> PMOverrides:
        """Overrides file wins over constructor overrides; bad files are ignored."""
        path = self.overrides_path
        if path.exists():
            try:
                return PMOverrides.from_dict(json.loads(path.read_text(encoding="utf-8")))
            except (OSError, ValueError, TypeError, AttributeError) as e:
                self.logger.warning(f"Failed to load PM overrides from {path}: {e}")
        return fallback or PMOverrides()

    # ------------------------------------------------------------------
    # Shared behaviour
    # ------------------------------------------------------------------

    async def get_states(self, project_id: Optional[str] = None) -> List[PMState]:
        """Workflow states, cached per project for ``cache_timeout`` seconds."""
        cache_key = project_id or "default"
        now = time.monotonic()
        cached = self._state_cache.get(cache_key)
        if cached and now - cached[0] < self.cache_timeout:
            return cached[1]

        states = await self.fetch_states(project_id)
        self._state_cache[cache_key] = (now, states)
        return states

    async def transition_issue(self, issue_id: str, from_mode: str, to_mode: str) -> None:
        """Move an issue to the state matching a workflow phase transition."""
        if not issue_id or not isinstance(issue_id, str):
            raise ValidationError("Invalid issue ID provided")
        if from_mode not in WORKFLOW_PHASES or to_mode not in WORKFLOW_PHASES:
            raise ValidationError(f"Invalid mode transition: {from_mode} -> {to_mode}")

        transition_key = f"{from_mode}->{to_mode}"
        override = self.overrides.transitions.get(transition_key)
        if override:
            await self.update_issue_state(issue_id, override)
            return

        target_type = self.conventions.get_target_state_type(from_mode, to_mode)
        states = await self.get_states()
        target = self.conventions.find_best_match(states, target_type)
        if target is None:
            raise PMAdapterError(
                f"No state found for transition {transition_key}. "
                f"Consider adding an override in .hodge/{OVERRIDES_FILE}",
                tool=self.tool_name,
            )
        await self.update_issue_state(issue_id, target.id)

    async def detect_mode_from_issue(self, issue_id: str) -> str:
        """Workflow phase implied by an issue's current state."""
        if not issue_id or not isinstance(issue_id, str):
            raise ValidationError("Invalid issue ID provided")
        issue = await self.get_issue(issue_id)

        if issue.state.type == "started":
            return "harden" if self.conventions.is_review_state(issue.state.name) else "build"
        if issue.state.type == "completed":
            return "ship"
        return "explore"

    async def find_issue_by_feature(self, feature: str) -> Optional[PMIssue]:
        """Look an issue up by ID when feature looks like one, else by title."""
        if self.is_valid_issue_id(feature):
            try:
                return await self.get_issue(feature.strip())
            except (PMAdapterError, FeatureNotFoundError):
                self.logger.debug(f"{feature} is not a known issue ID, searching by title")

        needle = feature.lower()
        for issue in await self.search_issues(feature):
            if needle in issue.title.lower():
                return issue
        return None

    async def cancel_issue(self, issue_id: str) -> None:
        """Best-effort move to a canceled state (completed if none exists)."""
        states = await self.get_states()
        target = self.conventions.find_best_match(states, "canceled") or self.conventions.find_best_match(
            states, "completed"
        )
        if target is None:
            raise PMAdapterError(f"No canceled state available for {issue_id}", tool=self.tool_name)
        await self.update_issue_state(issue_id, target.id)

    # ------------------------------------------------------------------
    # Tool-specific surface
    # ------------------------------------------------------------------

    @abstractmethod
    async def fetch_states(self, project_id: Optional[str] = None) -> List[PMState]:
        ...

    @abstractmethod
    async def get_issue(self, issue_id: str) -> PMIssue:
        ...

    @abstractmethod
    async def update_issue_state(self, issue_id: str, state_id: str) -> None:
        ...

    @abstractmethod
    async def search_issues(self, query: str) -> List[PMIssue]:
        ...

    @abstractmethod
    async def create_issue(self, title: str, description: Optional[str] = None) -> PMIssue:
        ...

    @abstractmethod
    async def append_comment(self, issue_id: str, comment: str) -> None:
        """Append a markdown comment to an issue."""

    @abstractmethod
    def is_valid_issue_id(self, value: str) -> bool:
        """True only if the whole trimmed input is an issue ID for this tool."""
