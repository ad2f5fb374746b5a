"""Convention-based pattern matching for PM state detection."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Pattern, Sequence

from ..models import PMState


@dataclass(slots=True)
class ConventionPattern:
    type: str
    priority: int
    patterns: List[Pattern[str]] = field(default_factory=list)


def _compile(*patterns: str) -> List[Pattern[str]]:
    return [re.compile(p, re.IGNORECASE) for p in patterns]


# Workflow phase transitions and the state type they land in
TRANSITION_TARGETS = {
    "explore->build": "started",
    "build->harden": "started",
    "harden->ship": "completed",
    "any->cancel": "canceled",
}

_REVIEW_PATTERNS = _compile(
    r"review",
    r"^pr$",
    r"pull[\s-]?request",
    r"^testing$",
    r"^qa$",
    r"verification",
    r"approval",
)


class StateConventions:
    """Detect state types across PM tools from state names."""

    def __init__(self):
        self.patterns: List[ConventionPattern] = [
            ConventionPattern("unstarted", 1, _compile(
                r"^backlog$", r"^todo$", r"^to do$", r"^upcoming$", r"^planned$",
                r"^ready$", r"^triage$", r"^icebox$", r"^queued$", r"^exploring$",
            )),
            ConventionPattern("started", 2, _compile(
                r"in[\s-]?progress", r"^doing$", r"^working$", r"^development$",
                r"^active$", r"^wip$", r"^started$", r"in[\s-]?review", r"^reviewing$",
                r"^testing$", r"^qa$", r"^verification$", r"^building$", r"^hardening$",
            )),
            ConventionPattern("completed", 3, _compile(
                r"^done$", r"^completed?$", r"^shipped$", r"^deployed$", r"^closed$",
                r"^resolved$", r"^finished$", r"^released$",
            )),
            ConventionPattern("canceled", 4, _compile(
                r"^cancell?ed$", r"^abandoned$", r"^declined$", r"^rejected$",
                r"^invalid$", r"won'?t[\s-]?fix", r"^duplicate$",
            )),
        ]

    def detect_state_type(self, state_name: str) -> str:
        """Detect state type from state name using patterns.

        >>> StateConventions().detect_state_type("In Progress")
        'started'
        """
        for convention in self.patterns:
            for pattern in convention.patterns:
                if pattern.search(state_name):
                    return convention.type
        return "unknown"

    def find_best_match(self, states: Sequence[PMState], target_type: str) -> Optional[PMState]:
        """Best state for target_type: exact type first, then by name pattern."""
        for state in states:
            if state.type == target_type:
                return state

        convention = next((p for p in self.patterns if p.type == target_type), None)
        if convention is None:
            return None

        for pattern in convention.patterns:
            for state in states:
                if pattern.search(state.name):
                    return state
        return None

    def get_target_state_type(self, from_mode: str, to_mode: str) -> str:
        return TRANSITION_TARGETS.get(f"{from_mode}->{to_mode}", "unknown")

    def is_review_state(self, state_name: str) -> bool:
        return any(p.search(state_name) for p in _REVIEW_PATTERNS)

    def add_custom_patterns(self, state_type: str, patterns: Iterable[str | Pattern[str]]) -> None:
        """Add override patterns; strings are compiled case-insensitively."""
        compiled = [p if isinstance(p, re.Pattern) else re.compile(p, re.IGNORECASE) for p in patterns]
        existing = next((p for p in self.patterns if p.type == state_type), None)
        if existing:
            existing.patterns.extend(compiled)
        else:
            self.patterns.append(ConventionPattern(state_type, 10, compiled))
