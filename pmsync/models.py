"""Data models for feature ID tracking and PM synchronization.

This module contains the core data structures used throughout pmsync,
representing feature identifiers, PM tool states and issues, ship context
for comments, and retry queue entries.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


WORKFLOW_PHASES = ("explore", "build", "harden", "ship")

# Local mirror statuses, in workflow order
LOCAL_STATUSES = ("exploring", "building", "hardening", "shipped")

PHASE_TO_LOCAL_STATUS = {
    "explore": "exploring",
    "build": "building",
    "harden": "hardening",
    "ship": "shipped",
}

DEFAULT_STATUS_MAP = {
    "explore": "To Do",
    "build": "In Progress",
    "harden": "In Review",
    "ship": "Done",
}

STATE_TYPES = ("unstarted", "started", "completed", "canceled", "unknown")

VERBOSITY_LEVELS = ("minimal", "essential", "rich")


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _format_date(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_date(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(slots=True)
class FeatureID:
    """A feature's local canonical ID and its optional external mapping."""

    local_id: str
    external_id: Optional[str] = None
    pm_tool: Optional[str] = None
    created: datetime = field(default_factory=utc_now)
    last_synced: Optional[datetime] = None
    parent_id: Optional[str] = None
    child_ids: List[str] = field(default_factory=list)
    is_epic: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        data: Dict[str, Any] = {
            "local_id": self.local_id,
            "external_id": self.external_id,
            "pm_tool": self.pm_tool,
            "created": _format_date(self.created),
            "last_synced": _format_date(self.last_synced),
        }
        if self.parent_id:
            data["parent_id"] = self.parent_id
        if self.child_ids:
            data["child_ids"] = list(self.child_ids)
        if self.is_epic:
            data["is_epic"] = True
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeatureID":
        """Create from dictionary representation."""
        return cls(
            local_id=data["local_id"],
            external_id=data.get("external_id"),
            pm_tool=data.get("pm_tool"),
            created=_parse_date(data.get("created")) or utc_now(),
            last_synced=_parse_date(data.get("last_synced")),
            parent_id=data.get("parent_id"),
            child_ids=list(data.get("child_ids", [])),
            is_epic=bool(data.get("is_epic", False)),
        )

    @property
    def is_sub_issue(self) -> bool:
        return self.parent_id is not None


@dataclass(slots=True)
class IDCounter:
    """Monotonic counter backing root local ID allocation."""

    current: int = 0
    last_updated: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {"current": self.current, "last_updated": _format_date(self.last_updated)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IDCounter":
        return cls(
            current=int(data.get("current", 0)),
            last_updated=_parse_date(data.get("last_updated")) or utc_now(),
        )


@dataclass(slots=True)
class PMState:
    """A workflow state as exposed by a PM tool."""

    id: str
    name: str
    type: str = "unknown"
    color: Optional[str] = None
    description: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "color": self.color,
            "description": self.description,
        }


@dataclass(slots=True)
class PMIssue:
    """An issue as exposed by a PM tool."""

    id: str
    title: str
    state: PMState
    description: Optional[str] = None
    url: Optional[str] = None
    labels: List[str] = field(default_factory=list)
    assignee: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "state": self.state.to_dict(),
            "description": self.description,
            "url": self.url,
            "labels": list(self.labels),
            "assignee": self.assignee,
        }


@dataclass(slots=True)
class PMAdapterConfig:
    """Connection settings for a single PM tool."""

    tool: str
    api_key: Optional[str] = None
    team_id: Optional[str] = None
    project_id: Optional[str] = None
    base_url: Optional[str] = None


@dataclass(slots=True)
class PMOverrides:
    """User overrides loaded from pm-overrides.json."""

    transitions: Dict[str, str] = field(default_factory=dict)
    custom_patterns: Dict[str, List[str]] = field(default_factory=dict)
    issue_url_pattern: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PMOverrides":
        return cls(
            transitions=dict(data.get("transitions", {})),
            custom_patterns={k: list(v) for k, v in data.get("custom_patterns", {}).items()},
            issue_url_pattern=data.get("issue_url_pattern"),
        )


@dataclass(slots=True)
class ShipContext:
    """Ship-time facts used to render the PM comment."""

    feature: str
    commit_hash: Optional[str] = None
    branch: Optional[str] = None
    files_changed: Optional[int] = None
    lines_added: Optional[int] = None
    lines_removed: Optional[int] = None
    tests_results: Optional[Dict[str, int]] = None  # {"passed": n, "total": m}
    coverage: Optional[float] = None
    patterns: List[str] = field(default_factory=list)
    commit_message: Optional[str] = None
    version: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ShipContext":
        return cls(
            feature=data["feature"],
            commit_hash=data.get("commit_hash"),
            branch=data.get("branch"),
            files_changed=data.get("files_changed"),
            lines_added=data.get("lines_added"),
            lines_removed=data.get("lines_removed"),
            tests_results=data.get("tests_results"),
            coverage=data.get("coverage"),
            patterns=list(data.get("patterns", [])),
            commit_message=data.get("commit_message"),
            version=data.get("version"),
        )


@dataclass(slots=True)
class SubIssueRef:
    """A sub-issue to create alongside an epic."""

    id: str
    title: str

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.id, "title": self.title}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SubIssueRef":
        return cls(id=data["id"], title=data["title"])


@dataclass(slots=True)
class RetryEntry:
    """A failed PM operation waiting in the retry queue."""

    type: str
    feature: str
    decisions: List[str] = field(default_factory=list)
    is_epic: bool = False
    sub_issues: List[SubIssueRef] = field(default_factory=list)
    timestamp: str = field(default_factory=lambda: utc_now().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "type": self.type,
            "feature": self.feature,
            "decisions": list(self.decisions),
            "is_epic": self.is_epic,
            "sub_issues": [sub.to_dict() for sub in self.sub_issues],
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetryEntry":
        """Create from dictionary representation."""
        return cls(
            type=data["type"],
            feature=data["feature"],
            decisions=list(data.get("decisions", [])),
            is_epic=bool(data.get("is_epic", False)),
            sub_issues=[SubIssueRef.from_dict(s) for s in data.get("sub_issues", [])],
            timestamp=data.get("timestamp") or utc_now().isoformat(),
        )


@dataclass(slots=True)
class IssueCreationResult:
    """Outcome of PMHooks.create_pm_issue; never raised, always returned."""

    created: bool
    error: Optional[str] = None
    external_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"created": self.created}
        if self.error:
            data["error"] = self.error
        if self.external_id:
            data["external_id"] = self.external_id
        return data
