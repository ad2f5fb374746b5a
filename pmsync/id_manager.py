"""Dual ID management for features.

Every feature gets a canonical local ID (``HODGE-001``) that never changes and
is never reused. An external PM tool ID (``HOD-42``, ``#17``...) can be linked
to it at any time. Epics own sub-issues named ``HODGE-001.1``,
``HODGE-001.2``... in creation order; the hierarchy is one level deep.

State lives in two JSON files (see ``id_store``) and is re-read on every call,
so separate short-lived processes see each other's writes. Concurrent writers
are not guarded: the last write wins.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from .errors import FeatureNotFoundError, ValidationError
from .id_store import IDStore
from .models import FeatureID, utc_now
from .pmsync_logging import (
    log_external_linked,
    log_feature_created,
    log_performance,
    observability_hooks,
)

logger = logging.getLogger("pmsync.id_manager")

DEFAULT_PREFIX = "HODGE"

# Team prefixes that mark an external ID as Linear rather than Jira
LINEAR_PREFIXES = ("HOD", "ENG")

_LINEAR_SHAPE = re.compile(r"^([A-Z]{2,})-\d+$")
_JIRA_SHAPE = re.compile(r"^[A-Z][A-Z0-9]+-\d+$")
_GITHUB_SHAPE = re.compile(r"^#\d+$")
_GITLAB_SHAPE = re.compile(r"^[!#]\d+$")
_AZURE_SHAPE = re.compile(r"^\d+$")


def detect_pm_tool(external_id: str) -> str:
    """Guess which PM tool an external ID came from.

    Heuristic only: ``AB-12`` cannot be told apart between Linear and Jira
    without context, and ``#12`` always reads as GitHub even when it is a
    GitLab issue. The result is a correlation hint, never a validation.
    """
    linear = _LINEAR_SHAPE.match(external_id)
    if linear and linear.group(1) in LINEAR_PREFIXES:
        return "linear"
    if _JIRA_SHAPE.match(external_id):
        return "jira"
    if _GITHUB_SHAPE.match(external_id):
        return "github"
    if _GITLAB_SHAPE.match(external_id):
        return "gitlab"
    if _AZURE_SHAPE.match(external_id):
        return "azure"
    return "unknown"


def _require_string(value: object, label: str) -> str:
    if not isinstance(value, str) or not value:
        raise ValidationError(f"{label} must be a non-empty string")
    return value


class IDManager:
    """Allocate, link and resolve feature IDs."""

    def __init__(self, state_dir: Path | str = ".hodge", prefix: str = DEFAULT_PREFIX):
        if not isinstance(prefix, str) or not re.fullmatch(r"[A-Z][A-Z0-9]*", prefix):
            raise ValidationError("ID prefix must be uppercase alphanumeric, starting with a letter")
        self.prefix = prefix
        self.store = IDStore(state_dir)
        self._local_shape = re.compile(rf"^{re.escape(prefix)}-\d+(?:\.\d+)?$")
        self._root_shape = re.compile(rf"^{re.escape(prefix)}-\d+$")

    # ------------------------------------------------------------------
    # ID shape helpers
    # ------------------------------------------------------------------

    def is_local_id(self, value: str) -> bool:
        """True if value has the shape of a local ID (root or sub-issue)."""
        return isinstance(value, str) and bool(self._local_shape.match(value))

    def format_local_id(self, number: int) -> str:
        return f"{self.prefix}-{number:03d}"

    def detect_pm_tool(self, external_id: str) -> str:
        return detect_pm_tool(external_id)

    # ------------------------------------------------------------------
    # Feature creation and resolution
    # ------------------------------------------------------------------

    @log_performance("create_feature")
    def create_feature(self, name: str, external_id: Optional[str] = None) -> FeatureID:
        """Allocate the next root local ID, optionally linked to an external ID.

        The bumped counter is written before the ID is returned, so an ID is
        never issued twice even if the mapping write fails afterwards.
        """
        if external_id is not None:
            if not isinstance(external_id, str):
                raise ValidationError("External ID must be a string")
            if not external_id:
                raise ValidationError("External ID cannot be empty")

        local_id = self._generate_local_id()
        feature = FeatureID(
            local_id=local_id,
            external_id=external_id,
            pm_tool=detect_pm_tool(external_id) if external_id else None,
        )

        mappings = self.store.load_mappings()
        mappings[local_id] = feature
        self.store.save_mappings(mappings)

        logger.info(f"Created feature {local_id} ({name})")
        log_feature_created(local_id, name=name, external_id=external_id)
        return feature

    def resolve_id(self, feature_id: str) -> Optional[FeatureID]:
        """Resolve a local or external ID to its FeatureID, or None."""
        _require_string(feature_id, "ID")
        mappings = self.store.load_mappings()

        if self.is_local_id(feature_id):
            return mappings.get(feature_id)

        for feature in mappings.values():
            if feature.external_id == feature_id:
                return feature
        return None

    @log_performance("link_external_id")
    def link_external_id(self, local_id: str, external_id: str) -> FeatureID:
        """Attach (or replace) the external ID of an existing feature."""
        _require_string(local_id, "Local ID")
        _require_string(external_id, "External ID")
        if not self.is_local_id(local_id):
            raise ValidationError(f"Local ID must be in {self.prefix}-xxx format")

        mappings = self.store.load_mappings()
        feature = mappings.get(local_id)
        if feature is None:
            raise FeatureNotFoundError(local_id)

        feature.external_id = external_id
        feature.pm_tool = detect_pm_tool(external_id)
        feature.last_synced = utc_now()
        self.store.save_mappings(mappings)

        log_external_linked(local_id, external_id, feature.pm_tool)
        return feature

    def get_all_mappings(self) -> Dict[str, FeatureID]:
        return self.store.load_mappings()

    # ------------------------------------------------------------------
    # Epic / sub-issue hierarchy
    # ------------------------------------------------------------------

    @log_performance("create_sub_issue_id")
    def create_sub_issue_id(self, parent_id: str) -> str:
        """Create the next sub-issue under parent_id and return its local ID."""
        _require_string(parent_id, "Parent ID")
        mappings = self.store.load_mappings()

        parent = mappings.get(parent_id) if self.is_local_id(parent_id) else None
        if parent is None:
            raise FeatureNotFoundError(parent_id, f"Parent feature {parent_id} not found")
        if parent.parent_id is not None:
            raise ValidationError(
                f"{parent_id} is a sub-issue of {parent.parent_id}; sub-issues cannot have children"
            )

        sub_id = f"{parent.local_id}.{len(parent.child_ids) + 1}"
        if sub_id in mappings:
            raise ValidationError(f"Sub-issue {sub_id} already exists; mappings are inconsistent")

        mappings[sub_id] = FeatureID(local_id=sub_id, parent_id=parent.local_id)
        parent.child_ids.append(sub_id)
        parent.is_epic = True
        self.store.save_mappings(mappings)

        logger.info(f"Created sub-issue {sub_id}")
        log_feature_created(sub_id, parent_id=parent.local_id)
        return sub_id

    def get_sub_issues(self, parent_id: str) -> List[FeatureID]:
        """Sub-issues of parent_id in creation order (empty if unknown)."""
        _require_string(parent_id, "Parent ID")
        mappings = self.store.load_mappings()
        parent = mappings.get(parent_id)
        if parent is None:
            return []
        return [mappings[child] for child in parent.child_ids if child in mappings]

    def get_parent_epic(self, sub_issue_id: str) -> Optional[FeatureID]:
        _require_string(sub_issue_id, "Sub-issue ID")
        mappings = self.store.load_mappings()
        feature = mappings.get(sub_issue_id)
        if feature is None or feature.parent_id is None:
            return None
        return mappings.get(feature.parent_id)

    def is_epic(self, feature_id: str) -> bool:
        # A stale flag without children does not make an epic
        _require_string(feature_id, "ID")
        feature = self.store.load_mappings().get(feature_id)
        return bool(feature and feature.is_epic and feature.child_ids)

    # ------------------------------------------------------------------
    # Bulk updates
    # ------------------------------------------------------------------

    @log_performance("map_feature")
    def map_feature(self, local_id: str, external_id: str, pm_tool: str) -> FeatureID:
        """Upsert the external mapping of local_id with an explicit pm_tool."""
        _require_string(local_id, "Local ID")
        _require_string(external_id, "External ID")
        _require_string(pm_tool, "PM tool")
        if not self.is_local_id(local_id):
            raise ValidationError(f"Local ID must be in {self.prefix}-xxx format")

        mappings = self.store.load_mappings()
        feature = mappings.get(local_id)
        if feature is None:
            feature = FeatureID(local_id=local_id, external_id=external_id, pm_tool=pm_tool)
            mappings[local_id] = feature
        else:
            feature.external_id = external_id
            feature.pm_tool = pm_tool
            feature.last_synced = utc_now()
        self.store.save_mappings(mappings)

        log_external_linked(local_id, external_id, pm_tool)
        return feature

    @log_performance("migrate_ids")
    def migrate_ids(self, from_tool: str, to_tool: str, id_map: Mapping[str, str]) -> int:
        """Move features from one PM tool to another; returns how many moved."""
        if not from_tool or not to_tool:
            raise ValidationError("Both from_tool and to_tool must be specified")
        if not id_map:
            raise ValidationError("ID map cannot be empty")

        mappings = self.store.load_mappings()
        migrated = 0
        for old_id, new_id in id_map.items():
            for feature in mappings.values():
                if feature.external_id == old_id and feature.pm_tool == from_tool:
                    feature.external_id = new_id
                    feature.pm_tool = to_tool
                    feature.last_synced = utc_now()
                    migrated += 1

        self.store.save_mappings(mappings)
        logger.info(f"Migrated {migrated} feature(s) from {from_tool} to {to_tool}")
        observability_hooks.log_sync_event(
            "ids_migrated",
            from_tool=from_tool,
            to_tool=to_tool,
            migrated=migrated,
        )
        return migrated

    # ------------------------------------------------------------------
    # Counter
    # ------------------------------------------------------------------

    def _generate_local_id(self) -> str:
        counter = self.store.load_counter()
        counter.current += 1
        counter.last_updated = utc_now()
        self.store.save_counter(counter)
        return self.format_local_id(counter.current)
