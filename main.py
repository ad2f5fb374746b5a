"""MCP server exposing feature ID management and PM sync hooks."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from mcp.server.fastmcp import FastMCP

from pmsync.config import ConfigManager, validate_pm_environment
from pmsync.hooks import PMHooks
from pmsync.id_manager import IDManager
from pmsync.models import ShipContext, SubIssueRef
from pmsync.pmsync_logging import setup_logging

mcp = FastMCP("hodge-pm-sync")


PROJECT_MARKER_DIRECTORIES = (".hodge",)
PROJECT_ROOT_ENV = "HODGE_PROJECT_ROOT"
LOG_LEVEL_ENV = "HODGE_LOG_LEVEL"
SERVER_ROOT = Path(__file__).resolve().parent

# One PMHooks per project root so background syncs outlive a single tool call
_HOOKS: Dict[Path, PMHooks] = {}


def _candidate_bases() -> List[Path]:
    cwd = Path.cwd().resolve()
    bases: List[Path] = [cwd]
    bases.extend(cwd.parents)
    if SERVER_ROOT not in bases:
        bases.append(SERVER_ROOT)
    seen: set[Path] = set()
    ordered: List[Path] = []
    for base in bases:
        if base not in seen:
            seen.add(base)
            ordered.append(base)
    return ordered


def _locate_project_root() -> Optional[Path]:
    for base in _candidate_bases():
        for marker in PROJECT_MARKER_DIRECTORIES:
            if (base / marker).is_dir():
                return base
    return None


def _resolve_root(root: Optional[str]) -> Path:
    if root:
        resolved = Path(root).expanduser().resolve()
        if not resolved.exists():
            raise ValueError(f"Provided root '{root}' does not exist.")
        return resolved

    env_root = os.getenv(PROJECT_ROOT_ENV)
    if env_root:
        env_path = Path(env_root).expanduser().resolve()
        if not env_path.exists():
            raise ValueError(
                f"Environment variable {PROJECT_ROOT_ENV} points to '{env_root}', which does not exist."
            )
        return env_path

    detected_root = _locate_project_root()
    if detected_root:
        return detected_root

    raise ValueError(
        "Unable to determine project root automatically. Provide the 'root' argument when calling the tool "
        f"or set the {PROJECT_ROOT_ENV} environment variable."
    )


def _id_manager(root: Optional[str]) -> IDManager:
    return IDManager(_resolve_root(root) / ".hodge")


def _hooks(root: Optional[str]) -> PMHooks:
    resolved = _resolve_root(root)
    hooks = _HOOKS.get(resolved)
    if hooks is None:
        hooks = _HOOKS[resolved] = PMHooks(resolved)
    return hooks


@mcp.tool()
def create_feature(name: str, external_id: Optional[str] = None, root: Optional[str] = None) -> Dict[str, Any]:
    """Allocate the next local feature ID (HODGE-NNN), optionally linked to a PM issue ID."""

    feature = _id_manager(root).create_feature(name, external_id)
    return {
        "feature": feature.to_dict(),
        "next_suggested_step": "pm_explore",
        "workflow_tip": f"Next: start exploring {feature.local_id} with pm_explore",
    }


@mcp.tool()
def resolve_id(feature_id: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Resolve a local ID or an external PM issue ID to its feature record."""

    feature = _id_manager(root).resolve_id(feature_id)
    return {"query": feature_id, "found": feature is not None, "feature": feature.to_dict() if feature else None}


@mcp.tool()
def link_external_id(local_id: str, external_id: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Link (or re-link) a local feature to a PM issue ID."""

    feature = _id_manager(root).link_external_id(local_id, external_id)
    return {"feature": feature.to_dict()}


@mcp.tool()
def create_sub_issue(parent_id: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Create the next sub-issue ID under an epic (HODGE-001 -> HODGE-001.1)."""

    manager = _id_manager(root)
    sub_issue_id = manager.create_sub_issue_id(parent_id)
    return {
        "sub_issue_id": sub_issue_id,
        "parent_id": parent_id,
        "is_epic": manager.is_epic(parent_id),
    }


@mcp.tool()
def list_sub_issues(parent_id: str, root: Optional[str] = None) -> Dict[str, Any]:
    """List an epic's sub-issues in creation order."""

    manager = _id_manager(root)
    subs = manager.get_sub_issues(parent_id)
    return {
        "parent_id": parent_id,
        "is_epic": manager.is_epic(parent_id),
        "sub_issues": [sub.to_dict() for sub in subs],
    }


@mcp.tool()
async def pm_explore(feature: str, description: Optional[str] = None, root: Optional[str] = None) -> Dict[str, Any]:
    """Track a feature as exploring locally and in the configured PM tool."""

    hooks = _hooks(root)
    await hooks.on_explore(feature, description)
    return {"feature": feature, "status": "exploring", "pm_file": str(hooks.local_adapter.pm_path)}


@mcp.tool()
async def pm_build(feature: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Move a feature to building."""

    hooks = _hooks(root)
    await hooks.on_build(feature)
    return {"feature": feature, "status": "building", "pm_file": str(hooks.local_adapter.pm_path)}


@mcp.tool()
async def pm_harden(feature: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Move a feature to hardening."""

    hooks = _hooks(root)
    await hooks.on_harden(feature)
    return {"feature": feature, "status": "hardening", "pm_file": str(hooks.local_adapter.pm_path)}


@mcp.tool()
async def pm_ship(
    feature: str,
    commit_hash: Optional[str] = None,
    branch: Optional[str] = None,
    files_changed: Optional[int] = None,
    lines_added: Optional[int] = None,
    lines_removed: Optional[int] = None,
    tests_passed: Optional[int] = None,
    tests_total: Optional[int] = None,
    coverage: Optional[float] = None,
    patterns: Optional[List[str]] = None,
    commit_message: Optional[str] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Mark a feature shipped; ship details are posted as a comment on the PM issue."""

    hooks = _hooks(root)
    details = [commit_hash, branch, files_changed, lines_added, lines_removed, tests_total, coverage, commit_message]
    if any(value is not None for value in details) or patterns:
        tests_results = None
        if tests_total is not None:
            tests_results = {"passed": tests_passed or 0, "total": tests_total}
        await hooks.on_ship(
            ShipContext(
                feature=feature,
                commit_hash=commit_hash,
                branch=branch,
                files_changed=files_changed,
                lines_added=lines_added,
                lines_removed=lines_removed,
                tests_results=tests_results,
                coverage=coverage,
                patterns=list(patterns or []),
                commit_message=commit_message,
            )
        )
    else:
        await hooks.on_ship(feature)
    return {"feature": feature, "status": "shipped", "pm_file": str(hooks.local_adapter.pm_path)}


@mcp.tool()
async def create_pm_issue(
    feature: str,
    decisions: Optional[List[str]] = None,
    is_epic: bool = False,
    sub_issues: Optional[List[Dict[str, str]]] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Create the feature's PM issue; failures are queued for process_pm_queue."""

    subs = [SubIssueRef.from_dict(sub) for sub in sub_issues or []]
    result = await _hooks(root).create_pm_issue(feature, decisions or [], is_epic=is_epic, sub_issues=subs)
    return {"feature": feature, **result.to_dict()}


@mcp.tool()
async def process_pm_queue(root: Optional[str] = None) -> Dict[str, Any]:
    """Retry queued PM operations once each."""

    return await _hooks(root).process_queue()


@mcp.tool()
def pm_environment(root: Optional[str] = None) -> Dict[str, Any]:
    """Report the active PM tool and any missing credentials."""

    config = ConfigManager(_resolve_root(root))
    result = validate_pm_environment(config).to_dict()
    result["external_sync_configured"] = config.is_external_sync_configured()
    return result


@mcp.resource("pmsync://features")
def resource_features() -> str:
    """Resource view listing tracked feature IDs and their PM links."""

    try:
        manager = _id_manager(None)
    except ValueError:
        return f"No project root detected. Launch tools with a 'root' argument or set {PROJECT_ROOT_ENV}."

    mappings = manager.get_all_mappings()
    if not mappings:
        return "No features have been created yet."

    lines = ["Hodge Features"]
    for local_id, feature in sorted(mappings.items()):
        lines.append("")
        lines.append(f"- {local_id}")
        if feature.external_id:
            lines.append(f"  External: {feature.external_id} ({feature.pm_tool})")
        if feature.parent_id:
            lines.append(f"  Parent: {feature.parent_id}")
        if feature.child_ids:
            lines.append(f"  Sub-issues: {', '.join(feature.child_ids)}")

    return "\n".join(lines)


def main() -> None:
    setup_logging(os.getenv(LOG_LEVEL_ENV, "INFO").upper())
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
