"""PM integration hooks called by the workflow commands.

Each lifecycle hook updates the local markdown mirror first and waits for it,
then starts the external PM update as a background task. External failures
are swallowed at this boundary and only surface in debug output:

* ``HODGE_DEBUG`` / ``DEBUG`` / config ``debug`` print a one-line notice.
* ``HODGE_PM_DEBUG`` also prints the error itself.

Issue creation failures are queued in ``.hodge/.pm-queue.json`` and replayed
by ``process_queue``.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Union

from .adapters import BasePMAdapter, LocalPMAdapter, create_pm_adapter
from .comments import CommentGenerator
from .config import ConfigManager
from .errors import PMAdapterError
from .id_manager import IDManager
from .models import (
    IssueCreationResult,
    PMAdapterConfig,
    PMState,
    RetryEntry,
    ShipContext,
    SubIssueRef,
)
from .pmsync_logging import (
    log_error_with_context,
    log_external_sync,
    log_performance,
    log_retry_event,
)
from .retry_queue import RetryQueue

logger = logging.getLogger("pmsync.hooks")

AdapterFactory = Callable[..., BasePMAdapter]

EXTERNAL_TOOLS = ("linear", "github")

CREATE_ISSUE = "create_issue"

# Status name -> Linear state type, used when no state name matches exactly
LINEAR_TYPE_BUCKETS = {
    "to do": "unstarted",
    "exploring": "unstarted",
    "in progress": "started",
    "building": "started",
    "in review": "started",
    "hardening": "started",
    "done": "completed",
    "shipped": "completed",
}

DONE_STATUSES = {"done", "shipped", "closed", "completed"}


def map_to_linear_state(status: str, states: Sequence[PMState]) -> Optional[PMState]:
    """Pick the Linear state for a status name.

    Exact (case-insensitive) name match first, then the first state of the
    matching type bucket, then the first state. Only an empty state list
    gives None.
    """
    if not states:
        return None
    wanted = status.strip().lower()
    exact = next((s for s in states if s.name.lower() == wanted), None)
    if exact:
        return exact
    target_type = LINEAR_TYPE_BUCKETS.get(wanted, "started")
    return next((s for s in states if s.type == target_type), states[0])


def _issue_description(feature: str, decisions: Iterable[str]) -> str:
    lines = [f"Feature {feature}"]
    decisions = [d for d in decisions if d]
    if decisions:
        lines += ["", "## Decisions"] + [f"- {d}" for d in decisions]
    return "\n".join(lines)


class PMHooks:
    """Push workflow phase changes to the local mirror and the configured PM tool."""

    def __init__(
        self,
        base_path: Path | str = ".",
        config: Optional[ConfigManager] = None,
        local_adapter: Optional[LocalPMAdapter] = None,
        id_manager: Optional[IDManager] = None,
        adapter_factory: Optional[AdapterFactory] = None,
        retry_queue: Optional[RetryQueue] = None,
    ):
        self.base_path = Path(base_path)
        self.config = config or ConfigManager(self.base_path)
        self.local_adapter = local_adapter or LocalPMAdapter(self.base_path)
        self.id_manager = id_manager or IDManager(self.base_path / ".hodge")
        self.adapter_factory = adapter_factory or create_pm_adapter
        self.retry_queue = retry_queue or RetryQueue(self.base_path)
        self._background: Set[asyncio.Task] = set()

    async def init(self) -> None:
        """Create the local mirror and check that the project config parses."""
        await self.local_adapter.init()
        self.config.load()

    # ------------------------------------------------------------------
    # Lifecycle hooks
    # ------------------------------------------------------------------

    async def on_explore(self, feature: str, description: Optional[str] = None) -> None:
        added = await self.local_adapter.add_feature(feature, description or f"Feature {feature}", "TBD")
        if not added:
            await self.local_adapter.update_feature_status(feature, "exploring")
        self.update_external_pm_silently(feature, "explore")

    async def on_build(self, feature: str) -> None:
        await self.local_adapter.update_feature_status(feature, "building")
        self.update_external_pm_silently(feature, "build")

    async def on_harden(self, feature: str) -> None:
        await self.local_adapter.update_feature_status(feature, "hardening")
        self.update_external_pm_silently(feature, "harden")

    async def on_ship(self, feature_or_context: Union[str, ShipContext]) -> None:
        """Ship a feature; a ShipContext also posts a comment to the PM issue."""
        if isinstance(feature_or_context, ShipContext):
            feature, ship_context = feature_or_context.feature, feature_or_context
        else:
            feature, ship_context = feature_or_context, None

        await self.local_adapter.update_feature_status(feature, "shipped")
        await self.local_adapter.update_phase_progress()
        self.update_external_pm_silently(feature, "ship", ship_context)
        logger.info("Updated project management tracking")

    # ------------------------------------------------------------------
    # External sync
    # ------------------------------------------------------------------

    def update_external_pm_silently(
        self,
        feature: str,
        phase: str,
        ship_context: Optional[ShipContext] = None,
    ) -> Optional[asyncio.Task]:
        """Start a background sync to the PM tool; None when nothing to sync."""
        try:
            tool = self.config.get_pm_tool()
            if not tool or tool == "local" or not self.config.get_pm_api_key(tool):
                return None
            status = self.config.get_pm_config().status_for(phase)
        except Exception as e:
            # Config problems never escape a lifecycle hook
            logger.debug(f"Skipping external PM update for {feature}: {e}")
            return None

        task = asyncio.create_task(self._sync_external(tool, feature, phase, status, ship_context))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _sync_external(
        self,
        tool: str,
        feature: str,
        phase: str,
        status: str,
        ship_context: Optional[ShipContext],
    ) -> None:
        debug, pm_debug = self._debug_flags()
        try:
            if debug:
                logger.info(f"Updating {tool} issue: {feature}")
            await self.call_pm_adapter(tool, feature, status, phase=phase, ship_context=ship_context)
        except Exception as e:
            log_external_sync(feature, tool, False, status=status, error=str(e))
            if debug or pm_debug:
                logger.info(f"Could not update {tool} issue (non-blocking)")
                if pm_debug:
                    logger.info(f"Error: {e}")
            else:
                logger.debug(f"External PM update for {feature} failed: {e}")
            return

        log_external_sync(feature, tool, True, status=status)
        if debug:
            logger.info(f"Updated to status: {status}")

    def _debug_flags(self) -> tuple[bool, bool]:
        pm_debug = self.config.is_pm_debug_mode()
        try:
            return self.config.is_debug_mode(), pm_debug
        except Exception:
            return False, pm_debug

    def _build_adapter(self, tool: str) -> BasePMAdapter:
        adapter_config = PMAdapterConfig(
            tool=tool,
            api_key=self.config.get_pm_api_key(tool),
            team_id=self.config.get_pm_team_id(tool),
            project_id=self.config.get_pm_project_id(tool),
        )
        return self.adapter_factory(tool, adapter_config, base_path=self.base_path)

    async def _resolve_issue_id(self, adapter: BasePMAdapter, feature: str) -> Optional[str]:
        """Recorded external ID first, then a lookup through the adapter."""
        record = self.id_manager.resolve_id(feature)
        if record and record.external_id and adapter.is_valid_issue_id(record.external_id):
            return record.external_id
        issue = await adapter.find_issue_by_feature(feature)
        return issue.id if issue else None

    async def call_pm_adapter(
        self,
        tool: str,
        feature: str,
        status: str,
        phase: Optional[str] = None,
        ship_context: Optional[ShipContext] = None,
    ) -> None:
        """Move the feature's issue in ``tool`` to ``status``."""
        name = tool.lower()
        if name == "local":
            await self.local_adapter.update_issue_state(feature, status)
            return
        if name not in EXTERNAL_TOOLS:
            raise PMAdapterError(f"PM tool {tool} not supported", tool=name)

        adapter = self._build_adapter(name)
        issue_id = await self._resolve_issue_id(adapter, feature)
        if issue_id is None:
            logger.debug(f"No {name} issue found for {feature}")
            return

        is_ship = phase == "ship" if phase else status.lower() in DONE_STATUSES
        if name == "linear":
            target = map_to_linear_state(status, await adapter.get_states())
            if target is None:
                raise PMAdapterError("Linear team has no workflow states", tool=name)
            await adapter.update_issue_state(issue_id, target.id)
        else:
            closed = is_ship or status.lower() in DONE_STATUSES
            await adapter.update_issue_state(issue_id, "closed" if closed else "open")

        if ship_context is not None and is_ship:
            generator = CommentGenerator(self.config.get_pm_config().verbosity)
            await adapter.append_comment(issue_id, generator.generate(ship_context))
            logger.debug(f"Added ship comment to {name} issue {issue_id}")

    # ------------------------------------------------------------------
    # Issue creation and retry
    # ------------------------------------------------------------------

    @log_performance("create_pm_issue")
    async def create_pm_issue(
        self,
        feature: str,
        decisions: Sequence[str],
        is_epic: bool = False,
        sub_issues: Optional[Sequence[Union[SubIssueRef, Dict[str, Any]]]] = None,
    ) -> IssueCreationResult:
        """Create the feature's issue (and sub-issues for an epic). Never raises."""
        try:
            subs = [s if isinstance(s, SubIssueRef) else SubIssueRef.from_dict(s) for s in sub_issues or []]
        except (KeyError, TypeError, AttributeError) as e:
            return IssueCreationResult(created=False, error=f"Invalid sub-issue: {e!r}")
        try:
            tool = self.config.get_pm_tool()
        except Exception as e:
            return IssueCreationResult(created=False, error=str(e) or type(e).__name__)
        if not tool or tool == "local":
            return IssueCreationResult(created=False, error="No external PM tool configured")

        try:
            external_id = await self._create_external_issue(tool, feature, decisions, is_epic, subs)
        except Exception as e:
            error = str(e) or type(e).__name__
            self._queue_for_retry(
                RetryEntry(
                    type=CREATE_ISSUE,
                    feature=feature,
                    decisions=list(decisions),
                    is_epic=is_epic,
                    sub_issues=subs,
                ),
                error,
            )
            return IssueCreationResult(created=False, error=error)

        logger.info(f"Created {tool} issue {external_id} for {feature}")
        return IssueCreationResult(created=True, external_id=external_id)

    def _queue_for_retry(self, entry: RetryEntry, error: str) -> None:
        try:
            self.retry_queue.append(entry)
        except Exception as e:
            log_error_with_context(e, {"operation": "queue_pm_retry", "feature": entry.feature})
            return
        log_retry_event("queued", entry.feature, error=error)

    async def _create_external_issue(
        self,
        tool: str,
        feature: str,
        decisions: Sequence[str],
        is_epic: bool,
        sub_issues: List[SubIssueRef],
    ) -> str:
        if tool not in EXTERNAL_TOOLS:
            raise PMAdapterError(f"PM tool {tool} not supported", tool=tool)

        adapter = self._build_adapter(tool)
        issue = await adapter.create_issue(feature, _issue_description(feature, decisions))
        self._record_mapping(feature, issue.id, tool)

        if is_epic and sub_issues:
            await self._create_sub_issues(adapter, tool, feature, sub_issues)
        return issue.id

    async def _create_sub_issues(
        self,
        adapter: BasePMAdapter,
        tool: str,
        feature: str,
        sub_issues: List[SubIssueRef],
    ) -> None:
        """Create every sub-issue or cancel the ones already created."""
        created: List[str] = []
        try:
            for sub in sub_issues:
                issue = await adapter.create_issue(sub.title, f"Sub-task of {feature}")
                created.append(issue.id)
                self._record_mapping(sub.id, issue.id, tool)
        except Exception:
            for issue_id in created:
                try:
                    await adapter.cancel_issue(issue_id)
                except Exception as rollback_error:
                    logger.debug(f"Could not cancel {tool} issue {issue_id}: {rollback_error}")
            raise

    def _record_mapping(self, local_id: str, external_id: str, tool: str) -> None:
        if self.id_manager.is_local_id(local_id):
            self.id_manager.map_feature(local_id, external_id, tool)
        else:
            logger.debug(f"{local_id} is not a local ID; {tool} issue {external_id} left unmapped")

    @log_performance("process_pm_queue")
    async def process_queue(self) -> Dict[str, int]:
        """Replay each queued operation once; failures stay for the next run."""
        if not self.retry_queue.exists():
            return {"processed": 0, "succeeded": 0, "remaining": 0}

        entries = self.retry_queue.load()
        tool = self.config.get_pm_tool()
        remaining: List[RetryEntry] = []
        succeeded = 0

        for entry in entries:
            try:
                if entry.type != CREATE_ISSUE:
                    raise PMAdapterError(f"Unknown queued operation '{entry.type}'")
                if not tool or tool == "local":
                    raise PMAdapterError("No external PM tool configured")
                await self._create_external_issue(
                    tool, entry.feature, entry.decisions, entry.is_epic, entry.sub_issues
                )
            except Exception as e:
                remaining.append(entry)
                log_retry_event("retained", entry.feature, error=str(e))
            else:
                succeeded += 1
                log_retry_event("replayed", entry.feature)

        self.retry_queue.save(remaining)
        logger.info(f"Processed {len(entries)} queued PM operation(s), {len(remaining)} remaining")
        return {"processed": len(entries), "succeeded": succeeded, "remaining": len(remaining)}

    async def drain(self, timeout: float = 5.0) -> int:
        """Wait up to ``timeout`` seconds for background syncs; returns how many are still running."""
        pending = [task for task in self._background if not task.done()]
        if not pending:
            return 0
        _, not_done = await asyncio.wait(pending, timeout=timeout)
        return len(not_done)
