"""Unit tests for PMHooks.

The external PM tool is replaced by an in-memory adapter handed to PMHooks
through ``adapter_factory``, so no test touches the network.
"""

import asyncio
import json
import logging
import re
import pytest

from pmsync.adapters.base import BasePMAdapter
from pmsync.errors import PMAdapterError
from pmsync.hooks import PMHooks, map_to_linear_state
from pmsync.models import PMAdapterConfig, PMIssue, PMState, RetryEntry, ShipContext, SubIssueRef

PM_ENV_VARS = (
    "HODGE_PM_TOOL",
    "LINEAR_API_KEY",
    "LINEAR_TEAM_ID",
    "LINEAR_PROJECT_ID",
    "GITHUB_TOKEN",
    "GITHUB_REPO",
    "HODGE_DEBUG",
    "DEBUG",
    "HODGE_PM_DEBUG",
)

LINEAR_STATES = [
    PMState(id="s-todo", name="To Do", type="unstarted"),
    PMState(id="s-progress", name="In Progress", type="started"),
    PMState(id="s-done", name="Done", type="completed"),
]

ID_PATTERNS = {"linear": r"[A-Z]+-\d+", "github": r"#?\d+"}


class FakePM(BasePMAdapter):
    """In-memory PM tool that records every call."""

    def __init__(self, tool="linear", base_path=None, reject_updates=False, fail_create_at=None):
        self.tool_name = tool
        super().__init__(PMAdapterConfig(tool=tool), base_path=base_path)
        self.reject_updates = reject_updates
        self.fail_create_at = fail_create_at
        self.created = []
        self.updates = []
        self.comments = []
        self.cancelled = []
        self.configs = []

    async def fetch_states(self, project_id=None):
        return LINEAR_STATES

    async def get_issue(self, issue_id):
        raise PMAdapterError(f"{issue_id} not found", tool=self.tool_name)

    async def update_issue_state(self, issue_id, state_id):
        if self.reject_updates:
            raise PMAdapterError("rejected", tool=self.tool_name)
        self.updates.append((issue_id, state_id))

    async def search_issues(self, query):
        return []

    async def create_issue(self, title, description=None):
        if self.fail_create_at == len(self.created) + 1:
            raise PMAdapterError("service unavailable", tool=self.tool_name)
        issue = PMIssue(id=f"HOD-{100 + len(self.created)}", title=title, description=description, state=LINEAR_STATES[0])
        self.created.append(issue)
        return issue

    async def append_comment(self, issue_id, comment):
        self.comments.append((issue_id, comment))

    async def cancel_issue(self, issue_id):
        self.cancelled.append(issue_id)

    def is_valid_issue_id(self, value):
        return bool(re.fullmatch(ID_PATTERNS[self.tool_name], value.strip()))


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in PM_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def linear_env(monkeypatch):
    monkeypatch.setenv("HODGE_PM_TOOL", "linear")
    monkeypatch.setenv("LINEAR_API_KEY", "lin_api_" + "k" * 32)
    monkeypatch.setenv("LINEAR_TEAM_ID", "team-1")


def make_hooks(tmp_path, adapter=None):
    def factory(tool, config, base_path=None):
        if adapter is None:
            raise PMAdapterError(f"PM tool '{tool}' is not supported")
        adapter.configs.append(config)
        return adapter

    return PMHooks(tmp_path, adapter_factory=factory)


def mirror(tmp_path):
    return (tmp_path / ".hodge" / "project_management.md").read_text()


class TestMapToLinearState:
    def test_exact_name_ignores_case(self):
        """An exact state name wins regardless of case."""
        assert map_to_linear_state("in progress", LINEAR_STATES).id == "s-progress"

    def test_type_bucket(self):
        """Without a name match the state type bucket decides."""
        states = [PMState(id="a", name="Icebox", type="unstarted"), PMState(id="b", name="Shipped!", type="completed")]

        assert map_to_linear_state("Done", states).id == "b"
        assert map_to_linear_state("hardening", states).id == "a"

    def test_falls_back_to_first_state(self):
        """The first state is used when no bucket matches."""
        states = [PMState(id="a", name="Icebox", type="unstarted")]

        assert map_to_linear_state("Done", states).id == "a"
        assert map_to_linear_state("Done", []) is None


class TestLifecycleHooks:
    """Hooks update the mirror and never raise for external problems."""

    def test_no_tool_only_updates_mirror(self, tmp_path):
        """Without a PM tool only the markdown mirror changes."""
        hooks = make_hooks(tmp_path)

        async def run():
            await hooks.init()
            await hooks.on_explore("HODGE-001", "Auth flow")
            await hooks.on_build("HODGE-001")
            task = hooks.update_external_pm_silently("HODGE-001", "build")
            return task, await hooks.drain()

        task, pending = asyncio.run(run())

        assert task is None
        assert pending == 0
        assert "- **Status**: building" in mirror(tmp_path)

    def test_missing_api_key_skips_external(self, tmp_path, monkeypatch):
        """No adapter is built when the tool has no credentials."""
        monkeypatch.setenv("HODGE_PM_TOOL", "linear")
        adapter = FakePM(base_path=tmp_path)
        hooks = make_hooks(tmp_path, adapter)

        async def run():
            await hooks.on_harden("HODGE-001")
            return hooks.update_external_pm_silently("HODGE-001", "harden")

        assert asyncio.run(run()) is None
        assert adapter.configs == []

    def test_broken_config_does_not_block(self, tmp_path):
        """An unparsable config file does not stop the mirror update."""
        config_file = tmp_path / ".hodge" / "config.json"
        config_file.parent.mkdir()
        config_file.write_text("{broken")
        hooks = make_hooks(tmp_path)

        asyncio.run(hooks.on_build("HODGE-001"))

        assert (tmp_path / ".hodge" / "project_management.md").exists()

    @pytest.mark.parametrize("pm", ["linear", ["linear"]])
    def test_wrongly_shaped_pm_block_does_not_block(self, tmp_path, pm):
        """A pm block that is valid JSON but not an object skips the external sync."""
        config_file = tmp_path / ".hodge" / "config.json"
        config_file.parent.mkdir()
        config_file.write_text(json.dumps({"pm": pm}))
        hooks = make_hooks(tmp_path)

        async def run():
            await hooks.on_explore("HODGE-001", "Auth flow")
            await hooks.on_build("HODGE-001")
            await hooks.on_ship("HODGE-001")
            return hooks.update_external_pm_silently("HODGE-001", "build")

        assert asyncio.run(run()) is None
        assert "### HODGE-001\n- **Status**: shipped" in mirror(tmp_path)

    def test_wrongly_shaped_status_map_uses_defaults(self, tmp_path, linear_env):
        """A status_map list is ignored and the default statuses are pushed."""
        config_file = tmp_path / ".hodge" / "config.json"
        config_file.parent.mkdir()
        config_file.write_text(json.dumps({"pm": {"status_map": ["x"]}}))
        adapter = FakePM(base_path=tmp_path)
        hooks = make_hooks(tmp_path, adapter)
        hooks.id_manager.create_feature("auth", "HOD-1")

        async def run():
            await hooks.on_build("HODGE-001")
            return await hooks.drain()

        assert asyncio.run(run()) == 0
        assert adapter.updates == [("HOD-1", "s-progress")]

    def test_rejecting_adapter_is_silent(self, tmp_path, linear_env, monkeypatch, caplog):
        """Adapter failures are logged in PM debug mode and never raised."""
        monkeypatch.setenv("HODGE_PM_DEBUG", "1")
        caplog.set_level(logging.INFO, logger="pmsync.hooks")
        adapter = FakePM(base_path=tmp_path, reject_updates=True)
        hooks = make_hooks(tmp_path, adapter)
        hooks.id_manager.create_feature("auth", "HOD-1")

        async def run():
            await hooks.on_explore("HODGE-001", "Auth flow")
            await hooks.on_build("HODGE-001")
            return await hooks.drain()

        assert asyncio.run(run()) == 0
        assert "- **Status**: building" in mirror(tmp_path)
        assert "Could not update linear issue (non-blocking)" in caplog.text
        assert "Error: rejected" in caplog.text

    def test_invalid_credentials_are_silent(self, tmp_path, monkeypatch):
        """Credentials the adapter rejects do not break the hook."""
        monkeypatch.setenv("HODGE_PM_TOOL", "linear")
        monkeypatch.setenv("LINEAR_API_KEY", "short")
        hooks = PMHooks(tmp_path)

        async def run():
            await hooks.on_build("HODGE-001")
            return await hooks.drain()

        assert asyncio.run(run()) == 0

    def test_explore_existing_feature_resets_status(self, tmp_path):
        """Exploring a tracked feature resets its status instead of duplicating it."""
        hooks = make_hooks(tmp_path)

        async def run():
            await hooks.on_explore("HODGE-001", "Auth flow")
            await hooks.on_build("HODGE-001")
            await hooks.on_explore("HODGE-001")

        asyncio.run(run())

        text = mirror(tmp_path)
        assert text.count("### HODGE-001\n") == 1
        assert "- **Status**: exploring" in text

    def test_ship_updates_mirror_and_phases(self, tmp_path):
        """Shipping also refreshes the phase progress markers."""
        hooks = make_hooks(tmp_path)

        asyncio.run(hooks.on_ship("core-workflow"))

        assert "### Phase 2: Core Features ✅" in mirror(tmp_path)


class TestExternalSync:
    """Status propagation to Linear and GitHub."""

    def test_linear_states_follow_phases(self, tmp_path, linear_env):
        """Each phase moves the Linear issue to the matching state."""
        adapter = FakePM(base_path=tmp_path)
        hooks = make_hooks(tmp_path, adapter)
        hooks.id_manager.create_feature("auth", "HOD-1")

        async def run():
            await hooks.on_explore("HODGE-001", "Auth flow")
            await hooks.drain()
            await hooks.on_build("HODGE-001")
            await hooks.drain()

        asyncio.run(run())

        assert adapter.updates == [("HOD-1", "s-todo"), ("HOD-1", "s-progress")]
        assert adapter.configs[0].team_id == "team-1"

    def test_ship_posts_comment(self, tmp_path, linear_env):
        """Shipping with a context posts a ship comment."""
        adapter = FakePM(base_path=tmp_path)
        hooks = make_hooks(tmp_path, adapter)
        hooks.id_manager.create_feature("auth", "HOD-1")

        async def run():
            await hooks.on_ship(ShipContext(feature="HODGE-001", commit_hash="abc1234def"))
            await hooks.drain()

        asyncio.run(run())

        assert adapter.updates == [("HOD-1", "s-done")]
        issue_id, comment = adapter.comments[0]
        assert issue_id == "HOD-1"
        assert "**Commit**: `abc1234`" in comment

    def test_ship_without_context_has_no_comment(self, tmp_path, linear_env):
        """Shipping without a context only changes the state."""
        adapter = FakePM(base_path=tmp_path)
        hooks = make_hooks(tmp_path, adapter)
        hooks.id_manager.create_feature("auth", "HOD-1")

        async def run():
            await hooks.on_ship("HODGE-001")
            await hooks.drain()

        asyncio.run(run())

        assert adapter.updates == [("HOD-1", "s-done")]
        assert adapter.comments == []

    def test_github_opens_and_closes(self, tmp_path, monkeypatch):
        """GitHub issues stay open until the feature ships."""
        monkeypatch.setenv("HODGE_PM_TOOL", "github")
        monkeypatch.setenv("GITHUB_TOKEN", "ghp_token")
        monkeypatch.setenv("GITHUB_REPO", "acme/app")
        adapter = FakePM(tool="github", base_path=tmp_path)
        hooks = make_hooks(tmp_path, adapter)
        hooks.id_manager.create_feature("auth", "#5")

        async def run():
            await hooks.on_harden("HODGE-001")
            await hooks.drain()
            await hooks.on_ship("HODGE-001")
            await hooks.drain()

        asyncio.run(run())

        assert adapter.updates == [("#5", "open"), ("#5", "closed")]
        assert adapter.configs[0].project_id == "acme/app"

    def test_unmapped_feature_is_skipped(self, tmp_path, linear_env):
        """A feature with no linked issue is not updated."""
        adapter = FakePM(base_path=tmp_path)
        hooks = make_hooks(tmp_path, adapter)

        asyncio.run(hooks.call_pm_adapter("linear", "HODGE-009", "In Progress"))

        assert adapter.updates == []

    def test_call_local_adapter(self, tmp_path):
        """The local tool routes status names through the mirror."""
        hooks = make_hooks(tmp_path)

        async def run():
            await hooks.on_explore("HODGE-001", "Auth flow")
            await hooks.call_pm_adapter("local", "HODGE-001", "In Progress")
            return await hooks.local_adapter.get_issue("HODGE-001")

        assert asyncio.run(run()).state.id == "building"

    def test_unsupported_tool(self, tmp_path):
        """Unknown PM tools are rejected."""
        with pytest.raises(PMAdapterError, match="not supported"):
            asyncio.run(make_hooks(tmp_path).call_pm_adapter("jira", "HODGE-001", "Done"))


class TestCreatePMIssue:
    """Issue creation never raises; failures land in the retry queue."""

    def test_creates_and_maps_issue(self, tmp_path, linear_env):
        """A created issue is linked to the local feature."""
        adapter = FakePM(base_path=tmp_path)
        hooks = make_hooks(tmp_path, adapter)
        local_id = hooks.id_manager.create_feature("auth").local_id

        result = asyncio.run(hooks.create_pm_issue(local_id, ["Use JWT"]))

        assert result.created is True
        assert result.external_id == "HOD-100"
        assert hooks.id_manager.resolve_id(local_id).external_id == "HOD-100"
        assert "## Decisions\n- Use JWT" in adapter.created[0].description

    def test_epic_maps_sub_issues(self, tmp_path, linear_env):
        """Epic sub-issues are created and linked in order."""
        adapter = FakePM(base_path=tmp_path)
        hooks = make_hooks(tmp_path, adapter)
        subs = [{"id": "HODGE-001.1", "title": "Login"}, SubIssueRef(id="HODGE-001.2", title="Logout")]

        result = asyncio.run(hooks.create_pm_issue("HODGE-001", [], is_epic=True, sub_issues=subs))

        assert result.created
        assert [i.title for i in adapter.created] == ["HODGE-001", "Login", "Logout"]
        assert hooks.id_manager.resolve_id("HOD-101").local_id == "HODGE-001.1"
        assert hooks.id_manager.resolve_id("HOD-102").local_id == "HODGE-001.2"

    def test_failed_sub_issue_rolls_back_and_queues(self, tmp_path, linear_env):
        """A failing sub-issue cancels earlier ones and queues the epic."""
        adapter = FakePM(base_path=tmp_path, fail_create_at=3)
        hooks = make_hooks(tmp_path, adapter)
        subs = [SubIssueRef(id="HODGE-001.1", title="Login"), SubIssueRef(id="HODGE-001.2", title="Logout")]

        result = asyncio.run(hooks.create_pm_issue("HODGE-001", ["d"], is_epic=True, sub_issues=subs))

        assert result.created is False
        assert result.error == "service unavailable"
        assert adapter.cancelled == ["HOD-101"]
        queued = hooks.retry_queue.load()
        assert len(queued) == 1
        assert queued[0].is_epic and queued[0].sub_issues == subs

    def test_failure_queues_one_entry(self, tmp_path, linear_env):
        """A failed creation is queued exactly once."""
        adapter = FakePM(base_path=tmp_path, fail_create_at=1)
        hooks = make_hooks(tmp_path, adapter)

        result = asyncio.run(hooks.create_pm_issue("HODGE-001", ["Use JWT"]))

        assert result.to_dict() == {"created": False, "error": "service unavailable"}
        queued = hooks.retry_queue.load()
        assert [(e.type, e.feature, e.decisions) for e in queued] == [("create_issue", "HODGE-001", ["Use JWT"])]

    def test_missing_api_key_is_queued(self, tmp_path, monkeypatch):
        """Missing credentials count as a failure and are queued."""
        monkeypatch.setenv("HODGE_PM_TOOL", "linear")
        hooks = PMHooks(tmp_path)

        result = asyncio.run(hooks.create_pm_issue("HODGE-001", []))

        assert not result.created
        assert len(hooks.retry_queue.load()) == 1

    def test_corrupt_queue_entry_does_not_raise(self, tmp_path, monkeypatch):
        """A failure that cannot be queued still comes back as a result."""
        monkeypatch.setenv("HODGE_PM_TOOL", "linear")
        hooks = PMHooks(tmp_path)
        hooks.retry_queue.path.parent.mkdir(parents=True)
        hooks.retry_queue.path.write_text(json.dumps([{"feature": "HODGE-001"}]))

        result = asyncio.run(hooks.create_pm_issue("HODGE-002", ["d"]))

        assert result.created is False
        assert result.error
        assert json.loads(hooks.retry_queue.path.read_text()) == [{"feature": "HODGE-001"}]

    @pytest.mark.parametrize("sub", [{"id": "HODGE-001.1"}, {"title": "Login"}, "HODGE-001.1"])
    def test_malformed_sub_issue_does_not_raise(self, tmp_path, linear_env, sub):
        """Sub-issues without an id and title are reported, not raised."""
        adapter = FakePM(base_path=tmp_path)
        hooks = make_hooks(tmp_path, adapter)

        result = asyncio.run(hooks.create_pm_issue("HODGE-001", [], is_epic=True, sub_issues=[sub]))

        assert result.created is False
        assert result.error.startswith("Invalid sub-issue")
        assert adapter.created == []

    @pytest.mark.parametrize("tool", [None, "local"])
    def test_no_external_tool_is_not_queued(self, tmp_path, monkeypatch, tool):
        """Nothing is queued when no external tool is configured."""
        if tool:
            monkeypatch.setenv("HODGE_PM_TOOL", tool)
        hooks = make_hooks(tmp_path)

        result = asyncio.run(hooks.create_pm_issue("HODGE-001", []))

        assert result.to_dict() == {"created": False, "error": "No external PM tool configured"}
        assert not hooks.retry_queue.exists()


class TestProcessQueue:
    def test_no_queue_file(self, tmp_path):
        """An absent queue processes nothing."""
        assert asyncio.run(make_hooks(tmp_path).process_queue()) == {"processed": 0, "succeeded": 0, "remaining": 0}

    def test_entries_removed_only_on_success(self, tmp_path, linear_env):
        """Entries leave the queue only once replayed successfully."""
        adapter = FakePM(base_path=tmp_path, fail_create_at=1)
        hooks = make_hooks(tmp_path, adapter)
        hooks.retry_queue.append(RetryEntry(type="create_issue", feature="HODGE-001", decisions=["Use JWT"]))

        failed = asyncio.run(hooks.process_queue())
        assert failed == {"processed": 1, "succeeded": 0, "remaining": 1}
        assert len(hooks.retry_queue.load()) == 1

        adapter.fail_create_at = None
        replayed = asyncio.run(hooks.process_queue())

        assert replayed == {"processed": 1, "succeeded": 1, "remaining": 0}
        assert hooks.retry_queue.load() == []
        assert hooks.id_manager.resolve_id("HOD-100").local_id == "HODGE-001"

    def test_unknown_operation_is_retained(self, tmp_path, linear_env):
        """Operations the queue does not understand are kept."""
        hooks = make_hooks(tmp_path, FakePM(base_path=tmp_path))
        hooks.retry_queue.append(RetryEntry(type="close_issue", feature="HODGE-001"))

        result = asyncio.run(hooks.process_queue())

        assert result == {"processed": 1, "succeeded": 0, "remaining": 1}
