"""Unit tests for pmsync models.

This module tests the core data structures and their serialization.
"""

from datetime import datetime, timezone

from pmsync.models import (
    FeatureID,
    IDCounter,
    IssueCreationResult,
    PMIssue,
    PMOverrides,
    PMState,
    RetryEntry,
    ShipContext,
    SubIssueRef,
)


class TestFeatureID:
    """Test cases for the FeatureID model."""

    def test_root_feature_to_dict_omits_hierarchy(self):
        feature = FeatureID(local_id="HODGE-001")

        data = feature.to_dict()

        assert data["local_id"] == "HODGE-001"
        assert data["external_id"] is None
        assert data["last_synced"] is None
        assert "parent_id" not in data
        assert "child_ids" not in data
        assert "is_epic" not in data

    def test_epic_round_trip(self):
        created = datetime(2025, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        epic = FeatureID(
            local_id="HODGE-001",
            external_id="HOD-9",
            pm_tool="linear",
            created=created,
            child_ids=["HODGE-001.1", "HODGE-001.2"],
            is_epic=True,
        )

        restored = FeatureID.from_dict(epic.to_dict())

        assert restored == epic
        assert restored.created == created

    def test_sub_issue_flag(self):
        sub = FeatureID(local_id="HODGE-001.1", parent_id="HODGE-001")

        assert sub.is_sub_issue
        assert not FeatureID(local_id="HODGE-001").is_sub_issue
        assert sub.to_dict()["parent_id"] == "HODGE-001"

    def test_from_dict_accepts_zulu_timestamps(self):
        feature = FeatureID.from_dict({"local_id": "HODGE-002", "created": "2025-03-01T10:00:00.000Z"})

        assert feature.created == datetime(2025, 3, 1, 10, 0, tzinfo=timezone.utc)

    def test_from_dict_treats_naive_timestamps_as_utc(self):
        feature = FeatureID.from_dict({"local_id": "HODGE-002", "last_synced": "2025-03-01T10:00:00"})

        assert feature.last_synced.tzinfo == timezone.utc


class TestIDCounter:
    def test_defaults_and_round_trip(self):
        counter = IDCounter.from_dict({})
        assert counter.current == 0

        counter.current = 7
        assert IDCounter.from_dict(counter.to_dict()).current == 7


class TestPMModels:
    """Test cases for PM state and issue models."""

    def test_issue_to_dict_nests_state(self):
        state = PMState(id="s1", name="In Progress", type="started")
        issue = PMIssue(id="HOD-1", title="Auth", state=state, labels=["hodge"])

        data = issue.to_dict()

        assert data["state"]["type"] == "started"
        assert data["labels"] == ["hodge"]

    def test_overrides_from_dict(self):
        overrides = PMOverrides.from_dict(
            {
                "transitions": {"explore->build": "state-42"},
                "custom_patterns": {"started": ["^cooking$"]},
            }
        )

        assert overrides.transitions["explore->build"] == "state-42"
        assert overrides.custom_patterns == {"started": ["^cooking$"]}
        assert overrides.issue_url_pattern is None

    def test_ship_context_from_dict(self):
        context = ShipContext.from_dict(
            {"feature": "HODGE-001", "commit_hash": "abc1234567", "tests_results": {"passed": 3, "total": 4}}
        )

        assert context.tests_results == {"passed": 3, "total": 4}
        assert context.patterns == []


class TestRetryEntry:
    """Test cases for retry queue records."""

    def test_round_trip_with_sub_issues(self):
        entry = RetryEntry(
            type="create_issue",
            feature="HODGE-001",
            decisions=["Use JWT"],
            is_epic=True,
            sub_issues=[SubIssueRef(id="HODGE-001.1", title="Login")],
        )

        data = entry.to_dict()
        restored = RetryEntry.from_dict(data)

        assert data["sub_issues"] == [{"id": "HODGE-001.1", "title": "Login"}]
        assert restored == entry

    def test_timestamp_defaults_to_iso_string(self):
        entry = RetryEntry(type="create_issue", feature="HODGE-001")

        assert datetime.fromisoformat(entry.timestamp).tzinfo is not None


class TestIssueCreationResult:
    def test_to_dict_omits_empty_fields(self):
        assert IssueCreationResult(created=True, external_id="HOD-1").to_dict() == {
            "created": True,
            "external_id": "HOD-1",
        }
        assert IssueCreationResult(created=False, error="boom").to_dict() == {"created": False, "error": "boom"}
