"""Unit tests for the JSON-backed ID store."""

import json
import pytest

from pmsync.errors import StorageError, ValidationError
from pmsync.id_store import COUNTER_FILE, MAPPINGS_FILE, IDStore, validate_state_dir
from pmsync.models import FeatureID, IDCounter


class TestValidateStateDir:
    """Path checks applied before any I/O."""

    def test_accepts_plain_paths(self, tmp_path):
        assert validate_state_dir(tmp_path / ".hodge") == tmp_path / ".hodge"
        assert str(validate_state_dir(".hodge")) == ".hodge"

    def test_normalizes_harmless_dot_dot(self, tmp_path):
        """A '..' that normalization removes is fine."""
        path = tmp_path / "project" / ".." / ".hodge"
        assert validate_state_dir(path) == tmp_path / ".hodge"

    @pytest.mark.parametrize("path", ["../outside", "../../etc", "a/../../b"])
    def test_rejects_traversal(self, path):
        with pytest.raises(ValidationError, match="traversal"):
            validate_state_dir(path)

    def test_rejects_nul_byte(self):
        with pytest.raises(ValidationError, match="NUL"):
            validate_state_dir(".hodge\x00evil")

    def test_rejects_empty(self):
        with pytest.raises(ValidationError):
            validate_state_dir("")


class TestIDStore:
    """Read-modify-write behaviour of the two state files."""

    def test_missing_files_are_empty_state(self, tmp_path):
        store = IDStore(tmp_path / ".hodge")

        assert store.load_mappings() == {}
        assert store.load_counter().current == 0
        assert not (tmp_path / ".hodge").exists()

    def test_save_creates_directory_and_round_trips(self, tmp_path):
        store = IDStore(tmp_path / ".hodge")
        feature = FeatureID(local_id="HODGE-001", external_id="HOD-1", pm_tool="linear")

        store.save_mappings({"HODGE-001": feature})
        store.save_counter(IDCounter(current=1))

        raw = json.loads((tmp_path / ".hodge" / MAPPINGS_FILE).read_text())
        assert raw["HODGE-001"]["external_id"] == "HOD-1"
        assert json.loads((tmp_path / ".hodge" / COUNTER_FILE).read_text())["current"] == 1
        assert store.load_mappings()["HODGE-001"].pm_tool == "linear"

    def test_corrupt_mappings_raise_storage_error(self, tmp_path):
        state_dir = tmp_path / ".hodge"
        state_dir.mkdir()
        (state_dir / MAPPINGS_FILE).write_text("{not json")

        with pytest.raises(StorageError) as exc_info:
            IDStore(state_dir).load_mappings()

        assert exc_info.value.path == state_dir / MAPPINGS_FILE
        assert MAPPINGS_FILE in str(exc_info.value)

    def test_non_object_counter_raises_storage_error(self, tmp_path):
        state_dir = tmp_path / ".hodge"
        state_dir.mkdir()
        (state_dir / COUNTER_FILE).write_text("[1, 2]")

        with pytest.raises(StorageError):
            IDStore(state_dir).load_counter()

    def test_unwritable_location_raises_storage_error(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("a file, not a directory")
        store = IDStore(blocker / ".hodge")

        with pytest.raises(StorageError, match="Failed to update counter"):
            store.save_counter(IDCounter(current=1))
