"""
Unit tests for the key-value persistence substrate.
"""

import pytest

from core.exceptions import StorageError
from core.storage import JsonFileStore, MemoryStore


@pytest.fixture(params=["memory", "file"])
def any_store(request, tmp_path):
    if request.param == "memory":
        return MemoryStore()
    return JsonFileStore(tmp_path / "data")


class TestStoreContract:
    """Behavior shared by both stores."""

    def test_get_missing_returns_none(self, any_store):
        assert any_store.get("package/PKG-A-20240101") is None

    def test_put_then_get(self, any_store):
        any_store.put("package/PKG-A-20240101", {"state": "pending", "cost": 12.5})
        assert any_store.get("package/PKG-A-20240101") == {"state": "pending", "cost": 12.5}

    def test_values_are_copies(self, any_store):
        value = {"codes": ["a"]}
        any_store.put("k", value)
        value["codes"].append("b")

        loaded = any_store.get("k")
        loaded["codes"].append("c")

        assert any_store.get("k") == {"codes": ["a"]}

    def test_delete(self, any_store):
        any_store.put("k", {"v": 1})
        assert any_store.delete("k") is True
        assert any_store.delete("k") is False
        assert any_store.get("k") is None

    def test_list_prefix_is_sorted_and_scoped(self, any_store):
        any_store.put("pending/000000000002-b", {})
        any_store.put("pending/000000000001-a", {})
        any_store.put("package/PKG-A-20240101", {})

        assert any_store.list_prefix("pending/") == [
            "pending/000000000001-a",
            "pending/000000000002-b",
        ]
        assert any_store.list_prefix("package/") == ["package/PKG-A-20240101"]

    def test_unserializable_value_raises(self, any_store):
        with pytest.raises(StorageError):
            any_store.put("k", {"bad": object()})


class TestJsonFileStore:
    """File-specific behavior."""

    def test_survives_reopen(self, tmp_path):
        JsonFileStore(tmp_path).put("pending/1-abc", {"token": "abc"})

        reopened = JsonFileStore(tmp_path)
        assert reopened.get("pending/1-abc") == {"token": "abc"}
        assert reopened.list_prefix("pending/") == ["pending/1-abc"]

    def test_keys_are_flat_files(self, tmp_path):
        store = JsonFileStore(tmp_path)
        store.put("package/PKG-A-20240101", {"x": 1})

        files = [p for p in tmp_path.iterdir() if p.is_file()]
        assert len(files) == 1
        assert files[0].suffix == ".json"

    def test_no_temp_files_left_behind(self, tmp_path):
        store = JsonFileStore(tmp_path)
        store.put("k", {"x": 1})
        store.put("k", {"x": 2})

        assert not list(tmp_path.glob("*.tmp"))
        assert store.get("k") == {"x": 2}

    def test_corrupt_file_raises_storage_error(self, tmp_path):
        store = JsonFileStore(tmp_path)
        store.put("k", {"x": 1})
        store._path("k").write_text("{not json", encoding="utf-8")

        with pytest.raises(StorageError) as exc_info:
            store.get("k")
        assert exc_info.value.key == "k"

    def test_unusable_data_dir_raises(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("a file, not a directory")

        with pytest.raises(StorageError):
            JsonFileStore(blocker / "data")
