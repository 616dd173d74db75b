import json
import os
import stat

import pytest

from tinybird_sdk.branch_store import BranchInfo, FileBranchStore, MemoryBranchStore


@pytest.fixture(params=["memory", "file"])
def store(request, tmp_path):
    if request.param == "memory":
        return MemoryBranchStore()
    return FileBranchStore(str(tmp_path / "tinybird" / "branches.json"))


def test_set_get_delete(store):
    info = BranchInfo("branch-1", "p.token", "2024-01-01")

    assert store.get("ws-1", "feature") is None
    store.set("ws-1", "feature", info)
    assert store.get("ws-1", "feature") == info
    assert store.get("ws-2", "feature") is None

    store.delete("ws-1", "feature")
    assert store.get("ws-1", "feature") is None
    store.delete("ws-1", "feature")


def test_file_layout(tmp_path):
    path = tmp_path / "branches.json"
    store = FileBranchStore(str(path))

    store.set("ws-1", "feature", BranchInfo("branch-1", "p.token"))
    store.set("ws-1", "other", BranchInfo("branch-2", "p.other"))

    data = json.loads(path.read_text())
    assert data == {
        "workspaces": {
            "ws-1": {
                "branches": {
                    "feature": {"id": "branch-1", "token": "p.token", "created_at": None},
                    "other": {"id": "branch-2", "token": "p.other", "created_at": None},
                }
            }
        }
    }
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
    assert [p.name for p in tmp_path.iterdir()] == ["branches.json"]


@pytest.mark.parametrize("content", ["{not json", "[]", '{"workspaces": []}'])
def test_corrupt_file_reads_as_empty(tmp_path, content):
    path = tmp_path / "branches.json"
    path.write_text(content)
    store = FileBranchStore(str(path))

    assert store.get("ws-1", "feature") is None

    store.set("ws-1", "feature", BranchInfo("branch-1", "p.token"))
    assert store.get("ws-1", "feature").id == "branch-1"


def test_incomplete_entry_is_ignored(tmp_path):
    path = tmp_path / "branches.json"
    path.write_text(json.dumps({"workspaces": {"ws-1": {"branches": {"feature": {"id": "branch-1"}}}}}))

    assert FileBranchStore(str(path)).get("ws-1", "feature") is None


@pytest.mark.parametrize(
    "workspaces",
    [
        {"ws-1": "oops"},
        {"ws-1": None},
        {"ws-1": {"branches": ["feature"]}},
        {"ws-1": {"branches": {"feature": "oops"}}},
    ],
)
def test_malformed_workspace_entries_read_as_empty(tmp_path, workspaces):
    path = tmp_path / "branches.json"
    path.write_text(json.dumps({"workspaces": workspaces}))
    store = FileBranchStore(str(path))

    assert store.get("ws-1", "feature") is None
    store.delete("ws-1", "feature")

    store.set("ws-1", "feature", BranchInfo("branch-1", "p.token"))
    assert store.get("ws-1", "feature") == BranchInfo("branch-1", "p.token")
