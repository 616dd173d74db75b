import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

BRANCH_STORE_FILE = "branches.json"


@dataclass
class BranchInfo:
    id: str
    token: str
    created_at: Optional[str] = None


class BranchStore(ABC):
    """Lookup hint for branch tokens, keyed by parent workspace id and branch name.

    The server is always the source of truth: entries may be stale or missing.
    """

    @abstractmethod
    def get(self, workspace_id: str, branch_name: str) -> Optional[BranchInfo]: ...

    @abstractmethod
    def set(self, workspace_id: str, branch_name: str, info: BranchInfo) -> None: ...

    @abstractmethod
    def delete(self, workspace_id: str, branch_name: str) -> None: ...


class MemoryBranchStore(BranchStore):
    def __init__(self) -> None:
        self._branches: Dict[Tuple[str, str], BranchInfo] = {}

    def get(self, workspace_id: str, branch_name: str) -> Optional[BranchInfo]:
        return self._branches.get((workspace_id, branch_name))

    def set(self, workspace_id: str, branch_name: str, info: BranchInfo) -> None:
        self._branches[(workspace_id, branch_name)] = info

    def delete(self, workspace_id: str, branch_name: str) -> None:
        self._branches.pop((workspace_id, branch_name), None)


class FileBranchStore(BranchStore):
    def __init__(self, path: Optional[str] = None) -> None:
        self.path = Path(path) if path else Path.home() / ".tinybird" / BRANCH_STORE_FILE

    def _read(self) -> Dict[str, Any]:
        try:
            with open(self.path) as file:
                data = json.load(file)
        except FileNotFoundError:
            return {"workspaces": {}}
        except (OSError, json.decoder.JSONDecodeError) as e:
            logging.debug(f"Ignoring unreadable branch cache {self.path}: {e}")
            return {"workspaces": {}}
        if not isinstance(data, dict) or not isinstance(data.get("workspaces"), dict):
            return {"workspaces": {}}
        return data

    def _write(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".branches", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as file:
                json.dump(data, file, indent=4)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
        except BaseException:
            os.unlink(tmp_path)
            raise

    @staticmethod
    def _branches(data: Dict[str, Any], workspace_id: str) -> Dict[str, Any]:
        """Branch entries of a workspace, replacing any malformed level with an empty one"""
        workspace = data["workspaces"].get(workspace_id)
        if not isinstance(workspace, dict):
            workspace = data["workspaces"][workspace_id] = {}
        if not isinstance(workspace.get("branches"), dict):
            workspace["branches"] = {}
        return workspace["branches"]

    def get(self, workspace_id: str, branch_name: str) -> Optional[BranchInfo]:
        entry = self._branches(self._read(), workspace_id).get(branch_name)
        if not isinstance(entry, dict) or not entry.get("id") or not entry.get("token"):
            return None
        return BranchInfo(id=entry["id"], token=entry["token"], created_at=entry.get("created_at"))

    def set(self, workspace_id: str, branch_name: str, info: BranchInfo) -> None:
        data = self._read()
        self._branches(data, workspace_id)[branch_name] = asdict(info)
        self._write(data)

    def delete(self, workspace_id: str, branch_name: str) -> None:
        data = self._read()
        branches = self._branches(data, workspace_id)
        if branch_name not in branches:
            return
        del branches[branch_name]
        self._write(data)
