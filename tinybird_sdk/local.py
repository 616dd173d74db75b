import hashlib
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from tinybird_sdk.client import ApiError, ResponseParseException, TinyB, TransportException
from tinybird_sdk.config import LOCAL_BASE_URL, LOCAL_HEALTH_TIMEOUT_SECONDS

LOCAL_WORKSPACE_PREFIX = "Local_"


class LocalNotRunningException(Exception):
    def __init__(self) -> None:
        super().__init__(
            "Tinybird local is not running. Start it with:\n"
            "docker run -d -p 7181:7181 --name tinybird-local tinybirdco/tinybird-local:latest"
        )


class LocalApiError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class LocalWorkspaceNotFoundException(LocalApiError):
    pass


@dataclass
class LocalTokens:
    user_token: str
    admin_token: str
    workspace_admin_token: str


@dataclass
class LocalWorkspace:
    id: str
    name: str
    token: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LocalWorkspace":
        return cls(id=data["id"], name=data["name"], token=data.get("token"))


def local_workspace_name(tinybird_branch: Optional[str], cwd: str) -> str:
    """Deterministic workspace name for a build running in `cwd`.

    The sanitized branch name wins when there is one, otherwise the path is hashed.
    """
    if tinybird_branch:
        return f"{LOCAL_WORKSPACE_PREFIX}{tinybird_branch}"
    digest = hashlib.sha256(cwd.encode("utf-8")).hexdigest()
    return f"{LOCAL_WORKSPACE_PREFIX}Build_{digest[:16]}"


class TinybirdLocal:
    def __init__(self, base_url: str = LOCAL_BASE_URL):
        self.base_url = base_url

    def get_client(self, token: Optional[str] = None) -> TinyB:
        return TinyB(token, self.base_url)

    async def is_running(self) -> bool:
        try:
            await self.get_client().local_tokens(timeout=LOCAL_HEALTH_TIMEOUT_SECONDS)
        except Exception as e:
            logging.debug(f"Tinybird local is not reachable at {self.base_url}: {e}")
            return False
        return True

    async def get_tokens(self) -> LocalTokens:
        try:
            data = await self.get_client().local_tokens(timeout=LOCAL_HEALTH_TIMEOUT_SECONDS)
        except TransportException as e:
            raise LocalNotRunningException() from e
        except ApiError as e:
            raise LocalApiError(f"Failed to get local tokens: {e.status_code}", e.status_code, e.body) from e
        except ResponseParseException as e:
            raise LocalApiError(
                f"Invalid tokens response from local Tinybird: {e.body}", e.status_code, e.body
            ) from e

        data = data if isinstance(data, dict) else {}
        missing = [k for k in ("user_token", "admin_token", "workspace_admin_token") if not data.get(k)]
        if missing:
            raise LocalApiError(
                f"Invalid tokens response from local Tinybird - missing required fields: {', '.join(missing)}"
            )
        return LocalTokens(
            user_token=data["user_token"],
            admin_token=data["admin_token"],
            workspace_admin_token=data["workspace_admin_token"],
        )

    async def list_workspaces(self, admin_token: str) -> Tuple[List[LocalWorkspace], Optional[str]]:
        try:
            data = await self.get_client(admin_token).user_workspaces(with_organization=True)
        except ApiError as e:
            raise LocalApiError(f"Failed to list local workspaces: {e.status_code}", e.status_code, e.body) from e
        data = data or {}
        workspaces = [LocalWorkspace.from_dict(ws) for ws in data.get("workspaces") or []]
        return workspaces, data.get("organization_id")

    async def create_workspace(
        self, user_token: str, name: str, organization_id: Optional[str] = None
    ) -> LocalWorkspace:
        try:
            data = await self.get_client(user_token).create_workspace(name, organization_id)
        except ApiError as e:
            raise LocalApiError(
                f"Failed to create local workspace '{name}': {e.status_code}", e.status_code, e.body
            ) from e
        return LocalWorkspace.from_dict(data)

    async def delete_workspace(self, user_token: str, workspace_id: str) -> None:
        try:
            await self.get_client(user_token).delete_workspace(workspace_id)
        except ApiError as e:
            raise LocalApiError(
                f"Failed to delete local workspace '{workspace_id}': {e.status_code}", e.status_code, e.body
            ) from e

    async def _create_and_locate(
        self, tokens: LocalTokens, name: str, organization_id: Optional[str]
    ) -> LocalWorkspace:
        await self.create_workspace(tokens.user_token, name, organization_id)

        # The create response is not guaranteed to carry the workspace token
        workspaces, _ = await self.list_workspaces(tokens.admin_token)
        workspace = next((ws for ws in workspaces if ws.name == name), None)
        if not workspace:
            raise LocalApiError(f"Created workspace '{name}' but could not find it in workspace list")
        return workspace

    async def get_or_create_workspace(self, tokens: LocalTokens, name: str) -> Tuple[LocalWorkspace, bool]:
        workspaces, organization_id = await self.list_workspaces(tokens.admin_token)
        existing = next((ws for ws in workspaces if ws.name == name), None)
        if existing:
            return existing, False
        return await self._create_and_locate(tokens, name, organization_id), True

    async def clear_workspace(self, tokens: LocalTokens, name: str) -> LocalWorkspace:
        workspaces, organization_id = await self.list_workspaces(tokens.admin_token)
        existing = next((ws for ws in workspaces if ws.name == name), None)
        if not existing:
            raise LocalWorkspaceNotFoundException(f"Local workspace '{name}' not found")
        await self.delete_workspace(tokens.user_token, existing.id)
        return await self._create_and_locate(tokens, name, organization_id)
