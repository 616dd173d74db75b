import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from tinybird_sdk.branch_store import BranchInfo, BranchStore
from tinybird_sdk.branches import Branch, get_or_create_branch
from tinybird_sdk.client import ApiError, ResponseParseException, TinyB, TransportException
from tinybird_sdk.config import DEFAULT_POLL_INTERVAL_SECONDS, DEFAULT_POLL_MAX_ATTEMPTS, FeatureFlags
from tinybird_sdk.local import TinybirdLocal, local_workspace_name

MAIN_TARGET = "main"
LOCAL_TARGET = "local"


class EnvironmentException(Exception):
    pass


class EnvironmentKind(Enum):
    MAIN = "main"
    BRANCH = "branch"
    LOCAL = "local"


@dataclass
class ResolvedEnvironment:
    kind: EnvironmentKind
    base_url: str
    token: str
    name: Optional[str] = None
    id: Optional[str] = None
    was_created: bool = False

    @property
    def use_deploy_endpoint(self) -> bool:
        return self.kind == EnvironmentKind.MAIN

    def get_client(self) -> TinyB:
        return TinyB(self.token, self.base_url, disable_ssl_checks=FeatureFlags.ignore_ssl_errors())


def environment_target(dev_mode: str, tinybird_branch: Optional[str], is_main_branch: bool) -> str:
    if dev_mode == LOCAL_TARGET:
        return LOCAL_TARGET
    if is_main_branch or not tinybird_branch:
        return MAIN_TARGET
    return tinybird_branch


async def cache_branch_token(client: TinyB, branch: Branch, branch_store: BranchStore) -> None:
    """Best effort: the cache is only a lookup hint"""
    if not branch.token:
        return
    try:
        workspace = await client.workspace_info()
        if not isinstance(workspace, dict) or not workspace.get("id"):
            logging.warning(f"Could not cache token for branch '{branch.name}': no workspace id returned")
            return
        branch_store.set(workspace["id"], branch.name, BranchInfo(branch.id, branch.token, branch.created_at))
    except (ApiError, ResponseParseException, TransportException, OSError) as e:
        logging.warning(f"Could not cache token for branch '{branch.name}': {e}")


async def resolve_environment(
    base_url: str,
    token: str,
    target: Optional[str],
    cwd: str,
    tinybird_branch: Optional[str] = None,
    branch_store: Optional[BranchStore] = None,
    local: Optional[TinybirdLocal] = None,
    max_poll_attempts: int = DEFAULT_POLL_MAX_ATTEMPTS,
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
) -> ResolvedEnvironment:
    """Returns where and with which token the next build must be pushed.

    Branches and local workspaces are created on first use and reused afterwards.
    """
    if not target or target == MAIN_TARGET:
        return ResolvedEnvironment(EnvironmentKind.MAIN, base_url, token)

    if target == LOCAL_TARGET:
        local = local or TinybirdLocal()
        tokens = await local.get_tokens()
        name = local_workspace_name(tinybird_branch, cwd)
        workspace, was_created = await local.get_or_create_workspace(tokens, name)
        if not workspace.token:
            raise EnvironmentException(f"Local workspace '{name}' has no token")
        return ResolvedEnvironment(
            EnvironmentKind.LOCAL, local.base_url, workspace.token, name, workspace.id, was_created
        )

    client = TinyB(token, base_url, disable_ssl_checks=FeatureFlags.ignore_ssl_errors())
    branch = await get_or_create_branch(
        client, target, max_attempts=max_poll_attempts, interval_seconds=poll_interval_seconds
    )
    if not branch.token:
        raise EnvironmentException(f"Branch '{target}' was found but no token was returned")
    if branch_store:
        await cache_branch_token(client, branch, branch_store)
    return ResolvedEnvironment(EnvironmentKind.BRANCH, base_url, branch.token, branch.name, branch.id)
