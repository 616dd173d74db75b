"""Lifecycle of Tinybird branches: isolated copies of a workspace created by an async job."""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from tinybird_sdk.client import ApiError, DoesNotExistException, TinyB
from tinybird_sdk.config import DEFAULT_POLL_INTERVAL_SECONDS, DEFAULT_POLL_MAX_ATTEMPTS


class BranchApiError(ApiError):
    pass


class BranchNotFoundException(BranchApiError):
    pass


@dataclass
class Branch:
    id: str
    name: str
    token: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Branch":
        return cls(
            id=data["id"],
            name=data["name"],
            token=data.get("token"),
            created_at=data.get("created_at"),
        )


async def create_branch(
    client: TinyB,
    name: str,
    max_attempts: int = DEFAULT_POLL_MAX_ATTEMPTS,
    interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
) -> Branch:
    try:
        response = await client.create_branch(name)
    except ApiError as e:
        if e.status_code == 403:
            message = (
                f"Permission denied creating branch '{name}'. "
                "Make sure you're using a workspace admin token, branch tokens cannot create new branches.\n"
                f"API response: {e.body}"
            )
        elif e.status_code == 409:
            message = f"Branch '{name}' already exists"
        else:
            message = f"Failed to create branch '{name}': {e.status_code}\nAPI response: {e.body}"
        raise BranchApiError(message, e.status_code, e.body, e.response) from e

    job = (response or {}).get("job") or {}
    job_id = job.get("id") or job.get("job_id")
    if not job_id:
        raise BranchApiError(
            "Unexpected response from branch creation: no job id returned", 500, json.dumps(response), response
        )

    logging.debug(f"Branch '{name}' creation job: {job_id}")
    await client.wait_for_job(job_id, max_attempts=max_attempts, interval_seconds=interval_seconds)
    return await get_branch(client, name)


async def list_branches(client: TinyB) -> List[Branch]:
    try:
        response = await client.branches()
    except ApiError as e:
        raise BranchApiError(
            f"Failed to list branches: {e.status_code}\nAPI response: {e.body}", e.status_code, e.body, e.response
        ) from e
    return [Branch.from_dict(b) for b in (response or {}).get("environments") or []]


async def get_branch(client: TinyB, name: str) -> Branch:
    try:
        response = await client.branch(name, with_token=True)
    except DoesNotExistException as e:
        raise BranchNotFoundException(f"Branch '{name}' not found", e.status_code, e.body, e.response) from e
    except ApiError as e:
        raise BranchApiError(
            f"Failed to get branch '{name}': {e.status_code}\nAPI response: {e.body}", e.status_code, e.body, e.response
        ) from e
    return Branch.from_dict(response)


async def delete_branch(client: TinyB, name: str) -> None:
    try:
        await client.delete_branch(name)
    except DoesNotExistException as e:
        raise BranchNotFoundException(f"Branch '{name}' not found", e.status_code, e.body, e.response) from e
    except ApiError as e:
        raise BranchApiError(
            f"Failed to delete branch '{name}': {e.status_code}\nAPI response: {e.body}",
            e.status_code,
            e.body,
            e.response,
        ) from e


async def branch_exists(client: TinyB, name: str) -> bool:
    try:
        branches = await list_branches(client)
    except Exception as e:
        logging.debug(f"Could not list branches: {e}")
        return False
    return any(b.name == name for b in branches)


async def get_or_create_branch(
    client: TinyB,
    name: str,
    max_attempts: int = DEFAULT_POLL_MAX_ATTEMPTS,
    interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
) -> Branch:
    # Not atomic: a concurrent creation of the same name surfaces as a 409 BranchApiError
    try:
        return await get_branch(client, name)
    except BranchNotFoundException:
        logging.debug(f"Branch '{name}' not found, creating it")
    return await create_branch(client, name, max_attempts=max_attempts, interval_seconds=interval_seconds)


async def clear_branch(
    client: TinyB,
    name: str,
    max_attempts: int = DEFAULT_POLL_MAX_ATTEMPTS,
    interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
) -> Branch:
    """Deletes the branch and creates it again under the same name.

    Raises BranchNotFoundException when there is nothing to clear.
    """
    await delete_branch(client, name)
    return await create_branch(client, name, max_attempts=max_attempts, interval_seconds=interval_seconds)
