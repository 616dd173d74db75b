import pytest

from tinybird_sdk.branches import (
    Branch,
    BranchApiError,
    BranchNotFoundException,
    branch_exists,
    clear_branch,
    create_branch,
    delete_branch,
    get_branch,
    get_or_create_branch,
    list_branches,
)
from tinybird_sdk.client import JobException, PollTimeoutException

BRANCH = {"id": "branch-123", "name": "my_feature", "token": "p.branch-token", "created_at": "2024-01-01"}


def add_branch_creation(tinybird, job_id="job-123", branch=BRANCH):
    tinybird.add("POST", "/v1/environments", (200, {"job": {"id": job_id, "status": "waiting"}}))
    tinybird.add("GET", f"/v0/jobs/{job_id}", (200, {"id": job_id, "status": "done"}))
    tinybird.add("GET", f"/v0/environments/{branch['name']}", (200, branch))


async def test_create_branch(tinybird, client):
    add_branch_creation(tinybird, branch={"id": "branch-123", "name": "my-feature", "token": "p.branch-token"})

    branch = await create_branch(client, "my-feature", interval_seconds=0)

    assert branch == Branch(id="branch-123", name="my-feature", token="p.branch-token")
    assert [(c.method, c.path) for c in tinybird.calls] == [
        ("POST", "/v1/environments"),
        ("GET", "/v0/jobs/job-123"),
        ("GET", "/v0/environments/my-feature"),
    ]
    assert tinybird.calls[0].query["name"] == ["my-feature"]
    assert tinybird.calls[2].query["with_token"] == ["true"]


@pytest.mark.parametrize(
    "status_code, message",
    [
        (403, "Permission denied creating branch 'my_feature'"),
        (409, "Branch 'my_feature' already exists"),
        (500, "Failed to create branch 'my_feature': 500"),
    ],
)
async def test_create_branch_errors(tinybird, client, status_code, message):
    tinybird.add("POST", "/v1/environments", (status_code, {"error": "server says no"}))

    with pytest.raises(BranchApiError, match=message) as exc_info:
        await create_branch(client, "my_feature", interval_seconds=0)

    assert exc_info.value.status_code == status_code
    assert "server says no" in exc_info.value.body
    assert len(tinybird.calls) == 1


async def test_create_branch_without_job(tinybird, client):
    tinybird.add("POST", "/v1/environments", (200, {}))

    with pytest.raises(BranchApiError, match="no job id"):
        await create_branch(client, "my_feature", interval_seconds=0)


async def test_create_branch_job_failure(tinybird, client):
    tinybird.add("POST", "/v1/environments", (200, {"job": {"id": "job-1"}}))
    tinybird.add("GET", "/v0/jobs/job-1", (200, {"id": "job-1", "status": "error", "error": "Workspace is locked"}))

    with pytest.raises(JobException, match="Workspace is locked"):
        await create_branch(client, "my_feature", interval_seconds=0)

    assert not tinybird.calls_to("GET", "/v0/environments/.*")


async def test_create_branch_job_timeout(tinybird, client):
    tinybird.add("POST", "/v1/environments", (200, {"job": {"id": "job-1"}}))
    tinybird.add("GET", "/v0/jobs/job-1", (200, {"id": "job-1", "status": "working"}))

    with pytest.raises(PollTimeoutException):
        await create_branch(client, "my_feature", max_attempts=3, interval_seconds=0)

    assert len(tinybird.calls_to("GET", "/v0/jobs/job-1")) == 3


async def test_list_branches(tinybird, client):
    tinybird.add("GET", "/v1/environments", (200, {"environments": [BRANCH]}))

    assert await list_branches(client) == [Branch.from_dict(BRANCH)]


@pytest.mark.parametrize("body", [{}, {"environments": None}])
async def test_list_branches_empty(tinybird, client, body):
    tinybird.add("GET", "/v1/environments", (200, body))

    assert await list_branches(client) == []


async def test_get_branch_not_found(tinybird, client):
    tinybird.add("GET", "/v0/environments/missing", (404, {"error": "Not found"}))

    with pytest.raises(BranchNotFoundException):
        await get_branch(client, "missing")


async def test_get_branch_other_errors_are_not_not_found(tinybird, client):
    tinybird.add("GET", "/v0/environments/my_feature", (500, "boom"))

    with pytest.raises(BranchApiError) as exc_info:
        await get_branch(client, "my_feature")

    assert not isinstance(exc_info.value, BranchNotFoundException)
    assert exc_info.value.body == "boom"


async def test_delete_branch(tinybird, client):
    tinybird.add("DELETE", "/v1/environments/my_feature", (204, None))

    await delete_branch(client, "my_feature")

    assert tinybird.calls[0].method == "DELETE"


async def test_delete_branch_error(tinybird, client):
    tinybird.add("DELETE", "/v1/environments/my_feature", (500, "boom"))

    with pytest.raises(BranchApiError, match="Failed to delete branch 'my_feature': 500"):
        await delete_branch(client, "my_feature")


async def test_branch_exists(tinybird, client):
    tinybird.add("GET", "/v1/environments", (200, {"environments": [BRANCH]}))

    assert await branch_exists(client, "my_feature")
    assert not await branch_exists(client, "other")


async def test_branch_exists_is_false_on_errors(tinybird, client):
    tinybird.add("GET", "/v1/environments", (500, "boom"))

    assert not await branch_exists(client, "my_feature")


async def test_get_or_create_creates_once(tinybird, client):
    tinybird.add("POST", "/v1/environments", (200, {"job": {"id": "job-123"}}))
    tinybird.add("GET", "/v0/jobs/job-123", (200, {"id": "job-123", "status": "done"}))
    tinybird.add("GET", "/v0/environments/my_feature", (404, {"error": "Not found"}), (200, BRANCH))

    first = await get_or_create_branch(client, "my_feature", interval_seconds=0)
    second = await get_or_create_branch(client, "my_feature", interval_seconds=0)

    assert first.id == second.id == "branch-123"
    assert len(tinybird.calls_to("POST", "/v1/environments")) == 1


async def test_get_or_create_propagates_other_errors(tinybird, client):
    tinybird.add("GET", "/v0/environments/my_feature", (403, {"error": "Forbidden"}))

    with pytest.raises(BranchApiError):
        await get_or_create_branch(client, "my_feature", interval_seconds=0)

    assert not tinybird.calls_to("POST", "/v1/environments")


async def test_get_or_create_surfaces_creation_race(tinybird, client):
    tinybird.add("GET", "/v0/environments/my_feature", (404, {"error": "Not found"}))
    tinybird.add("POST", "/v1/environments", (409, {"error": "Branch already exists"}))

    with pytest.raises(BranchApiError) as exc_info:
        await get_or_create_branch(client, "my_feature", interval_seconds=0)

    assert exc_info.value.status_code == 409


async def test_clear_branch(tinybird, client):
    tinybird.add("DELETE", "/v1/environments/my_feature", (204, None))
    add_branch_creation(tinybird, branch={**BRANCH, "id": "branch-456", "token": "p.new-token"})

    branch = await clear_branch(client, "my_feature", interval_seconds=0)

    assert (branch.id, branch.token) == ("branch-456", "p.new-token")
    assert [c.method for c in tinybird.calls] == ["DELETE", "POST", "GET", "GET"]


async def test_clear_missing_branch_does_not_create(tinybird, client):
    tinybird.add("DELETE", "/v1/environments/my_feature", (404, {"error": "Not found"}))

    with pytest.raises(BranchNotFoundException):
        await clear_branch(client, "my_feature", interval_seconds=0)

    assert not tinybird.calls_to("POST", "/v1/environments")
