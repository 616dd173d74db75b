import json

import pytest
from click.testing import CliRunner
from conftest import API_HOST, LOCAL_HOST

import tinybird_sdk.tb_cli  # noqa: F401 registers every command
from tinybird_sdk.branch_store import MemoryBranchStore
from tinybird_sdk.tb_cli_modules.cli import cli
from tinybird_sdk.tb_cli_modules.common import run_build, run_clear
from tinybird_sdk.tb_cli_modules.config import ResolvedConfig
from tinybird_sdk.tb_cli_modules.exceptions import CLIBranchException, CLIBuildException

BRANCH = {"id": "branch-123", "name": "feature_events", "token": "p.branch-token", "created_at": "2024-01-01"}


@pytest.fixture
def project(tmp_path, monkeypatch):
    (tmp_path / "datasources").mkdir()
    (tmp_path / "datasources" / "events.datasource").write_text("SCHEMA >\n    `id` String")
    (tmp_path / "top.pipe").write_text("NODE top\nSQL >\n    SELECT * FROM events")
    (tmp_path / "tinybird.json").write_text(
        json.dumps({"include": ["datasources", "top.pipe"], "token": "p.admin-token", "baseUrl": API_HOST})
    )
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("GITHUB_HEAD_REF", "feature/events")
    return tmp_path


def make_config(project, git_branch="feature/events", tinybird_branch="feature_events", is_main=False):
    return ResolvedConfig(
        include=["datasources", "top.pipe"],
        token="p.admin-token",
        base_url=API_HOST,
        dev_mode="branch",
        config_path=str(project / "tinybird.json"),
        cwd=str(project),
        git_branch=git_branch,
        tinybird_branch=tinybird_branch,
        is_main_branch=is_main,
    )


def test_build_dry_run(project, tinybird):
    result = CliRunner().invoke(cli, ["build", "--dry-run"])

    assert result.exit_code == 0, result.output
    assert "[DRY RUN] 1 datasource(s), 1 pipe(s), 0 connection(s)" in result.output
    assert "events.datasource" in result.output
    assert tinybird.calls == []


def test_missing_config(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(cli, ["build"])

    assert result.exit_code == 1
    assert "Invalid config" in result.output


def test_help_does_not_need_a_config(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(cli, ["branch", "--help"])

    assert result.exit_code == 0
    assert "rm" in result.output


def test_branch_ls(project, tinybird):
    tinybird.add("GET", "/v1/environments", (200, {"environments": [BRANCH, {"id": "b-2", "name": "other"}]}))

    result = CliRunner().invoke(cli, ["branch", "ls"])

    assert result.exit_code == 0, result.output
    assert "feature_events" in result.output
    assert "other" in result.output
    assert tinybird.calls[0].headers["Authorization"] == "Bearer p.admin-token"


def test_token_option_overrides_config(project, tinybird):
    tinybird.add("GET", "/v1/environments", (200, {"environments": []}))

    result = CliRunner().invoke(cli, ["--token", "p.option-token", "branch", "ls"])

    assert result.exit_code == 0, result.output
    assert tinybird.calls[0].headers["Authorization"] == "Bearer p.option-token"


async def test_run_build_to_branch(project, tinybird):
    tinybird.add("GET", "/v0/environments/feature_events", (200, BRANCH))
    tinybird.add("GET", "/v1/workspace", (200, {"id": "ws-1"}))
    tinybird.add("POST", "/v1/build", (200, {"result": "success", "build": {"new_pipe_names": ["top"]}}))
    store = MemoryBranchStore()

    response = await run_build(make_config(project), branch_store=store, poll_interval_seconds=0)

    assert response.result.pipes.created == ["top"]
    assert response.environment.name == "feature_events"
    [build] = tinybird.calls_to("POST", "/v1/build")
    assert build.headers["Authorization"] == "Bearer p.branch-token"
    assert store.get("ws-1", "feature_events").id == "branch-123"


async def test_run_build_on_main_deploys(project, tinybird):
    tinybird.add("GET", "/v1/deployments", (200, {"deployments": []}))
    tinybird.add("POST", "/v1/deploy", (200, {"result": "no_changes"}))

    config = make_config(project, git_branch="main", tinybird_branch="main", is_main=True)
    response = await run_build(config, poll_interval_seconds=0)

    assert response.result.result == "no_changes"
    assert not tinybird.calls_to("POST", "/v1/build")


async def test_run_build_failure(project, tinybird):
    tinybird.add("GET", "/v0/environments/feature_events", (200, BRANCH))
    tinybird.add(
        "POST",
        "/v1/build",
        (400, {"result": "failed", "errors": [{"filename": "top.pipe", "error": "Unknown table"}]}),
    )

    with pytest.raises(CLIBuildException, match=r"\[top.pipe\] Unknown table"):
        await run_build(make_config(project), poll_interval_seconds=0)


async def test_run_clear_branch(project, tinybird):
    tinybird.add("DELETE", "/v1/environments/feature_events", (204, None))
    tinybird.add("POST", "/v1/environments", (200, {"job": {"id": "job-1"}}))
    tinybird.add("GET", "/v0/jobs/job-1", (200, {"id": "job-1", "status": "done"}))
    tinybird.add("GET", "/v0/environments/feature_events", (200, BRANCH))

    assert await run_clear(make_config(project), poll_interval_seconds=0) == "feature_events"


async def test_run_clear_refuses_main(project, tinybird):
    config = make_config(project, git_branch="main", tinybird_branch="main", is_main=True)

    with pytest.raises(CLIBranchException, match="main workspace"):
        await run_clear(config)

    assert tinybird.calls == []


async def test_run_clear_local(project, tinybird):
    name = "Local_feature_events"
    tinybird.add("GET", "/tokens", (200, {"user_token": "p.u", "admin_token": "p.a", "workspace_admin_token": "p.w"}))
    tinybird.add(
        "GET",
        "/v1/user/workspaces",
        (200, {"workspaces": [{"id": "ws-1", "name": name, "token": "p.old"}]}),
        (200, {"workspaces": [{"id": "ws-2", "name": name, "token": "p.new"}]}),
    )
    tinybird.add("DELETE", "/v1/workspaces/ws-1", (204, None))
    tinybird.add("POST", "/v1/workspaces", (200, {"id": "ws-2", "name": name}))

    assert await run_clear(make_config(project), dev_mode="local") == name
    assert all(c.url.startswith(LOCAL_HOST) for c in tinybird.calls)
