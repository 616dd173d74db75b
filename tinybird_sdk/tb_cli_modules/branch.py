# This is a command file for our CLI. Please keep it clean.
#
# - If it makes sense and only when strictly necessary, you can create utility functions in this file.
# - But please, **do not** interleave utility functions and command definitions.

from typing import List, Optional, Tuple

import click
from click import Context

from tinybird_sdk.branch_store import FileBranchStore
from tinybird_sdk.branches import BranchApiError, BranchNotFoundException, delete_branch, list_branches
from tinybird_sdk.client import TransportException
from tinybird_sdk.feedback_manager import FeedbackManager
from tinybird_sdk.tb_cli_modules.cli import cli
from tinybird_sdk.tb_cli_modules.common import (
    coro,
    create_tb_client,
    echo_safe_humanfriendly_tables_format_smart_table,
    get_cached_branch,
    get_config,
    get_remote_branch,
    obfuscate_token,
    run_clear,
)
from tinybird_sdk.tb_cli_modules.exceptions import CLIBranchException


@cli.group()
def branch() -> None:
    """Branch commands. Branches are isolated copies of the main workspace"""


@branch.command(name="ls")
@click.pass_context
@coro
async def branch_ls(ctx: Context) -> None:
    """List branches of the current workspace"""
    config = get_config(ctx)

    try:
        branches = await list_branches(create_tb_client(config))
    except (BranchApiError, TransportException) as e:
        raise CLIBranchException(FeedbackManager.error_exception(error=str(e)))

    table: List[Tuple[str, str, str, str]] = []
    for b in branches:
        current = "*" if b.name == config.tinybird_branch else ""
        table.append((current, b.name, b.id, b.created_at or ""))

    click.echo(FeedbackManager.info_branches())
    echo_safe_humanfriendly_tables_format_smart_table(table, column_names=["current", "name", "id", "created_at"])


@branch.command(name="status")
@click.pass_context
@coro
async def branch_status(ctx: Context) -> None:
    """Show the git branch, the Tinybird branch it maps to and whether it exists"""
    config = get_config(ctx)

    status = [
        ("Git branch", config.git_branch or "-"),
        ("Tinybird branch", config.tinybird_branch or "-"),
        ("Main branch", "yes" if config.is_main_branch else "no"),
    ]

    if config.tinybird_branch and not config.is_main_branch:
        remote = await get_remote_branch(config, config.tinybird_branch)
        status.append(("Exists", "yes" if remote else "no"))
        if remote:
            status.append(("Branch id", remote.id))
        cached = await get_cached_branch(config, config.tinybird_branch, FileBranchStore())
        status.append(("Cached token", obfuscate_token(cached.token) if cached else "-"))

    for key, value in status:
        click.echo(FeedbackManager.info_branch_status(key=key, value=value))


@branch.command(name="rm")
@click.argument("name", required=False)
@click.option("--yes", is_flag=True, default=False, help="Do not ask for confirmation")
@click.pass_context
@coro
async def branch_rm(ctx: Context, name: Optional[str], yes: bool) -> None:
    """Remove a branch. Defaults to the branch of the current git branch"""
    config = get_config(ctx)

    name = name or config.tinybird_branch
    if not name:
        raise CLIBranchException(FeedbackManager.error_no_git_branch())
    if name == config.tinybird_branch and config.is_main_branch:
        raise CLIBranchException(FeedbackManager.error_branch_is_main(action="remove", git_branch=config.git_branch))

    if not yes and not click.confirm(FeedbackManager.prompt_branch_rm(branch=name)):
        return

    client = create_tb_client(config)
    try:
        await delete_branch(client, name)
    except BranchNotFoundException:
        raise CLIBranchException(FeedbackManager.error_branch_not_found(branch=name))
    except (BranchApiError, TransportException) as e:
        raise CLIBranchException(FeedbackManager.error_exception(error=str(e)))

    try:
        workspace = await client.workspace_info()
        FileBranchStore().delete(workspace["id"], name)
    except Exception as e:
        click.echo(FeedbackManager.warning_branch_cache(error=str(e)))

    click.echo(FeedbackManager.success_branch_deleted(branch=name))


@cli.command()
@click.option("--local", "dev_mode", flag_value="local", help="Clear the Tinybird Local workspace")
@click.option("--branch", "dev_mode", flag_value="branch", help="Clear the branch named after the git branch")
@click.pass_context
@coro
async def clear(ctx: Context, dev_mode: Optional[str]) -> None:
    """Delete and recreate the current branch or local workspace"""
    config = get_config(ctx)

    click.echo(FeedbackManager.info_clearing(mode=dev_mode or config.dev_mode))
    name = await run_clear(config, dev_mode=dev_mode, branch_store=FileBranchStore())
    click.echo(FeedbackManager.success_cleared(name=name))
