# This is a command file for our CLI. Please keep it clean.
#
# - If it makes sense and only when strictly necessary, you can create utility functions in this file.
# - But please, **do not** interleave utility functions and command definitions.

import logging
from typing import Optional

import click
from click import Context

from tinybird_sdk.branch_store import FileBranchStore
from tinybird_sdk.config import CURRENT_VERSION, FeatureFlags
from tinybird_sdk.deploy import DeployProgress, DeployStage
from tinybird_sdk.feedback_manager import FeedbackManager
from tinybird_sdk.tb_cli_modules.common import (
    CatchApiExceptions,
    coro,
    echo_build_result,
    get_config,
    getenv_bool,
    run_build,
    run_deploy,
)

PROGRESS_MESSAGES = {
    DeployStage.VALIDATING: FeedbackManager.info_validating,
    DeployStage.WAITING_FOR_READY: FeedbackManager.info_waiting_for_ready,
    DeployStage.READY: FeedbackManager.info_deployment_ready,
    DeployStage.WAITING_FOR_PROMOTE: FeedbackManager.info_waiting_for_promote,
}


def echo_progress(event: DeployProgress) -> None:
    if event.stage == DeployStage.LIVE:
        click.echo(FeedbackManager.success_deploy(deployment_id=event.deployment_id))
    else:
        click.echo(PROGRESS_MESSAGES[event.stage]())


@click.group(cls=CatchApiExceptions, context_settings={"help_option_names": ["-h", "--help"]})
@click.option(
    "--debug/--no-debug",
    default=False,
    help="Prints internal representation, can be combined with any command to get more information.",
)
@click.option("--token", help="Use auth token, defaults to TB_TOKEN envvar, then to the tinybird.json file")
@click.option("--host", help="Use custom host, defaults to TB_HOST envvar, then to https://api.tinybird.co")
@click.version_option(version=CURRENT_VERSION)
@click.pass_context
def cli(ctx: Context, debug: bool, token: Optional[str], host: Optional[str]) -> None:
    """Build and deploy your Tinybird project to branches, Tinybird Local and the main workspace."""

    if debug or FeatureFlags.debug():
        logging.basicConfig(level=logging.DEBUG)

    if getenv_bool("TB_DISABLE_SSL_CHECKS", False):
        click.echo(FeedbackManager.warning_disabled_ssl_checks())

    ctx.ensure_object(dict).update({"token": token, "host": host})
    logging.debug("debug enabled")


@cli.command()
@click.option("--dry-run", is_flag=True, default=False, help="Load and validate resources without pushing them")
@click.option("--local", "dev_mode", flag_value="local", help="Build to Tinybird Local")
@click.option("--branch", "dev_mode", flag_value="branch", help="Build to the branch named after the git branch")
@click.pass_context
@coro
async def build(ctx: Context, dry_run: bool, dev_mode: Optional[str]) -> None:
    """Build the project into the environment matching the current git branch"""
    config = get_config(ctx)

    response = await run_build(
        config, dry_run=dry_run, dev_mode=dev_mode, branch_store=FileBranchStore(), listener=echo_progress
    )

    if dry_run:
        resources = response.resources
        click.echo(
            FeedbackManager.info_dry_run(
                datasources=len(resources.datasources),
                pipes=len(resources.pipes),
                connections=len(resources.connections),
            )
        )
        for filename, _ in resources.files():
            click.echo(FeedbackManager.info_dry_run_resource(filename=filename))
        return

    environment = response.environment
    if environment:
        click.echo(FeedbackManager.info_target(target=environment.name or "main", host=environment.base_url))
    echo_build_result(response.result)
    click.echo(FeedbackManager.success_build(duration=response.duration))


@cli.command()
@click.option("--dry-run", is_flag=True, default=False, help="Load and validate resources without pushing them")
@click.option("--check", is_flag=True, default=False, help="Validate the deployment without applying it")
@click.option(
    "--allow-destructive-operations",
    is_flag=True,
    default=False,
    help="Allow deployments that drop datasources or columns",
)
@click.pass_context
@coro
async def deploy(ctx: Context, dry_run: bool, check: bool, allow_destructive_operations: bool) -> None:
    """Deploy the project to the main workspace and promote it to live"""
    config = get_config(ctx)

    if dry_run:
        response = await run_build(config, dry_run=True)
        click.echo(
            FeedbackManager.info_dry_run(
                datasources=response.result.datasource_count,
                pipes=response.result.pipe_count,
                connections=response.result.connection_count,
            )
        )
        return

    if check:
        click.echo(FeedbackManager.warning_deploy_check_only())

    response = await run_deploy(
        config, check=check, allow_destructive_operations=allow_destructive_operations, listener=echo_progress
    )

    if check:
        click.echo(FeedbackManager.success_check())
        return
    echo_build_result(response.result)

