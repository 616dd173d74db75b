# This is the common file for our CLI. Please keep it clean (as possible)
#
# - Put here any common utility function you consider.
# - If any function is only called within a specific command, consider moving
#   the function to the proper command file.
# - Please, **do not** define commands here.

import asyncio
import sys
import time
from dataclasses import dataclass
from functools import wraps
from os import getenv
from typing import Any, Iterable, List, Optional

import click
import humanfriendly.tables
from click import Context

from tinybird_sdk.branch_store import BranchInfo, BranchStore
from tinybird_sdk.branches import BranchApiError, BranchNotFoundException, clear_branch, get_branch
from tinybird_sdk.client import (
    ApiError,
    AuthException,
    JobException,
    PollTimeoutException,
    ResponseParseException,
    TinyB,
    TransportException,
)
from tinybird_sdk.config import DEFAULT_POLL_INTERVAL_SECONDS, FeatureFlags
from tinybird_sdk.deploy import (
    BuildConfigException,
    BuildResult,
    DeployListener,
    ResourceChanges,
    build_to_tinybird,
    deploy_to_main,
)
from tinybird_sdk.environment import (
    LOCAL_TARGET,
    MAIN_TARGET,
    EnvironmentException,
    ResolvedEnvironment,
    cache_branch_token,
    environment_target,
    resolve_environment,
)
from tinybird_sdk.feedback_manager import FeedbackManager
from tinybird_sdk.local import LocalApiError, LocalNotRunningException, TinybirdLocal, local_workspace_name
from tinybird_sdk.resources import GeneratedResources, ResourceException, load_resources
from tinybird_sdk.tb_cli_modules.config import ConfigException, ResolvedConfig, load_config
from tinybird_sdk.tb_cli_modules.exceptions import (
    CLIBranchException,
    CLIBuildException,
    CLIConfigException,
    CLIDeployException,
    CLILocalException,
)


def obfuscate_token(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    return f"{value[:4]}...{value[-8:]}"


def coro(f):
    @wraps(f)
    def wrapper(*args, **kwargs):
        return asyncio.run(f(*args, **kwargs))

    return wrapper


def echo_safe_humanfriendly_tables_format_smart_table(data: Iterable[Any], column_names: List[str]) -> None:
    """
    There is a bug in the humanfriendly library: it breaks to render the small table for small terminals
    (`format_robust_table`) if we call format_smart_table with an empty dataset. This catches the error and prints
    what we would call an empty "robust_table".
    """
    try:
        click.echo(humanfriendly.tables.format_smart_table(data, column_names=column_names))
    except ValueError as exc:
        if str(exc) == "max() arg is an empty sequence":
            click.echo("------------")
            click.echo("Empty")
            click.echo("------------")
        else:
            raise exc


class CatchApiExceptions(click.Group):
    """utility class to print library errors that reach the root command"""

    def __call__(self, *args, **kwargs) -> None:
        error_msg: Optional[str] = None
        exit_code: int = 0

        try:
            self.main(*args, **kwargs)
        except AuthException as ex:
            error_msg = FeedbackManager.error_auth(status_code=ex.status_code, error=str(ex))
            exit_code = 1
        except SystemExit as ex:
            exit_code = int(ex.code) if ex.code else 0
        except Exception as ex:
            error_msg = FeedbackManager.error_exception(error=str(ex))
            exit_code = 1

        if error_msg:
            click.echo(error_msg, err=True)

        sys.exit(exit_code)


def getenv_bool(key: str, default: bool) -> bool:
    v: Optional[str] = getenv(key)
    if v is None:
        return default
    return v.lower() == "true" or v == "1"


def get_config(ctx: Context) -> ResolvedConfig:
    obj = ctx.ensure_object(dict)
    if "config" not in obj:
        try:
            obj["config"] = load_config(token=obj.get("token"), host=obj.get("host"))
        except ConfigException as e:
            raise CLIConfigException(FeedbackManager.error_config(error=str(e)))
    return obj["config"]


def create_tb_client(config: ResolvedConfig) -> TinyB:
    return TinyB(config.token, config.base_url, disable_ssl_checks=FeatureFlags.ignore_ssl_errors())


@dataclass
class BuildCommandResult:
    resources: GeneratedResources
    result: BuildResult
    environment: Optional[ResolvedEnvironment] = None
    duration: float = 0.0


async def get_resources(config: ResolvedConfig) -> GeneratedResources:
    try:
        return await load_resources(config.include, config.cwd)
    except (ResourceException, OSError) as e:
        raise CLIBuildException(FeedbackManager.error_resources(error=str(e)))


async def get_environment(
    config: ResolvedConfig,
    dev_mode: Optional[str] = None,
    branch_store: Optional[BranchStore] = None,
    local: Optional[TinybirdLocal] = None,
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
) -> ResolvedEnvironment:
    target = environment_target(dev_mode or config.dev_mode, config.tinybird_branch, config.is_main_branch)
    try:
        return await resolve_environment(
            config.base_url,
            config.token,
            target,
            config.cwd,
            tinybird_branch=config.tinybird_branch,
            branch_store=branch_store,
            local=local,
            poll_interval_seconds=poll_interval_seconds,
        )
    except LocalNotRunningException as e:
        raise CLILocalException(FeedbackManager.error_exception(error=str(e)))
    except (LocalApiError, EnvironmentException) as e:
        if target == LOCAL_TARGET:
            raise CLILocalException(FeedbackManager.error_local(error=str(e)))
        raise CLIBranchException(FeedbackManager.error_branch(branch=target, error=str(e)))
    except (ApiError, JobException, PollTimeoutException, TransportException, ResponseParseException) as e:
        raise CLIBranchException(FeedbackManager.error_branch(branch=target, error=str(e)))


async def run_build(
    config: ResolvedConfig,
    dry_run: bool = False,
    dev_mode: Optional[str] = None,
    branch_store: Optional[BranchStore] = None,
    local: Optional[TinybirdLocal] = None,
    listener: Optional[DeployListener] = None,
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
) -> BuildCommandResult:
    started_at = time.monotonic()
    resources = await get_resources(config)

    if dry_run:
        result = await build_to_tinybird(create_tb_client(config), resources, dry_run=True)
        return BuildCommandResult(resources, result, duration=time.monotonic() - started_at)

    environment = await get_environment(config, dev_mode, branch_store, local, poll_interval_seconds)
    client = environment.get_client()
    try:
        if environment.use_deploy_endpoint:
            result = await deploy_to_main(
                client, resources, listener=listener, poll_interval_seconds=poll_interval_seconds
            )
        else:
            result = await build_to_tinybird(client, resources)
    except (ApiError, BuildConfigException, ResponseParseException, TransportException) as e:
        raise CLIBuildException(FeedbackManager.error_build_failed(error=str(e)))

    if not result.success:
        raise CLIBuildException(FeedbackManager.error_build_failed(error=result.error))

    return BuildCommandResult(resources, result, environment, time.monotonic() - started_at)


async def run_deploy(
    config: ResolvedConfig,
    check: bool = False,
    allow_destructive_operations: bool = False,
    listener: Optional[DeployListener] = None,
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
) -> BuildCommandResult:
    started_at = time.monotonic()
    resources = await get_resources(config)
    try:
        result = await deploy_to_main(
            create_tb_client(config),
            resources,
            check=check,
            allow_destructive_operations=allow_destructive_operations,
            listener=listener,
            poll_interval_seconds=poll_interval_seconds,
        )
    except (ApiError, BuildConfigException, ResponseParseException, TransportException) as e:
        raise CLIDeployException(FeedbackManager.error_deploy_failed(error=str(e)))

    if not result.success:
        raise CLIDeployException(FeedbackManager.error_deploy_failed(error=result.error))

    return BuildCommandResult(resources, result, duration=time.monotonic() - started_at)


async def run_clear(
    config: ResolvedConfig,
    dev_mode: Optional[str] = None,
    branch_store: Optional[BranchStore] = None,
    local: Optional[TinybirdLocal] = None,
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
) -> str:
    """Recreates the current branch or local workspace and returns its name"""
    target = environment_target(dev_mode or config.dev_mode, config.tinybird_branch, config.is_main_branch)

    if target == LOCAL_TARGET:
        local = local or TinybirdLocal()
        name = local_workspace_name(config.tinybird_branch, config.cwd)
        try:
            tokens = await local.get_tokens()
            await local.clear_workspace(tokens, name)
        except LocalNotRunningException as e:
            raise CLILocalException(FeedbackManager.error_exception(error=str(e)))
        except (LocalApiError, TransportException) as e:
            raise CLILocalException(FeedbackManager.error_clear(name=name, error=str(e)))
        return name

    if target == MAIN_TARGET:
        if not config.git_branch:
            raise CLIBranchException(FeedbackManager.error_no_git_branch())
        raise CLIBranchException(FeedbackManager.error_branch_is_main(action="clear", git_branch=config.git_branch))

    client = create_tb_client(config)
    try:
        branch = await clear_branch(client, target, interval_seconds=poll_interval_seconds)
    except BranchNotFoundException:
        raise CLIBranchException(FeedbackManager.error_branch_not_found(branch=target))
    except (BranchApiError, JobException, PollTimeoutException, TransportException) as e:
        raise CLIBranchException(FeedbackManager.error_clear(name=target, error=str(e)))

    if branch_store:
        await cache_branch_token(client, branch, branch_store)
    return target


async def get_cached_branch(
    config: ResolvedConfig, branch_name: str, branch_store: BranchStore
) -> Optional[BranchInfo]:
    try:
        workspace = await create_tb_client(config).workspace_info()
    except (ApiError, ResponseParseException, TransportException):
        return None
    if not isinstance(workspace, dict) or not workspace.get("id"):
        return None
    return branch_store.get(workspace["id"], branch_name)


async def get_remote_branch(config: ResolvedConfig, branch_name: str):
    try:
        return await get_branch(create_tb_client(config), branch_name)
    except BranchNotFoundException:
        return None
    except (BranchApiError, TransportException) as e:
        raise CLIBranchException(FeedbackManager.error_exception(error=str(e)))


def echo_changes(kind: str, changes: ResourceChanges) -> None:
    for action, names in (("created", changes.created), ("changed", changes.changed), ("deleted", changes.deleted)):
        if names:
            click.echo(FeedbackManager.info_changes(kind=kind, action=action, names=", ".join(names)))


def echo_build_result(result: BuildResult) -> None:
    if result.result == "no_changes":
        click.echo(FeedbackManager.info_no_changes())
        return
    echo_changes("Datasources", result.datasources)
    echo_changes("Pipes", result.pipes)
    echo_changes("Connections", result.connections)

