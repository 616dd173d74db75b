from typing import Any, Callable


class bcolors:
    HEADER = "\033[95m"
    OKBLUE = "\033[94m"
    OKGREEN = "\033[92m"
    WARNING = "\033[93m"
    FAIL = "\033[91m"
    ENDC = "\033[0m"


def print_message(message: str, color: str = bcolors.ENDC) -> Callable[..., str]:
    def formatter(**kwargs: Any) -> str:
        return f"{color}{message.format(**kwargs)}{bcolors.ENDC}"

    return formatter


def error_message(message: str) -> Callable[..., str]:
    return print_message(f"\n** {message}", bcolors.FAIL)


def warning_message(message: str) -> Callable[..., str]:
    return print_message(message, bcolors.WARNING)


def info_message(message: str) -> Callable[..., str]:
    return print_message(message)


def info_highlight_message(message: str) -> Callable[..., str]:
    return print_message(message, bcolors.OKBLUE)


def success_message(message: str) -> Callable[..., str]:
    return print_message(message, bcolors.OKGREEN)


def prompt_message(message: str) -> Callable[..., str]:
    return print_message(message, bcolors.HEADER)


class FeedbackManager:
    error_exception = error_message("{error}")
    error_config = error_message("Invalid config: {error}")
    error_build_failed = error_message("Build failed: {error}")
    error_deploy_failed = error_message("Deploy failed: {error}")
    error_resources = error_message("Failed to load resources: {error}")
    error_branch = error_message("Failed to get or create branch '{branch}': {error}")
    error_branch_not_found = error_message("Branch '{branch}' not found")
    error_branch_is_main = error_message(
        "Cannot {action} the main workspace from git branch '{git_branch}'. Switch to a feature branch or use --local."
    )
    error_no_git_branch = error_message(
        "No git branch detected. Run the command inside a git repository or set a CI branch variable."
    )
    error_local = error_message("Local build failed: {error}")
    error_clear = error_message("Failed to clear '{name}': {error}")
    error_auth = error_message("Authentication failed ({status_code}): {error}")

    warning_disabled_ssl_checks = warning_message("** Warning: Running with TB_DISABLE_SSL_CHECKS")
    warning_branch_cache = warning_message("** Warning: could not update the branch token cache: {error}")
    warning_deploy_check_only = warning_message("** Running in check mode: nothing will be deployed")

    info_dry_run = info_message(
        "** [DRY RUN] {datasources} datasource(s), {pipes} pipe(s), {connections} connection(s)"
    )
    info_dry_run_resource = info_message("**   {filename}")
    info_target = info_highlight_message("** Building to {target} at {host}")
    info_no_changes = info_message("** No changes to deploy")
    info_changes = info_message("** {kind} {action}: {names}")
    info_waiting_for_ready = info_message("** Waiting for deployment to be ready...")
    info_deployment_ready = info_message("** Deployment is ready")
    info_waiting_for_promote = info_message("** Promoting deployment to live...")
    info_validating = info_message("** Validating deployment...")
    info_branches = info_message("** Branches:")
    info_branch_status = info_message("** {key}: {value}")
    info_clearing = info_message("** Clearing the {mode} environment...")

    prompt_branch_rm = prompt_message("Do you want to remove '{branch}' branch?")

    success_build = success_message("** Build completed in {duration:.1f}s")
    success_deploy = success_message("** Deployment #{deployment_id} is live!")
    success_check = success_message("** Deployment check passed")
    success_branch_deleted = success_message("** Branch '{branch}' deleted")
    success_cleared = success_message("** '{name}' cleared")
