import logging
import os
import re
from typing import Optional

from git import InvalidGitRepositoryError, NoSuchPathError, Repo

from tinybird_sdk.config import MAIN_GIT_BRANCHES

# Checked in order when git can't tell the branch (detached HEAD in CI, no repo)
CI_BRANCH_ENV_VARS = [
    "VERCEL_GIT_COMMIT_REF",
    "GITHUB_HEAD_REF",
    "GITHUB_REF_NAME",
    "CI_COMMIT_BRANCH",
    "CIRCLE_BRANCH",
    "BUILD_SOURCEBRANCHNAME",
    "BITBUCKET_BRANCH",
    "GIT_BRANCH",
    "TRAVIS_BRANCH",
]


def get_branch_from_ci_env() -> Optional[str]:
    for env_var in CI_BRANCH_ENV_VARS:
        value = os.environ.get(env_var)
        if not value:
            continue
        if env_var == "GIT_BRANCH":
            # Jenkins
            value = re.sub(r"^origin/", "", value)
        return value
    return None


def get_current_git_branch(path: Optional[str] = None) -> Optional[str]:
    try:
        repo = Repo(path or os.getcwd(), search_parent_directories=True)
    except (InvalidGitRepositoryError, NoSuchPathError):
        return get_branch_from_ci_env()

    if repo.head.is_detached:
        return get_branch_from_ci_env()
    try:
        return repo.active_branch.name
    except TypeError as e:
        logging.debug(f"Could not read the active git branch: {e}")
        return get_branch_from_ci_env()


def sanitize_branch_name(branch_name: str) -> str:
    """Tinybird branch names only accept alphanumeric characters and underscores"""
    sanitized = re.sub(r"[^a-zA-Z0-9_]", "_", branch_name)
    sanitized = re.sub(r"_+", "_", sanitized)
    return sanitized.strip("_")


def get_tinybird_branch_name(git_branch: Optional[str]) -> Optional[str]:
    if not git_branch:
        return None
    return sanitize_branch_name(git_branch) or None


def is_main_branch(git_branch: Optional[str]) -> bool:
    return git_branch in MAIN_GIT_BRANCHES
