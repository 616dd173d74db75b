import json
import os
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from tinybird_sdk.config import DEFAULT_API_HOST
from tinybird_sdk.git_branch import get_current_git_branch, get_tinybird_branch_name, is_main_branch

CONFIG_FILE_NAMES = ["tinybird.json", "tinybird.yaml", "tinybird.yml"]
DEV_MODES = ("branch", "local")
ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigException(Exception):
    pass


class ConfigValueOrigin(Enum):
    # Sources for config values (command line option, environment variables, config file or default value)

    OPTION = "option"
    ENVIRONMENT = "env"
    CONFIG = "conf"
    DEFAULT = "default"
    NONE = ""


@dataclass
class ConfigValue:
    name: str
    value: Any
    origin: ConfigValueOrigin


def find_config_file(start_dir: str) -> Optional[str]:
    current = Path(start_dir).resolve()
    for directory in [current, *current.parents]:
        for name in CONFIG_FILE_NAMES:
            candidate = directory / name
            if candidate.is_file():
                return str(candidate)
    return None


def interpolate_env_vars(value: str, path: str) -> str:
    def replace(match: "re.Match[str]") -> str:
        name = match.group(1)
        if name not in os.environ:
            raise ConfigException(f"Environment variable {name} is not set (referenced in {path})")
        return os.environ[name]

    return ENV_VAR_PATTERN.sub(replace, value)


class ProjectConfig:
    # Mapping between environment variables and config values
    ENV_KEYS: Dict[str, str] = {
        "token": "TB_TOKEN",
        "base_url": "TB_HOST",
    }

    # Mapping between config file fields and config values
    FILE_KEYS: Dict[str, str] = {
        "include": "include",
        "schema": "schema",
        "token": "token",
        "baseUrl": "base_url",
        "devMode": "dev_mode",
    }

    INTERPOLATED_KEYS = ("token", "base_url")

    DEFAULTS: Dict[str, Any] = {"base_url": DEFAULT_API_HOST, "dev_mode": "branch"}

    def __init__(self, path: str) -> None:
        self._path = path
        self._values: Dict[str, ConfigValue] = {}

        self.override_with_file(path)
        self.override_with_environment()
        self.override_with_defaults()

    @property
    def path(self) -> str:
        return self._path

    @property
    def directory(self) -> str:
        return os.path.dirname(self._path)

    def __getitem__(self, key: str) -> Any:
        return self._values[key].value

    def get(self, key: str, default: Any = None) -> Any:
        try:
            return self[key]
        except KeyError:
            return default

    def get_value_origin(self, key: str) -> ConfigValueOrigin:
        if key in self._values:
            return self._values[key].origin
        return ConfigValueOrigin.NONE

    def override_with_file(self, path: str) -> None:
        """Loads the contents of the passed JSON or YAML file."""
        try:
            with open(path) as file:
                if path.endswith(".json"):
                    values = json.loads(file.read())
                else:
                    values = yaml.safe_load(file)
        except (json.decoder.JSONDecodeError, yaml.YAMLError) as e:
            raise ConfigException(f"{path} can't be parsed: {e}")
        except OSError as e:
            raise ConfigException(f"{path} can't be read: {e}")

        if not isinstance(values, dict):
            raise ConfigException(f"{path} must contain an object")

        for file_key, config_key in ProjectConfig.FILE_KEYS.items():
            if file_key not in values or values[file_key] is None:
                continue
            value = values[file_key]
            if config_key in ProjectConfig.INTERPOLATED_KEYS and isinstance(value, str):
                value = interpolate_env_vars(value, path)
            self._values[config_key] = ConfigValue(config_key, value, ConfigValueOrigin.CONFIG)

    def override_with_environment(self) -> None:
        """Loads environment variables."""
        for config_key, env_key in ProjectConfig.ENV_KEYS.items():
            env_value = os.environ.get(env_key, None)
            if env_value:
                self._values[config_key] = ConfigValue(config_key, env_value, ConfigValueOrigin.ENVIRONMENT)

    def override_with_defaults(self) -> None:
        """Loads default values."""
        for key, default_value in ProjectConfig.DEFAULTS.items():
            if key not in self._values:
                self._values[key] = ConfigValue(key, default_value, ConfigValueOrigin.DEFAULT)

    def set_token(self, token: Optional[str]) -> None:
        if token:
            self._values["token"] = ConfigValue("token", token, ConfigValueOrigin.OPTION)

    def set_host(self, host: Optional[str]) -> None:
        if host:
            self._values["base_url"] = ConfigValue("base_url", host.rstrip("/"), ConfigValueOrigin.OPTION)

    def get_include(self) -> List[str]:
        include = self.get("include")
        if include is None:
            # Legacy configs point to a single schema path
            include = self.get("schema")
        if isinstance(include, str):
            include = [include]
        return list(include or [])

    def validate(self) -> None:
        include = self.get("include", self.get("schema"))
        if include is None:
            raise ConfigException(f"'include' is required in {self._path}")
        if not isinstance(include, (str, list)) or not all(isinstance(i, str) for i in self.get_include()):
            raise ConfigException(f"'include' must be a list of paths in {self._path}")
        token = self.get("token")
        if not token or not isinstance(token, str):
            raise ConfigException(f"'token' is required in {self._path} (or set TB_TOKEN)")
        base_url = self.get("base_url")
        if not isinstance(base_url, str) or not base_url.startswith(("http://", "https://")):
            raise ConfigException(f"'baseUrl' must be an http(s) URL in {self._path}")
        if self.get("dev_mode") not in DEV_MODES:
            raise ConfigException(f"'devMode' must be one of {', '.join(DEV_MODES)} in {self._path}")


@dataclass
class ResolvedConfig:
    include: List[str]
    token: str
    base_url: str
    dev_mode: str
    config_path: str
    cwd: str
    git_branch: Optional[str]
    tinybird_branch: Optional[str]
    is_main_branch: bool


def load_config(cwd: Optional[str] = None, token: Optional[str] = None, host: Optional[str] = None) -> ResolvedConfig:
    cwd = cwd or os.getcwd()
    path = find_config_file(cwd)
    if not path:
        raise ConfigException(f"No {', '.join(CONFIG_FILE_NAMES)} found in {cwd} or any parent directory")

    config = ProjectConfig(path)
    config.set_token(token)
    config.set_host(host)
    config.validate()

    git_branch = get_current_git_branch(config.directory)
    return ResolvedConfig(
        include=config.get_include(),
        token=config["token"],
        base_url=config["base_url"].rstrip("/"),
        dev_mode=config["dev_mode"],
        config_path=path,
        cwd=config.directory,
        git_branch=git_branch,
        tinybird_branch=get_tinybird_branch_name(git_branch),
        is_main_branch=is_main_branch(git_branch),
    )
