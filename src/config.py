"""Deployer configuration management.

Configuration is layered:
- Built-in defaults (Settings dataclass)
- Optional YAML config file ($IQL_DEPLOY_CONFIG or ~/.config/iql-deploy/config.yaml)
- IQL_DEPLOY_* environment variables (highest priority)

Stack variables are separate from deployer settings: they come from a
.env file plus -e KEY=VALUE overrides and feed the outermost scope of the
variable context.
"""

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

import yaml
from dotenv import dotenv_values

logger = logging.getLogger(__name__)

# Environment variable naming the config file
CONFIG_ENV_VAR = 'IQL_DEPLOY_CONFIG'

# Prefix for per-setting environment overrides
ENV_PREFIX = 'IQL_DEPLOY_'

# Default location when no explicit config file is given
DEFAULT_CONFIG_PATH = Path.home() / '.config' / 'iql-deploy' / 'config.yaml'

DUPLICATE_POLICIES = ('first', 'last', 'error')


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class Settings:
    """Deployer settings.

    Attributes:
        server_host: Query server host for the pgwire executor
        server_port: Query server port
        server_user: Login user sent to the query server
        server_dbname: Database name sent to the query server
        default_retries: Poll attempts when an anchor sets no retries
        default_retry_delay: Seconds between attempts when an anchor sets no retry_delay
        postdelete_retries: Absence polls after delete
        postdelete_retry_delay: Seconds between absence polls
        duplicate_anchors: Policy for repeated anchor kinds (first, last, error)
    """
    server_host: str = 'localhost'
    server_port: int = 5444
    server_user: str = 'stackql'
    server_dbname: str = 'stackql'
    default_retries: int = 1
    default_retry_delay: int = 0
    postdelete_retries: int = 10
    postdelete_retry_delay: int = 5
    duplicate_anchors: str = 'first'

    def __post_init__(self):
        if self.duplicate_anchors not in DUPLICATE_POLICIES:
            raise ConfigError(
                f"duplicate_anchors must be one of {', '.join(DUPLICATE_POLICIES)}, "
                f"got '{self.duplicate_anchors}'"
            )
        if self.default_retries < 1:
            raise ConfigError("default_retries must be at least 1")

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'Settings':
        """Create Settings from a dictionary, coercing to field types."""
        if not data:
            return cls()
        known = {f.name: f for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            if key not in known:
                logger.warning(f"Ignoring unknown setting '{key}'")
                continue
            kwargs[key] = _coerce(key, value, known[key].type)
        return cls(**kwargs)


def _coerce(key: str, value, type_name) -> object:
    """Coerce a raw setting value (YAML or env string) to its declared type."""
    if type_name in (int, 'int'):
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ConfigError(f"Setting '{key}' must be an integer, got {value!r}")
    return str(value)


def get_config_path() -> Optional[Path]:
    """Discover the deployer config file.

    Resolution order:
    1. $IQL_DEPLOY_CONFIG (must exist when set)
    2. ~/.config/iql-deploy/config.yaml (optional)
    """
    if env_path := os.environ.get(CONFIG_ENV_VAR):
        path = Path(env_path)
        if path.exists():
            return path
        raise ConfigError(f"{CONFIG_ENV_VAR}={env_path} does not exist")

    if DEFAULT_CONFIG_PATH.exists():
        return DEFAULT_CONFIG_PATH
    return None


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must be a YAML object (dict)")
    return data


def load_settings(path: Optional[Path] = None) -> Settings:
    """Load settings: defaults -> config file -> IQL_DEPLOY_* env vars."""
    data: dict = {}

    config_path = path or get_config_path()
    if config_path is not None:
        logger.debug(f"Loading settings from {config_path}")
        data.update(_parse_yaml(config_path))

    for f in fields(Settings):
        env_value = os.environ.get(f'{ENV_PREFIX}{f.name.upper()}')
        if env_value is not None:
            data[f.name] = env_value

    return Settings.from_dict(data)


def parse_env_var(value: str) -> tuple[str, str]:
    """Parse a KEY=VALUE override.

    Raises:
        ConfigError: If the string has no '=' or an empty key
    """
    if '=' not in value:
        raise ConfigError(f"Invalid variable override '{value}', expected KEY=VALUE")
    key, val = value.split('=', 1)
    key = key.strip()
    if not key:
        raise ConfigError(f"Invalid variable override '{value}', empty key")
    return key, val


def load_env_vars(env_file: Optional[str] = '.env', overrides: Optional[list[str]] = None) -> dict[str, str]:
    """Load stack variables from a .env file, then apply KEY=VALUE overrides.

    A missing .env file is not an error. Keys without a value in the
    file are dropped.
    """
    env_vars: dict[str, str] = {}

    if env_file:
        path = Path(env_file)
        if path.exists():
            logger.debug(f"Loading environment variables from {path}")
            for key, value in dotenv_values(path).items():
                if value is None:
                    continue
                env_vars[key] = value
        else:
            logger.debug(f"No .env file found at {path}")

    for item in overrides or []:
        key, value = parse_env_var(item)
        logger.debug(f"Override variable: {key}")
        env_vars[key] = value

    return env_vars
