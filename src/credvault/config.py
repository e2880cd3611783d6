"""Configuration loader for credvault.

Settings come from an optional ``settings.toml`` inside the vault root and
fall back to sensible defaults when the file is absent. The root itself is
an explicit value: only the CLI entry point falls back to the home
directory, everything below it receives the resolved ``VaultConfig``.
"""

from __future__ import annotations

import getpass
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

from credvault.exceptions import ConfigError

DEFAULT_TOKEN_ENDPOINT = "https://api.anthropic.com/v1/oauth/token"
DEFAULT_CACHE_TTL_SECONDS = 3600
DEFAULT_MARKER_NAME = ".credvault-profile"
DEFAULT_ENV_VAR = "ANTHROPIC_API_KEY"
DEFAULT_API_KEY_PREFIX = "sk-ant-"
DEFAULT_API_KEY_MIN_LENGTH = 20
DEFAULT_EXTERNAL_SERVICE = "Claude Code-credentials"

REGISTRY_FILE_NAME = "config.toml"
CACHE_FILE_NAME = "cache.json"
SETTINGS_FILE_NAME = "settings.toml"

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def default_root() -> Path:
    """Default vault root, ``~/.credvault``."""
    return Path.home() / ".credvault"


def default_external_account() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError) as e:
        raise ConfigError(
            "Could not determine the current user for the integration "
            "account; set [integration] account in settings.toml."
        ) from e


@dataclass(frozen=True)
class VaultConfig:
    """Top-level credvault configuration."""

    root: Path
    token_endpoint: str = DEFAULT_TOKEN_ENDPOINT
    cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS
    marker_name: str = DEFAULT_MARKER_NAME
    env_var: str = DEFAULT_ENV_VAR
    api_key_prefix: str = DEFAULT_API_KEY_PREFIX
    api_key_min_length: int = DEFAULT_API_KEY_MIN_LENGTH
    external_service: str = DEFAULT_EXTERNAL_SERVICE
    external_account: str = field(default_factory=default_external_account)
    log_level: str = "WARNING"

    @property
    def registry_path(self) -> Path:
        return self.root / REGISTRY_FILE_NAME

    @property
    def cache_path(self) -> Path:
        return self.root / CACHE_FILE_NAME

    @property
    def settings_path(self) -> Path:
        return self.root / SETTINGS_FILE_NAME


def _table(raw: dict, name: str, path: Path) -> dict:
    value = raw.get(name, {})
    if not isinstance(value, dict):
        raise ConfigError(f"Invalid [{name}] section in {path}: expected table.")
    return value


def _string(table: dict, key: str, default: str, *, section: str, path: Path) -> str:
    value = table.get(key, default)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(
            f"Invalid {section}.{key} in {path}: expected non-empty string."
        )
    return value.strip()


def _positive_int(table: dict, key: str, default: int, *, section: str, path: Path) -> int:
    value = table.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigError(
            f"Invalid {section}.{key} in {path}: expected positive integer."
        )
    return value


def load_config(root: Path) -> VaultConfig:
    """Load configuration for the vault rooted at ``root``.

    Returns defaults when ``settings.toml`` does not exist.
    """
    root = root.expanduser()
    path = root / SETTINGS_FILE_NAME
    if not path.exists():
        return VaultConfig(root=root)

    try:
        with open(path, "rb") as f:
            raw = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read settings {path}: {e}") from e

    oauth = _table(raw, "oauth", path)
    cache = _table(raw, "cache", path)
    profiles = _table(raw, "profiles", path)
    api_key = _table(raw, "api_key", path)
    integration = _table(raw, "integration", path)
    log_data = _table(raw, "logging", path)

    level = _string(log_data, "level", "WARNING", section="logging", path=path).upper()
    if level not in _LOG_LEVELS:
        raise ConfigError(f"Invalid logging.level in {path}: {level!r}.")

    marker_name = _string(
        profiles, "marker_name", DEFAULT_MARKER_NAME, section="profiles", path=path,
    )
    if "/" in marker_name or "\\" in marker_name:
        raise ConfigError(
            f"Invalid profiles.marker_name in {path}: must be a bare file name."
        )

    if "account" in integration:
        account = _string(integration, "account", "", section="integration", path=path)
    else:
        account = default_external_account()

    return VaultConfig(
        root=root,
        token_endpoint=_string(
            oauth, "token_endpoint", DEFAULT_TOKEN_ENDPOINT, section="oauth", path=path,
        ),
        cache_ttl_seconds=_positive_int(
            cache, "ttl_seconds", DEFAULT_CACHE_TTL_SECONDS, section="cache", path=path,
        ),
        marker_name=marker_name,
        env_var=_string(
            profiles, "env_var", DEFAULT_ENV_VAR, section="profiles", path=path,
        ),
        api_key_prefix=_string(
            api_key, "prefix", DEFAULT_API_KEY_PREFIX, section="api_key", path=path,
        ),
        api_key_min_length=_positive_int(
            api_key, "min_length", DEFAULT_API_KEY_MIN_LENGTH, section="api_key", path=path,
        ),
        external_service=_string(
            integration, "service", DEFAULT_EXTERNAL_SERVICE,
            section="integration", path=path,
        ),
        external_account=account,
        log_level=level,
    )
