"""Configuration loading for the annotation mirror.

Config lives at ~/.marginalia/config.yaml unless another path is given
(the CLI takes --config or $MARGINALIA_CONFIG). The loaded values are turned
into a Config object which is handed to the engines explicitly.

If config doesn't exist, creates from template with sensible defaults.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
import yaml

from .errors import ConfigError


def get_data_dir() -> Path:
    """Get the default data directory (~/.marginalia/)."""
    return Path.home() / '.marginalia'


def get_config_path() -> Path:
    """Get the default config file path."""
    return get_data_dir() / 'config.yaml'


DEFAULT_CONFIG = {
    'db_dir': '~/.marginalia/db',
    'hypothesis': {
        'username': None,
        'api_key': None,
        'group': None,
        'api_url': 'https://api.hypothes.is/api',
        'timeout': 30,
    },
    'sync': {
        'page_size': 200,
        'groups': [],        # empty: just hypothesis.group
        'users': [],         # empty: just the authenticated user
    },
    'tags': {
        'nested_separator': None,
        'hierarchy': ['tag'],
        'sort': ['created'],
    },
}


def expand_paths(config: dict[str, Any]) -> dict[str, Any]:
    """Recursively expand ~ in path values."""
    result = {}
    for key, value in config.items():
        if isinstance(value, dict):
            result[key] = expand_paths(value)
        elif isinstance(value, list):
            result[key] = [
                str(Path(v).expanduser()) if isinstance(v, str) and v.startswith('~') else v
                for v in value
            ]
        elif isinstance(value, str) and value.startswith('~'):
            result[key] = str(Path(value).expanduser())
        else:
            result[key] = value
    return result


def load_config(config_path: Path | None = None) -> dict[str, Any]:
    """
    Load configuration from a YAML file (default ~/.marginalia/config.yaml).

    Creates the file from defaults if it doesn't exist.
    Expands ~ in all path values.
    """
    config_path = Path(config_path) if config_path else get_config_path()

    # Ensure directory exists
    config_path.parent.mkdir(parents=True, exist_ok=True)

    if config_path.exists():
        try:
            with open(config_path) as f:
                config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Couldn't parse {config_path}: {e}") from e
        if not isinstance(config, dict):
            raise ConfigError(f"{config_path} must contain a mapping")
    else:
        # Create from defaults
        config = DEFAULT_CONFIG.copy()
        with open(config_path, 'w') as f:
            yaml.dump(config, f, default_flow_style=False, sort_keys=False)

    # Merge with defaults (in case config is missing keys)
    merged = _deep_merge(DEFAULT_CONFIG, config)

    # Expand paths
    return expand_paths(merged)


def store_config(config: dict[str, Any], config_path: Path | None = None) -> Path:
    """Write a config mapping back to disk."""
    config_path = Path(config_path) if config_path else get_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, 'w') as f:
        yaml.dump(config, f, default_flow_style=False, sort_keys=False)
    return config_path


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge override into base, preferring override values."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


@dataclass(frozen=True)
class Scope:
    """Which annotations a sync pulls: a set of groups and users."""
    groups: tuple[str, ...] = ()
    users: tuple[str, ...] = ()

    @property
    def key(self) -> str:
        """Stable key used to store this scope's sync cursor."""
        return "groups={}|users={}".format(
            ",".join(sorted(self.groups)), ",".join(sorted(self.users))
        )


@dataclass
class Config:
    """Resolved settings handed to the engines at construction time."""
    db_dir: Path
    api_url: str = 'https://api.hypothes.is/api'
    username: str | None = None
    api_key: str | None = None
    group: str | None = None
    timeout: float = 30
    page_size: int = 200
    sync_groups: list[str] = field(default_factory=list)
    sync_users: list[str] = field(default_factory=list)
    nested_separator: str | None = None
    hierarchy: list[str] = field(default_factory=lambda: ['tag'])
    sort: list[str] = field(default_factory=lambda: ['created'])

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> 'Config':
        """Build from a loaded (merged, expanded) config mapping.

        Missing credentials fall back to $HYPOTHESIS_NAME / $HYPOTHESIS_KEY.
        """
        hypothesis = data.get('hypothesis') or {}
        sync = data.get('sync') or {}
        tags = data.get('tags') or {}

        page_size = sync.get('page_size')
        page_size = 200 if page_size is None else int(page_size)
        if not 1 <= page_size <= 200:
            # Hypothesis caps search pages at 200 rows
            raise ConfigError(f"sync.page_size must be between 1 and 200, got {page_size}")

        return cls(
            db_dir=Path(data.get('db_dir') or get_data_dir() / 'db').expanduser(),
            api_url=hypothesis.get('api_url') or DEFAULT_CONFIG['hypothesis']['api_url'],
            username=hypothesis.get('username') or os.environ.get('HYPOTHESIS_NAME'),
            api_key=hypothesis.get('api_key') or os.environ.get('HYPOTHESIS_KEY'),
            group=hypothesis.get('group'),
            timeout=float(hypothesis.get('timeout') or 30),
            page_size=page_size,
            sync_groups=list(sync.get('groups') or []),
            sync_users=list(sync.get('users') or []),
            nested_separator=tags.get('nested_separator'),
            hierarchy=list(tags.get('hierarchy') or []),
            sort=list(tags.get('sort') or ['created']),
        )

    @property
    def user(self) -> str | None:
        """Hypothesis account ID for the configured username."""
        if not self.username:
            return None
        return f"acct:{self.username}@hypothes.is"

    def scope(self) -> Scope:
        """The sync scope: configured groups/users, else own group and user."""
        groups = self.sync_groups or ([self.group] if self.group else [])
        users = self.sync_users or ([self.user] if self.user else [])
        return Scope(groups=tuple(groups), users=tuple(users))

    def require_credentials(self) -> None:
        if not self.username or not self.api_key:
            raise ConfigError(
                "Hypothesis username and developer API key aren't set. "
                "Add them under 'hypothesis:' in the config file, or set "
                "$HYPOTHESIS_NAME and $HYPOTHESIS_KEY."
            )
