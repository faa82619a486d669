"""Driver configuration management.

Configuration is loaded from a config directory of YAML files:
- driver.yaml: API endpoint, account identity and tunable defaults
- secrets.yaml: Secret keys (decrypted), referenced by key from driver.yaml

Directory resolution order:
1. $VSTREAM_CONFIG_DIR environment variable
2. ~/.config/vstream/ (per-user)
3. /usr/local/etc/vstream/ (FHS install)

Environment overrides (VSTREAM_ENDPOINT, VSTREAM_ACCESS_KEY,
VSTREAM_SECRET_KEY) are applied after the files are read.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml


NOT_FOUND_POLICIES = ('retry', 'sentinel')


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class DriverConfig:
    """Configuration for one cloud account/endpoint.

    Tunables mirror the fixed behaviour of the remote API:
    - poll_interval: seconds between task and state polls
    - stop_timeout / image_timeout: bounded waits for terminate and capture
    - not_found_policy: 'retry' re-polls a missing task up to
      not_found_retries more times; 'sentinel' returns "Task not found" at once
    """
    name: str = 'default'
    config_file: Optional[Path] = None
    endpoint: str = ''
    region: str = 'US1'
    tenant_id: str = ''
    access_key: str = ''

    poll_interval: float = 15.0
    stop_timeout: float = 300.0
    image_timeout: float = 300.0
    not_found_policy: str = 'retry'
    not_found_retries: int = 4
    truncate_task_errors: bool = False

    chunk_size: int = 10 * 1024
    request_timeout: float = 60.0
    verify_tls: bool = True

    root_disk_kb: int = 20971520
    default_cpu: int = 1
    default_ram_mb: int = 2048

    # Secret key (resolved from secrets.yaml at load time)
    _secret_key: str = field(default='', init=False, repr=False)

    def __post_init__(self):
        if isinstance(self.config_file, str):
            self.config_file = Path(self.config_file)

        if self.config_file is not None and self.config_file.exists():
            self._load_from_yaml()

        self._apply_env()
        self.validate()

    def _load_from_yaml(self):
        """Load configuration from driver.yaml with secrets resolution."""
        data = _parse_yaml(self.config_file)
        secrets = _load_secrets(self.config_file.parent)

        self.endpoint = data.get('endpoint', self.endpoint)
        self.region = str(data.get('region', self.region))
        self.tenant_id = str(data.get('tenant_id', self.tenant_id))
        self.access_key = str(data.get('access_key', self.access_key))

        # secret_key is a reference into secrets.yaml api_keys (default: access key)
        secret_ref = data.get('secret_key', self.access_key)
        if secrets and 'api_keys' in secrets:
            self._secret_key = str(secrets['api_keys'].get(secret_ref, ''))

        defaults = data.get('defaults') or {}
        for key in ('poll_interval', 'stop_timeout', 'image_timeout', 'request_timeout'):
            if key in defaults:
                setattr(self, key, float(defaults[key]))
        for key in ('not_found_retries', 'chunk_size', 'root_disk_kb', 'default_cpu', 'default_ram_mb'):
            if key in defaults:
                setattr(self, key, int(defaults[key]))
        for key in ('truncate_task_errors', 'verify_tls'):
            if key in defaults:
                setattr(self, key, _as_bool(defaults[key], key))
        if policy := defaults.get('not_found_policy'):
            self.not_found_policy = str(policy)

    def _apply_env(self):
        if endpoint := os.environ.get('VSTREAM_ENDPOINT'):
            self.endpoint = endpoint
        if access_key := os.environ.get('VSTREAM_ACCESS_KEY'):
            self.access_key = access_key
        if secret_key := os.environ.get('VSTREAM_SECRET_KEY'):
            self._secret_key = secret_key

    def validate(self):
        """Reject tunables the engine cannot work with."""
        if self.not_found_policy not in NOT_FOUND_POLICIES:
            raise ConfigError(
                f"not_found_policy must be one of {', '.join(NOT_FOUND_POLICIES)}, "
                f"got '{self.not_found_policy}'"
            )
        if self.not_found_retries < 0:
            raise ConfigError("not_found_retries must be >= 0")
        if self.chunk_size <= 0:
            raise ConfigError("chunk_size must be positive")
        if self.poll_interval < 0:
            raise ConfigError("poll_interval must be >= 0")

    def get_secret_key(self) -> str:
        """Get resolved secret key (from secrets.yaml or environment)."""
        return getattr(self, '_secret_key', '')

    def set_secret_key(self, secret: str) -> None:
        self._secret_key = secret


def _as_bool(value, key: str) -> bool:
    """Accept YAML booleans and the usual true/false spellings of quoted strings."""
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ('true', 'yes', 'on', '1'):
        return True
    if text in ('false', 'no', 'off', '0'):
        return False
    raise ConfigError(f"{key} must be true or false, got '{value}'")


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e


def _load_secrets(config_dir: Path) -> Optional[dict]:
    """Load decrypted secrets from secrets.yaml."""
    secrets_file = config_dir / 'secrets.yaml'
    if not secrets_file.exists():
        return None
    return _parse_yaml(secrets_file)


def get_config_dir() -> Path:
    """Discover the configuration directory.

    Resolution order:
    1. $VSTREAM_CONFIG_DIR environment variable
    2. ~/.config/vstream/
    3. /usr/local/etc/vstream/
    """
    if env_path := os.environ.get('VSTREAM_CONFIG_DIR'):
        path = Path(env_path)
        if path.exists():
            return path
        raise ConfigError(f"VSTREAM_CONFIG_DIR={env_path} does not exist")

    user_dir = Path.home() / '.config' / 'vstream'
    if user_dir.exists():
        return user_dir

    fhs_path = Path('/usr/local/etc/vstream')
    if fhs_path.exists():
        return fhs_path

    raise ConfigError(
        "vstream config not found. "
        "Set VSTREAM_CONFIG_DIR or create ~/.config/vstream/driver.yaml."
    )


def load_config(config_dir: Optional[Path] = None) -> DriverConfig:
    """Load DriverConfig from driver.yaml in the config directory."""
    config_dir = config_dir or get_config_dir()
    config_file = config_dir / 'driver.yaml'
    if not config_file.exists():
        raise ConfigError(f"No driver config: {config_file}")

    config = DriverConfig(name=config_dir.name, config_file=config_file)
    if not config.endpoint:
        raise ConfigError(f"endpoint not set in {config_file}")
    return config
