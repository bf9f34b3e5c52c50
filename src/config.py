"""Unified configuration model.

A single configuration tree drives both sandboxes and releases. Any scalar
value may instead be a mapping keyed by target, e.g.::

    compute:
      server_type:
        sandbox: cpx11
        release: cpx31

and is resolved per target with resolve(). Configuration is loaded from a
YAML file (stackrun.yaml) or assembled in code with ConfigBuilder.

Resolution order for the config file:
1. $STACKRUN_CONFIG
2. ./stackrun.yaml
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


class ConfigError(Exception):
    """Configuration error."""


TARGETS = ('sandbox', 'release')
KNOWN_PROVIDERS = ('hetzner',)
DATABASE_TYPES = ('postgres', 'sqlite', 'redis')

DEFAULT_CONFIG_FILE = 'stackrun.yaml'


def _targets(target) -> tuple:
    return (target,) if isinstance(target, str) else tuple(target)


def resolve(value: Any, target) -> Any:
    """Resolve a possibly target-keyed value for target.

    Scalars are returned unchanged. A mapping yields its entry for target,
    else its 'default' entry, else None. None means "not configured for
    this target"; callers decide whether that is an error.

    target may also be a sequence of keys tried in order, e.g.
    ('staging', 'release').
    """
    if not isinstance(value, dict):
        return value
    for key in _targets(target):
        if key in value:
            return value[key]
    return value.get('default')


def release_targets(environment: str) -> tuple:
    """Resolution keys for a release: its environment, then 'release'."""
    if environment == 'release':
        return ('release',)
    return (environment, 'release')


@dataclass
class ComputeConfig:
    """Compute provider settings (Hetzner-compatible API)."""
    provider: str = 'hetzner'
    api_key: str = ''
    server_type: Any = 'cpx11'
    location: str = 'ash'
    image: str = 'ubuntu-22.04'
    ssh_key_path: Optional[str] = None

    def ssh_keys_configured(self) -> bool:
        return bool(self.ssh_key_path) and Path(self.ssh_key_path).expanduser().exists()

    def read_ssh_keys(self) -> Optional[tuple[str, str]]:
        """Return (private_key, public_key) from ssh_key_path, or None if unset.

        Raises:
            ConfigError: If the private key exists but its .pub companion does not
        """
        if not self.ssh_keys_configured():
            return None
        private_path = Path(self.ssh_key_path).expanduser()  # type: ignore[arg-type]
        public_path = Path(f"{private_path}.pub")
        if not public_path.exists():
            raise ConfigError(f"SSH public key not found: {public_path}")
        return private_path.read_text(), public_path.read_text().strip()


@dataclass
class CloudflareConfig:
    api_token: str = ''
    account_id: str = ''
    domain: str = ''

    def configured(self) -> bool:
        return bool(self.api_token and self.account_id and self.domain)


@dataclass
class GitConfig:
    pat: str = ''
    repo: str = ''
    username: str = 'stackrun'
    email: str = 'sandbox@stackrun.dev'
    app_name: str = ''

    def clone_url(self) -> str:
        """HTTPS clone URL, embedding the token when one is configured."""
        if self.pat:
            return f"https://{self.pat}@github.com/{self.repo}.git"
        return f"https://github.com/{self.repo}.git"


@dataclass
class DatabaseConfig:
    type: str
    image: Optional[str] = None
    volume_size: Any = '10Gi'
    password: Optional[str] = None

    DEFAULT_IMAGES = {
        'postgres': 'postgres:16-alpine',
        'sqlite': None,
        'redis': 'redis:7-alpine',
    }

    def __post_init__(self):
        if self.type not in DATABASE_TYPES:
            raise ConfigError(f"Unknown database type: {self.type}")
        if self.image is None:
            self.image = self.DEFAULT_IMAGES[self.type]


@dataclass
class ServiceConfig:
    name: str
    image: Optional[str] = None
    port: Optional[int] = None
    subdomain: Optional[str] = None
    env: dict = field(default_factory=dict)

    DEFAULT_IMAGES = {
        'redis': 'redis:7-alpine',
        'meilisearch': 'getmeili/meilisearch:latest',
    }
    DEFAULT_PORTS = {
        'redis': 6379,
        'meilisearch': 7700,
    }

    def __post_init__(self):
        if self.image is None:
            self.image = self.DEFAULT_IMAGES.get(self.name)
        if self.port is None:
            self.port = self.DEFAULT_PORTS.get(self.name)


@dataclass
class ProcessConfig:
    name: str
    command: Optional[str] = None
    port: Optional[int] = None
    replicas: Any = 1
    subdomain: Optional[str] = None
    size: str = 'small'


@dataclass
class AppConfig:
    processes: dict[str, ProcessConfig] = field(default_factory=dict)
    dockerfile: str = 'Dockerfile'
    platform: str = 'linux/amd64'

    def has_web(self) -> bool:
        return 'web' in self.processes


@dataclass
class StorageConfig:
    subdomain: Optional[str] = None


@dataclass
class Config:
    """Root of the unified configuration tree."""
    compute: Optional[ComputeConfig] = None
    cloudflare: Optional[CloudflareConfig] = None
    git: GitConfig = field(default_factory=GitConfig)
    databases: dict[str, DatabaseConfig] = field(default_factory=dict)
    services: dict[str, ServiceConfig] = field(default_factory=dict)
    app: Optional[AppConfig] = None
    storage: Optional[StorageConfig] = None
    setup_commands: list[str] = field(default_factory=list)
    env: dict = field(default_factory=dict)

    @property
    def app_name(self) -> str:
        """Explicit git.app_name, else the repository name from git.repo."""
        if self.git.app_name:
            return self.git.app_name
        if self.git.repo:
            return self.git.repo.rstrip('/').split('/')[-1]
        return 'app'

    def has_database(self, db_type: Optional[str] = None) -> bool:
        return db_type in self.databases if db_type else bool(self.databases)

    def has_service(self, name: Optional[str] = None) -> bool:
        return name in self.services if name else bool(self.services)

    def has_app(self) -> bool:
        return self.app is not None and bool(self.app.processes)

    def has_storage(self) -> bool:
        return self.storage is not None and bool(self.storage.subdomain)

    def cloudflare_configured(self) -> bool:
        return self.cloudflare is not None and self.cloudflare.configured()

    def resolved_env(self, target) -> dict:
        """Env vars resolved for target. Unresolvable entries are kept as None."""
        return {key: resolve(value, target) for key, value in self.env.items()}

    def validate(self) -> None:
        """Check required settings.

        Raises:
            ConfigError: On the first missing or invalid setting
        """
        if self.compute is None:
            raise ConfigError("Compute provider not configured")
        if self.compute.provider not in KNOWN_PROVIDERS:
            raise ConfigError(f"Unknown compute provider: {self.compute.provider}")
        if not self.compute.api_key:
            raise ConfigError(f"compute.api_key is required for {self.compute.provider}")
        if self.compute.ssh_key_path and not self.compute.ssh_keys_configured():
            raise ConfigError(f"SSH private key not found: {self.compute.ssh_key_path}")
        if self.cloudflare is not None:
            cf = self.cloudflare
            if (cf.api_token or cf.account_id or cf.domain) and not cf.configured():
                raise ConfigError("cloudflare requires api_token, account_id and domain")
        if not self.git.pat:
            raise ConfigError("git.pat is required")
        if not self.git.repo:
            raise ConfigError("git.repo is required")

    def validate_for_target(self, target) -> None:
        """Ensure every target-keyed value has an entry for target.

        Raises:
            ConfigError: Listing every key that would resolve to None
        """
        errors = []
        keys = '/'.join(_targets(target))
        if self.compute is not None and resolve(self.compute.server_type, target) is None:
            errors.append(f"compute.server_type missing key '{keys}'")
        for key, value in self.env.items():
            if isinstance(value, dict) and resolve(value, target) is None:
                errors.append(f"env.{key} missing key '{keys}'")
        if errors:
            raise ConfigError(', '.join(errors))


class ConfigBuilder:
    """Fluent builder for Config.

    Example:
        config = (ConfigBuilder()
                  .compute('hetzner', api_key='...', server_type={'sandbox': 'cpx11', 'release': 'cpx31'})
                  .git(repo='acme/shop', pat='...')
                  .database('postgres')
                  .process('web', command='bin/rails server', port=3000, subdomain='app')
                  .build())
    """

    def __init__(self):
        self._config = Config()

    def compute(self, provider: str = 'hetzner', **settings) -> 'ConfigBuilder':
        self._config.compute = ComputeConfig(provider=provider, **settings)
        return self

    def cloudflare(self, **settings) -> 'ConfigBuilder':
        self._config.cloudflare = CloudflareConfig(**settings)
        return self

    def git(self, **settings) -> 'ConfigBuilder':
        for key, value in settings.items():
            setattr(self._config.git, key, value)
        return self

    def database(self, db_type: str, **settings) -> 'ConfigBuilder':
        self._config.databases[db_type] = DatabaseConfig(type=db_type, **settings)
        return self

    def service(self, name: str, **settings) -> 'ConfigBuilder':
        self._config.services[name] = ServiceConfig(name=name, **settings)
        return self

    def app(self, **settings) -> 'ConfigBuilder':
        if self._config.app is None:
            self._config.app = AppConfig()
        for key, value in settings.items():
            setattr(self._config.app, key, value)
        return self

    def process(self, name: str, **settings) -> 'ConfigBuilder':
        self.app()
        self._config.app.processes[name] = ProcessConfig(name=name, **settings)  # type: ignore[union-attr]
        return self

    def storage(self, subdomain: Optional[str] = None) -> 'ConfigBuilder':
        self._config.storage = StorageConfig(subdomain=subdomain)
        return self

    def setup(self, *commands: str) -> 'ConfigBuilder':
        self._config.setup_commands = list(commands)
        return self

    def env(self, **variables) -> 'ConfigBuilder':
        self._config.env = dict(variables)
        return self

    def build(self) -> Config:
        return self._config


def _expand(value: Any) -> Any:
    """Expand $VAR references in string values, recursively."""
    if isinstance(value, str):
        return os.path.expandvars(value)
    if isinstance(value, dict):
        return {k: _expand(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand(v) for v in value]
    return value


def _parse_yaml(path: Path) -> dict:
    """Parse YAML file, return empty dict if missing or empty."""
    if not path.exists():
        return {}
    with open(path, encoding='utf-8') as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a mapping at top level of {path}")
    return data


def config_from_dict(data: dict) -> Config:
    """Build a Config tree from a plain (YAML-shaped) dict."""
    data = _expand(data)
    builder = ConfigBuilder()
    try:
        if 'compute' in data:
            compute = dict(data['compute'])
            builder.compute(compute.pop('provider', 'hetzner'), **compute)
        if 'cloudflare' in data:
            builder.cloudflare(**data['cloudflare'])
        if 'git' in data:
            builder.git(**data['git'])
        for db_type, settings in (data.get('databases') or {}).items():
            builder.database(db_type, **(settings or {}))
        for name, settings in (data.get('services') or {}).items():
            builder.service(name, **(settings or {}))
        if 'app' in data:
            app = dict(data['app'] or {})
            processes = app.pop('processes', {}) or {}
            builder.app(**app)
            for name, settings in processes.items():
                builder.process(name, **(settings or {}))
        if 'storage' in data:
            builder.storage(**(data['storage'] or {}))
        if 'setup' in data:
            builder.setup(*(data['setup'] or []))
        if 'env' in data:
            builder.env(**(data['env'] or {}))
    except TypeError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
    return builder.build()


def find_config_file() -> Path:
    """Locate the config file.

    Raises:
        ConfigError: If no config file is found
    """
    env_path = os.environ.get('STACKRUN_CONFIG')
    if env_path:
        path = Path(env_path)
        if not path.exists():
            raise ConfigError(f"STACKRUN_CONFIG points to missing file: {path}")
        return path
    path = Path.cwd() / DEFAULT_CONFIG_FILE
    if path.exists():
        return path
    raise ConfigError(f"No {DEFAULT_CONFIG_FILE} found (set STACKRUN_CONFIG)")


def load_config(path: Optional[Path] = None) -> Config:
    """Load configuration from YAML."""
    path = Path(path) if path else find_config_file()
    return config_from_dict(_parse_yaml(path))
