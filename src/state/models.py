"""Provisioning entities: sandboxes, releases and the execution ledger.

Sandbox and Release are plain state-machine records; the Store persists
them. Every remote command run on behalf of an owner is an Execution,
and its output is kept as ExecutionLogLine rows.
"""

import re
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import naming

KINDS = ('exec', 'process')

TAGS = (
    'service', 'app', 'tunnel', 'provision', 'validate', 'ready',
    'run', 'git', 'discovery', 'ingest', 'build', 'system',
)

STREAMS = ('stdout', 'stderr', 'output')

CATEGORIES = {
    # Sandbox
    'ssh_key': 'Registering SSH key...',
    'firewall': 'Creating firewall...',
    'network': 'Creating network...',
    'server': 'Creating server...',
    'ssh_wait': 'Waiting for SSH...',
    'apt_packages': 'Installing packages...',
    'docker': 'Starting Docker...',
    'nodejs': 'Installing Node.js...',
    'claude_code': 'Installing Claude Code...',
    'gh_cli': 'Installing GitHub CLI...',
    'gh_auth': 'Authenticating GitHub CLI...',
    'git_config': 'Configuring Git...',
    'clone': 'Cloning repository...',
    'branch': 'Creating branch...',
    'environment': 'Writing environment...',
    'compose_generate': 'Generating Compose file...',
    'compose_setup': 'Setting up Docker Compose...',
    'tunnel_setup': 'Setting up tunnel...',
    'ready': 'Ready!',
    'delete_tunnel': 'Deleting tunnel...',
    'stop_containers': 'Stopping containers...',
    'delete_server': 'Deleting server...',
    'delete_network': 'Deleting network...',
    'delete_firewall': 'Deleting firewall...',
    'stopped': 'Stopped.',
    # Release
    'k3s_install': 'Installing K3s...',
    'wait_cloud_init': 'Waiting for cloud-init...',
    'discover_network': 'Discovering network...',
    'install_docker': 'Installing Docker...',
    'configure_docker': 'Configuring Docker...',
    'configure_k3s_registries': 'Configuring registry mirror...',
    'install_k3s': 'Installing K3s...',
    'setup_kubeconfig': 'Writing kubeconfig...',
    'deploy_priority_classes': 'Applying priority classes...',
    'deploy_registry': 'Deploying registry...',
    'wait_registry': 'Waiting for registry...',
    'deploy_ingress': 'Deploying ingress controller...',
    'volume': 'Provisioning volume...',
    'delete_volume': 'Deleting volume...',
    'pull': 'Syncing repository...',
    'docker_build': 'Building image...',
    'deploy_manifests': 'Applying manifests...',
    'wait_rollout': 'Waiting for rollout...',
    'torn_down': 'Torn down.',
}

# Prefixed categories carry a suffix, e.g. volume_postgres
_PREFIXED_CATEGORIES = ('delete_volume_', 'volume_')


def valid_category(category: Optional[str]) -> bool:
    if category is None or category in CATEGORIES:
        return True
    return any(category.startswith(p) for p in _PREFIXED_CATEGORIES)


def category_label(category: str) -> Optional[str]:
    if category in CATEGORIES:
        return CATEGORIES[category]
    for prefix in _PREFIXED_CATEGORIES:
        if category.startswith(prefix):
            suffix = category[len(prefix):]
            return f"{CATEGORIES[prefix.rstrip('_')].rstrip('.')} ({suffix})..."
    return None


@dataclass(frozen=True)
class OwnerRef:
    """Tagged reference to the owner of an execution."""
    kind: str
    id: int

    def __post_init__(self):
        if self.kind not in ('sandbox', 'release'):
            raise ValueError(f"Unknown owner kind: {self.kind}")

    def __str__(self) -> str:
        return f"{self.kind}:{self.id}"

    def to_dict(self) -> dict:
        return {'kind': self.kind, 'id': self.id}

    @classmethod
    def from_dict(cls, data: dict) -> 'OwnerRef':
        return cls(kind=data['kind'], id=data['id'])


@dataclass
class Execution:
    """One remote command run (or a step marker).

    exit_code stays None until the command completes.
    """
    id: int
    owner: OwnerRef
    command: str
    kind: str = 'exec'
    tag: Optional[str] = None
    category: Optional[str] = None
    exit_code: Optional[int] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    session: Optional[str] = None
    image: Optional[str] = None
    container_id: Optional[str] = None
    output: str = field(default='', repr=False, compare=False)

    def __post_init__(self):
        if self.kind not in KINDS:
            raise ValueError(f"Invalid execution kind: {self.kind}")
        if self.tag is not None and self.tag not in TAGS:
            raise ValueError(f"Invalid execution tag: {self.tag}")
        if not valid_category(self.category):
            raise ValueError(f"Invalid execution category: {self.category}")
        if not self.command:
            raise ValueError("Execution command must not be empty")

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def failed(self) -> bool:
        return self.exit_code is not None and self.exit_code != 0

    @property
    def label(self) -> str:
        """Human-readable label for display."""
        if self.category:
            label = category_label(self.category)
            if label:
                return label
            return self.category.replace('_', ' ').title()
        if len(self.command) > 50:
            return self.command[:47] + '...'
        return self.command

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.finished_at:
            return self.finished_at - self.started_at
        return None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'id': self.id,
            'owner': self.owner.to_dict(),
            'command': self.command,
            'kind': self.kind,
        }
        for key in ('tag', 'category', 'exit_code', 'started_at', 'finished_at',
                    'session', 'image', 'container_id'):
            value = getattr(self, key)
            if value is not None:
                d[key] = value
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'Execution':
        return cls(
            id=data['id'],
            owner=OwnerRef.from_dict(data['owner']),
            command=data['command'],
            kind=data.get('kind', 'exec'),
            tag=data.get('tag'),
            category=data.get('category'),
            exit_code=data.get('exit_code'),
            started_at=data.get('started_at'),
            finished_at=data.get('finished_at'),
            session=data.get('session'),
            image=data.get('image'),
            container_id=data.get('container_id'),
        )


@dataclass
class ExecutionLogLine:
    execution_id: int
    stream: str
    line_number: int
    content: str

    def __post_init__(self):
        if self.stream not in STREAMS:
            raise ValueError(f"Invalid log stream: {self.stream}")
        if self.line_number < 1:
            raise ValueError("line_number must be positive")

    @property
    def key(self) -> tuple[int, str, int]:
        return (self.execution_id, self.stream, self.line_number)

    def to_dict(self) -> dict:
        return {
            'execution_id': self.execution_id,
            'stream': self.stream,
            'line_number': self.line_number,
            'content': self.content,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'ExecutionLogLine':
        return cls(**data)


ENV_KEY_PATTERN = re.compile(r'^[A-Z_][A-Z0-9_]*$')


def validate_env(env: dict) -> None:
    """Raise ValueError unless every key is an uppercase env var name."""
    for key in env:
        if not isinstance(key, str) or not ENV_KEY_PATTERN.match(key):
            raise ValueError(f"Invalid env key '{key}': must be uppercase with underscores")


@dataclass
class Sandbox:
    """Ephemeral development environment (VM + Docker Compose).

    Attributes:
        id: Store-assigned identifier
        slug: 6 hex chars; names every cloud resource of this sandbox
        state: pending, provisioning, running, stopped, failed
        exposed: Whether a public tunnel is set up
        access_token: Token for the authenticated preview URL
        env: Per-sandbox variables written to .env over the configured env
    """
    id: int
    slug: str = ''
    state: str = 'pending'
    ssh_private_key: Optional[str] = field(default=None, repr=False)
    ssh_public_key: Optional[str] = field(default=None, repr=False)
    exposed: bool = False
    access_token: str = field(default='', repr=False)
    last_error: Optional[str] = None
    branch: str = ''
    env: dict = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    STATES = ('pending', 'provisioning', 'running', 'stopped', 'failed')

    def __post_init__(self):
        if not self.slug:
            self.slug = naming.generate_slug()
        naming.validate_slug(self.slug)
        if not self.access_token:
            self.access_token = secrets.token_urlsafe(32)
        if not self.branch:
            self.branch = naming.branch(self.slug)
        if self.state not in self.STATES:
            raise ValueError(f"Invalid sandbox state: {self.state}")
        validate_env(self.env)

    @property
    def ref(self) -> OwnerRef:
        return OwnerRef('sandbox', self.id)

    @property
    def running(self) -> bool:
        return self.state == 'running'

    def ssh_keys_present(self) -> bool:
        return bool(self.ssh_private_key and self.ssh_public_key)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'slug': self.slug,
            'state': self.state,
            'ssh_private_key': self.ssh_private_key,
            'ssh_public_key': self.ssh_public_key,
            'exposed': self.exposed,
            'access_token': self.access_token,
            'last_error': self.last_error,
            'branch': self.branch,
            'env': dict(self.env),
            'created_at': self.created_at,
            'updated_at': self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Sandbox':
        return cls(**data)


@dataclass
class Release:
    """Production deployment (VM + single-node K3s).

    Resources are keyed by (app_name, environment), so re-running a
    release for the same environment reuses the same named resources.
    """
    id: int
    environment: str = 'production'
    branch: str = 'main'
    state: str = 'pending'
    server_id: Optional[str] = None
    server_ip: Optional[str] = None
    ssh_private_key: Optional[str] = field(default=None, repr=False)
    ssh_public_key: Optional[str] = field(default=None, repr=False)
    tunnel_id: Optional[str] = None
    registry_tag: Optional[str] = None
    last_error: Optional[str] = None
    deployed_at: Optional[float] = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    STATES = ('pending', 'deploying', 'deployed', 'failed', 'torn_down')

    def __post_init__(self):
        if self.state not in self.STATES:
            raise ValueError(f"Invalid release state: {self.state}")

    @property
    def ref(self) -> OwnerRef:
        return OwnerRef('release', self.id)

    @property
    def deployed(self) -> bool:
        return self.state == 'deployed'

    def prefix(self, app_name: str) -> str:
        return naming.release_prefix(app_name, self.environment)

    def ssh_keys_present(self) -> bool:
        return bool(self.ssh_private_key and self.ssh_public_key)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'environment': self.environment,
            'branch': self.branch,
            'state': self.state,
            'server_id': self.server_id,
            'server_ip': self.server_ip,
            'ssh_private_key': self.ssh_private_key,
            'ssh_public_key': self.ssh_public_key,
            'tunnel_id': self.tunnel_id,
            'registry_tag': self.registry_tag,
            'last_error': self.last_error,
            'deployed_at': self.deployed_at,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Release':
        return cls(**data)
