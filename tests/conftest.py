"""Shared pytest fixtures for stackrun tests.

Fakes stand in for the three external boundaries: the SSH transport, the
compute provider and Cloudflare. Each records what it was asked to do.
"""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import ConfigBuilder  # noqa: E402
from providers.base import ApiError  # noqa: E402
from providers.types import Firewall, Network, Server, SSHKey, Tunnel, Volume  # noqa: E402
from remote.ssh import CommandError, CommandResult  # noqa: E402
from state import Store  # noqa: E402

TEST_IP = '203.0.113.10'  # TEST-NET-3 (RFC 5737)

IP_ADDR_OUTPUT = (
    "1: lo    inet 127.0.0.1/8 scope host lo\\       valid_lft forever preferred_lft forever\n"
    "2: eth0    inet 5.161.24.10/32 scope global dynamic eth0\\       valid_lft 86000sec\n"
    "3: enp7s0    inet 10.0.0.2/32 brd 10.0.0.2 scope global dynamic enp7s0\\       valid_lft 86000sec\n"
)

# (substring, output, exit_code): the first matching rule answers
HEALTHY_SERVER_RULES = [
    ('boot-finished', 'ready', 0),
    ('ifconfig.me', TEST_IP, 0),
    ('ip -4 -o addr show', IP_ADDR_OUTPUT, 0),
    ('docker --version', 'Docker version 24.0.7\nactive', 0),
    ('grep -q Ready', '', 0),
    ('/v2/', 'ok', 0),
    ("jsonpath='{.items[0].status.phase}'", 'Running', 0),
    ('test -b', 'ready', 0),
    ("echo 'mounted' || echo 'not'", 'not', 0),
    ('sudo blkid /dev', '', 0),
    ('/etc/fstab || true', '', 0),
    ("echo 'ok' || echo 'fail'", 'ok', 0),
    ('test -d', '', 1),
    ('get secret', '', 1),
    ('which ', '', 1),
]


class FakeTransport:
    """In-memory SSH transport answering commands from substring rules."""

    def __init__(self, rules=None, default_output='', default_exit=0):
        self.rules = list(rules or [])
        self.default_output = default_output
        self.default_exit = default_exit
        self.commands: list[str] = []
        self.ready_checks = 0

    def respond(self, substring, output='', exit_code=0):
        """Add a rule that takes precedence over existing ones."""
        self.rules.insert(0, (substring, output, exit_code))

    def execute(self, command, timeout=None, raise_on_error=True, cwd=None, on_line=None):
        self.commands.append(command)
        output, exit_code = self.default_output, self.default_exit
        for substring, rule_output, rule_exit in self.rules:
            if substring in command:
                output, exit_code = rule_output, rule_exit
                break
        if on_line:
            for line in output.splitlines():
                on_line(line)
        if raise_on_error and exit_code != 0:
            raise CommandError(f"Command failed (exit code: {exit_code}): {command}",
                               exit_code=exit_code, output=output)
        return CommandResult(output=output, exit_code=exit_code)

    def wait_until_ready(self, max_attempts=60, interval=5):
        self.ready_checks += 1
        return True

    def ran(self, substring) -> list[str]:
        return [c for c in self.commands if substring in c]


class FakeCompute:
    """Hetzner-shaped compute client keeping resources in dicts keyed by name."""

    def __init__(self, location='ash-dc1'):
        self.location = location
        self.resources = {'server': {}, 'network': {}, 'firewall': {}, 'volume': {}, 'ssh_key': {}}
        self.created: list[tuple[str, str]] = []
        self.deleted: list[tuple[str, str]] = []
        self.attached: list[tuple[str, str]] = []
        self.create_kwargs: dict = {}
        self._next_id = 100

    def _id(self) -> str:
        self._next_id += 1
        return str(self._next_id)

    def _create(self, kind, name, record, **kwargs):
        self.resources[kind][name] = record
        self.created.append((kind, name))
        self.create_kwargs[(kind, name)] = kwargs
        return record

    def _delete(self, kind, resource_id):
        for name, record in list(self.resources[kind].items()):
            if str(record.id) == str(resource_id):
                del self.resources[kind][name]
                self.deleted.append((kind, name))
                return None
        raise ApiError("[404] Not found", status=404)

    def find_server(self, name):
        return self.resources['server'].get(name)

    def create_server(self, name, server_type, **kwargs):
        server = Server(id=self._id(), name=name, status='running', public_ipv4=TEST_IP,
                        private_ipv4='10.0.0.2', instance_type=server_type, location=self.location,
                        labels=kwargs.get('labels') or {})
        return self._create('server', name, server, server_type=server_type, **kwargs)

    def wait_for_server(self, server_id, max_attempts=60, interval=5):
        for server in self.resources['server'].values():
            if str(server.id) == str(server_id):
                return server
        raise ApiError("[404] Not found", status=404)

    def delete_server(self, server_id):
        return self._delete('server', server_id)

    def find_network(self, name):
        return self.resources['network'].get(name)

    def create_network(self, name, location, **kwargs):
        return self._create('network', name, Network(id=self._id(), name=name, location=location),
                            location=location, **kwargs)

    def delete_network(self, network_id):
        return self._delete('network', network_id)

    def find_firewall(self, name):
        return self.resources['firewall'].get(name)

    def create_firewall(self, name, rules=None):
        return self._create('firewall', name, Firewall(id=self._id(), name=name, rules=rules or []), rules=rules)

    def delete_firewall(self, firewall_id):
        return self._delete('firewall', firewall_id)

    def find_ssh_key(self, name):
        return self.resources['ssh_key'].get(name)

    def create_ssh_key(self, name, public_key):
        return self._create('ssh_key', name, SSHKey(id=self._id(), name=name, public_key=public_key))

    def delete_ssh_key(self, key_id):
        return self._delete('ssh_key', key_id)

    def find_volume(self, name):
        return self.resources['volume'].get(name)

    def create_volume(self, name, size, location, labels=None, format='xfs'):
        volume = Volume(id=self._id(), name=name, size_gb=size, location=location)
        return self._create('volume', name, volume, size=size, location=location, labels=labels)

    def get_volume(self, volume_id):
        for volume in self.resources['volume'].values():
            if str(volume.id) == str(volume_id):
                return volume
        return None

    def attach_volume(self, volume_id, server_id):
        volume = self.get_volume(volume_id)
        volume.server_id = str(server_id)
        volume.device_path = f"/dev/disk/by-id/scsi-0HC_Volume_{volume_id}"
        self.attached.append((volume.name, str(server_id)))
        return volume

    def detach_volume(self, volume_id):
        volume = self.get_volume(volume_id)
        if volume:
            volume.server_id = None

    def delete_volume(self, volume_id):
        return self._delete('volume', volume_id)


class FakeCloudflare:
    """Cloudflare client double recording tunnels, DNS records and workers."""

    def __init__(self):
        self.tunnels: dict[str, Tunnel] = {}
        self.dns: dict[str, dict] = {}
        self.ingress: dict[str, list] = {}
        self.workers: set[str] = set()
        self.routes: list[str] = []
        self.calls: list[str] = []

    def get_zone_id(self, domain):
        return 'zone-1'

    def find_tunnel(self, name):
        return self.tunnels.get(name)

    def create_tunnel(self, name):
        self.calls.append(f'create_tunnel {name}')
        tunnel = Tunnel(id=f'tunnel-{len(self.tunnels) + 1}', name=name, status='inactive')
        self.tunnels[name] = tunnel
        return tunnel

    def get_tunnel_token(self, tunnel_id):
        return f'token-for-{tunnel_id}'

    def configure_tunnel_ingress(self, tunnel_id, rules):
        self.ingress[tunnel_id] = rules

    def delete_tunnel(self, tunnel_id):
        self.calls.append(f'delete_tunnel {tunnel_id}')
        for name, tunnel in list(self.tunnels.items()):
            if tunnel.id == tunnel_id:
                del self.tunnels[name]

    def find_dns_record(self, zone_id, hostname, record_type='CNAME'):
        return self.dns.get(hostname)

    def ensure_dns_record(self, zone_id, hostname, tunnel_id):
        record = {'id': f'dns-{hostname}', 'name': hostname, 'content': f'{tunnel_id}.cfargotunnel.com'}
        self.dns[hostname] = record
        return record

    def delete_dns_record(self, zone_id, record_id):
        for hostname, record in list(self.dns.items()):
            if record['id'] == record_id:
                del self.dns[hostname]

    def deploy_worker(self, slug, access_token):
        self.workers.add(slug)

    def create_worker_route(self, zone_id, slug, domain):
        self.routes.append(slug)
        return {'id': f'route-{slug}'}

    def delete_worker_route(self, zone_id, slug, domain):
        self.calls.append(f'delete_worker_route {slug}')
        if slug in self.routes:
            self.routes.remove(slug)

    def delete_worker(self, slug):
        if slug not in self.workers:
            raise ApiError("[404] Not found", status=404)
        self.workers.discard(slug)


@pytest.fixture
def store():
    """In-memory store (no state file)."""
    return Store()


@pytest.fixture
def transport():
    return FakeTransport(HEALTHY_SERVER_RULES)


@pytest.fixture
def compute():
    return FakeCompute()


@pytest.fixture
def cloudflare():
    return FakeCloudflare()


@pytest.fixture
def app_config():
    """Hetzner compute, one postgres database and a web process on port 3000."""
    return (ConfigBuilder()
            .compute('hetzner', api_key='test-key', server_type={'sandbox': 'cpx11', 'release': 'cpx31'})
            .git(repo='acme/shop', pat='ghp_test')
            .database('postgres')
            .process('web', command='bin/rails server', port=3000, subdomain='app')
            .build())


@pytest.fixture
def cloudflare_config(app_config):
    app_config.cloudflare = ConfigBuilder().cloudflare(
        api_token='cf-token', account_id='acct', domain='example.dev').build().cloudflare
    return app_config


@pytest.fixture
def sample_config_file(tmp_path):
    """Write a minimal stackrun.yaml and return its path."""
    path = tmp_path / 'stackrun.yaml'
    path.write_text("""
compute:
  provider: hetzner
  api_key: test-key
  server_type:
    sandbox: cpx11
    release: cpx31
git:
  repo: acme/shop
  pat: ghp_test
databases:
  postgres:
    volume_size: 20Gi
services:
  meilisearch:
    subdomain: search
app:
  processes:
    web:
      command: bin/rails server
      port: 3000
      subdomain: app
    worker:
      command: bin/jobs
setup:
  - bin/rails db:prepare
env:
  RAILS_ENV:
    sandbox: development
    release: production
  LOG_LEVEL: info
""")
    return path


@pytest.fixture
def make_transport():
    """Factory for transports with custom rules."""
    def _make(rules=None, **kwargs):
        return FakeTransport(rules, **kwargs)
    return _make
