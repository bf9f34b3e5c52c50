"""Release provisioner: one VM running single-node K3s.

    provision()   - no-op when deployed; otherwise infrastructure, K3s,
                    volumes, tunnel, image build, manifests, rollout
    redeploy()    - image build, manifests and rollout on a deployed release
    deprovision() - tunnel, volumes, server, network, firewall

Every resource is keyed by the release prefix <app>-<environment>.
"""

import base64
import logging
import secrets
import shlex
import time
from typing import Optional

import naming
from common import generate_ssh_keypair
from config import ConfigError, release_targets, resolve
from generators.manifests import ManifestGenerator, mask_secrets
from kubernetes.docker_builder import DockerBuilder
from kubernetes.installer import HTTP_NODE_PORT, K3sInstaller
from kubernetes.kubectl import Kubectl
from providers import ApiError, ProviderError, Reconciler
from providers.cloud_init import generate as cloud_init
from provisioners.base import ProvisionError, Provisioner
from provisioners.database import DatabaseOps
from provisioners.volumes import VolumeProvisioner, size_in_gb
from state.models import Release

logger = logging.getLogger(__name__)

WORKSPACE = f"/home/{naming.DEFAULT_USER}/workspace"

FIREWALL_RULES = [
    {'direction': 'in', 'protocol': 'tcp', 'port': '22', 'source_ips': ['0.0.0.0/0', '::/0']},
    {'direction': 'in', 'protocol': 'tcp', 'port': '6443', 'source_ips': ['10.0.0.0/16']},
]

DATABASE_ROLLOUT_TIMEOUT = 300
SERVICE_ROLLOUT_TIMEOUT = 120
PROCESS_ROLLOUT_TIMEOUT = 300

TEARDOWN_KINDS = ('server', 'network', 'firewall')


class ReleaseProvisioner(DatabaseOps, Provisioner):
    owner: Release

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.kubectl = Kubectl(self.executor)
        self.tunnel_token: Optional[str] = None
        self.manifest_yaml: Optional[str] = None

    @property
    def release(self) -> Release:
        return self.owner

    @property
    def prefix(self) -> str:
        return naming.release_prefix(self.config.app_name, self.release.environment)

    @property
    def target(self) -> tuple:
        return release_targets(self.release.environment)

    def resolve(self, value):
        return resolve(value, self.target)

    # ─── Lifecycle ───────────────────────────────────────────────

    def provision(self) -> None:
        if self.release.deployed:
            logger.info(f"[{self.release.ref}] already deployed")
            return

        self.update(state='deploying', last_error=None)
        with self.failing_to('failed'):
            server = self.create_infrastructure()
            self.install_cluster()
            self.provision_volumes(server)
            if self.cloudflare_configured:
                self.setup_tunnel()
            if self.config.has_app():
                self.build_and_push_image()
            self.deploy_manifests()
            self.wait_for_rollout()
            self.update(state='deployed', deployed_at=time.time())
        logger.info(f"[{self.release.ref}] deployed {self.prefix}")

    def redeploy(self) -> None:
        if not self.release.deployed:
            raise ProvisionError(f"Release {self.release.id} is not deployed")

        with self.failing_to('failed'):
            self.connect(self.release.server_ip)
            if self.cloudflare_configured and self.release.tunnel_id:
                self.tunnel_token = self.cloudflare.get_tunnel_token(self.release.tunnel_id)
            if self.config.has_app():
                self.build_and_push_image()
            self.deploy_manifests()
            self.wait_for_rollout()
            self.update(deployed_at=time.time())

    def deprovision(self) -> None:
        if self.cloudflare_configured:
            self.cleanup_tunnel()
        self.cleanup_volumes()
        for kind in TEARDOWN_KINDS:
            self.log_step(f"delete_{kind}")
            self.reconciler.delete_if_exists(kind, self.prefix)
        self.update(state='torn_down', server_id=None, server_ip=None, tunnel_id=None)
        self.log_step('torn_down')

    # ─── Infrastructure ──────────────────────────────────────────

    def ensure_ssh_keys(self) -> None:
        """Use the configured key pair if any, else generate one for this release."""
        if self.release.ssh_keys_present():
            return
        self.log_step('ssh_key')
        keys = self.config.compute.read_ssh_keys()
        if keys is None:
            keys = generate_ssh_keypair(comment=self.prefix)
        self.update(ssh_private_key=keys[0], ssh_public_key=keys[1])

    def server_type(self) -> str:
        server_type = self.resolve(self.config.compute.server_type)
        if server_type is None:
            raise ConfigError(f"compute.server_type has no entry for {self.release.environment}")
        return server_type

    def create_infrastructure(self):
        self.ensure_ssh_keys()
        compute = self.config.compute

        self.log_step('firewall')
        firewall = self.reconciler.find_or_create('firewall', self.prefix, rules=FIREWALL_RULES)

        self.log_step('network')
        network = self.reconciler.find_or_create('network', self.prefix, location=compute.location)

        self.log_step('server')
        server = self.reconciler.find_or_create(
            'server', self.prefix,
            server_type=self.server_type(),
            location=compute.location,
            image=compute.image,
            user_data=cloud_init(self.release.ssh_public_key),
            labels={'purpose': 'release'},
            firewalls=[firewall.id],
            networks=[network.id],
        )
        if not server.public_ipv4:
            server = self.compute.wait_for_server(server.id)
        self.update(server_id=str(server.id), server_ip=server.public_ipv4)

        self.log_step('ssh_wait')
        self.wait_for_ssh(server.public_ipv4)
        return server

    def install_cluster(self) -> None:
        self.log_step('k3s_install')
        K3sInstaller(self.executor).install()

    # ─── Volumes ─────────────────────────────────────────────────

    def provision_volumes(self, server) -> None:
        volumes = VolumeProvisioner(self.compute, self.executor)
        for db_type, db in self.config.databases.items():
            if db_type == 'sqlite':
                continue
            size = size_in_gb(self.resolve(db.volume_size))
            if not size:
                continue
            self.log_step(f"volume_{db_type}")
            name = naming.volume(self.prefix, db_type)
            volumes.provision(name, size, server, f"{naming.VOLUME_MOUNT_BASE}/{name}")

    def cleanup_volumes(self) -> None:
        volumes = VolumeProvisioner(self.compute, self.executor)
        for db_type in self.config.databases:
            name = naming.volume(self.prefix, db_type)
            if self.compute.find_volume(name) is None:
                continue
            self.log_step(f"delete_volume_{db_type}")
            volumes.cleanup(name)

    # ─── Tunnel ──────────────────────────────────────────────────

    def public_hostnames(self) -> list[tuple[str, Optional[int]]]:
        """(hostname, port) for every process and service with a subdomain."""
        entries = []
        if self.config.has_app():
            entries.extend(self.config.app.processes.values())  # type: ignore[union-attr]
        entries.extend(self.config.services.values())
        hostnames = []
        for entry in entries:
            subdomain = self.resolve(entry.subdomain)
            if subdomain:
                hostnames.append((f"{subdomain}.{self.zone}", entry.port))
        return hostnames

    def tunnel_ingress_rules(self) -> list[dict]:
        rules = [
            {
                'hostname': hostname,
                'service': f'http://localhost:{HTTP_NODE_PORT}',
                'originRequest': {'httpHostHeader': hostname},
            }
            for hostname, port in self.public_hostnames() if port
        ]
        rules.append({'service': 'http_status:404'})
        return rules

    def setup_tunnel(self) -> None:
        self.log_step('tunnel_setup')
        cf = self.cloudflare
        tunnel = Reconciler(cf).find_or_create('tunnel', self.prefix)
        self.tunnel_token = cf.get_tunnel_token(tunnel.id)
        self.update(tunnel_id=tunnel.id)

        cf.configure_tunnel_ingress(tunnel.id, self.tunnel_ingress_rules())

        zone_id = cf.get_zone_id(self.zone)
        for hostname, _ in self.public_hostnames():
            cf.ensure_dns_record(zone_id, hostname, tunnel.id)

    def cleanup_tunnel(self) -> None:
        self.log_step('delete_tunnel')
        cf = self.cloudflare
        try:
            zone_id = cf.get_zone_id(self.zone)
        except ProviderError as e:
            logger.warning(f"Zone {self.zone} not found, skipping DNS cleanup: {e}")
            zone_id = None
        if zone_id is not None:
            for hostname, _ in self.public_hostnames():
                try:
                    record = cf.find_dns_record(zone_id, hostname)
                    if record:
                        cf.delete_dns_record(zone_id, record['id'])
                except ApiError as e:
                    if not e.not_found:
                        raise
                    logger.debug(f"DNS record {hostname} already gone")
        Reconciler(cf).delete_if_exists('tunnel', self.prefix)

    # ─── Build ───────────────────────────────────────────────────

    def repo_sync_command(self, workspace_exists: bool) -> tuple[str, str]:
        branch = shlex.quote(self.release.branch)
        if workspace_exists:
            return ('pull', f"cd {WORKSPACE} && git fetch origin && git checkout {branch} && git pull origin {branch}")
        clone_url = shlex.quote(self.config.git.clone_url())
        return ('clone', f"git clone --branch {branch} {clone_url} {WORKSPACE}")

    def sync_repo(self) -> None:
        exists = self.run(f"test -d {WORKSPACE}/.git", raise_on_error=False, timeout=10).success
        category, command = self.repo_sync_command(exists)
        self.log_step(category)
        self.run(command, timeout=120, secrets=(self.config.git.pat,))

    def build_and_push_image(self) -> None:
        self.sync_repo()
        self.log_step('docker_build')
        app = self.config.app
        builder = DockerBuilder(self.executor, self.prefix, server_ip=self.release.server_ip)
        result = builder.build_and_push(workspace=WORKSPACE, dockerfile=app.dockerfile, platform=app.platform)
        self.update(registry_tag=result['registry_tag'])

    # ─── Manifests ───────────────────────────────────────────────

    def db_password(self) -> str:
        """Configured password, else the one already in the cluster, else a new one."""
        postgres = self.config.databases.get('postgres')
        if postgres and postgres.password:
            return postgres.password
        existing = self.kubectl.get('secret', f"{self.prefix}-postgres-secret", record_output=False)
        encoded = ((existing or {}).get('data') or {}).get('DB_PASSWORD')
        if encoded:
            return base64.b64decode(encoded).decode()
        return secrets.token_hex(16)

    def generate_manifests(self) -> str:
        generator = ManifestGenerator(
            self.config,
            prefix=self.prefix,
            zone=self.zone,
            target=self.target,
            db_password=self.db_password() if self.config.has_database('postgres') else None,
            registry_tag=self.release.registry_tag,
            tunnel_token=self.tunnel_token,
        )
        return generator.generate()

    def deploy_manifests(self) -> None:
        self.log_step('deploy_manifests')
        self.manifest_yaml = self.generate_manifests()
        self.kubectl.apply(self.manifest_yaml, recorded_yaml=mask_secrets(self.manifest_yaml),
                           secrets=(self.tunnel_token,))

    def rollout_targets(self) -> list[tuple[str, int]]:
        """(deployment, timeout) for every workload, databases first."""
        targets = []
        for db_type in self.config.databases:
            if db_type != 'sqlite':
                targets.append((f"{self.prefix}-{db_type}", DATABASE_ROLLOUT_TIMEOUT))
        for name in self.config.services:
            if name == 'redis' and self.config.has_database('redis'):
                continue
            targets.append((f"{self.prefix}-{name}", SERVICE_ROLLOUT_TIMEOUT))
        if self.config.has_app() and self.release.registry_tag:
            for name in self.config.app.processes:  # type: ignore[union-attr]
                targets.append((f"{self.prefix}-{name}", PROCESS_ROLLOUT_TIMEOUT))
        return targets

    def wait_for_rollout(self) -> None:
        self.log_step('wait_rollout')
        for deployment, timeout in self.rollout_targets():
            self.kubectl.rollout_status(deployment, timeout=timeout)

    # ─── Operations on a deployed release ────────────────────────

    def _deployment(self, process: str) -> str:
        if self.release.server_ip is None:
            raise ProvisionError(f"Release {self.release.id} has no server")
        if self.executor.transport is None:
            self.connect(self.release.server_ip)
        return f"{self.prefix}-{process}"

    def _pod(self, process: str) -> str:
        deployment = self._deployment(process)
        pod = self.kubectl.get_pod_for_deployment(deployment)
        if not pod:
            raise ProvisionError(f"Pod not found for deployment: {deployment}")
        return pod

    def logs(self, process: str = 'web', tail: int = 100):
        return self.kubectl.logs(self._deployment(process), tail=tail)

    def exec(self, command: str, process: str = 'web'):
        return self.kubectl.exec(self._pod(process), command)

    def container_exec(self, command: str):
        return self.kubectl.exec(self._pod('web'), f"sh -c {shlex.quote(command)}", raise_on_error=False)

    def container_shell(self, command: str) -> str:
        return f"kubectl exec -it {self._pod('web')} -n {self.kubectl.namespace} -- sh -c {shlex.quote(command)}"

    def scale(self, process: str = 'web', replicas: int = 1):
        return self.kubectl.scale(self._deployment(process), replicas)

    def restart(self, process: str = 'web'):
        return self.kubectl.rollout_restart(self._deployment(process))

    def rollout_status(self, process: str = 'web'):
        return self.kubectl.rollout_status(self._deployment(process))

    def url(self) -> Optional[str]:
        """Public URL of the web process, if it has a subdomain."""
        if not self.zone or not self.config.has_app() or not self.config.app.has_web():  # type: ignore[union-attr]
            return None
        subdomain = self.resolve(self.config.app.processes['web'].subdomain)  # type: ignore[union-attr]
        return f"https://{subdomain}.{self.zone}" if subdomain else None
