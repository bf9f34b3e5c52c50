"""Sandbox provisioner: one VM running the app under Docker Compose.

    provision()   - no-op when running; otherwise infrastructure, tooling,
                    workspace and compose stack, then the preview tunnel
    deprovision() - tunnel, containers, server, network, firewall; always
                    ends in 'stopped'

Every cloud resource is named naming.resource(slug) and reconciled by
name, so a failed run can simply be repeated.
"""

import logging
import shlex
from typing import Optional

import naming
from common import generate_ssh_keypair, heredoc
from config import ConfigError, resolve
from generators.compose import generate_compose
from providers import ProviderError, Reconciler
from providers.cloud_init import generate as cloud_init
from provisioners.base import ProvisionError, Provisioner
from provisioners.database import DatabaseOps
from remote.ssh import SSHError
from state.models import Sandbox

logger = logging.getLogger(__name__)

WORKSPACE = f"/home/{naming.DEFAULT_USER}/workspace"
COMPOSE_FILE = 'docker-compose.generated.yml'
PREVIEW_PORT = 3000
CLOUDFLARED_IMAGE = 'cloudflare/cloudflared:latest'

APT_PACKAGES = 'curl git jq rsync docker.io docker-compose-v2 ca-certificates gnupg'

GH_CLI_INSTALL = (
    'curl -fsSL https://cli.github.com/packages/githubcli-archive-keyring.gpg'
    ' | sudo dd of=/usr/share/keyrings/githubcli-archive-keyring.gpg'
    ' && echo "deb [arch=$(dpkg --print-architecture)'
    ' signed-by=/usr/share/keyrings/githubcli-archive-keyring.gpg]'
    ' https://cli.github.com/packages stable main"'
    ' | sudo tee /etc/apt/sources.list.d/github-cli.list > /dev/null'
    ' && sudo apt update && sudo apt install gh -y'
)

# (category, binary, install command); skipped when `which binary` succeeds
TOOLS = [
    ('nodejs', 'node',
     'curl -fsSL https://deb.nodesource.com/setup_20.x | sudo bash - && sudo apt-get install -y nodejs'),
    ('claude_code', 'claude', 'sudo npm install -g @anthropic-ai/claude-code'),
    ('gh_cli', 'gh', GH_CLI_INSTALL),
]

TEARDOWN_KINDS = ('server', 'network', 'firewall')


class SandboxProvisioner(DatabaseOps, Provisioner):
    owner: Sandbox

    @property
    def sandbox(self) -> Sandbox:
        return self.owner

    @property
    def name(self) -> str:
        return naming.resource(self.sandbox.slug)

    # ─── Lifecycle ───────────────────────────────────────────────

    def provision(self) -> None:
        if self.sandbox.running:
            logger.info(f"[{self.sandbox.ref}] already running")
            return

        self.update(state='provisioning', last_error=None)
        with self.failing_to('failed'):
            self.create_infrastructure()
            self.install_software()
            self.setup_application()
            if self.sandbox.exposed:
                self.setup_tunnel()
            self.update(state='running')
        logger.info(f"[{self.sandbox.ref}] running ({self.name})")

    def deprovision(self) -> None:
        if self.cloudflare_configured:
            self.delete_tunnel()

        server = self.compute.find_server(self.name)
        if server is not None and server.public_ipv4 and self.sandbox.ssh_keys_present():
            self.stop_containers(server.public_ipv4)

        for kind in TEARDOWN_KINDS:
            self.log_step(f"delete_{kind}")
            self.reconciler.delete_if_exists(kind, self.name)

        self.update(state='stopped')
        self.log_step('stopped')

    def server_ip(self) -> Optional[str]:
        server = self.compute.find_server(self.name)
        return server.public_ipv4 if server else None

    def preview_url(self) -> Optional[str]:
        if not self.zone:
            return None
        return f"https://{naming.hostname(self.sandbox.slug, self.zone)}"

    # ─── Infrastructure ──────────────────────────────────────────

    def create_infrastructure(self) -> None:
        if not self.sandbox.ssh_keys_present():
            self.log_step('ssh_key')
            private_key, public_key = generate_ssh_keypair(comment=self.name)
            self.update(ssh_private_key=private_key, ssh_public_key=public_key)

        compute = self.config.compute

        self.log_step('firewall')
        firewall = self.reconciler.find_or_create('firewall', self.name)

        self.log_step('network')
        network = self.reconciler.find_or_create('network', self.name, location=compute.location)

        self.log_step('server')
        server = self.reconciler.find_or_create(
            'server', self.name,
            server_type=self.server_type(),
            location=compute.location,
            image=compute.image,
            user_data=cloud_init(self.sandbox.ssh_public_key),
            labels={'purpose': 'sandbox', 'sandbox_slug': self.sandbox.slug},
            firewalls=[firewall.id],
            networks=[network.id],
        )
        if not server.public_ipv4:
            server = self.compute.wait_for_server(server.id)

        self.log_step('ssh_wait')
        self.wait_for_ssh(server.public_ipv4)

    def server_type(self) -> str:
        server_type = resolve(self.config.compute.server_type, 'sandbox')
        if server_type is None:
            raise ConfigError("compute.server_type has no entry for sandbox")
        return server_type

    # ─── Software ────────────────────────────────────────────────

    def install_software(self) -> None:
        self.log_step('apt_packages')
        self.run(f"sudo apt-get update && sudo apt-get install -y {APT_PACKAGES}")

        self.log_step('docker')
        self.run("sudo systemctl enable docker && sudo systemctl start docker")

        for category, binary, install in TOOLS:
            if self.command_exists(binary):
                continue
            self.log_step(category)
            self.run(install)

        git = self.config.git
        if git.pat:
            self.log_step('gh_auth')
            self.run(f"echo {shlex.quote(git.pat)} | gh auth login --with-token", secrets=(git.pat,))

        self.log_step('git_config')
        self.run(
            f"git config --global user.name {shlex.quote(git.username)} && "
            f"git config --global user.email {shlex.quote(git.email)}"
        )

    def command_exists(self, binary: str) -> bool:
        return self.run(f"which {binary}", raise_on_error=False, timeout=10).success

    # ─── Application ─────────────────────────────────────────────

    def setup_application(self) -> None:
        self.log_step('clone')
        if not self.run(f"test -d {WORKSPACE}/.git", raise_on_error=False, timeout=10).success:
            self.run(f"git clone {shlex.quote(self.config.git.clone_url())} {WORKSPACE}",
                     timeout=120, secrets=(self.config.git.pat,))

        self.log_step('branch')
        self.run(f"cd {WORKSPACE} && git checkout -B {shlex.quote(self.sandbox.branch)}")

        self.log_step('environment')
        env_content = self.env_file_content()
        if env_content:
            self.write_ignored_file('.env', env_content, sensitive=True)

        self.log_step('compose_generate')
        self.write_ignored_file(COMPOSE_FILE, generate_compose(self.config))

        self.log_step('compose_setup')
        self.start_compose()

        self.log_step('ready')

    def env_file_content(self) -> str:
        """Config env resolved for sandboxes, overridden by the sandbox's own variables."""
        env = {key: value for key, value in self.config.resolved_env('sandbox').items() if value is not None}
        env.update(self.sandbox.env)
        return '\n'.join(f"{key}={value}" for key, value in env.items())

    def write_ignored_file(self, filename: str, content: str, sensitive: bool = False) -> None:
        """Write a workspace file and keep it out of git.

        Sensitive files are recorded in the ledger by name only.
        """
        path = f"{WORKSPACE}/{filename}"
        record_as = f"cat > {path} ({len(content.splitlines())} lines)" if sensitive else None
        self.run(heredoc(path, content), record_as=record_as)
        self.run(
            f"grep -qxF {shlex.quote(filename)} {WORKSPACE}/.gitignore 2>/dev/null"
            f" || echo {shlex.quote(filename)} >> {WORKSPACE}/.gitignore"
        )

    def compose(self, args: str, raise_on_error: bool = True, timeout: int = 300):
        return self.run(f"cd {WORKSPACE} && docker compose -f {COMPOSE_FILE} {args}",
                        raise_on_error=raise_on_error, timeout=timeout)

    @property
    def app_service(self) -> str:
        return next(iter(self.config.app.processes), 'web') if self.config.has_app() else 'web'

    def start_compose(self) -> None:
        config = self.config
        if config.has_database('postgres'):
            self.compose('up -d postgres', raise_on_error=False)
        if config.has_database('redis') or config.has_service('redis'):
            self.compose('up -d redis', raise_on_error=False)

        for command in config.setup_commands:
            if command and command.strip():
                self.compose(f"run --rm {self.app_service} sh -c {shlex.quote(command)}")

        self.compose('up -d')

    def stop_containers(self, host: str) -> None:
        self.log_step('stop_containers')
        try:
            self.connect(host)
            self.compose('down', raise_on_error=False)
        except SSHError as e:
            logger.warning(f"[{self.sandbox.ref}] could not stop containers: {e}")

    # ─── Tunnel ──────────────────────────────────────────────────

    @property
    def tunnel_container(self) -> str:
        return naming.container(self.sandbox.slug, 'tunnel')

    def setup_tunnel(self) -> None:
        if not self.cloudflare_configured:
            return
        self.log_step('tunnel_setup')
        cf = self.cloudflare
        slug, zone = self.sandbox.slug, self.zone
        hostname = naming.hostname(slug, zone)

        tunnel = Reconciler(cf).find_or_create('tunnel', self.name)
        cf.configure_tunnel_ingress(tunnel.id, [
            {'hostname': hostname, 'service': f'http://localhost:{PREVIEW_PORT}'},
            {'service': 'http_status:404'},
        ])
        zone_id = cf.get_zone_id(zone)
        cf.ensure_dns_record(zone_id, hostname, tunnel.id)
        cf.deploy_worker(slug, self.sandbox.access_token)
        cf.create_worker_route(zone_id, slug, zone)

        token = cf.get_tunnel_token(tunnel.id)
        self.run(f"docker rm -f {self.tunnel_container} 2>/dev/null || true", raise_on_error=False)
        execution = self.run(
            f"docker run -d --name {self.tunnel_container} --network host --restart unless-stopped "
            f"{CLOUDFLARED_IMAGE} tunnel run --token {shlex.quote(token)}",
            timeout=60,
            secrets=(token,),
        )
        container_id = execution.output.strip().splitlines()[-1] if execution.output.strip() else None
        self.executor.record_process(
            f"cloudflared tunnel run ({self.name})", tag='tunnel',
            image=CLOUDFLARED_IMAGE, container_id=container_id,
        )

    def delete_tunnel(self) -> None:
        self.log_step('delete_tunnel')
        cf = self.cloudflare
        slug, zone = self.sandbox.slug, self.zone

        ip = self.server_ip()
        if ip and self.sandbox.ssh_keys_present():
            try:
                self.connect(ip)
                self.run(f"docker rm -f {self.tunnel_container} 2>/dev/null || true", raise_on_error=False)
            except SSHError as e:
                logger.warning(f"[{self.sandbox.ref}] could not stop tunnel container: {e}")

        try:
            cf.delete_worker(slug)
        except ProviderError as e:
            logger.debug(f"Worker for {slug} not deleted: {e}")

        try:
            zone_id = cf.get_zone_id(zone)
        except ProviderError as e:
            logger.warning(f"Zone {zone} not found, skipping route and DNS cleanup: {e}")
            zone_id = None

        if zone_id is not None:
            try:
                cf.delete_worker_route(zone_id, slug, zone)
            except ProviderError as e:
                logger.warning(f"Worker route for {slug} not deleted: {e}")
            try:
                record = cf.find_dns_record(zone_id, naming.hostname(slug, zone))
                if record:
                    cf.delete_dns_record(zone_id, record['id'])
            except ProviderError as e:
                logger.warning(f"DNS record for {slug} not deleted: {e}")

        tunnel = cf.find_tunnel(self.name)
        if tunnel is not None:
            cf.delete_tunnel(tunnel.id)

    # ─── Operations on a running sandbox ─────────────────────────

    def ensure_connected(self) -> str:
        """Connect to the sandbox server if not already connected.

        Returns:
            The server's public IP
        """
        ip = self.server_ip()
        if not ip or not self.sandbox.ssh_keys_present():
            raise ProvisionError(f"Sandbox {self.sandbox.slug} has no reachable server")
        if self.executor.transport is None:
            self.connect(ip)
        return ip

    def container_exec(self, command: str):
        self.ensure_connected()
        return self.compose(f"exec -T {self.app_service} sh -c {shlex.quote(command)}", raise_on_error=False)

    def container_shell(self, command: str) -> str:
        return (f"cd {WORKSPACE} && docker compose -f {COMPOSE_FILE} "
                f"exec {self.app_service} sh -c {shlex.quote(command)}")
