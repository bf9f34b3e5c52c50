"""Single-node K3s bootstrap.

Runs once per release server, in order, each phase recorded as a named step
in the ledger. Every phase is safe to re-run: installs are skipped when the
component already reports healthy, and config files are rewritten in full.
"""

import ipaddress
import json
import logging
import re
import time
from typing import Callable, Optional

import yaml

from common import heredoc, stdin_heredoc
from kubernetes import resources
from naming import DEFAULT_USER
from remote.executor import RemoteExecutor

logger = logging.getLogger(__name__)

REGISTRY_PORT = 30500
HTTP_NODE_PORT = 30080
HTTPS_NODE_PORT = 30443
CLUSTER_CIDR = '10.42.0.0/16'
SERVICE_CIDR = '10.43.0.0/16'

CLOUD_INIT_MARKER = '/var/lib/cloud/instance/boot-finished'
CLOUD_INIT_ATTEMPTS, CLOUD_INIT_INTERVAL = 120, 5
K3S_READY_ATTEMPTS, K3S_READY_INTERVAL = 30, 5
REGISTRY_ATTEMPTS, REGISTRY_INTERVAL = 60, 2
INGRESS_ATTEMPTS, INGRESS_INTERVAL = 30, 5

INGRESS_NGINX_MANIFEST = (
    'https://raw.githubusercontent.com/kubernetes/ingress-nginx/'
    'controller-v1.9.4/deploy/static/provider/baremetal/deploy.yaml'
)

_INTERFACE_LINE = re.compile(r'^\d+:\s+(?P<iface>[^\s:@]+)\s+inet\s+(?P<ip>[\d.]+)/\d+')


class BootstrapError(Exception):
    """Cluster bootstrap step did not complete."""


RFC1918_NETWORKS = tuple(ipaddress.ip_network(n) for n in ('10.0.0.0/8', '172.16.0.0/12', '192.168.0.0/16'))


def parse_private_interface(addr_output: str) -> Optional[tuple[str, str]]:
    """Find the first RFC1918 address in `ip -4 -o addr show` output.

    Returns:
        (private_ip, interface) or None
    """
    for line in addr_output.splitlines():
        match = _INTERFACE_LINE.match(line.strip())
        if not match:
            continue
        ip = ipaddress.ip_address(match.group('ip'))
        if any(ip in network for network in RFC1918_NETWORKS):
            return match.group('ip'), match.group('iface')
    return None


def registry_manifest() -> str:
    labels = {'app': 'registry'}
    documents = [
        {
            'apiVersion': 'v1',
            'kind': 'PersistentVolumeClaim',
            'metadata': {'name': 'registry-pvc', 'namespace': 'default'},
            'spec': {
                'accessModes': ['ReadWriteOnce'],
                'resources': {'requests': {'storage': '10Gi'}},
            },
        },
        {
            'apiVersion': 'apps/v1',
            'kind': 'Deployment',
            'metadata': {'name': 'registry', 'namespace': 'default'},
            'spec': {
                'replicas': 1,
                'selector': {'matchLabels': labels},
                'template': {
                    'metadata': {'labels': labels},
                    'spec': {
                        'priorityClassName': resources.priority_class_for('platform'),
                        'containers': [{
                            'name': 'registry',
                            'image': 'registry:2',
                            'ports': [{'containerPort': 5000}],
                            'resources': resources.profile_for('platform'),
                            'volumeMounts': [{'name': 'registry-data', 'mountPath': '/var/lib/registry'}],
                        }],
                        'volumes': [{
                            'name': 'registry-data',
                            'persistentVolumeClaim': {'claimName': 'registry-pvc'},
                        }],
                    },
                },
            },
        },
        {
            'apiVersion': 'v1',
            'kind': 'Service',
            'metadata': {'name': 'registry', 'namespace': 'default'},
            'spec': {
                'type': 'NodePort',
                'selector': labels,
                'ports': [{'port': 5000, 'targetPort': 5000, 'nodePort': REGISTRY_PORT}],
            },
        },
    ]
    return yaml.safe_dump_all(documents, sort_keys=False)


def registries_yaml() -> str:
    return yaml.safe_dump({
        'mirrors': {
            f'localhost:{REGISTRY_PORT}': {
                'endpoint': [
                    'http://registry.default.svc.cluster.local:5000',
                    f'http://localhost:{REGISTRY_PORT}',
                ],
            },
        },
    }, sort_keys=False)


class K3sInstaller:
    """Install Docker, K3s, the in-cluster registry and ingress-nginx."""

    def __init__(self, executor: RemoteExecutor, user: str = DEFAULT_USER):
        self.executor = executor
        self.user = user
        self.public_ip: Optional[str] = None
        self.private_ip: Optional[str] = None
        self.interface: Optional[str] = None

    @property
    def kubeconfig(self) -> str:
        return f"/home/{self.user}/.kube/config"

    def get_phases(self) -> list[tuple[str, Callable[[], None], str]]:
        """Return list of (category, callable, description) tuples."""
        return [
            ('wait_cloud_init', self.wait_for_cloud_init, 'Wait for cloud-init to finish'),
            ('discover_network', self.discover_network, 'Find public/private IPs'),
            ('install_docker', self.install_docker, 'Install Docker if missing'),
            ('configure_docker', self.configure_docker, 'Allow in-cluster registry'),
            ('configure_k3s_registries', self.configure_registries, 'Write registry mirror'),
            ('install_k3s', self.install_k3s, 'Install K3s if not Ready'),
            ('setup_kubeconfig', self.setup_kubeconfig, 'Write user kubeconfig'),
            ('deploy_priority_classes', self.deploy_priority_classes, 'Apply priority classes'),
            ('deploy_registry', self.deploy_registry, 'Deploy image registry'),
            ('wait_registry', self.wait_for_registry, 'Wait for registry /v2/'),
            ('deploy_ingress', self.deploy_ingress_controller, 'Deploy ingress-nginx'),
        ]

    def install(self) -> None:
        for category, phase, description in self.get_phases():
            self.executor.log_step(category)
            logger.debug(f"[k3s:{category}] {description}")
            phase()

    def uninstall(self) -> None:
        """Remove K3s and Docker state. Errors are ignored."""
        self._run("sudo /usr/local/bin/k3s-uninstall.sh", raise_on_error=False)
        self._run("sudo apt-get remove -y docker.io docker-compose", raise_on_error=False)
        self._run("sudo rm -rf /etc/rancher /var/lib/rancher /etc/docker", raise_on_error=False)

    def _run(self, command: str, raise_on_error: bool = True, timeout: int = 300):
        return self.executor.run(command, raise_on_error=raise_on_error, timeout=timeout)

    def _poll(self, command: str, expect: str, attempts: int, interval: int) -> bool:
        """Run command until its output contains expect; False once attempts run out."""
        for _ in range(attempts):
            execution = self._run(command, raise_on_error=False)
            if expect in execution.output:
                return True
            time.sleep(interval)
        return False

    def _apply(self, manifest: str) -> None:
        if manifest.startswith('http'):
            self._run(f"kubectl --kubeconfig={self.kubeconfig} apply -f {manifest}")
        else:
            self._run(stdin_heredoc(f"kubectl --kubeconfig={self.kubeconfig} apply -f -", manifest))

    # ─── Phases ──────────────────────────────────────────────────

    def wait_for_cloud_init(self) -> None:
        if not self._poll(f"test -f {CLOUD_INIT_MARKER} && echo ready", 'ready',
                          CLOUD_INIT_ATTEMPTS, CLOUD_INIT_INTERVAL):
            raise BootstrapError(
                f"Cloud-init did not complete within {CLOUD_INIT_ATTEMPTS * CLOUD_INIT_INTERVAL} seconds")

    def discover_network(self) -> None:
        self.public_ip = self._run("curl -s ifconfig.me || curl -s icanhazip.com").output.strip()

        found = parse_private_interface(self._run("ip -4 -o addr show").output)
        if not found:
            raise BootstrapError("Could not detect private IP. Ensure server has a private network attached.")
        self.private_ip, self.interface = found
        logger.info(f"[k3s] public={self.public_ip} private={self.private_ip} iface={self.interface}")

    def install_docker(self) -> None:
        if self._run("docker --version && systemctl is-active docker", raise_on_error=False).success:
            logger.info("[k3s:install_docker] already installed, skipping")
            return
        self._run(
            "export DEBIAN_FRONTEND=noninteractive && "
            "sudo apt-get update -qq && "
            "sudo apt-get install -y -qq docker.io docker-compose && "
            "sudo systemctl enable docker && sudo systemctl start docker && "
            f"sudo usermod -aG docker {self.user}"
        )

    def configure_docker(self) -> None:
        daemon_json = json.dumps({
            'insecure-registries': [f'{self.private_ip}:5001', f'localhost:{REGISTRY_PORT}'],
        })
        self._run("sudo mkdir -p /etc/docker")
        self._run(heredoc('/etc/docker/daemon.json', daemon_json, sudo=True))
        self._run("sudo systemctl restart docker")

    def configure_registries(self) -> None:
        self._run("sudo mkdir -p /etc/rancher/k3s")
        self._run(heredoc('/etc/rancher/k3s/registries.yaml', registries_yaml(), sudo=True))

    def k3s_args(self) -> str:
        return ' '.join([
            '--disable traefik',
            '--disable servicelb',
            '--flannel-backend=wireguard-native',
            f'--flannel-iface={self.interface}',
            f'--bind-address={self.private_ip}',
            f'--advertise-address={self.private_ip}',
            f'--node-ip={self.private_ip}',
            f'--node-external-ip={self.public_ip}',
            '--write-kubeconfig-mode=644',
            f'--cluster-cidr={CLUSTER_CIDR}',
            f'--service-cidr={SERVICE_CIDR}',
        ])

    def install_k3s(self) -> None:
        if self._run("kubectl get nodes 2>/dev/null | grep -q Ready", raise_on_error=False).success:
            logger.info("[k3s:install_k3s] already installed, skipping")
            return
        self._run(f'curl -sfL https://get.k3s.io | sudo INSTALL_K3S_EXEC="{self.k3s_args()}" sh -', timeout=300)
        if not self._poll("sudo kubectl get nodes", ' Ready', K3S_READY_ATTEMPTS, K3S_READY_INTERVAL):
            raise BootstrapError(
                f"K3s node not Ready within {K3S_READY_ATTEMPTS * K3S_READY_INTERVAL} seconds")

    def setup_kubeconfig(self) -> None:
        user = self.user
        self._run(
            f"mkdir -p /home/{user}/.kube && "
            f"sudo cp /etc/rancher/k3s/k3s.yaml {self.kubeconfig} && "
            f"sudo sed -i 's/127.0.0.1/{self.private_ip}/g' {self.kubeconfig} && "
            f"sudo chown -R {user}:{user} /home/{user}/.kube && "
            f"chmod 600 {self.kubeconfig}"
        )

    def deploy_priority_classes(self) -> None:
        self._apply(resources.priority_class_yaml())

    def deploy_registry(self) -> None:
        self._apply(registry_manifest())

    def wait_for_registry(self) -> None:
        if not self._poll(f"curl -sf http://localhost:{REGISTRY_PORT}/v2/ && echo ok", 'ok',
                          REGISTRY_ATTEMPTS, REGISTRY_INTERVAL):
            raise BootstrapError(
                f"Registry did not become ready within {REGISTRY_ATTEMPTS * REGISTRY_INTERVAL} seconds")

    def deploy_ingress_controller(self) -> None:
        self._apply(INGRESS_NGINX_MANIFEST)
        running = self._poll(
            f"kubectl --kubeconfig={self.kubeconfig} -n ingress-nginx get pods "
            "-l app.kubernetes.io/component=controller -o jsonpath='{.items[0].status.phase}'",
            'Running', INGRESS_ATTEMPTS, INGRESS_INTERVAL,
        )
        if not running:
            raise BootstrapError(
                f"Ingress controller not Running within {INGRESS_ATTEMPTS * INGRESS_INTERVAL} seconds")

        patch = json.dumps([
            {'op': 'replace', 'path': '/spec/ports/0/nodePort', 'value': HTTP_NODE_PORT},
            {'op': 'replace', 'path': '/spec/ports/1/nodePort', 'value': HTTPS_NODE_PORT},
        ], separators=(',', ':'))
        self._run(
            f"kubectl --kubeconfig={self.kubeconfig} patch svc ingress-nginx-controller "
            f"-n ingress-nginx --type='json' -p='{patch}'",
            raise_on_error=False,
        )
