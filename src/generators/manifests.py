"""Kubernetes manifests for a release.

ManifestGenerator.generate() renders every object for one release as a
single multi-document YAML string, in apply order:

1. app secret (env vars, database and service URLs)
2. databases (secret, Deployment, Service)
3. services (secret, Deployment, Service, Ingress)
4. app processes, only once an image has been built
5. cloudflared, only when a tunnel token exists

Workload containers carry a resource profile and priority class from
kubernetes.resources.
"""

import base64
import secrets
from typing import Optional, Union

import yaml

import naming
from config import Config, resolve
from kubernetes import resources

NAMESPACE = 'default'
MANAGED_BY = 'stackrun'
NAME_LABEL = 'app.kubernetes.io/name'

POSTGRES_PORT = 5432
REDIS_PORT = 6379
CLOUDFLARED_IMAGE = 'cloudflare/cloudflared:latest'
MASKED_VALUE = '********'


def _b64(value) -> str:
    return base64.b64encode(str(value).encode()).decode()


class ManifestGenerator:
    """Render cluster manifests for one release.

    Args:
        config: Unified configuration
        prefix: Release prefix, <app>-<environment>
        zone: DNS zone for ingress hostnames
        target: Resolution key, or keys tried in order, for target-keyed values
        db_password: Postgres password (random if omitted)
        registry_tag: Built image; processes are skipped without one
        tunnel_token: Cloudflare tunnel token; cloudflared is skipped without one
    """

    def __init__(
        self,
        config: Config,
        prefix: str,
        zone: Optional[str],
        target: Union[str, tuple],
        db_password: Optional[str] = None,
        registry_tag: Optional[str] = None,
        tunnel_token: Optional[str] = None,
    ):
        self.config = config
        self.prefix = prefix
        self.zone = zone
        self.target = target
        self.db_password = db_password or secrets.token_hex(16)
        self.registry_tag = registry_tag
        self.tunnel_token = tunnel_token

    def generate(self) -> str:
        return yaml.safe_dump_all(self.manifests(), sort_keys=False, default_flow_style=False)

    def manifests(self) -> list[dict]:
        manifests = [self.app_secret()]
        for db_type, db in self.config.databases.items():
            manifests.extend(self.database_manifests(db_type, db))
        for name, svc in self.config.services.items():
            if name == 'redis' and self.config.has_database('redis'):
                continue
            manifests.extend(self.service_manifests(name, svc))
        if self.config.has_app() and self.registry_tag:
            for name, process in self.config.app.processes.items():  # type: ignore[union-attr]
                manifests.extend(self.process_manifests(name, process))
        if self.tunnel_token:
            manifests.append(self.tunnel_manifest())
        return manifests

    def resolve(self, value):
        return resolve(value, self.target)

    def service_env(self, svc) -> dict:
        """Service env resolved for this target; unset keys are dropped."""
        env = {key: self.resolve(value) for key, value in (svc.env or {}).items()}
        return {key: value for key, value in env.items() if value is not None}

    def hostname(self, subdomain: str) -> str:
        return f"{subdomain}.{self.zone}"

    @property
    def app_secret_name(self) -> str:
        return f"{self.prefix}-app-secret"

    # ─── App secret ──────────────────────────────────────────────

    def app_secret(self) -> dict:
        data = {}
        for key, value in self.config.resolved_env(self.target).items():
            data[key] = '' if value is None else str(value)

        if self.config.has_database('postgres'):
            host = f"{self.prefix}-postgres"
            data.update({
                'DATABASE_URL': f"postgresql://app:{self.db_password}@{host}:{POSTGRES_PORT}/app",
                'POSTGRES_HOST': host,
                'POSTGRES_USER': 'app',
                'POSTGRES_PASSWORD': self.db_password,
                'POSTGRES_DB': 'app',
                'POSTGRES_PORT': str(POSTGRES_PORT),
            })

        for name, svc in self.config.services.items():
            if not svc.port:
                continue
            scheme = 'redis' if name == 'redis' else 'http'
            data[f"{name.upper()}_URL"] = f"{scheme}://{self.prefix}-{name}:{svc.port}"

        return secret(self.app_secret_name, data)

    # ─── Databases ───────────────────────────────────────────────

    def database_manifests(self, db_type: str, db) -> list[dict]:
        name = naming.volume(self.prefix, db_type)
        volume = host_path_volume('data', f"{naming.VOLUME_MOUNT_BASE}/{name}")

        if db_type == 'postgres':
            secret_name = f"{name}-secret"
            container = {
                'name': 'postgres',
                'image': db.image,
                'ports': [{'containerPort': POSTGRES_PORT}],
                'env': [
                    {'name': 'POSTGRES_USER', 'value': 'app'},
                    {'name': 'POSTGRES_DB', 'value': 'app'},
                    {'name': 'POSTGRES_PASSWORD',
                     'valueFrom': {'secretKeyRef': {'name': secret_name, 'key': 'DB_PASSWORD'}}},
                    {'name': 'PGDATA', 'value': '/var/lib/postgresql/data/pgdata'},
                ],
                'volumeMounts': [{'name': 'data', 'mountPath': '/var/lib/postgresql/data'}],
                'readinessProbe': {
                    'exec': {'command': ['pg_isready', '-U', 'app']},
                    'initialDelaySeconds': 5,
                    'periodSeconds': 5,
                },
                'resources': resources.profile_for('database'),
            }
            return [
                secret(secret_name, {'DB_PASSWORD': self.db_password}),
                self.deployment(name, [container], volumes=[volume], workload='database'),
                self.service(name, POSTGRES_PORT),
            ]

        if db_type == 'redis':
            container = {
                'name': 'redis',
                'image': db.image,
                'ports': [{'containerPort': REDIS_PORT}],
                'volumeMounts': [{'name': 'data', 'mountPath': '/data'}],
                'resources': resources.profile_for('database'),
            }
            return [
                self.deployment(name, [container], volumes=[volume], workload='database'),
                self.service(name, REDIS_PORT),
            ]

        return []

    # ─── Services ────────────────────────────────────────────────

    def service_manifests(self, name: str, svc) -> list[dict]:
        deployment_name = f"{self.prefix}-{name}"
        secret_name = f"{deployment_name}-secret"
        manifests = []

        container = {'name': name, 'image': svc.image}
        if svc.port:
            container['ports'] = [{'containerPort': svc.port}]
        env = self.service_env(svc)
        if env:
            manifests.append(secret(secret_name, env))
            container['envFrom'] = [{'secretRef': {'name': secret_name}}]
        container['resources'] = resources.profile_for('platform')

        manifests.append(self.deployment(deployment_name, [container], workload='platform'))
        if svc.port:
            manifests.append(self.service(deployment_name, svc.port))

        subdomain = self.resolve(svc.subdomain)
        if subdomain and svc.port and self.zone:
            manifests.append(ingress(deployment_name, self.hostname(subdomain), svc.port))
        return manifests

    # ─── App processes ───────────────────────────────────────────

    def process_manifests(self, name: str, process) -> list[dict]:
        deployment_name = f"{self.prefix}-{name}"
        replicas = self.resolve(process.replicas) or 1
        subdomain = self.resolve(process.subdomain)
        size = self.resolve(process.size) or resources.DEFAULT_APP_SIZE
        manifests = []

        container = {
            'name': name,
            'image': self.registry_tag,
            'envFrom': [{'secretRef': {'name': self.app_secret_name}}],
        }
        if process.command:
            container['command'] = ['/bin/sh', '-c', process.command]
        if process.port:
            container['ports'] = [{'containerPort': process.port}]
            http_get = {'path': '/', 'port': process.port}
            if subdomain and self.zone:
                http_get['httpHeaders'] = [{'name': 'Host', 'value': self.hostname(subdomain)}]
            container['readinessProbe'] = {
                'httpGet': http_get,
                'initialDelaySeconds': 10,
                'periodSeconds': 10,
            }
        container['resources'] = resources.profile_for(size)

        manifests.append(self.deployment(deployment_name, [container], replicas=int(replicas), workload='app'))
        if process.port:
            manifests.append(self.service(deployment_name, process.port))
            if subdomain and self.zone:
                manifests.append(ingress(deployment_name, self.hostname(subdomain), process.port))
        return manifests

    # ─── Tunnel ──────────────────────────────────────────────────

    def tunnel_manifest(self) -> dict:
        container = {
            'name': 'cloudflared',
            'image': CLOUDFLARED_IMAGE,
            'args': ['tunnel', '--no-autoupdate', 'run', '--token', self.tunnel_token],
            'resources': resources.profile_for('platform'),
        }
        return self.deployment(f"{self.prefix}-cloudflared", [container], host_network=True, workload='platform')

    # ─── Builders ────────────────────────────────────────────────

    def labels(self, name: str) -> dict:
        return {
            NAME_LABEL: name,
            'app.kubernetes.io/instance': self.prefix,
            'app.kubernetes.io/managed-by': MANAGED_BY,
        }

    def deployment(self, name: str, containers: list[dict], volumes: Optional[list] = None,
                   replicas: int = 1, host_network: bool = False, workload: str = 'app') -> dict:
        pod_spec = {
            'priorityClassName': resources.priority_class_for(workload),
            'containers': containers,
        }
        if volumes:
            pod_spec['volumes'] = volumes
        if host_network:
            pod_spec['hostNetwork'] = True

        return {
            'apiVersion': 'apps/v1',
            'kind': 'Deployment',
            'metadata': {'name': name, 'namespace': NAMESPACE, 'labels': self.labels(name)},
            'spec': {
                'replicas': replicas,
                'selector': {'matchLabels': {NAME_LABEL: name}},
                'template': {
                    'metadata': {'labels': self.labels(name)},
                    'spec': pod_spec,
                },
            },
        }

    def service(self, name: str, port: int) -> dict:
        return {
            'apiVersion': 'v1',
            'kind': 'Service',
            'metadata': {'name': name, 'namespace': NAMESPACE, 'labels': self.labels(name)},
            'spec': {
                'selector': {NAME_LABEL: name},
                'ports': [{'port': port, 'targetPort': port}],
            },
        }


def mask_secrets(manifest_yaml: str) -> str:
    """manifest_yaml with every Secret value replaced by a placeholder."""
    documents = list(yaml.safe_load_all(manifest_yaml))
    for document in documents:
        if document and document.get('kind') == 'Secret':
            document['data'] = {key: MASKED_VALUE for key in document.get('data') or {}}
    return yaml.safe_dump_all(documents, sort_keys=False, default_flow_style=False)


def secret(name: str, data: dict) -> dict:
    return {
        'apiVersion': 'v1',
        'kind': 'Secret',
        'metadata': {'name': name, 'namespace': NAMESPACE},
        'type': 'Opaque',
        'data': {key: _b64(value) for key, value in data.items()},
    }


def ingress(name: str, hostname: str, port: int) -> dict:
    return {
        'apiVersion': 'networking.k8s.io/v1',
        'kind': 'Ingress',
        'metadata': {
            'name': name,
            'namespace': NAMESPACE,
            'annotations': {'nginx.ingress.kubernetes.io/proxy-body-size': '50m'},
        },
        'spec': {
            'ingressClassName': 'nginx',
            'rules': [{
                'host': hostname,
                'http': {
                    'paths': [{
                        'path': '/',
                        'pathType': 'Prefix',
                        'backend': {'service': {'name': name, 'port': {'number': port}}},
                    }],
                },
            }],
        },
    }


def host_path_volume(name: str, path: str) -> dict:
    return {'name': name, 'hostPath': {'path': path, 'type': 'DirectoryOrCreate'}}
