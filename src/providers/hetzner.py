"""Hetzner Cloud API client.

Exposes find_/create_/delete_ per resource kind so that provisioning code
can drive it through providers.reconcile.Reconciler.
"""

import logging
import time
from typing import Optional

from providers.base import ApiError, HttpClient, ProviderError
from providers.types import Firewall, Network, Server, SSHKey, Volume

logger = logging.getLogger(__name__)

# Location to network zone mapping
NETWORK_ZONES = {
    'fsn1': 'eu-central',
    'nbg1': 'eu-central',
    'hel1': 'eu-central',
    'ash': 'us-east',
    'hil': 'us-west',
}

DEFAULT_FIREWALL_RULES = [
    {'direction': 'in', 'protocol': 'tcp', 'port': '22', 'source_ips': ['0.0.0.0/0', '::/0']},
]


class HetznerClient(HttpClient):
    """Compute provider client for api.hetzner.cloud."""

    BASE_URL = 'https://api.hetzner.cloud/v1'

    def __init__(self, api_key: str, timeout: int = 300, session=None):
        if not api_key:
            raise ProviderError("Hetzner API key not configured")
        self.api_key = api_key
        super().__init__(timeout=timeout, session=session)

    def auth_headers(self) -> dict:
        return {
            'Authorization': f'Bearer {self.api_key}',
            'Content-Type': 'application/json',
        }

    # ─── Servers ─────────────────────────────────────────────────

    def find_server(self, name: str) -> Optional[Server]:
        servers = self.get('/servers', {'name': name}).get('servers') or []
        return _to_server(servers[0]) if servers else None

    def create_server(
        self,
        name: str,
        server_type: str,
        image: str = 'ubuntu-22.04',
        location: Optional[str] = None,
        ssh_keys: Optional[list] = None,
        user_data: Optional[str] = None,
        labels: Optional[dict] = None,
        firewalls: Optional[list] = None,
        networks: Optional[list] = None,
    ) -> Server:
        payload: dict = {
            'name': name,
            'server_type': server_type,
            'image': image,
            'location': location,
            'start_after_create': True,
            'labels': labels or {},
        }
        if ssh_keys:
            payload['ssh_keys'] = ssh_keys
        if user_data:
            payload['user_data'] = user_data
        if firewalls:
            payload['firewalls'] = [{'firewall': int(fid)} for fid in firewalls]
        if networks:
            payload['networks'] = [int(nid) for nid in networks]
        return _to_server(self.post('/servers', payload)['server'])

    def get_server(self, server_id) -> Optional[Server]:
        try:
            return _to_server(self.get(f'/servers/{int(server_id)}')['server'])
        except ApiError as e:
            if e.not_found:
                return None
            raise

    def list_servers(self, label_selector: Optional[str] = None) -> list[Server]:
        params = {'label_selector': label_selector} if label_selector else {}
        return [_to_server(s) for s in self.get('/servers', params).get('servers', [])]

    def wait_for_server(self, server_id, max_attempts: int = 60, interval: int = 5) -> Server:
        for _ in range(max_attempts):
            server = self.get_server(server_id)
            if server and server.status == 'running':
                return server
            time.sleep(interval)
        raise ProviderError(f"Server {server_id} did not become running after {max_attempts} attempts")

    def delete_server(self, server_id) -> None:
        """Detach the server from firewalls and networks, then delete it."""
        server_id = int(server_id)
        try:
            server = self.get(f'/servers/{server_id}')['server']
        except ApiError as e:
            if e.not_found:
                return None
            raise

        for fw in self.get('/firewalls').get('firewalls', []):
            for applied in fw.get('applied_to') or []:
                if applied.get('type') == 'server' and (applied.get('server') or {}).get('id') == server_id:
                    self._remove_firewall_from_server(fw['id'], server_id)

        for private_net in server.get('private_net') or []:
            self._detach_server_from_network(server_id, private_net['network'])

        return self.delete(f'/servers/{server_id}')

    def _remove_firewall_from_server(self, firewall_id, server_id: int) -> None:
        try:
            self.post(f'/firewalls/{firewall_id}/actions/remove_from_resources', {
                'remove_from': [{'type': 'server', 'server': {'id': server_id}}],
            })
        except ApiError as e:
            logger.warning(f"Could not remove firewall {firewall_id} from server {server_id}: {e}")

    def _detach_server_from_network(self, server_id: int, network_id) -> None:
        try:
            self.post(f'/servers/{server_id}/actions/detach_from_network', {'network': network_id})
        except ApiError as e:
            logger.warning(f"Could not detach server {server_id} from network {network_id}: {e}")

    def power_on(self, server_id):
        return self.post(f'/servers/{int(server_id)}/actions/poweron')

    def power_off(self, server_id):
        return self.post(f'/servers/{int(server_id)}/actions/poweroff')

    def reboot(self, server_id):
        return self.post(f'/servers/{int(server_id)}/actions/reboot')

    # ─── SSH keys ────────────────────────────────────────────────

    def find_ssh_key(self, name: str) -> Optional[SSHKey]:
        keys = self.get('/ssh_keys', {'name': name}).get('ssh_keys') or []
        return _to_ssh_key(keys[0]) if keys else None

    def create_ssh_key(self, name: str, public_key: str) -> SSHKey:
        return _to_ssh_key(self.post('/ssh_keys', {'name': name, 'public_key': public_key})['ssh_key'])

    def delete_ssh_key(self, key_id) -> None:
        return self.delete(f'/ssh_keys/{int(key_id)}')

    # ─── Networks ────────────────────────────────────────────────

    def find_network(self, name: str) -> Optional[Network]:
        networks = self.get('/networks', {'name': name}).get('networks') or []
        return _to_network(networks[0]) if networks else None

    def create_network(
        self,
        name: str,
        location: str,
        ip_range: str = '10.0.0.0/16',
        subnet_range: str = '10.0.0.0/24',
    ) -> Network:
        network_zone = NETWORK_ZONES.get(location, 'eu-central')
        response = self.post('/networks', {
            'name': name,
            'ip_range': ip_range,
            'subnets': [{'type': 'cloud', 'ip_range': subnet_range, 'network_zone': network_zone}],
        })
        return _to_network(response['network'])

    def delete_network(self, network_id) -> None:
        return self.delete(f'/networks/{int(network_id)}')

    # ─── Firewalls ───────────────────────────────────────────────

    def find_firewall(self, name: str) -> Optional[Firewall]:
        firewalls = self.get('/firewalls', {'name': name}).get('firewalls') or []
        return _to_firewall(firewalls[0]) if firewalls else None

    def create_firewall(self, name: str, rules: Optional[list] = None) -> Firewall:
        response = self.post('/firewalls', {'name': name, 'rules': rules or DEFAULT_FIREWALL_RULES})
        return _to_firewall(response['firewall'])

    def delete_firewall(self, firewall_id) -> None:
        return self.delete(f'/firewalls/{int(firewall_id)}')

    # ─── Volumes ─────────────────────────────────────────────────

    def find_volume(self, name: str) -> Optional[Volume]:
        volumes = self.get('/volumes', {'name': name}).get('volumes') or []
        return _to_volume(volumes[0]) if volumes else None

    def create_volume(
        self,
        name: str,
        size: int,
        location: str,
        labels: Optional[dict] = None,
        format: str = 'xfs',
    ) -> Volume:
        response = self.post('/volumes', {
            'name': name,
            'size': size,
            'location': location,
            'labels': labels or {},
            'automount': False,
            'format': format,
        })
        return _to_volume(response['volume'])

    def get_volume(self, volume_id) -> Optional[Volume]:
        try:
            return _to_volume(self.get(f'/volumes/{int(volume_id)}')['volume'])
        except ApiError as e:
            if e.not_found:
                return None
            raise

    def list_volumes(self, label_selector: Optional[str] = None) -> list[Volume]:
        params = {'label_selector': label_selector} if label_selector else {}
        return [_to_volume(v) for v in self.get('/volumes', params).get('volumes', [])]

    def attach_volume(self, volume_id, server_id) -> Optional[Volume]:
        """Attach volume to server, detaching it from any other server first."""
        volume = self.get_volume(volume_id)
        if volume and volume.server_id and str(volume.server_id) != str(server_id):
            self.detach_volume(volume_id)

        response = self.post(f'/volumes/{int(volume_id)}/actions/attach', {
            'server': int(server_id),
            'automount': False,
        })
        if response.get('action'):
            self.wait_for_action(response['action']['id'])
        return self.get_volume(volume_id)

    def detach_volume(self, volume_id) -> None:
        try:
            response = self.post(f'/volumes/{int(volume_id)}/actions/detach')
        except ApiError as e:
            if 'not attached' in str(e):
                return
            raise
        if response.get('action'):
            self.wait_for_action(response['action']['id'])

    def delete_volume(self, volume_id) -> None:
        return self.delete(f'/volumes/{int(volume_id)}')

    # ─── Actions ─────────────────────────────────────────────────

    def wait_for_action(self, action_id, max_attempts: int = 60, interval: int = 2) -> bool:
        for _ in range(max_attempts):
            action = self.get(f'/actions/{action_id}').get('action') or {}
            status = action.get('status')
            if status == 'success':
                return True
            if status == 'error':
                message = (action.get('error') or {}).get('message')
                raise ProviderError(f"Action {action_id} failed: {message}")
            time.sleep(interval)
        raise ProviderError(f"Action {action_id} timed out after {max_attempts * interval} seconds")

    def validate_credentials(self) -> bool:
        try:
            self.get('/server_types')
        except ApiError as e:
            if e.unauthorized:
                raise ProviderError(f"Hetzner credentials invalid: {e}") from e
            raise
        return True


def _to_server(data: dict) -> Server:
    private_net = data.get('private_net') or []
    return Server(
        id=str(data['id']),
        name=data['name'],
        status=data.get('status', ''),
        public_ipv4=((data.get('public_net') or {}).get('ipv4') or {}).get('ip'),
        private_ipv4=private_net[0].get('ip') if private_net else None,
        instance_type=(data.get('server_type') or {}).get('name', ''),
        image=(data.get('image') or {}).get('name', ''),
        location=(data.get('datacenter') or {}).get('name', ''),
        labels=data.get('labels') or {},
        created_at=data.get('created'),
    )


def _to_ssh_key(data: dict) -> SSHKey:
    return SSHKey(
        id=str(data['id']),
        name=data['name'],
        fingerprint=data.get('fingerprint', ''),
        public_key=data.get('public_key', ''),
        created_at=data.get('created'),
    )


def _to_firewall(data: dict) -> Firewall:
    return Firewall(
        id=str(data['id']),
        name=data['name'],
        rules=data.get('rules') or [],
        created_at=data.get('created'),
    )


def _to_network(data: dict) -> Network:
    return Network(
        id=str(data['id']),
        name=data['name'],
        ip_range=data.get('ip_range'),
        subnets=data.get('subnets') or [],
        created_at=data.get('created'),
    )


def _to_volume(data: dict) -> Volume:
    server = data.get('server')
    return Volume(
        id=str(data['id']),
        name=data['name'],
        size_gb=data.get('size', 0),
        volume_type=data.get('format') or 'xfs',
        status=data.get('status', ''),
        server_id=str(server) if server else None,
        location=(data.get('location') or {}).get('name', ''),
        device_path=data.get('linux_device'),
        created_at=data.get('created'),
    )
