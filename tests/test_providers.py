"""Tests for the providers package.

Tests verify:
1. find_or_create() only creates when find returns nothing
2. delete_if_exists() tolerates missing resources and 404s
3. Hetzner and Cloudflare clients map API payloads to records
4. Non-success responses raise ApiError with status and message
"""

import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import yaml

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import CloudflareConfig, ComputeConfig, ConfigError
from providers import ApiError, HetznerClient, ProviderError, Reconciler, compute_client
from providers.base import error_message_for_status
from providers.cloud_init import generate as cloud_init
from providers.cloudflare import CloudflareClient
from providers.types import Server


def _response(status=200, body=None):
    response = MagicMock()
    response.status_code = status
    response.ok = 200 <= status < 300
    response.content = b'{}' if body is not None else b''
    response.json.return_value = body
    response.text = str(body)
    return response


def _session(*responses):
    session = MagicMock()
    session.headers = {}
    session.request.side_effect = list(responses)
    return session


class TestReconciler:
    """Test name-keyed reconciliation."""

    def test_find_or_create_creates_once(self):
        """Second call should find the resource created by the first."""
        created = {}
        client = MagicMock()
        client.find_server.side_effect = lambda name: created.get(name)

        def create_server(name, **spec):
            created[name] = Server(id='1', name=name)
            return created[name]

        client.create_server.side_effect = create_server
        reconciler = Reconciler(client)

        first = reconciler.find_or_create('server', 'web-1', server_type='cpx11')
        second = reconciler.find_or_create('server', 'web-1', server_type='cpx31')

        assert first is second
        client.create_server.assert_called_once_with(name='web-1', server_type='cpx11')

    def test_delete_if_exists_missing(self):
        client = MagicMock()
        client.find_network.return_value = None
        assert Reconciler(client).delete_if_exists('network', 'net') is False
        client.delete_network.assert_not_called()

    def test_delete_if_exists_present(self):
        client = MagicMock()
        client.find_network.return_value = MagicMock(id='42')
        assert Reconciler(client).delete_if_exists('network', 'net') is True
        client.delete_network.assert_called_once_with('42')

    def test_delete_tolerates_not_found(self):
        """A resource vanishing between find and delete is not an error."""
        client = MagicMock()
        client.find_firewall.return_value = MagicMock(id='7')
        client.delete_firewall.side_effect = ApiError('gone', status=404)
        assert Reconciler(client).delete_if_exists('firewall', 'fw') is False

    def test_delete_propagates_other_errors(self):
        client = MagicMock()
        client.find_firewall.return_value = MagicMock(id='7')
        client.delete_firewall.side_effect = ApiError('locked', status=409)
        with pytest.raises(ApiError):
            Reconciler(client).delete_if_exists('firewall', 'fw')

    def test_unsupported_kind(self):
        with pytest.raises(AttributeError, match='find_widget'):
            Reconciler(object()).find('widget', 'x')

    def test_teardown_order(self):
        client = MagicMock()
        client.find_server.return_value = MagicMock(id='1')
        client.find_network.return_value = MagicMock(id='2')
        client.find_firewall.return_value = None
        Reconciler(client).teardown('app', ['server', 'network', 'firewall'])
        client.delete_server.assert_called_once_with('1')
        client.delete_network.assert_called_once_with('2')
        client.delete_firewall.assert_not_called()


class TestHttpErrors:
    def test_status_messages(self):
        assert error_message_for_status(401) == 'Unauthorized - check credentials'
        assert error_message_for_status(599) == 'Server error'
        assert error_message_for_status(418) == 'Request failed'

    def test_api_error_carries_status(self):
        session = _session(_response(422, {'error': {'message': 'invalid name'}}))
        client = HetznerClient('token', session=session)
        with pytest.raises(ApiError) as exc:
            client.create_ssh_key('k', 'ssh-ed25519 AAAA')
        assert exc.value.status == 422
        assert 'invalid name' in str(exc.value)


class TestHetznerClient:
    """Test Hetzner payload mapping."""

    def test_requires_api_key(self):
        with pytest.raises(ProviderError):
            HetznerClient('')

    def test_find_server_maps_record(self):
        body = {'servers': [{
            'id': 12, 'name': 'shop-staging', 'status': 'running',
            'public_net': {'ipv4': {'ip': '203.0.113.10'}},
            'private_net': [{'network': 3, 'ip': '10.0.0.2'}],
            'server_type': {'name': 'cpx31'},
            'datacenter': {'name': 'ash-dc1'},
        }]}
        session = _session(_response(200, body))
        server = HetznerClient('token', session=session).find_server('shop-staging')
        assert server.id == '12'
        assert server.public_ipv4 == '203.0.113.10'
        assert server.private_ipv4 == '10.0.0.2'
        assert server.location == 'ash-dc1'
        method, url = session.request.call_args[0]
        assert method == 'GET'
        assert url == 'https://api.hetzner.cloud/v1/servers'
        assert session.request.call_args[1]['params'] == {'name': 'shop-staging'}

    def test_find_server_none(self):
        session = _session(_response(200, {'servers': []}))
        assert HetznerClient('token', session=session).find_server('nope') is None

    def test_create_server_payload(self):
        session = _session(_response(201, {'server': {'id': 5, 'name': 'web'}}))
        HetznerClient('token', session=session).create_server(
            'web', 'cpx11', location='ash', firewalls=['9'], networks=['3'], user_data='#cloud-config',
        )
        payload = session.request.call_args[1]['json']
        assert payload['firewalls'] == [{'firewall': 9}]
        assert payload['networks'] == [3]
        assert payload['user_data'] == '#cloud-config'
        assert payload['start_after_create'] is True

    def test_network_zone_from_location(self):
        session = _session(_response(201, {'network': {'id': 3, 'name': 'net'}}))
        HetznerClient('token', session=session).create_network('net', 'ash')
        payload = session.request.call_args[1]['json']
        assert payload['subnets'][0]['network_zone'] == 'us-east'

    def test_delete_404_is_none(self):
        session = _session(_response(404, {'error': {'message': 'not found'}}))
        assert HetznerClient('token', session=session).delete_network('3') is None

    def test_volume_mapping(self):
        body = {'volume': {'id': 8, 'name': 'shop-staging-postgres', 'size': 10, 'server': 12,
                           'linux_device': '/dev/disk/by-id/scsi-0HC_Volume_8', 'location': {'name': 'ash'}}}
        session = _session(_response(200, body))
        volume = HetznerClient('token', session=session).get_volume('8')
        assert volume.server_id == '12'
        assert volume.device_path == '/dev/disk/by-id/scsi-0HC_Volume_8'

    def test_wait_for_action_error(self):
        session = _session(_response(200, {'action': {'status': 'error', 'error': {'message': 'boom'}}}))
        with pytest.raises(ProviderError, match='boom'):
            HetznerClient('token', session=session).wait_for_action(1)

    def test_wait_for_server_polls(self):
        starting = _response(200, {'server': {'id': 1, 'name': 's', 'status': 'starting'}})
        running = _response(200, {'server': {'id': 1, 'name': 's', 'status': 'running'}})
        session = _session(starting, running)
        with patch('providers.hetzner.time.sleep') as mock_sleep:
            server = HetznerClient('token', session=session).wait_for_server('1', max_attempts=3, interval=1)
        assert server.status == 'running'
        assert mock_sleep.call_count == 1

    def test_compute_client_factory(self):
        assert isinstance(compute_client(ComputeConfig(provider='hetzner', api_key='k')), HetznerClient)
        with pytest.raises(ConfigError):
            compute_client(ComputeConfig(provider='aws', api_key='k'))


class TestCloudflareClient:
    """Test Cloudflare tunnels, DNS and workers."""

    def _client(self, *responses):
        session = _session(*responses)
        return CloudflareClient('cf-token', 'acct', session=session), session

    def test_requires_credentials(self):
        with pytest.raises(ProviderError):
            CloudflareClient('', 'acct')
        with pytest.raises(ProviderError):
            CloudflareClient('token', '')

    def test_zone_not_found(self):
        client, _ = self._client(_response(200, {'result': []}))
        with pytest.raises(ProviderError, match='Zone not found'):
            client.get_zone_id('example.dev')

    def test_find_tunnel(self):
        client, session = self._client(_response(200, {'result': [{'id': 't1', 'name': 'shop-staging'}]}))
        tunnel = client.find_tunnel('shop-staging')
        assert tunnel.id == 't1'
        assert session.request.call_args[0][1].endswith('/accounts/acct/cfd_tunnel')

    def test_ensure_dns_record_creates(self):
        client, session = self._client(
            _response(200, {'result': []}),
            _response(200, {'result': {'id': 'r1'}}),
        )
        client.ensure_dns_record('z1', 'app.example.dev', 't1')
        method, url = session.request.call_args[0]
        assert method == 'POST'
        assert session.request.call_args[1]['json']['content'] == 't1.cfargotunnel.com'

    def test_ensure_dns_record_unchanged(self):
        existing = {'id': 'r1', 'content': 't1.cfargotunnel.com'}
        client, session = self._client(_response(200, {'result': [existing]}))
        assert client.ensure_dns_record('z1', 'app.example.dev', 't1') == existing
        assert session.request.call_count == 1

    def test_ensure_dns_record_updates_drift(self):
        client, session = self._client(
            _response(200, {'result': [{'id': 'r1', 'content': 'old.cfargotunnel.com'}]}),
            _response(200, {'result': {'id': 'r1'}}),
        )
        client.ensure_dns_record('z1', 'app.example.dev', 't1')
        method, url = session.request.call_args[0]
        assert method == 'PUT'
        assert url.endswith('/zones/z1/dns_records/r1')

    def test_configure_ingress(self):
        client, session = self._client(_response(200, {'result': {}}))
        rules = [{'hostname': 'a.example.dev', 'service': 'http://localhost:3000'}, {'service': 'http_status:404'}]
        client.configure_tunnel_ingress('t1', rules)
        assert session.request.call_args[1]['json'] == {'config': {'ingress': rules}}

    def test_deploy_worker_failure(self):
        client, _ = self._client(_response(200, {'success': False, 'errors': [{'message': 'bad script'}]}))
        with pytest.raises(ProviderError, match='bad script'):
            client.deploy_worker('a1b2c3', 'token')

    def test_worker_route_reused(self):
        route = {'id': 'r1', 'pattern': 'stackrun-sandbox-a1b2c3.example.dev/*'}
        client, session = self._client(_response(200, {'result': [route]}))
        assert client.create_worker_route('z1', 'a1b2c3', 'example.dev') == route
        assert session.request.call_count == 1

    def test_delete_worker_route(self):
        route = {'id': 'r1', 'pattern': 'stackrun-sandbox-a1b2c3.example.dev/*'}
        client, session = self._client(
            _response(200, {'result': [route]}),
            _response(200, {'result': {'id': 'r1'}}),
        )
        client.delete_worker_route('z1', 'a1b2c3', 'example.dev')
        method, url = session.request.call_args[0]
        assert method == 'DELETE'
        assert url.endswith('/zones/z1/workers/routes/r1')

    def test_delete_missing_worker_route(self):
        client, session = self._client(_response(200, {'result': []}))
        assert client.delete_worker_route('z1', 'a1b2c3', 'example.dev') is None
        assert session.request.call_count == 1

    def test_cloudflare_configured(self):
        assert CloudflareConfig(api_token='t', account_id='a', domain='d').configured()
        assert not CloudflareConfig(api_token='t').configured()


class TestCloudInit:
    def test_user_with_key(self):
        document = cloud_init('ssh-ed25519 AAAA test')
        assert document.startswith('#cloud-config\n')
        data = yaml.safe_load(document)
        user = data['users'][0]
        assert user['name'] == 'deploy'
        assert user['ssh_authorized_keys'] == ['ssh-ed25519 AAAA test']
        assert data['ssh_pwauth'] is False
