"""Tests for the kubernetes package.

Tests verify:
1. Resource profiles and priority classes follow the eviction order
2. kubectl commands are recorded through the executor
3. The K3s installer skips healthy components and fails on bounded timeouts
4. DockerBuilder tags images by timestamp and keeps the newest three
"""

import sys
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from kubernetes import BootstrapError, DockerBuildError, DockerBuilder, K3sInstaller, Kubectl
from kubernetes import resources
from kubernetes.installer import parse_private_interface, registries_yaml, registry_manifest
from remote.executor import RemoteExecutor


@pytest.fixture
def executor(store, transport):
    release = store.create_release(environment='staging')
    return RemoteExecutor(release, store, transport=transport)


class TestResources:
    """Test resource policy."""

    def test_profiles_have_no_cpu_limit(self):
        for name in resources.PROFILES:
            profile = resources.profile_for(name)
            assert 'cpu' in profile['requests']
            assert 'cpu' not in profile['limits']
            assert 'memory' in profile['limits']

    def test_unknown_profile_is_default_size(self):
        assert resources.profile_for('gigantic') == resources.PROFILES['small']

    def test_profile_is_a_copy(self):
        profile = resources.profile_for('database')
        profile['limits']['memory'] = '99Gi'
        assert resources.PROFILES['database']['limits']['memory'] == '1536Mi'

    def test_priority_class_names(self):
        assert resources.priority_class_for('database') == 'database-critical'
        assert resources.priority_class_for('platform') == 'platform'
        assert resources.priority_class_for('small') == 'app'

    def test_priority_order(self):
        """Databases outrank platform services, which outrank apps."""
        values = {m['metadata']['name']: m['value'] for m in resources.priority_class_manifests()}
        assert values['database-critical'] > values['platform'] > values['app']

    def test_app_is_global_default(self):
        defaults = [m['metadata']['name'] for m in yaml.safe_load_all(resources.priority_class_yaml())
                    if m['globalDefault']]
        assert defaults == ['app']

    def test_auto_size_for_large_node(self):
        profiles = resources.auto_size_for_node(16 * resources.GIB)
        assert profiles['database']['limits']['memory'] == '2Gi'
        assert profiles['large']['limits']['memory'] == '2Gi'

    def test_auto_size_for_baseline_node(self):
        profiles = resources.auto_size_for_node(8 * resources.GIB)
        assert profiles == resources.PROFILES


class TestKubectl:
    def test_apply_uses_stdin(self, executor, transport):
        Kubectl(executor).apply('kind: ConfigMap\n')
        assert transport.commands[-1].startswith("kubectl apply -f - << 'STACKRUN_EOF'\nkind: ConfigMap\n")

    def test_get_parses_json(self, executor, transport):
        transport.respond('kubectl get deployment', '{"kind": "Deployment"}')
        assert Kubectl(executor).get('deployment', 'shop-staging-web') == {'kind': 'Deployment'}

    def test_apply_records_masked_yaml(self, store, executor, transport):
        """The real manifest goes to the server; the ledger keeps the masked copy."""
        execution = Kubectl(executor).apply('kind: Secret\ndata: {A: czNjcmV0}\n',
                                            recorded_yaml='kind: Secret\ndata: {A: "****"}\n')
        assert 'czNjcmV0' in transport.commands[-1]
        assert 'czNjcmV0' not in store.find_execution(execution.id).command

    def test_get_without_recording_output(self, store, executor, transport):
        transport.respond('kubectl get secret', '{"data": {"DB_PASSWORD": "czNjcmV0"}}')
        assert Kubectl(executor).get('secret', 'shop-staging-postgres-secret', record_output=False) == {
            'data': {'DB_PASSWORD': 'czNjcmV0'},
        }
        execution = store.executions_for(executor.owner.ref)[-1]
        assert store.log_lines(execution.id) == []

    def test_get_failure_is_none(self, executor, transport):
        transport.respond('kubectl get deployment', 'NotFound', exit_code=1)
        assert Kubectl(executor).get('deployment', 'missing') is None

    def test_pod_for_deployment(self, executor, transport):
        transport.respond('kubectl get pods', "'shop-staging-web-7d9f-x2'")
        assert Kubectl(executor).get_pod_for_deployment('shop-staging-web') == 'shop-staging-web-7d9f-x2'
        assert 'app.kubernetes.io/name=shop-staging-web' in transport.commands[-1]

    def test_rollout_status_timeout(self, executor, transport):
        Kubectl(executor).rollout_status('shop-staging-web', timeout=120)
        assert transport.commands[-1].endswith('--timeout=120s')

    def test_scale(self, executor, transport):
        Kubectl(executor).scale('shop-staging-web', 3)
        assert transport.commands[-1] == 'kubectl scale deployment/shop-staging-web --replicas=3 -n default'


class TestParsePrivateInterface:
    def test_finds_private_address(self):
        output = (
            "1: lo    inet 127.0.0.1/8 scope host lo\n"
            "2: eth0    inet 5.161.24.10/32 scope global dynamic eth0\n"
            "3: enp7s0    inet 10.0.0.2/32 brd 10.0.0.2 scope global dynamic enp7s0\n"
        )
        assert parse_private_interface(output) == ('10.0.0.2', 'enp7s0')

    def test_no_private_address(self):
        output = "2: eth0    inet 5.161.24.10/32 scope global dynamic eth0\n"
        assert parse_private_interface(output) is None

    def test_skips_link_local(self):
        output = "2: eth0    inet 169.254.1.1/16 scope link eth0\n"
        assert parse_private_interface(output) is None

    def test_skips_non_rfc1918_private_ranges(self):
        """Benchmark, shared and documentation ranges are not the private network."""
        output = (
            "2: eth0    inet 198.18.0.5/15 scope global eth0\n"
            "3: eth1    inet 100.64.0.7/10 scope global eth1\n"
            "4: eth2    inet 192.0.2.9/24 scope global eth2\n"
            "5: enp7s0    inet 172.16.0.3/32 scope global enp7s0\n"
        )
        assert parse_private_interface(output) == ('172.16.0.3', 'enp7s0')

    def test_rfc1918_edges(self):
        assert parse_private_interface("2: eth0    inet 172.32.0.1/16 scope global eth0\n") is None
        assert parse_private_interface("2: eth0    inet 192.168.1.4/24 scope global eth0\n") == ('192.168.1.4', 'eth0')


class TestRegistryManifests:
    def test_registry_node_port(self):
        documents = list(yaml.safe_load_all(registry_manifest()))
        assert [d['kind'] for d in documents] == ['PersistentVolumeClaim', 'Deployment', 'Service']
        assert documents[2]['spec']['ports'][0]['nodePort'] == 30500
        pod = documents[1]['spec']['template']['spec']
        assert pod['priorityClassName'] == 'platform'

    def test_registry_mirror(self):
        mirrors = yaml.safe_load(registries_yaml())['mirrors']
        assert 'localhost:30500' in mirrors


class TestK3sInstaller:
    """Test the bootstrap phases against a scripted server."""

    def test_phase_order(self, executor):
        categories = [category for category, _, _ in K3sInstaller(executor).get_phases()]
        assert categories[0] == 'wait_cloud_init'
        assert categories[-1] == 'deploy_ingress'
        assert categories.index('install_k3s') < categories.index('deploy_registry')

    def test_install_on_healthy_server(self, store, executor, transport):
        """Already-installed Docker and K3s should not be reinstalled."""
        installer = K3sInstaller(executor)
        installer.install()

        assert installer.private_ip == '10.0.0.2'
        assert installer.interface == 'enp7s0'
        assert not transport.ran('apt-get install -y -qq docker.io')
        assert not transport.ran('get.k3s.io')
        assert transport.ran('/etc/rancher/k3s/registries.yaml')
        assert transport.ran('patch svc ingress-nginx-controller')
        steps = [e.category for e in store.executions_for(executor.owner.ref) if e.category]
        assert steps == [category for category, _, _ in installer.get_phases()]

    def test_installs_missing_components(self, executor, transport):
        transport.respond('docker --version', '', exit_code=1)
        transport.respond('grep -q Ready', '', exit_code=1)
        transport.respond('sudo kubectl get nodes', 'node-1   Ready    control-plane   1m')
        installer = K3sInstaller(executor)
        installer.install()

        assert transport.ran('apt-get install -y -qq docker.io')
        k3s = transport.ran('get.k3s.io')[0]
        assert '--flannel-iface=enp7s0' in k3s
        assert '--node-ip=10.0.0.2' in k3s
        assert '--disable traefik' in k3s

    def test_cloud_init_timeout(self, executor, transport):
        transport.respond('boot-finished', '')
        with patch('kubernetes.installer.time.sleep'):
            with pytest.raises(BootstrapError, match='Cloud-init did not complete'):
                K3sInstaller(executor).wait_for_cloud_init()

    def test_no_private_network(self, executor, transport):
        transport.respond('ip -4 -o addr show', "2: eth0    inet 5.161.24.10/32 scope global eth0")
        with pytest.raises(BootstrapError, match='private IP'):
            K3sInstaller(executor).discover_network()

    def test_registry_timeout(self, executor, transport):
        transport.respond('/v2/', '')
        with patch('kubernetes.installer.time.sleep') as mock_sleep:
            with pytest.raises(BootstrapError, match='Registry'):
                K3sInstaller(executor).wait_for_registry()
        assert mock_sleep.call_count == 60

    def test_ingress_timeout(self, executor, transport):
        transport.respond("jsonpath='{.items[0].status.phase}'", 'Pending')
        with patch('kubernetes.installer.time.sleep'):
            with pytest.raises(BootstrapError, match='Ingress'):
                K3sInstaller(executor).deploy_ingress_controller()
        assert not transport.ran('patch svc')

    def test_uninstall_ignores_errors(self, executor, transport):
        transport.respond('k3s-uninstall.sh', 'not found', exit_code=127)
        K3sInstaller(executor).uninstall()
        assert transport.ran('k3s-uninstall.sh')
        assert transport.ran('sudo rm -rf /etc/rancher /var/lib/rancher /etc/docker')


class TestDockerBuilder:
    """Test remote and local build modes."""

    def test_tags(self, executor):
        builder = DockerBuilder(executor, 'shop-staging')
        assert builder.local_tag('20240101120000') == 'shop-staging:20240101120000'
        assert builder.registry_tag('20240101120000') == 'localhost:30500/shop-staging:20240101120000'

    def test_remote_build_and_push(self, executor, transport):
        builder = DockerBuilder(executor, 'shop-staging')
        with patch('kubernetes.docker_builder.timestamp', return_value='20240101120000'):
            result = builder.build_and_push(workspace='/home/deploy/workspace')

        assert result == {
            'local_tag': 'shop-staging:20240101120000',
            'registry_tag': 'localhost:30500/shop-staging:20240101120000',
            'timestamp': '20240101120000',
        }
        build = transport.ran('docker build')[0]
        assert build.startswith('cd /home/deploy/workspace && docker build --platform linux/amd64 --pull')
        assert transport.ran('docker push localhost:30500/shop-staging:20240101120000')
        assert transport.ran('docker tag shop-staging:20240101120000 shop-staging:latest')

    def test_remote_build_failure(self, executor, transport):
        transport.respond('docker build', 'failed to solve', exit_code=1)
        builder = DockerBuilder(executor, 'shop-staging')
        with pytest.raises(DockerBuildError, match='docker build failed'):
            builder.build_and_push(workspace='/home/deploy/workspace')
        assert not transport.ran('docker push')

    def test_requires_context(self, executor):
        with pytest.raises(DockerBuildError, match='context_path or workspace'):
            DockerBuilder(executor, 'shop-staging').build_and_push()

    def test_cleanup_keeps_newest_three(self, executor, transport):
        tags = ['20240105000000', 'latest', '20240101000000', '20240104000000',
                '<none>', '20240103000000', '20240102000000']
        transport.respond('docker images', '\n'.join(tags))
        builder = DockerBuilder(executor, 'shop-staging')

        removed = builder.cleanup_old_images()

        assert removed == ['20240102000000', '20240101000000']
        assert transport.ran('docker rmi shop-staging:20240102000000')
        assert transport.ran('sudo crictl rmi localhost:30500/shop-staging:20240101000000')
        assert not transport.ran('docker rmi shop-staging:20240105000000')

    def test_local_mode_uses_docker_host(self, executor, tmp_path):
        builder = DockerBuilder(executor, 'shop-staging', server_ip='203.0.113.10')
        with patch('kubernetes.docker_builder.run_command', return_value=(0, '', '')) as mock_run:
            builder.build_and_push(context_path=tmp_path)
        build_call = mock_run.call_args_list[0]
        assert build_call[0][0][:2] == ['docker', 'build']
        assert build_call[1]['cwd'] == tmp_path
        assert build_call[1]['env']['DOCKER_HOST'] == 'ssh://deploy@203.0.113.10'

    def test_local_mode_needs_server_ip(self, executor, tmp_path):
        builder = DockerBuilder(executor, 'shop-staging')
        with pytest.raises(DockerBuildError, match='No server IP'):
            builder.build_and_push(context_path=tmp_path)
