"""Single-node K3s: bootstrap, kubectl access, image builds and resource policy."""

from kubernetes.docker_builder import DockerBuildError, DockerBuilder
from kubernetes.installer import BootstrapError, K3sInstaller
from kubernetes.kubectl import Kubectl

__all__ = [
    'BootstrapError',
    'DockerBuildError',
    'DockerBuilder',
    'K3sInstaller',
    'Kubectl',
]
