"""Sandbox and release provisioning workflows."""

from provisioners.base import ProvisionError, Provisioner, ssh_transport
from provisioners.release import ReleaseProvisioner
from provisioners.sandbox import SandboxProvisioner
from provisioners.volumes import VolumeProvisioner

__all__ = [
    'ProvisionError',
    'Provisioner',
    'ReleaseProvisioner',
    'SandboxProvisioner',
    'VolumeProvisioner',
    'ssh_transport',
]
