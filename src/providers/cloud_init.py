"""cloud-init user-data for new servers."""

import yaml

from naming import DEFAULT_USER


def generate(ssh_public_key: str, user: str = DEFAULT_USER) -> str:
    """Render #cloud-config creating a passwordless-sudo user with our key."""
    document = {
        'users': [{
            'name': user,
            'groups': 'sudo,docker',
            'shell': '/bin/bash',
            'sudo': 'ALL=(ALL) NOPASSWD:ALL',
            'ssh_authorized_keys': [ssh_public_key],
        }],
        'disable_root': True,
        'ssh_pwauth': False,
    }
    return '#cloud-config\n' + yaml.safe_dump(document, default_flow_style=False, sort_keys=False)
