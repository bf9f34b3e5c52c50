"""Resource policy: priority classes and container resource profiles.

Workloads get CPU requests for scheduling weight but no CPU limits, and a
memory limit so that overcommit fails loudly (OOM kill) instead of silently
throttling. Priority classes make the kubelet evict apps before platform
services, and platform services before databases.
"""

import copy

import yaml

PRIORITIES = {
    'database': 1_000_000_000,
    'platform': 100_000,
    'app': 1_000,
}

PRIORITY_CLASS_NAMES = {
    'database': 'database-critical',
    'platform': 'platform',
    'app': 'app',
}

# Memory: request is guaranteed, limit is the burst cap. CPU: request only.
PROFILES = {
    'database': {
        'requests': {'memory': '512Mi', 'cpu': '250m'},
        'limits': {'memory': '1536Mi'},
    },
    'platform': {
        'requests': {'memory': '64Mi', 'cpu': '50m'},
        'limits': {'memory': '256Mi'},
    },
    'small': {
        'requests': {'memory': '256Mi', 'cpu': '100m'},
        'limits': {'memory': '512Mi'},
    },
    'medium': {
        'requests': {'memory': '256Mi', 'cpu': '200m'},
        'limits': {'memory': '512Mi'},
    },
    'large': {
        'requests': {'memory': '512Mi', 'cpu': '300m'},
        'limits': {'memory': '1Gi'},
    },
}

DEFAULT_APP_SIZE = 'small'

GIB = 1024 ** 3
BASELINE_NODE_GIB = 8
LARGE_NODE_GIB = 16


def profile_for(workload_type: str) -> dict:
    """Resource spec for a container; unknown types get the default app size.

    Always returns a fresh copy.
    """
    profile = PROFILES.get(workload_type, PROFILES[DEFAULT_APP_SIZE])
    return copy.deepcopy(profile)


def priority_class_for(workload_type: str) -> str:
    if workload_type == 'database':
        return PRIORITY_CLASS_NAMES['database']
    if workload_type == 'platform':
        return PRIORITY_CLASS_NAMES['platform']
    return PRIORITY_CLASS_NAMES['app']


def auto_size_for_node(node_memory_bytes: int) -> dict:
    """Profiles adjusted for node memory.

    Nodes at or below the 8 GiB baseline get the defaults; 16 GiB and up
    raise the database and large memory limits to 2Gi.
    """
    node_gib = node_memory_bytes // GIB
    profiles = copy.deepcopy(PROFILES)
    if node_gib >= LARGE_NODE_GIB:
        profiles['database']['limits']['memory'] = '2Gi'
        profiles['large']['limits']['memory'] = '2Gi'
    return profiles


def _priority_class(name: str, value: int, description: str, global_default: bool = False) -> dict:
    return {
        'apiVersion': 'scheduling.k8s.io/v1',
        'kind': 'PriorityClass',
        'metadata': {'name': name},
        'value': value,
        'globalDefault': global_default,
        'preemptionPolicy': 'PreemptLowerPriority',
        'description': description,
    }


def priority_class_manifests() -> list[dict]:
    return [
        _priority_class('database-critical', PRIORITIES['database'], 'Database workloads - never evict'),
        _priority_class('platform', PRIORITIES['platform'], 'Platform services - evict after apps'),
        _priority_class('app', PRIORITIES['app'], 'Application workloads - evict first', global_default=True),
    ]


def priority_class_yaml() -> str:
    return yaml.safe_dump_all(priority_class_manifests(), sort_keys=False)
