"""Normalized resource records returned by compute provider clients."""

from dataclasses import dataclass, field
from typing import Optional


@dataclass
class Server:
    id: str
    name: str
    status: str = ''
    public_ipv4: Optional[str] = None
    private_ipv4: Optional[str] = None
    instance_type: str = ''
    image: str = ''
    location: str = ''  # datacenter, e.g. ash-dc1
    labels: dict = field(default_factory=dict)
    created_at: Optional[str] = None


@dataclass
class SSHKey:
    id: str
    name: str
    fingerprint: str = ''
    public_key: str = ''
    created_at: Optional[str] = None


@dataclass
class Firewall:
    id: str
    name: str
    rules: list = field(default_factory=list)
    created_at: Optional[str] = None


@dataclass
class Network:
    id: str
    name: str
    ip_range: Optional[str] = None
    subnets: list = field(default_factory=list)
    location: Optional[str] = None
    created_at: Optional[str] = None


@dataclass
class Volume:
    id: str
    name: str
    size_gb: int = 0
    volume_type: str = 'xfs'
    status: str = ''
    server_id: Optional[str] = None
    location: str = ''
    device_path: Optional[str] = None
    created_at: Optional[str] = None


@dataclass
class Tunnel:
    id: str
    name: str
    status: Optional[str] = None
    token: Optional[str] = None
