"""Shared provisioner plumbing: state transitions, SSH and step logging."""

import logging
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from config import Config
from events import EventSink, LoggingEventSink
from naming import DEFAULT_USER
from providers import Reconciler
from remote.executor import RemoteExecutor
from remote.ssh import SSHClient
from state.store import Owner, Store

logger = logging.getLogger(__name__)

SSH_WAIT_ATTEMPTS = 180 // 5
SSH_WAIT_INTERVAL = 5


class ProvisionError(Exception):
    """A provisioning precondition failed."""


def ssh_transport(host: str, private_key: str, user: str = DEFAULT_USER) -> SSHClient:
    return SSHClient(host, private_key, user=user)


class Provisioner:
    """Base for sandbox and release provisioners.

    Args:
        owner: Sandbox or Release being provisioned
        store: Ledger store
        config: Unified configuration
        compute: Compute provider client
        cloudflare: Cloudflare client, or None when not configured
        events: Progress sink (logs by default)
        transport_factory: (host, private_key) -> transport with execute()
    """

    def __init__(
        self,
        owner: Owner,
        store: Store,
        config: Config,
        compute,
        cloudflare=None,
        events: Optional[EventSink] = None,
        transport_factory: Callable = ssh_transport,
    ):
        self.owner = owner
        self.store = store
        self.config = config
        self.compute = compute
        self.cloudflare = cloudflare
        self.events = events or LoggingEventSink()
        self.transport_factory = transport_factory
        self.reconciler = Reconciler(compute)
        self.executor = RemoteExecutor(owner, store, events=self.events)

    @property
    def cloudflare_configured(self) -> bool:
        return self.cloudflare is not None and self.config.cloudflare_configured()

    @property
    def zone(self) -> Optional[str]:
        return self.config.cloudflare.domain if self.config.cloudflare else None

    def log_step(self, category: str) -> None:
        self.executor.log_step(category)

    def run(self, command: str, **kwargs):
        return self.executor.run(command, **kwargs)

    def connect(self, host: str) -> None:
        """Point the executor at host using the owner's private key."""
        self.executor.transport = self.transport_factory(host, self.owner.ssh_private_key)

    def wait_for_ssh(self, host: str) -> None:
        self.connect(host)
        self.executor.transport.wait_until_ready(max_attempts=SSH_WAIT_ATTEMPTS, interval=SSH_WAIT_INTERVAL)

    def update(self, **changes) -> None:
        self.store.update(self.owner, **changes)

    @contextmanager
    def failing_to(self, state: str = 'failed') -> Iterator[None]:
        """Record any exception on the owner, move it to state, and re-raise."""
        try:
            yield
        except Exception as e:
            logger.error(f"[{self.owner.ref}] {type(e).__name__}: {e}")
            self.update(state=state, last_error=str(e))
            raise
