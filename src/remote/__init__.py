"""Remote command execution: SSH transport and the ledger-recording executor."""

from remote.executor import RemoteExecutor
from remote.ssh import (
    AuthenticationError,
    CommandError,
    CommandResult,
    ConnectionError,
    SSHClient,
    SSHError,
)

__all__ = [
    'AuthenticationError',
    'CommandError',
    'CommandResult',
    'ConnectionError',
    'RemoteExecutor',
    'SSHClient',
    'SSHError',
]
