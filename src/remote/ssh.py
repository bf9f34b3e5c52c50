"""SSH transport over the OpenSSH client.

Commands run through the system `ssh` binary with the private key written
to a temporary 0600 file for the duration of the call. stdout and stderr
are merged and delivered line by line as they arrive.

OpenSSH reports its own failures with exit code 255, which is how transport
errors (authentication, connection) are told apart from command failures.
"""

import base64
import logging
import os
import shlex
import subprocess
import tempfile
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator, Optional

from naming import DEFAULT_USER

logger = logging.getLogger(__name__)

SSH_TRANSPORT_ERROR = 255

SSH_OPTIONS = [
    '-o', 'StrictHostKeyChecking=no',
    '-o', 'UserKnownHostsFile=/dev/null',
    '-o', 'LogLevel=ERROR',
    '-o', 'BatchMode=yes',
]

_CONNECTION_MARKERS = (
    'Connection refused',
    'Connection timed out',
    'No route to host',
    'Could not resolve hostname',
    'Network is unreachable',
    'Connection closed',
    'Connection reset',
)


class SSHError(Exception):
    """Base class for transport errors."""


class AuthenticationError(SSHError):
    """The server rejected our key."""


class ConnectionError(SSHError):  # noqa: A001
    """Timeout, refusal, unreachable host or name resolution failure."""


class CommandError(SSHError):
    """Remote command exited non-zero."""

    def __init__(self, message: str, exit_code: int, output: str):
        super().__init__(message)
        self.exit_code = exit_code
        self.output = output


@dataclass
class CommandResult:
    output: str
    exit_code: int

    @property
    def success(self) -> bool:
        return self.exit_code == 0


class SSHClient:
    """Run commands on a remote host.

    Args:
        host: IP address or hostname
        private_key: Private key content (not a path)
        user: Remote user
        port: SSH port
        connect_timeout: Seconds to wait for the TCP/SSH handshake
    """

    def __init__(
        self,
        host: str,
        private_key: str,
        user: str = DEFAULT_USER,
        port: int = 22,
        connect_timeout: int = 10,
    ):
        self.host = host
        self.user = user
        self.port = port
        self.connect_timeout = connect_timeout
        self._private_key = private_key

    def __repr__(self) -> str:
        return f"SSHClient({self.user}@{self.host}:{self.port})"

    @contextmanager
    def key_file(self) -> Iterator[str]:
        fd, path = tempfile.mkstemp(prefix='stackrun-key-')
        try:
            with os.fdopen(fd, 'w') as f:
                key = self._private_key
                f.write(key if key.endswith('\n') else key + '\n')
            os.chmod(path, 0o600)
            yield path
        finally:
            os.unlink(path)

    def ssh_command(self, key_path: str, connect_timeout: Optional[int] = None) -> list[str]:
        """Base argv for ssh to this host, without the remote command."""
        timeout = connect_timeout or self.connect_timeout
        return (['ssh', '-i', key_path, '-p', str(self.port)] + SSH_OPTIONS
                + ['-o', f'ConnectTimeout={timeout}', f'{self.user}@{self.host}'])

    def interactive_command(self, key_path: str, command: Optional[str] = None) -> list[str]:
        """argv for an interactive login shell, or command on a tty (used by the CLI)."""
        argv = (['ssh', '-t', '-i', key_path, '-p', str(self.port)]
                + SSH_OPTIONS[:6] + [f'{self.user}@{self.host}'])
        if command:
            argv.append(command)
        return argv

    def _classify(self, output: str) -> SSHError:
        if 'Permission denied' in output or 'Too many authentication failures' in output:
            return AuthenticationError(f"SSH authentication failed for {self.user}@{self.host}: {output.strip()}")
        for marker in _CONNECTION_MARKERS:
            if marker in output:
                return ConnectionError(f"SSH connection to {self.host} failed: {marker}")
        return ConnectionError(f"SSH connection to {self.host} failed: {output.strip() or 'unknown error'}")

    def execute(
        self,
        command: str,
        timeout: Optional[int] = None,
        raise_on_error: bool = True,
        cwd: Optional[str] = None,
        on_line: Optional[Callable[[str], None]] = None,
    ) -> CommandResult:
        """Execute command remotely.

        Raises:
            AuthenticationError: Key rejected
            ConnectionError: Host unreachable or command timed out
            CommandError: Non-zero exit and raise_on_error
        """
        if cwd:
            command = f"cd {shlex.quote(cwd)} && {command}"

        lines: list[str] = []
        timed_out = threading.Event()

        with self.key_file() as key_path:
            argv = self.ssh_command(key_path) + [command]
            logger.debug(f"[ssh {self.host}] {command}")
            try:
                proc = subprocess.Popen(
                    argv,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    text=True,
                    errors='replace',
                )
            except OSError as e:
                raise ConnectionError(f"Cannot start ssh: {e}") from e

            def _kill():
                timed_out.set()
                proc.kill()

            timer = threading.Timer(timeout, _kill) if timeout else None
            if timer:
                timer.start()
            try:
                assert proc.stdout is not None
                for raw in proc.stdout:
                    line = raw.rstrip('\n')
                    lines.append(line)
                    if on_line:
                        on_line(line)
                exit_code = proc.wait()
            finally:
                if timer:
                    timer.cancel()

        output = '\n'.join(lines).strip()

        if timed_out.is_set():
            raise ConnectionError(f"SSH command timed out after {timeout}s on {self.host}")
        if exit_code == SSH_TRANSPORT_ERROR:
            raise self._classify(output)
        if raise_on_error and exit_code != 0:
            raise CommandError(
                f"Command failed (exit code: {exit_code}): {command}",
                exit_code=exit_code,
                output=output,
            )
        return CommandResult(output=output, exit_code=exit_code)

    def available(self, timeout: int = 10) -> bool:
        """Check if SSH accepts a trivial command."""
        try:
            result = self.execute('echo ok', timeout=timeout + 5, raise_on_error=False)
        except SSHError:
            return False
        return result.exit_code == 0 and result.output.strip() == 'ok'

    def wait_until_ready(self, max_attempts: int = 60, interval: int = 5) -> bool:
        """Block until SSH is available.

        Raises:
            ConnectionError: If still unavailable after max_attempts
        """
        logger.info(f"Waiting for SSH on {self.host}...")
        for attempt in range(max_attempts):
            if self.available(timeout=10):
                logger.info(f"SSH available on {self.host}")
                return True
            logger.debug(f"[ssh {self.host}] not ready (attempt {attempt + 1}/{max_attempts})")
            time.sleep(interval)
        raise ConnectionError(f"SSH not available after {max_attempts} attempts")

    def upload_content(self, content: str, remote_path: str, mode: str = '0644') -> None:
        """Write content to a remote file via a base64 pipe."""
        encoded = base64.b64encode(content.encode()).decode()
        path = shlex.quote(remote_path)
        directory = shlex.quote(os.path.dirname(remote_path) or '.')
        self.execute(
            f"mkdir -p {directory} && echo {shlex.quote(encoded)} | base64 -d > {path} && chmod {mode} {path}"
        )

    def read_file(self, remote_path: str) -> Optional[str]:
        """Return a remote file's content, or None if it cannot be read."""
        result = self.execute(f"cat {shlex.quote(remote_path)}", raise_on_error=False)
        return result.output if result.exit_code == 0 else None
