"""Common utilities for provisioning automation."""

import logging
import shlex
import subprocess
import tempfile
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


def run_command(
    cmd: list[str],
    cwd: Optional[Path] = None,
    timeout: int = 600,
    capture: bool = True,
    env: Optional[dict] = None
) -> tuple[int, str, str]:
    """Run a command and return (returncode, stdout, stderr)."""
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=capture,
            text=True,
            timeout=timeout,
            env=env,
            check=False  # We handle return codes explicitly
        )
        return result.returncode, result.stdout, result.stderr
    except subprocess.TimeoutExpired:
        return -1, '', f'Command timed out after {timeout}s'
    except OSError as e:
        return -1, '', str(e)


def stdin_heredoc(command: str, content: str, marker: str = 'STACKRUN_EOF') -> str:
    """Feed content to command's stdin through a quoted heredoc.

    The quoted marker disables variable expansion so content passes verbatim.
    """
    if not content.endswith('\n'):
        content += '\n'
    return f"{command} << '{marker}'\n{content}{marker}"


def heredoc(path: str, content: str, sudo: bool = False, marker: str = 'STACKRUN_EOF') -> str:
    """Build a shell command that writes content to path."""
    target = shlex.quote(path)
    if sudo:
        return stdin_heredoc(f"sudo tee {target} > /dev/null", content, marker)
    return stdin_heredoc(f"cat > {target}", content, marker)


def sh_join(*commands: str) -> str:
    """Chain shell commands so the first failure stops the chain."""
    return ' && '.join(c for c in commands if c)


def generate_ssh_keypair(comment: str = 'stackrun') -> tuple[str, str]:
    """Generate an ed25519 keypair with ssh-keygen.

    Returns:
        (private_key, public_key) tuple of OpenSSH-formatted strings

    Raises:
        RuntimeError: If ssh-keygen fails
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        key_path = Path(tmpdir) / 'id_ed25519'
        rc, _, err = run_command(
            ['ssh-keygen', '-q', '-t', 'ed25519', '-N', '', '-C', comment, '-f', str(key_path)],
            timeout=30,
        )
        if rc != 0:
            raise RuntimeError(f"ssh-keygen failed: {err.strip()}")
        private_key = key_path.read_text()
        public_key = key_path.with_suffix('.pub').read_text().strip()
    logger.debug(f"Generated SSH keypair ({comment})")
    return private_key, public_key
